"""
Prometheus metrics for the edge router

Each application owns its registry so several routers (tests) can live in
one process.
"""

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest


class RouterMetrics:
    """Request, response and rejection counters"""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "edge_router_requests_total",
            "Requests that passed the overload gate",
            ["method"],
            registry=self.registry,
        )
        self.responses = Counter(
            "edge_router_responses_total",
            "Responses sent, by target and status code",
            ["target", "status"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "edge_router_request_duration_seconds",
            "Time from request arrival to the end of the response",
            ["target"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.response_bytes = Histogram(
            "edge_router_response_bytes",
            "Body bytes of responses served by the catch-all tier",
            ["target"],
            buckets=(512, 4096, 16384, 65536, 262144, 1048576, 4194304),
            registry=self.registry,
        )
        self.forward_failures = Counter(
            "edge_router_forward_failures_total",
            "Forward attempts that did not complete",
            ["target", "reason"],
            registry=self.registry,
        )
        self.overload_rejections = Counter(
            "edge_router_overload_rejections_total",
            "Requests rejected because the event loop lagged",
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST
