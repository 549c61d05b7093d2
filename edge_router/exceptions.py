"""
Edge Router exceptions

Startup failures (ConfigurationError) are fatal; everything else is scoped to
a single request and never takes the process down.
"""

from typing import Optional


class EdgeRouterError(Exception):
    """Base class for edge router errors"""


class ConfigurationError(EdgeRouterError):
    """Missing or malformed configuration detected at startup"""


class ForwardError(EdgeRouterError):
    """Forwarding a request to an upstream origin failed"""

    status_code = 502

    def __init__(self, message: str, origin: Optional[str] = None):
        super().__init__(message)
        self.origin = origin


class UpstreamUnavailable(ForwardError):
    """Upstream unreachable or answered with a malformed response"""


class UpstreamTimeout(ForwardError):
    """Upstream did not answer in time"""

    status_code = 504


class ClientDisconnected(EdgeRouterError):
    """Client went away before the upstream response was relayed"""


class OverloadRejection(EdgeRouterError):
    """Event loop lag is over the configured threshold"""

    status_code = 503

    def __init__(self, lag_ms: float, max_lag_ms: float):
        super().__init__(f"Event loop lag {lag_ms:.1f}ms exceeds {max_lag_ms:.1f}ms")
        self.lag_ms = lag_ms
        self.max_lag_ms = max_lag_ms


class BodyTooLargeError(EdgeRouterError):
    """Request body exceeds the configured ceiling"""

    status_code = 413

    def __init__(self, limit: int, received: Optional[int] = None):
        if received is None:
            message = f"Request body exceeds {limit} bytes"
        else:
            message = f"Request body of {received} bytes exceeds {limit} bytes"
        super().__init__(message)
        self.limit = limit
        self.received = received
