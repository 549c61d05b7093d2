from edge_router.models.origin import Origin, resolve_origin
from edge_router.models.routing import (
    CONTINUE,
    Continue,
    Exchange,
    Forward,
    ForwardFailure,
    ForwardOutcome,
    ForwardSuccess,
    RouteRule,
    ShortCircuit,
    Stage,
    StageResult,
)

__all__ = [
    "Origin",
    "resolve_origin",
    "CONTINUE",
    "Continue",
    "Exchange",
    "Forward",
    "ForwardFailure",
    "ForwardOutcome",
    "ForwardSuccess",
    "RouteRule",
    "ShortCircuit",
    "Stage",
    "StageResult",
]
