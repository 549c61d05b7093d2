"""
Routing models

Stage results, route rules and forward outcomes shared by the dispatcher,
the forwarder and the API routing table.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.types import Receive, Scope, Send

from edge_router.exceptions import EdgeRouterError
from edge_router.models.origin import Origin

ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class Continue:
    """Pass the request on to the next stage"""

    def __repr__(self) -> str:
        return "CONTINUE"


CONTINUE = Continue()


@dataclass(frozen=True)
class ShortCircuit:
    """Answer the request locally; `response` is any ASGI callable"""

    response: ASGIApp


@dataclass(frozen=True)
class Forward:
    """Hand the request to the forwarder for `origin`"""

    origin: Origin


StageResult = Union[Continue, ShortCircuit, Forward]


@dataclass
class Exchange:
    """Per-request bookkeeping filled in while the response goes out"""

    started_at: float
    target: str = "local"
    status_code: Optional[int] = None
    bytes_sent: int = 0
    outcome: Optional["ForwardOutcome"] = None


@dataclass(frozen=True)
class Stage:
    """
    One step of the request pipeline

    handle decides what happens to the request. on_headers may decorate the
    outgoing response headers and on_complete observes the finished exchange;
    both only run for stages the request reached.
    """

    name: str
    handle: Callable[[Request], Awaitable[StageResult]]
    on_headers: Optional[Callable[[Request, MutableHeaders], None]] = None
    on_complete: Optional[Callable[[Request, Exchange], None]] = None


@dataclass(frozen=True)
class RouteRule:
    """Predicate over the request head paired with a target origin"""

    name: str
    predicate: Callable[[Request], bool]
    origin: Optional[Origin] = None

    def evaluate(self, request: Request) -> StageResult:
        if self.origin is not None and self.predicate(request):
            return Forward(self.origin)
        return CONTINUE


@dataclass(frozen=True)
class ForwardSuccess:
    origin: Origin
    status_code: int
    bytes_streamed: int

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ForwardFailure:
    """
    A forward attempt that did not complete

    status_code is the status sent to the client, or the upstream status when
    the response had already started before the failure.
    """

    origin: Origin
    cause: EdgeRouterError
    status_code: Optional[int]
    response_started: bool = False
    bytes_streamed: int = 0

    @property
    def ok(self) -> bool:
        return False


ForwardOutcome = Union[ForwardSuccess, ForwardFailure]
