"""
Read/write API routing

Web service API calls live under /wsapi/<operation>. Operations that write to
the database go to the write service; everything else goes to the identity
service. Unknown operations are left to the rest of the chain.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from starlette.requests import Request

from edge_router.models.origin import Origin
from edge_router.models.routing import RouteRule

API_PREFIX = "/wsapi/"


@dataclass(frozen=True)
class ApiOperation:
    name: str
    writes_db: bool = False


API_OPERATIONS = (
    # Reads
    ApiOperation("address_info"),
    ApiOperation("authenticate_user"),
    ApiOperation("cert_key"),
    ApiOperation("email_addition_status"),
    ApiOperation("email_for_token"),
    ApiOperation("have_email"),
    ApiOperation("interaction_data"),
    ApiOperation("list_emails"),
    ApiOperation("logout"),
    ApiOperation("password_reset_status"),
    ApiOperation("prolong_session"),
    ApiOperation("session_context"),
    ApiOperation("user_creation_status"),
    # Writes
    ApiOperation("account_cancel", writes_db=True),
    ApiOperation("add_email_with_assertion", writes_db=True),
    ApiOperation("auth_with_assertion", writes_db=True),
    ApiOperation("complete_email_confirmation", writes_db=True),
    ApiOperation("complete_reset", writes_db=True),
    ApiOperation("complete_user_creation", writes_db=True),
    ApiOperation("remove_email", writes_db=True),
    ApiOperation("stage_email", writes_db=True),
    ApiOperation("stage_reset", writes_db=True),
    ApiOperation("stage_reverify", writes_db=True),
    ApiOperation("stage_user", writes_db=True),
    ApiOperation("update_password", writes_db=True),
    ApiOperation("used_address_as_primary", writes_db=True),
)


def operation_name(path: str) -> Optional[str]:
    """'/wsapi/stage_user' -> 'stage_user'"""
    if not path.startswith(API_PREFIX):
        return None
    name = path[len(API_PREFIX):]
    if not name or "/" in name:
        return None
    return name


class ApiRouter:
    """Installs the read and write rules for the web service API"""

    def __init__(self, read_origin: Origin, write_origin: Origin, operations: Iterable[ApiOperation] = API_OPERATIONS):
        self.read_origin = read_origin
        self.write_origin = write_origin
        self.operations = {operation.name: operation for operation in operations}

    def lookup(self, request: Request) -> Optional[ApiOperation]:
        name = operation_name(request.url.path)
        if name is None:
            return None
        return self.operations.get(name)

    def is_write(self, request: Request) -> bool:
        operation = self.lookup(request)
        return operation is not None and operation.writes_db

    def is_read(self, request: Request) -> bool:
        operation = self.lookup(request)
        return operation is not None and not operation.writes_db

    def rules(self) -> List[RouteRule]:
        return [
            RouteRule("api-write", self.is_write, self.write_origin),
            RouteRule("api-read", self.is_read, self.read_origin),
        ]
