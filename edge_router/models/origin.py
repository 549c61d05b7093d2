"""
Backend origins

An origin is the scheme/host/port triple of a backend service. Origins are
resolved once at startup and shared read-only by every request handler.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from edge_router.exceptions import ConfigurationError

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class Origin:
    """Canonical scheme, host and port of a backend service"""

    scheme: str
    host: str
    port: int

    @property
    def netloc(self) -> str:
        """Host (and non-default port), as sent in the Host header"""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if DEFAULT_PORTS.get(self.scheme) == self.port:
            return host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    def __str__(self) -> str:
        return self.url


def resolve_origin(raw: Optional[str], name: str = "url") -> Origin:
    """
    Validate a configured URL and reduce it to its origin

    Path, query, fragment and credentials are dropped; scheme and host are
    lower-cased and the scheme's default port is filled in.

    Args:
        raw: URL as configured
        name: Configuration key, used in error messages

    Returns:
        Canonical Origin

    Raises:
        ConfigurationError: If the URL is absent, malformed or has no host
    """
    if raw is None or not str(raw).strip():
        raise ConfigurationError(f"{name} is required")

    value = str(raw).strip()
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a valid URL: {value!r} ({e})") from e

    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ConfigurationError(f"{name} must use http or https: {value!r}")

    host = (parts.hostname or "").lower()
    if not host:
        raise ConfigurationError(f"{name} has no host: {value!r}")

    return Origin(scheme=scheme, host=host, port=port or DEFAULT_PORTS[scheme])
