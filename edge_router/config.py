"""
Configuration Management
Environment-based configuration for backend origins, policies and server settings
"""

from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from edge_router.exceptions import ConfigurationError
from edge_router.models.origin import Origin, resolve_origin

logger = structlog.get_logger(__name__)


class RouterSettings(BaseSettings):
    """Edge router configuration, read once at startup"""

    # Backend services (required)
    identity_service_url: str
    write_service_url: str
    static_service_url: str
    verifier_url: Optional[str] = None

    # Public hostnames
    public_url: Optional[str] = None
    public_verifier_url: Optional[str] = None

    # Server
    bind_host: str
    bind_port: int
    drain_timeout: float = 10.0

    # Request policies
    max_body_bytes: int = 10 * 1024
    force_https: bool = False
    hsts_enabled: bool = False
    hsts_max_age: int = 10886400
    frame_options: Optional[str] = "DENY"
    content_type_options: bool = True
    legacy_response_headers: Dict[str, str] = {}
    fake_verification: bool = False

    # Overload shedding
    overload_max_lag_ms: float = 70.0
    overload_check_interval_ms: float = 500.0
    overload_smoothing: float = 1 / 3

    # Health checks
    heartbeat_path: str = "/__heartbeat__"
    health_check_interval: float = 10.0
    health_check_timeout: float = 5.0
    deep_check_min_interval: float = 1.0

    # Upstream connections
    upstream_connect_timeout: float = 5.0
    upstream_read_timeout: float = 30.0

    # Observability
    metrics_path: str = "/__metrics__"
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "edge-router"
    service_version: str = "1.0.0"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    @field_validator("verifier_url", "public_url", "public_verifier_url", "frame_options", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("bind_port")
    @classmethod
    def validate_bind_port(cls, v):
        if not 0 <= v <= 65535:
            raise ValueError("bind port must be between 0 and 65535")
        return v

    @field_validator("max_body_bytes")
    @classmethod
    def validate_max_body_bytes(cls, v):
        if v < 0:
            raise ValueError("body size limit cannot be negative")
        return v

    @field_validator("drain_timeout", "overload_check_interval_ms", "health_check_interval", "health_check_timeout")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("deep_check_min_interval")
    @classmethod
    def validate_deep_check_min_interval(cls, v):
        if v < 0:
            raise ValueError("deep check interval cannot be negative")
        return v

    @field_validator("overload_smoothing")
    @classmethod
    def validate_smoothing(cls, v):
        if not 0 < v <= 1:
            raise ValueError("smoothing factor must be in (0, 1]")
        return v

    @field_validator("heartbeat_path", "metrics_path")
    @classmethod
    def validate_internal_path(cls, v):
        if v and not v.startswith("/"):
            raise ValueError("internal paths must start with '/'")
        return v

    @property
    def security_headers(self) -> Dict[str, str]:
        """Response headers implied by the transport security toggles"""
        headers = {}
        if self.hsts_enabled:
            headers["Strict-Transport-Security"] = f"max-age={self.hsts_max_age}; includeSubDomains"
        if self.frame_options:
            headers["X-Frame-Options"] = self.frame_options
        if self.content_type_options:
            headers["X-Content-Type-Options"] = "nosniff"
        return headers

    def log_config(self):
        """Log configuration (URLs only, no header values)"""
        logger.info(
            "Edge router configuration",
            identity_service=self.identity_service_url,
            write_service=self.write_service_url,
            static_service=self.static_service_url,
            verifier=self.verifier_url or "disabled",
            bind=f"{self.bind_host}:{self.bind_port}",
            max_body_bytes=self.max_body_bytes,
            fake_verification=self.fake_verification,
            overload_max_lag_ms=self.overload_max_lag_ms,
        )
        if self.fake_verification:
            logger.warning("Fake verification route enabled, do not use in production")


@dataclass(frozen=True)
class Origins:
    """Resolved backend origins"""

    identity: Origin
    write: Origin
    static: Origin
    verifier: Optional[Origin] = None
    public: Optional[Origin] = None
    public_verifier: Optional[Origin] = None

    @property
    def verifier_host_routing(self) -> bool:
        """
        Route by Host header to the verifier only when it is published under
        its own hostname
        """
        if self.verifier is None or self.public_verifier is None:
            return False
        return self.public_verifier != self.public


def load_settings(**overrides) -> RouterSettings:
    """
    Build settings from the environment

    Raises:
        ConfigurationError: If a required value is missing or invalid
    """
    try:
        return RouterSettings(**overrides)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


def resolve_origins(settings: RouterSettings) -> Origins:
    """Resolve every configured backend URL; failures are fatal"""
    public = None
    if settings.public_url:
        public = resolve_origin(settings.public_url, "public_url")

    verifier = None
    public_verifier = None
    if settings.verifier_url:
        verifier = resolve_origin(settings.verifier_url, "verifier_url")
        if settings.public_verifier_url:
            public_verifier = resolve_origin(settings.public_verifier_url, "public_verifier_url")
        else:
            public_verifier = public

    return Origins(
        identity=resolve_origin(settings.identity_service_url, "identity_service_url"),
        write=resolve_origin(settings.write_service_url, "write_service_url"),
        static=resolve_origin(settings.static_service_url, "static_service_url"),
        verifier=verifier,
        public=public,
        public_verifier=public_verifier,
    )
