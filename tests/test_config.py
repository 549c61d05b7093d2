"""
Tests for configuration loading
"""

import pytest
from pydantic import ValidationError

from edge_router.config import load_settings, resolve_origins
from edge_router.exceptions import ConfigurationError
from edge_router.main import create_app

REQUIRED_ENV = {
    "IDENTITY_SERVICE_URL": "http://identity.internal:10002",
    "WRITE_SERVICE_URL": "http://writer.internal:10004",
    "STATIC_SERVICE_URL": "http://static.internal:10003",
    "BIND_HOST": "0.0.0.0",
    "BIND_PORT": "8080",
}


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No router variables and no .env file in the working directory"""
    monkeypatch.chdir(tmp_path)
    for name in list(REQUIRED_ENV) + ["VERIFIER_URL", "PUBLIC_URL", "PUBLIC_VERIFIER_URL",
                                      "FAKE_VERIFICATION", "MAX_BODY_BYTES", "LEGACY_RESPONSE_HEADERS"]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadSettings:
    def test_reads_environment(self, clean_env):
        for name, value in REQUIRED_ENV.items():
            clean_env.setenv(name, value)
        clean_env.setenv("FAKE_VERIFICATION", "true")
        clean_env.setenv("LEGACY_RESPONSE_HEADERS", '{"P3P": "CP=\\"not a policy\\""}')

        settings = load_settings()

        assert settings.identity_service_url == "http://identity.internal:10002"
        assert settings.bind_port == 8080
        assert settings.fake_verification is True
        assert settings.legacy_response_headers == {"P3P": 'CP="not a policy"'}

    def test_defaults(self, clean_env):
        for name, value in REQUIRED_ENV.items():
            clean_env.setenv(name, value)

        settings = load_settings()

        assert settings.max_body_bytes == 10240
        assert settings.fake_verification is False
        assert settings.verifier_url is None
        assert settings.heartbeat_path == "/__heartbeat__"

    @pytest.mark.parametrize("missing", sorted(REQUIRED_ENV))
    def test_missing_required_value(self, clean_env, missing):
        for name, value in REQUIRED_ENV.items():
            if name != missing:
                clean_env.setenv(name, value)

        with pytest.raises(ConfigurationError, match=missing.lower()):
            load_settings()

    def test_invalid_port(self, settings_factory):
        with pytest.raises(ConfigurationError):
            settings_factory(bind_port=70000)

    @pytest.mark.parametrize("drain_timeout", [0, -1.5])
    def test_drain_timeout_must_be_positive(self, settings_factory, drain_timeout):
        with pytest.raises(ConfigurationError, match="drain_timeout"):
            settings_factory(drain_timeout=drain_timeout)

    def test_fractional_drain_timeout(self, settings_factory):
        assert settings_factory(drain_timeout=0.5).drain_timeout == 0.5

    def test_empty_optional_url_is_unset(self, settings_factory):
        settings = settings_factory(verifier_url="", public_url="  ")
        assert settings.verifier_url is None
        assert settings.public_url is None

    def test_settings_are_frozen(self, settings):
        with pytest.raises(ValidationError):
            settings.max_body_bytes = 1

    def test_security_headers_follow_toggles(self, settings_factory):
        assert settings_factory().security_headers == {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
        }

        settings = settings_factory(hsts_enabled=True, hsts_max_age=60, frame_options="", content_type_options=False)
        assert settings.security_headers == {"Strict-Transport-Security": "max-age=60; includeSubDomains"}


class TestResolveOrigins:
    def test_required_backends(self, settings):
        origins = resolve_origins(settings)
        assert str(origins.identity) == "http://identity.internal:10002"
        assert str(origins.write) == "http://writer.internal:10004"
        assert str(origins.static) == "http://static.internal:10003"
        assert origins.verifier is None
        assert origins.verifier_host_routing is False

    def test_verifier_host_routing_when_hosts_differ(self, settings_factory):
        origins = resolve_origins(settings_factory(
            verifier_url="http://verifier.internal:10000",
            public_url="https://login.example.org",
            public_verifier_url="https://verifier.example.org",
        ))
        assert origins.verifier_host_routing is True

    def test_no_verifier_host_routing_when_hosts_match(self, settings_factory):
        origins = resolve_origins(settings_factory(
            verifier_url="http://verifier.internal:10000",
            public_url="https://login.example.org",
            public_verifier_url="https://LOGIN.example.org/",
        ))
        assert origins.verifier_host_routing is False

    def test_public_verifier_defaults_to_public_url(self, settings_factory):
        origins = resolve_origins(settings_factory(
            verifier_url="http://verifier.internal:10000",
            public_url="https://login.example.org",
        ))
        assert origins.public_verifier == origins.public
        assert origins.verifier_host_routing is False

    def test_invalid_backend_url_is_fatal(self, settings_factory):
        with pytest.raises(ConfigurationError, match="static_service_url"):
            create_app(settings_factory(static_service_url="static.internal"))
