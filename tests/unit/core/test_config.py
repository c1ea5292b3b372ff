"""Tests for Settings.

Verifies that Settings:
- Loads typed defaults for service identity and breaker configuration
- Reads overrides from SEQ_ prefixed env vars, including JSON fields
- Ignores unprefixed env vars
- Validates TLS configuration for uvicorn
"""

import pytest


class TestSettingsDefaults:
    def test_service_identity_defaults(self):
        from src.core.config import Settings

        settings = Settings()
        assert settings.SERVICE_NAME == "seq-backend"
        assert settings.SERVICE_VERSION == "1.0.0"
        assert settings.PORT == 8000

    def test_database_url_default_empty(self):
        from src.core.config import Settings

        assert Settings().DATABASE_URL == ""

    def test_health_defaults(self):
        from src.core.config import Settings

        settings = Settings()
        assert settings.HEALTH_MONITORED_SERVICES == ["anthropic", "twilio"]
        assert settings.HEALTH_PROBE_TIMEOUT_SECONDS == 5.0

    def test_provider_credentials_default_empty(self):
        from src.core.config import Settings

        settings = Settings()
        assert settings.ANTHROPIC_API_KEY == ""
        assert settings.TWILIO_ACCOUNT_SID == ""
        assert settings.TWILIO_BASE_URL == "https://api.twilio.com"


class TestResilienceSettings:
    """Breaker defaults match the documented configuration."""

    def test_default_timeout(self):
        from src.core.config import Settings

        assert Settings().CIRCUIT_BREAKER_TIMEOUT_MS == 10000

    def test_default_threshold(self):
        from src.core.config import Settings

        assert Settings().CIRCUIT_BREAKER_THRESHOLD == 5

    def test_default_reset_timeout(self):
        from src.core.config import Settings

        assert Settings().CIRCUIT_BREAKER_RESET_TIMEOUT_MS == 30000

    def test_default_overrides_empty(self):
        from src.core.config import Settings

        assert Settings().CIRCUIT_BREAKER_OVERRIDES == {}


class TestSettingsEnvOverrides:
    def test_default_timeout_override_from_env(self, monkeypatch):
        monkeypatch.setenv("SEQ_CIRCUIT_BREAKER_TIMEOUT_MS", "2500")
        from src.core.config import Settings

        assert Settings().CIRCUIT_BREAKER_TIMEOUT_MS == 2500

    def test_per_breaker_overrides_from_json(self, monkeypatch):
        monkeypatch.setenv(
            "SEQ_CIRCUIT_BREAKER_OVERRIDES",
            '{"anthropic": {"timeout_ms": 45000, "error_threshold": 2}}',
        )
        from src.core.config import Settings

        settings = Settings()
        assert settings.CIRCUIT_BREAKER_OVERRIDES == {"anthropic": {"timeout_ms": 45000, "error_threshold": 2}}

    def test_monitored_services_from_json(self, monkeypatch):
        monkeypatch.setenv("SEQ_HEALTH_MONITORED_SERVICES", '["anthropic"]')
        from src.core.config import Settings

        assert Settings().HEALTH_MONITORED_SERVICES == ["anthropic"]

    def test_database_url_from_env(self, monkeypatch):
        monkeypatch.setenv("SEQ_DATABASE_URL", "postgresql+asyncpg://u:p@db/seq")
        from src.core.config import Settings

        assert Settings().DATABASE_URL == "postgresql+asyncpg://u:p@db/seq"

    def test_unprefixed_env_var_ignored(self, monkeypatch):
        """Settings should NOT load from unprefixed env vars."""
        monkeypatch.setenv("PORT", "1111")
        from src.core.config import Settings

        assert Settings().PORT == 8000


class TestServerOptions:
    def test_plain_http_uses_host_port_and_log_level(self, monkeypatch):
        monkeypatch.setenv("SEQ_PORT", "9100")
        monkeypatch.setenv("SEQ_LOG_LEVEL", "DEBUG")
        from src.core.config import Settings, server_options

        assert server_options(Settings()) == {"host": "0.0.0.0", "port": 9100, "log_level": "debug"}

    def test_tls_requires_both_paths(self, monkeypatch):
        monkeypatch.setenv("SEQ_TLS_ENABLED", "true")
        monkeypatch.setenv("SEQ_TLS_CERT_PATH", "/etc/seq/cert.pem")
        from src.core.config import Settings, server_options

        with pytest.raises(ValueError, match="TLS_KEY_PATH required"):
            server_options(Settings())

    def test_tls_raises_when_cert_missing(self, monkeypatch, tmp_path):
        key_file = tmp_path / "key.pem"
        key_file.write_text("KEY")
        monkeypatch.setenv("SEQ_TLS_ENABLED", "true")
        monkeypatch.setenv("SEQ_TLS_CERT_PATH", str(tmp_path / "nonexistent.pem"))
        monkeypatch.setenv("SEQ_TLS_KEY_PATH", str(key_file))
        from src.core.config import Settings, server_options

        with pytest.raises(FileNotFoundError, match="TLS certificate"):
            server_options(Settings())

    def test_tls_adds_cert_and_key(self, monkeypatch, tmp_path):
        cert_file = tmp_path / "cert.pem"
        key_file = tmp_path / "key.pem"
        cert_file.write_text("CERT")
        key_file.write_text("KEY")
        monkeypatch.setenv("SEQ_TLS_ENABLED", "true")
        monkeypatch.setenv("SEQ_TLS_CERT_PATH", str(cert_file))
        monkeypatch.setenv("SEQ_TLS_KEY_PATH", str(key_file))
        from src.core.config import Settings, server_options

        options = server_options(Settings())
        assert options["ssl_certfile"] == str(cert_file)
        assert options["ssl_keyfile"] == str(key_file)
        assert options["port"] == 8000
