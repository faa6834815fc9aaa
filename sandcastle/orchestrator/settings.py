"""Service configuration loaded from SANDCASTLE_* environment variables."""

from __future__ import annotations

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SandcastleSettings(BaseSettings):
    """Sandcastle orchestrator settings.

    All fields are read from environment variables with the ``SANDCASTLE_``
    prefix.  For example, ``SANDCASTLE_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SANDCASTLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Infrastructure --------------------------------------------------------
    database_url: str | None = None
    """PostgreSQL connection string (psycopg).  Required for full operation."""

    # -- Sandbox provider ------------------------------------------------------
    daytona_api_key: SecretStr | None = None
    """Provider credential.  Without it every provisioning call fails fast."""

    daytona_api_url: str | None = None
    daytona_target: str | None = None

    provider_create_timeout: float = 120.0
    provider_call_timeout: float = 60.0
    provider_retry_attempts: int = 3
    provider_retry_delay: float = 2.0
    """Base delay in seconds; attempt *n* waits ``n * provider_retry_delay``."""

    pty_connect_timeout: float = 10.0
    pty_input_timeout: float = 5.0

    # -- Builds ----------------------------------------------------------------
    build_poll_interval: float = 2.0
    build_monitor_grace_period: float = 30.0
    """Seconds a finished build's final event stays available to late subscribers."""

    # -- Collaborators ---------------------------------------------------------
    context_service_url: str | None = None
    """Base URL of the error/context store.  Forwarding is disabled when unset."""

    project_service_url: str | None = None
    """Base URL of the project directory used by ``get_or_create_workspace``."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    graceful_shutdown_timeout: int = 60
    """Seconds to wait for running builds to finish during shutdown."""

    # -- Helpers ---------------------------------------------------------------

    def resolve_api_key(self) -> str | None:
        """Return the provider credential as plain text, or ``None`` if unset."""
        if self.daytona_api_key is None:
            return None
        return self.daytona_api_key.get_secret_value() or None


def get_settings() -> SandcastleSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> SandcastleSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return SandcastleSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
