"""
Poller configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded site ids, credentials, or store locations.

The site id and API key default to empty strings rather than being required
fields: their absence is reported as a ConfigError by the cycle itself so it
surfaces through the same logging path as every other cycle outcome.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from powerflow.src.models import ChargeEdge, LoadMode

DEFAULT_BASE_URL = "https://monitoringapi.solaredge.com"


class PollerSettings(BaseSettings):
    """SolarEdge power-flow poller configuration.

    Attributes:
        solaredge_site_id: Monitoring site identifier.
        solaredge_api_key: Monitoring API key (never logged in full).
        solaredge_base_url: Monitoring API base URL (must be HTTPS).
        instance_id: Instance number used to namespace stored states.
        cycle_timeout_s: Deadline for one complete cycle.
        http_timeout_s: Timeout for the monitoring API request.
        charge_edge: Edge orientation that signals battery charging.
        load_mode: Derivation of the ``load`` metric.
        publish_battery_soc: Track and publish ``batterySoC``.
        publish_last_update_time: Track and publish ``lastUpdateTime``.
        store_backend: ``sqlite`` or ``redis``.
        store_path: SQLite state store file path.
        redis_url: Redis URL, required for the redis backend.
        health_path: JSON status file path; empty disables it.
        log_level: Root logger level.
    """

    solaredge_site_id: str = ""
    solaredge_api_key: str = ""
    solaredge_base_url: str = DEFAULT_BASE_URL
    instance_id: int = 0
    cycle_timeout_s: float = 15.0
    http_timeout_s: float = 10.0
    charge_edge: ChargeEdge = ChargeEdge.ANY
    load_mode: LoadMode = LoadMode.INCOMING_EDGES
    publish_battery_soc: bool = True
    publish_last_update_time: bool = True
    store_backend: Literal["sqlite", "redis"] = "sqlite"
    store_path: str = "/data/states.db"
    redis_url: str = ""
    health_path: str = ""
    log_level: str = "INFO"

    @field_validator("solaredge_site_id", "solaredge_api_key")
    @classmethod
    def strip_credentials(cls, v: str) -> str:
        """Treat whitespace-only values as unset."""
        return v.strip()

    @field_validator("solaredge_base_url")
    @classmethod
    def base_url_must_be_https(cls, v: str) -> str:
        """Validate that the monitoring API base URL uses HTTPS.

        The API key travels as a query parameter, so plain HTTP would
        expose it on the wire.
        """
        if not v.lower().startswith("https://"):
            raise ValueError(
                f"SOLAREDGE_BASE_URL must use HTTPS (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("instance_id")
    @classmethod
    def instance_id_must_be_non_negative(cls, v: int) -> int:
        """Validate instance id is non-negative."""
        if v < 0:
            raise ValueError("INSTANCE_ID must be >= 0")
        return v

    @field_validator("cycle_timeout_s", "http_timeout_s")
    @classmethod
    def timeouts_must_be_positive(cls, v: float) -> float:
        """Validate timeouts are strictly positive."""
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate and upper-case the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a standard level name (got: '{v}')")
        return level

    @model_validator(mode="after")
    def _redis_backend_needs_url(self) -> "PollerSettings":
        """Require REDIS_URL when the redis backend is selected."""
        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("REDIS_URL is required when STORE_BACKEND=redis")
        return self

    @property
    def state_namespace(self) -> str:
        """Prefix of every state id written by this instance."""
        return f"solaredge.{self.instance_id}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
