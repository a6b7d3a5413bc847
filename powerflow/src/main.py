"""
Entrypoint for the SolarEdge power-flow poller.

Runs exactly one cycle per invocation and exits; scheduling (cron, systemd
timer, container restart policy) is the host's job:

1. Configure structured JSON logging.
2. Load PollerSettings from the environment and log a summary without
   secrets.
3. Build the configured state store.
4. Run one cycle (see :mod:`powerflow.src.cycle`). The cycle opens and
   closes the store inside its deadline.
5. Return the cycle outcome.

Configuration problems are logged at error level, fetch/parse failures and
timeouts at warning level; none of them crash the process.

CHANGELOG:
- 2026-10-16: Let the cycle own store open/close so the deadline covers them
- 2026-10-16: Single-cycle entrypoint replacing the poll/upload loops

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

from pydantic import ValidationError

from powerflow.src.cycle import CycleContext, CycleOutcome, run_cycle
from powerflow.src.fetcher import mask_api_key
from powerflow.src.health import HealthWriter
from powerflow.src.store import create_store

logger = logging.getLogger(__name__)

# Loggers that would print the request URL, and with it the API key.
_QUIET_LOGGERS = ("httpx", "httpcore")


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the poller.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    The API key is reduced to its first four characters.

    Args:
        settings: A PollerSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Poller starting with config: "
        "site_id=%s, api_key=%s, base_url=%s, instance_id=%s, "
        "cycle_timeout_s=%s, http_timeout_s=%s, charge_edge=%s, load_mode=%s, "
        "publish_battery_soc=%s, publish_last_update_time=%s, "
        "store_backend=%s, store_path=%s, health_path=%s",
        settings.solaredge_site_id or "not set",  # type: ignore[union-attr]
        mask_api_key(settings.solaredge_api_key),  # type: ignore[union-attr]
        settings.solaredge_base_url,  # type: ignore[union-attr]
        settings.instance_id,  # type: ignore[union-attr]
        settings.cycle_timeout_s,  # type: ignore[union-attr]
        settings.http_timeout_s,  # type: ignore[union-attr]
        settings.charge_edge,  # type: ignore[union-attr]
        settings.load_mode,  # type: ignore[union-attr]
        settings.publish_battery_soc,  # type: ignore[union-attr]
        settings.publish_last_update_time,  # type: ignore[union-attr]
        settings.store_backend,  # type: ignore[union-attr]
        settings.store_path,  # type: ignore[union-attr]
        settings.health_path or "disabled",  # type: ignore[union-attr]
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> CycleOutcome:
    """Async entrypoint: load config, open the store, run one cycle.

    Returns:
        The cycle outcome; CONFIG_ERROR if the settings failed validation.
    """
    configure_logging()

    from powerflow.src.config import PollerSettings

    try:
        settings = PollerSettings()
    except ValidationError as exc:
        logger.error("Invalid configuration, stopping: %s", exc)
        return CycleOutcome.CONFIG_ERROR

    logging.getLogger().setLevel(settings.log_level)
    log_config_summary(settings)

    health = HealthWriter(settings.health_path) if settings.health_path else None

    try:
        store = create_store(settings)
    except Exception:
        logger.error("State store error, stopping", exc_info=True)
        return CycleOutcome.ERROR

    ctx = CycleContext(settings=settings, store=store, health=health, owns_store=True)
    return await run_cycle(ctx)


def main() -> None:
    """Synchronous entrypoint for the poller."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
