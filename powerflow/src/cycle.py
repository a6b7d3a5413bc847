"""
One polling cycle: config check -> probe -> fetch -> interpret -> publish.

Everything a cycle touches is carried by an explicit CycleContext built by
the caller, so there is no module-level state and each cycle can be driven
in isolation by tests.

The cycle body runs under ``asyncio.wait_for`` with the configured deadline
(15 s by default). When the context owns its store, opening and closing the
store happen inside that deadline too. ``wait_for`` owns the deadline: it cancels the body when
it expires and leaves nothing behind on any exit path. Every outcome is
logged once, at the level matching its severity, and no exception escapes
:func:`run_cycle`.

CHANGELOG:
- 2026-10-16: Open and close an owned store under the cycle deadline
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from powerflow.src.errors import (
    ConfigError,
    CycleTimeoutError,
    FetchError,
    ParseError,
)
from powerflow.src.fetcher import SolarEdgeClient, mask_api_key
from powerflow.src.interpreter import interpret, parse_power_flow
from powerflow.src.publisher import (
    apply_state_creation,
    plan_state_creation,
    publish_metrics,
    tracked_metrics,
)

if TYPE_CHECKING:
    from powerflow.src.config import PollerSettings
    from powerflow.src.health import HealthWriter
    from powerflow.src.models import EnergyMetrics
    from powerflow.src.store import StateStore

logger = logging.getLogger(__name__)

_BODY_EXCERPT_CHARS = 500


class CycleOutcome(StrEnum):
    """How a cycle ended."""

    DONE = "done"
    TIMEOUT = "timeout"
    CONFIG_ERROR = "config_error"
    FETCH_ERROR = "fetch_error"
    PARSE_ERROR = "parse_error"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CycleContext:
    """Collaborators and results of a single cycle.

    Attributes:
        settings: Loaded poller settings.
        store: State store. Already open unless owns_store is set.
        client: Monitoring API client; built from settings when None.
        clock: Source of the ``lastUpdateTime`` timestamp.
        health: HealthWriter instance, or None to skip health writes.
        owns_store: Open the store on cycle entry and close it on exit.
        metrics: Metrics computed by the cycle, set on success.
    """

    settings: PollerSettings
    store: StateStore
    client: SolarEdgeClient | None = None
    clock: Callable[[], datetime] = _utcnow
    health: HealthWriter | None = None
    owns_store: bool = False
    metrics: EnergyMetrics | None = field(default=None, init=False)


async def _cycle_body(ctx: CycleContext) -> EnergyMetrics:
    settings = ctx.settings
    site_id = settings.solaredge_site_id
    api_key = settings.solaredge_api_key

    logger.info("site id: %s", site_id or "not set")
    logger.info("api key: %s", mask_api_key(api_key))
    if not site_id or not api_key:
        raise ConfigError("site id or api key not set")

    tracked = tracked_metrics(
        battery_soc=settings.publish_battery_soc,
        last_update_time=settings.publish_last_update_time,
    )
    plan = await plan_state_creation(ctx.store, site_id, tracked)

    client = ctx.client or SolarEdgeClient(
        site_id=site_id,
        api_key=api_key,
        base_url=settings.solaredge_base_url,
        timeout_s=settings.http_timeout_s,
    )
    raw = await client.fetch_power_flow()

    snapshot = parse_power_flow(raw)
    metrics = interpret(
        snapshot,
        now=ctx.clock(),
        charge_edge=settings.charge_edge,
        load_mode=settings.load_mode,
    )

    await apply_state_creation(ctx.store, plan)
    await publish_metrics(ctx.store, site_id, tracked, metrics)
    return metrics


async def _cycle_with_store(ctx: CycleContext) -> EnergyMetrics:
    if not ctx.owns_store:
        return await _cycle_body(ctx)
    async with ctx.store:
        return await _cycle_body(ctx)


async def _run_with_deadline(ctx: CycleContext) -> EnergyMetrics:
    timeout_s = ctx.settings.cycle_timeout_s
    try:
        return await asyncio.wait_for(_cycle_with_store(ctx), timeout=timeout_s)
    except TimeoutError:
        raise CycleTimeoutError(timeout_s) from None


async def run_cycle(ctx: CycleContext) -> CycleOutcome:
    """Run one cycle and report how it ended.

    Never raises: configuration, fetch, parse, timeout and unexpected errors
    are all logged and mapped onto a CycleOutcome. Nothing is written to the
    store unless the fetch and interpretation both succeeded.

    Args:
        ctx: The cycle's collaborators.

    Returns:
        The cycle outcome.
    """
    try:
        ctx.metrics = await _run_with_deadline(ctx)
    except CycleTimeoutError as exc:
        logger.warning("Timeout, stopping... (%s)", exc)
        outcome = CycleOutcome.TIMEOUT
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        outcome = CycleOutcome.CONFIG_ERROR
    except FetchError as exc:
        logger.warning("Power flow request failed: %s", exc)
        if exc.raw_body:
            logger.warning("Content: %s", exc.raw_body[:_BODY_EXCERPT_CHARS])
        outcome = CycleOutcome.FETCH_ERROR
    except ParseError as exc:
        logger.warning("Power flow response rejected: %s", exc)
        outcome = CycleOutcome.PARSE_ERROR
    except Exception:
        logger.error("Cycle error", exc_info=True)
        outcome = CycleOutcome.ERROR
    else:
        logger.info("Done, stopping...")
        outcome = CycleOutcome.DONE

    if ctx.health is not None:
        try:
            ctx.health.record_cycle(outcome)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    return outcome
