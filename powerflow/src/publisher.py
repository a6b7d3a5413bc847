"""
Publishing of EnergyMetrics to the state store.

Three steps per cycle:

1. :func:`plan_state_creation` probes the store once per tracked metric and
   records which ones have never been declared.
2. :func:`apply_state_creation` runs once, after a successful fetch and
   interpretation. If *any* metric was missing it declares *every* tracked
   metric; otherwise it declares nothing.
3. :func:`publish_metrics` writes every value in one atomic batch with
   change detection and ``ack=True``.

State paths are ``{site_id}.{metric name}``; the store adds its own
``solaredge.{instance}`` namespace.

CHANGELOG:
- 2026-10-16: Publish all values as one atomic store batch
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from powerflow.src.store import StateDefinition

if TYPE_CHECKING:
    from powerflow.src.models import EnergyMetrics
    from powerflow.src.store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedMetric:
    """One metric published to the store.

    Attributes:
        name: Leaf of the state path, e.g. ``pvProduction``.
        display_name: Human-readable name stored in the declaration.
        value_type: Store value type.
        attribute: EnergyMetrics attribute holding the value.
    """

    name: str
    display_name: str
    value_type: Literal["number", "string"]
    attribute: str

    @property
    def definition(self) -> StateDefinition:
        return StateDefinition(name=self.display_name, value_type=self.value_type)


PV_PRODUCTION = TrackedMetric("pvProduction", "PV production", "number", "pv_production")
BATTERY_CHARGE = TrackedMetric("batteryCharge", "Battery charge", "number", "battery_charge")
BATTERY_DISCHARGE = TrackedMetric(
    "batteryDischarge", "Battery discharge", "number", "battery_discharge"
)
IMPORTED_ENERGY = TrackedMetric("importedEnergy", "Imported energy", "number", "imported_energy")
EXPORTED_ENERGY = TrackedMetric("exportedEnergy", "Exported energy", "number", "exported_energy")
LOAD = TrackedMetric("load", "Load", "number", "load")
BATTERY_SOC = TrackedMetric("batterySoC", "Battery state of charge", "number", "battery_soc")
LAST_UPDATE_TIME = TrackedMetric(
    "lastUpdateTime", "Last update time", "string", "last_update_time"
)

CORE_METRICS: tuple[TrackedMetric, ...] = (
    PV_PRODUCTION,
    BATTERY_CHARGE,
    BATTERY_DISCHARGE,
    IMPORTED_ENERGY,
    EXPORTED_ENERGY,
    LOAD,
)


def tracked_metrics(
    *, battery_soc: bool = True, last_update_time: bool = True
) -> tuple[TrackedMetric, ...]:
    """Return the metrics this poller publishes, in write order."""
    metrics = list(CORE_METRICS)
    if battery_soc:
        metrics.append(BATTERY_SOC)
    if last_update_time:
        metrics.append(LAST_UPDATE_TIME)
    return tuple(metrics)


def state_path(site_id: str, metric: TrackedMetric) -> str:
    return f"{site_id}.{metric.name}"


# ---------------------------------------------------------------------------
# State-creation bootstrap
# ---------------------------------------------------------------------------


@dataclass
class StateCreationPlan:
    """Which tracked metrics were found undeclared at the start of a cycle."""

    site_id: str
    metrics: tuple[TrackedMetric, ...]
    missing: frozenset[str] = frozenset()
    consumed: bool = field(default=False, compare=False)

    @property
    def needs_creation(self) -> bool:
        return bool(self.missing)


async def plan_state_creation(
    store: StateStore,
    site_id: str,
    metrics: tuple[TrackedMetric, ...],
) -> StateCreationPlan:
    """Probe the store once per metric and record the undeclared ones."""
    missing: set[str] = set()
    for metric in metrics:
        if await store.exists(state_path(site_id, metric)):
            logger.debug("State %s exists", metric.name)
        else:
            logger.info("State %s does not exist, will be created", metric.name)
            missing.add(metric.name)
    return StateCreationPlan(site_id=site_id, metrics=metrics, missing=frozenset(missing))


async def apply_state_creation(store: StateStore, plan: StateCreationPlan) -> int:
    """Declare every tracked metric if any was missing.

    A plan is applied at most once; later calls are no-ops.

    Returns:
        Number of declarations issued.
    """
    if plan.consumed:
        return 0
    plan.consumed = True
    if not plan.needs_creation:
        return 0

    logger.info("Creating %d states for site %s", len(plan.metrics), plan.site_id)
    for metric in plan.metrics:
        await store.declare(state_path(plan.site_id, metric), metric.definition)
    return len(plan.metrics)


# ---------------------------------------------------------------------------
# Value writes
# ---------------------------------------------------------------------------


def metric_value(metric: TrackedMetric, metrics: EnergyMetrics) -> Any:
    """Extract the store value for *metric* from computed metrics."""
    value = getattr(metrics, metric.attribute)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def publish_metrics(
    store: StateStore,
    site_id: str,
    tracked: tuple[TrackedMetric, ...],
    metrics: EnergyMetrics,
) -> int:
    """Write every tracked metric with change detection and ``ack=True``.

    The values go to the store as one batch, so a cycle that is cut short
    leaves either all of them or none of them.

    Returns:
        Number of states whose value actually changed.
    """
    values: dict[str, Any] = {}
    for metric in tracked:
        value = metric_value(metric, metrics)
        if value is None:
            logger.warning("No value for %s, skipping write", metric.name)
            continue
        values[state_path(site_id, metric)] = value
    changed = await store.set_changed_many(values, ack=True)
    logger.info("Published %d metrics for site %s (%d changed)", len(tracked), site_id, changed)
    return changed
