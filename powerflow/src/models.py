"""
Pydantic models for SolarEdge power-flow snapshots and derived metrics.

PowerFlowSnapshot is the parsed, label-normalized form of one
``currentPowerFlow`` response. EnergyMetrics is the signed decomposition the
interpreter derives from it, always expressed in watts. Both are frozen.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class PowerUnit(StrEnum):
    """Power unit declared by the monitoring API for all node magnitudes."""

    WATT = "W"
    KILOWATT = "kW"

    @property
    def watts_factor(self) -> float:
        """Multiplier converting a value in this unit to watts."""
        return 1000.0 if self is PowerUnit.KILOWATT else 1.0


class NodeKind(StrEnum):
    """Node categories in the site's electrical topology."""

    PV = "PV"
    STORAGE = "STORAGE"
    GRID = "GRID"
    LOAD = "LOAD"


class ChargeEdge(StrEnum):
    """Which edge orientation into storage signals battery charging.

    The monitoring API does not document its edge semantics; sites have been
    observed reporting charging as ``LOAD -> STORAGE`` and as
    ``PV -> STORAGE``.
    """

    ANY = "any"
    LOAD = "load"
    PV = "pv"


class LoadMode(StrEnum):
    """How the ``load`` metric is derived.

    ``incoming_edges`` sums the power of every node feeding the load;
    ``node`` uses the load node's self-reported power.
    """

    INCOMING_EDGES = "incoming_edges"
    NODE = "node"


class NodePower(BaseModel):
    """Instantaneous power of one node, in the snapshot's declared unit.

    Attributes:
        current_power: Non-negative power magnitude.
        charge_level: Battery state of charge in percent. Storage only.
    """

    model_config = ConfigDict(frozen=True)

    current_power: float = Field(ge=0)
    charge_level: float | None = Field(default=None, ge=0, le=100)


class Edge(BaseModel):
    """A directed power-flow connection between two node kinds."""

    model_config = ConfigDict(frozen=True)

    from_node: NodeKind
    to_node: NodeKind


class PowerFlowSnapshot(BaseModel):
    """One parsed ``siteCurrentPowerFlow`` document.

    Attributes:
        unit: Unit shared by every node's ``current_power``.
        nodes: Node power keyed by kind.
        connections: Edges in upstream order.
    """

    model_config = ConfigDict(frozen=True)

    unit: PowerUnit
    nodes: dict[NodeKind, NodePower]
    connections: tuple[Edge, ...] = ()


class EnergyMetrics(BaseModel):
    """Directional energy metrics for one cycle, in watts.

    Attributes:
        pv_production: Power produced by the PV array.
        battery_charge: Power flowing into the battery.
        battery_discharge: Power flowing out of the battery.
        imported_energy: Power drawn from the grid.
        exported_energy: Power fed into the grid.
        load: Power consumed by the site.
        battery_soc: Battery state of charge in percent (not unit-converted).
        last_update_time: Wall-clock time the metrics were computed.
    """

    model_config = ConfigDict(frozen=True)

    pv_production: float = Field(ge=0)
    battery_charge: float = Field(default=0.0, ge=0)
    battery_discharge: float = Field(default=0.0, ge=0)
    imported_energy: float = Field(default=0.0, ge=0)
    exported_energy: float = Field(default=0.0, ge=0)
    load: float = Field(default=0.0, ge=0)
    battery_soc: float | None = Field(default=None, ge=0, le=100)
    last_update_time: datetime
