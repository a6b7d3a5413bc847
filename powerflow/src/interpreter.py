"""
Power-flow interpreter: SolarEdge ``currentPowerFlow`` JSON -> EnergyMetrics.

Two stages:

1. :func:`parse_power_flow` validates the raw document and builds a
   PowerFlowSnapshot. Node keys and edge labels are normalized once, here,
   through an alias table because the API is not consistent about casing
   (``"STORAGE"`` in node keys, ``"Storage"`` or ``"STORAGE"`` in edges).
2. :func:`interpret` converts node power to watts and classifies the edges
   into directional metrics. It is a pure function: the computation
   timestamp is injected by the caller.

Edge classification is a presence test over the edge sequence, not an
aggregation. For each pair the first orientation listed below wins; when
neither orientation is present both metrics are zero:

    STORAGE -> LOAD                  battery_discharge = storage power
    LOAD/PV -> STORAGE               battery_charge    = storage power
    GRID    -> LOAD                  imported_energy   = grid power
    LOAD    -> GRID                  exported_energy   = grid power

CHANGELOG:
- 2026-10-16: Reject non-finite magnitudes; ignore LOAD self-edges in the load sum
- 2026-10-16: Make charging orientation and load derivation configurable
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from powerflow.src.errors import InvalidValueError, MissingFieldError
from powerflow.src.models import (
    ChargeEdge,
    Edge,
    EnergyMetrics,
    LoadMode,
    NodeKind,
    NodePower,
    PowerFlowSnapshot,
    PowerUnit,
)

logger = logging.getLogger(__name__)

ROOT_KEY = "siteCurrentPowerFlow"

# ---------------------------------------------------------------------------
# Label normalization
# ---------------------------------------------------------------------------

NODE_ALIASES: dict[str, NodeKind] = {
    "pv": NodeKind.PV,
    "solar": NodeKind.PV,
    "storage": NodeKind.STORAGE,
    "battery": NodeKind.STORAGE,
    "grid": NodeKind.GRID,
    "load": NodeKind.LOAD,
    "consumption": NodeKind.LOAD,
}
"""Lower-cased upstream label -> node kind."""

_UNIT_ALIASES: dict[str, PowerUnit] = {
    "w": PowerUnit.WATT,
    "kw": PowerUnit.KILOWATT,
}

_CHARGE_SOURCES: dict[ChargeEdge, tuple[NodeKind, ...]] = {
    ChargeEdge.ANY: (NodeKind.LOAD, NodeKind.PV),
    ChargeEdge.LOAD: (NodeKind.LOAD,),
    ChargeEdge.PV: (NodeKind.PV,),
}


def normalize_label(label: str) -> NodeKind | None:
    """Map an upstream node label onto a NodeKind, ignoring case.

    Returns ``None`` for labels outside the alias table.
    """
    return NODE_ALIASES.get(label.strip().lower())


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _is_number(value: object) -> bool:
    # bool is an int subclass but never a valid magnitude
    return isinstance(value, int | float) and not isinstance(value, bool)


def _finite_number(field: str, value: object) -> float:
    if not _is_number(value):
        raise InvalidValueError(field, f"not numeric: {value!r}")
    try:
        number = float(value)  # type: ignore[arg-type]
    except OverflowError:
        raise InvalidValueError(field, "too large") from None
    if not math.isfinite(number):
        raise InvalidValueError(field, f"not finite: {number!r}")
    return number


def _parse_unit(flow: Mapping[str, Any]) -> PowerUnit:
    if "unit" not in flow or flow["unit"] is None:
        raise MissingFieldError("unit")
    raw_unit = flow["unit"]
    unit = _UNIT_ALIASES.get(raw_unit.strip().lower()) if isinstance(raw_unit, str) else None
    if unit is None:
        raise InvalidValueError("unit", f"unsupported unit {raw_unit!r}")
    return unit


def _parse_node(kind: NodeKind, entry: object) -> NodePower:
    name = kind.value
    if not isinstance(entry, Mapping):
        raise InvalidValueError(name, "expected an object")

    if "currentPower" not in entry or entry["currentPower"] is None:
        raise MissingFieldError(f"{name}.currentPower")
    power = _finite_number(f"{name}.currentPower", entry["currentPower"])
    if power < 0:
        raise InvalidValueError(f"{name}.currentPower", f"negative: {power!r}")

    charge_level = None
    if kind is NodeKind.STORAGE:
        if "chargeLevel" not in entry or entry["chargeLevel"] is None:
            raise MissingFieldError(f"{name}.chargeLevel")
        charge_level = _finite_number(f"{name}.chargeLevel", entry["chargeLevel"])
        if not 0 <= charge_level <= 100:
            raise InvalidValueError(f"{name}.chargeLevel", f"out of range: {charge_level!r}")

    return NodePower(current_power=power, charge_level=charge_level)


def _parse_nodes(flow: Mapping[str, Any]) -> dict[NodeKind, NodePower]:
    entries: dict[NodeKind, object] = {}
    for key, entry in flow.items():
        kind = normalize_label(key) if isinstance(key, str) else None
        if kind is not None:
            entries[kind] = entry

    nodes: dict[NodeKind, NodePower] = {}
    for kind in NodeKind:
        if kind not in entries or entries[kind] is None:
            raise MissingFieldError(kind.value)
        nodes[kind] = _parse_node(kind, entries[kind])
    return nodes


def _parse_endpoint(connection: Mapping[str, Any], index: int, side: str) -> NodeKind:
    field = f"connections[{index}].{side}"
    if side not in connection or connection[side] is None:
        raise MissingFieldError(field)
    label = connection[side]
    if not isinstance(label, str):
        raise InvalidValueError(field, f"not a string: {label!r}")
    kind = normalize_label(label)
    if kind is None:
        raise InvalidValueError(field, f"unknown node label {label!r}")
    return kind


def _parse_connections(flow: Mapping[str, Any]) -> tuple[Edge, ...]:
    if "connections" not in flow or flow["connections"] is None:
        raise MissingFieldError("connections")
    raw_connections = flow["connections"]
    if not isinstance(raw_connections, Sequence) or isinstance(raw_connections, str):
        raise InvalidValueError("connections", "expected a list")

    edges: list[Edge] = []
    for index, connection in enumerate(raw_connections):
        if not isinstance(connection, Mapping):
            raise InvalidValueError(f"connections[{index}]", "expected an object")
        edges.append(
            Edge(
                from_node=_parse_endpoint(connection, index, "from"),
                to_node=_parse_endpoint(connection, index, "to"),
            )
        )
    return tuple(edges)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_power_flow(raw: Mapping[str, Any]) -> PowerFlowSnapshot:
    """Validate a ``currentPowerFlow`` response and build a snapshot.

    Args:
        raw: The decoded JSON document returned by the monitoring API.

    Returns:
        A PowerFlowSnapshot with normalized node kinds.

    Raises:
        MissingFieldError: If ``siteCurrentPowerFlow``, ``unit``, any of the
            four nodes, a node's ``currentPower``, the storage
            ``chargeLevel``, ``connections`` or an edge endpoint is absent.
        InvalidValueError: If a value has the wrong type or range, or an edge
            names an unknown node.
    """
    flow = raw.get(ROOT_KEY) if isinstance(raw, Mapping) else None
    if flow is None:
        raise MissingFieldError(ROOT_KEY)
    if not isinstance(flow, Mapping):
        raise InvalidValueError(ROOT_KEY, "expected an object")

    return PowerFlowSnapshot(
        unit=_parse_unit(flow),
        nodes=_parse_nodes(flow),
        connections=_parse_connections(flow),
    )


def has_edge(
    connections: Sequence[Edge],
    from_nodes: NodeKind | tuple[NodeKind, ...],
    to_node: NodeKind,
) -> bool:
    """Return True if any edge runs from one of *from_nodes* to *to_node*.

    Scans the edge sequence itself so duplicate, structurally equal edges
    are all considered.
    """
    if isinstance(from_nodes, NodeKind):
        from_nodes = (from_nodes,)
    return any(
        edge.from_node in from_nodes and edge.to_node is to_node for edge in connections
    )


def _node_watts(snapshot: PowerFlowSnapshot, kind: NodeKind) -> float:
    node = snapshot.nodes.get(kind)
    if node is None:
        raise MissingFieldError(kind.value)
    watts = node.current_power * snapshot.unit.watts_factor
    if not math.isfinite(watts):
        raise InvalidValueError(f"{kind.value}.currentPower", "too large")
    return watts


def interpret(
    snapshot: PowerFlowSnapshot,
    *,
    now: datetime,
    charge_edge: ChargeEdge = ChargeEdge.ANY,
    load_mode: LoadMode = LoadMode.INCOMING_EDGES,
) -> EnergyMetrics:
    """Derive directional energy metrics from a power-flow snapshot.

    This is a **pure function**: no I/O and no clock access.

    Args:
        snapshot: Parsed power-flow snapshot.
        now: Timestamp recorded as ``last_update_time``.
        charge_edge: Which orientation into storage signals charging.
        load_mode: Whether ``load`` is the sum over nodes feeding the load
            or the load node's own reported power.

    Returns:
        EnergyMetrics in watts.

    Raises:
        MissingFieldError: If a node the computation needs is absent.
    """
    edges = snapshot.connections

    for edge in edges:
        for kind in (edge.from_node, edge.to_node):
            if kind not in snapshot.nodes:
                raise MissingFieldError(kind.value, "referenced by an edge")

    pv_power = _node_watts(snapshot, NodeKind.PV)
    storage_power = _node_watts(snapshot, NodeKind.STORAGE)
    grid_power = _node_watts(snapshot, NodeKind.GRID)

    battery_charge = 0.0
    battery_discharge = 0.0
    if has_edge(edges, NodeKind.STORAGE, NodeKind.LOAD):
        battery_discharge = storage_power
    elif has_edge(edges, _CHARGE_SOURCES[charge_edge], NodeKind.STORAGE):
        battery_charge = storage_power

    imported_energy = 0.0
    exported_energy = 0.0
    if has_edge(edges, NodeKind.GRID, NodeKind.LOAD):
        imported_energy = grid_power
    elif has_edge(edges, NodeKind.LOAD, NodeKind.GRID):
        exported_energy = grid_power

    if load_mode is LoadMode.NODE:
        load = _node_watts(snapshot, NodeKind.LOAD)
    else:
        # Each feeding node counts once, however many edges it has.
        feeders = list(
            dict.fromkeys(
                e.from_node
                for e in edges
                if e.to_node is NodeKind.LOAD and e.from_node is not NodeKind.LOAD
            )
        )
        load = sum(_node_watts(snapshot, kind) for kind in feeders)

    storage = snapshot.nodes[NodeKind.STORAGE]

    metrics = EnergyMetrics(
        pv_production=pv_power,
        battery_charge=battery_charge,
        battery_discharge=battery_discharge,
        imported_energy=imported_energy,
        exported_energy=exported_energy,
        load=load,
        battery_soc=storage.charge_level,
        last_update_time=now,
    )
    logger.debug("Interpreted power flow: %s", metrics.model_dump(mode="json"))
    return metrics
