"""
Unit tests for the single polling cycle.

Tests verify:
- A successful cycle fetches once, declares (when needed) and publishes.
- Declarations happen before the first value write of the cycle.
- Missing site id / API key -> CONFIG_ERROR with no probe or fetch.
- Fetch and parse failures -> no declarations and no writes.
- A fetch that never returns -> TIMEOUT with no writes.
- Non-finite power values -> PARSE_ERROR.
- An owned store is opened and closed inside the deadline.
- A timeout part-way through publishing leaves the previous values.
- Unexpected errors -> ERROR, never raised.
- Health file records the outcome.
- End-to-end against a real SQLite store.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from powerflow.src.config import PollerSettings
from powerflow.src.cycle import CycleContext, CycleOutcome, run_cycle
from powerflow.src.errors import FetchError, FetchErrorKind
from powerflow.src.health import HealthWriter
from powerflow.src.store import SqliteStateStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NOW = datetime(2026, 10, 16, 12, 0, 0, tzinfo=UTC)

_DOCUMENT: dict[str, Any] = {
    "siteCurrentPowerFlow": {
        "unit": "kW",
        "connections": [
            {"from": "PV", "to": "Load"},
            {"from": "Storage", "to": "Load"},
            {"from": "Grid", "to": "Load"},
        ],
        "GRID": {"status": "Active", "currentPower": 0.5},
        "LOAD": {"status": "Active", "currentPower": 3.5},
        "PV": {"status": "Active", "currentPower": 3},
        "STORAGE": {"status": "Discharging", "currentPower": 1, "chargeLevel": 80},
    }
}


def _make_settings(**overrides: Any) -> PollerSettings:
    values: dict[str, Any] = {
        "solaredge_site_id": "123456",
        "solaredge_api_key": "ABCD1234SECRETKEY",
    }
    values.update(overrides)
    return PollerSettings(**values)


def _make_client(document: Any = None, error: Exception | None = None) -> AsyncMock:
    client = AsyncMock()
    if error is not None:
        client.fetch_power_flow = AsyncMock(side_effect=error)
    else:
        client.fetch_power_flow = AsyncMock(
            return_value=_DOCUMENT if document is None else document
        )
    return client


def _make_store(existing: bool = False, events: list[str] | None = None) -> AsyncMock:
    """Mock store recording declare/write calls into *events* in order."""
    log = events if events is not None else []
    store = AsyncMock()

    async def _declare(path: str, definition: object) -> None:
        log.append(f"declare:{path}")

    async def _set_changed_many(values: dict[str, object], *, ack: bool = True) -> int:
        log.extend(f"write:{path}" for path in values)
        return len(values)

    store.exists = AsyncMock(return_value=existing)
    store.declare = AsyncMock(side_effect=_declare)
    store.set_changed_many = AsyncMock(side_effect=_set_changed_many)
    return store


def _make_context(**kwargs: Any) -> CycleContext:
    kwargs.setdefault("settings", _make_settings())
    kwargs.setdefault("store", _make_store())
    kwargs.setdefault("client", _make_client())
    kwargs.setdefault("clock", lambda: _NOW)
    return CycleContext(**kwargs)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulCycle:
    """Fetch -> interpret -> declare -> publish."""

    @pytest.mark.asyncio
    async def test_outcome_done_and_metrics_set(self) -> None:
        ctx = _make_context()

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.DONE
        assert ctx.metrics is not None
        assert ctx.metrics.pv_production == 3000
        assert ctx.metrics.load == 4500
        assert ctx.metrics.last_update_time == _NOW
        ctx.client.fetch_power_flow.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_declarations_precede_writes(self) -> None:
        events: list[str] = []
        ctx = _make_context(store=_make_store(existing=False, events=events))

        await run_cycle(ctx)

        declares = [e for e in events if e.startswith("declare:")]
        writes = [e for e in events if e.startswith("write:")]
        assert len(declares) == 8
        assert len(writes) == 8
        assert events[:8] == declares

    @pytest.mark.asyncio
    async def test_existing_states_not_redeclared(self) -> None:
        store = _make_store(existing=True)
        ctx = _make_context(store=store)

        await run_cycle(ctx)

        store.declare.assert_not_awaited()
        store.set_changed_many.assert_awaited_once()
        assert len(store.set_changed_many.await_args.args[0]) == 8

    @pytest.mark.asyncio
    async def test_optional_metrics_disabled(self) -> None:
        store = _make_store(existing=False)
        settings = _make_settings(publish_battery_soc=False, publish_last_update_time=False)
        ctx = _make_context(settings=settings, store=store)

        await run_cycle(ctx)

        assert store.exists.await_count == 6
        assert store.declare.await_count == 6
        store.set_changed_many.assert_awaited_once()
        assert len(store.set_changed_many.await_args.args[0]) == 6

    @pytest.mark.asyncio
    async def test_load_mode_from_settings(self) -> None:
        ctx = _make_context(settings=_make_settings(load_mode="node"))

        await run_cycle(ctx)

        assert ctx.metrics is not None
        assert ctx.metrics.load == 3500

    @pytest.mark.asyncio
    async def test_done_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="powerflow.src.cycle"):
            await run_cycle(_make_context())

        assert "Done, stopping..." in caplog.text
        assert "ABCD1234SECRETKEY" not in caplog.text


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class TestConfigError:
    """Missing credentials stop the cycle before any I/O."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"solaredge_site_id": ""}, {"solaredge_api_key": ""}],
    )
    async def test_missing_credential(
        self, overrides: dict[str, str], caplog: pytest.LogCaptureFixture
    ) -> None:
        store = _make_store()
        client = _make_client()
        ctx = _make_context(settings=_make_settings(**overrides), store=store, client=client)

        with caplog.at_level(logging.ERROR, logger="powerflow.src.cycle"):
            outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.CONFIG_ERROR
        assert "site id or api key not set" in caplog.text
        store.exists.assert_not_awaited()
        client.fetch_power_flow.assert_not_awaited()


# ---------------------------------------------------------------------------
# Fetch / parse errors
# ---------------------------------------------------------------------------


class TestFailuresPublishNothing:
    """Fetch and parse failures leave the store untouched."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            FetchError(FetchErrorKind.TRANSPORT),
            FetchError(FetchErrorKind.HTTP_STATUS, status_code=403, raw_body="Invalid token"),
            FetchError(FetchErrorKind.EMPTY_BODY, status_code=200, raw_body=""),
        ],
    )
    async def test_fetch_error(self, error: FetchError, caplog: pytest.LogCaptureFixture) -> None:
        store = _make_store(existing=False)
        ctx = _make_context(store=store, client=_make_client(error=error))

        with caplog.at_level(logging.WARNING, logger="powerflow.src.cycle"):
            outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.FETCH_ERROR
        assert ctx.metrics is None
        store.declare.assert_not_awaited()
        store.set_changed_many.assert_not_awaited()
        assert "Power flow request failed" in caplog.text

    @pytest.mark.asyncio
    async def test_http_status_body_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        error = FetchError(FetchErrorKind.HTTP_STATUS, status_code=403, raw_body="Invalid token")
        ctx = _make_context(client=_make_client(error=error))

        with caplog.at_level(logging.WARNING, logger="powerflow.src.cycle"):
            await run_cycle(ctx)

        assert "Content: Invalid token" in caplog.text

    @pytest.mark.asyncio
    async def test_parse_error(self) -> None:
        document = json.loads(json.dumps(_DOCUMENT))
        del document["siteCurrentPowerFlow"]["GRID"]
        store = _make_store(existing=False)
        ctx = _make_context(store=store, client=_make_client(document))

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.PARSE_ERROR
        store.declare.assert_not_awaited()
        store.set_changed_many.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("power", [float("nan"), float("inf"), 10**400])
    async def test_non_finite_power_is_parse_error(self, power: Any) -> None:
        document = json.loads(json.dumps(_DOCUMENT))
        document["siteCurrentPowerFlow"]["PV"]["currentPower"] = power
        store = _make_store(existing=False)
        ctx = _make_context(store=store, client=_make_client(document))

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.PARSE_ERROR
        store.declare.assert_not_awaited()
        store.set_changed_many.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_contained(self) -> None:
        store = _make_store()
        store.exists = AsyncMock(side_effect=RuntimeError("database is locked"))
        ctx = _make_context(store=store)

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.ERROR
        store.set_changed_many.assert_not_awaited()


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------


class TestTimeout:
    """A hung fetch is cut off at the cycle deadline."""

    @pytest.mark.asyncio
    async def test_hung_fetch_times_out(self, caplog: pytest.LogCaptureFixture) -> None:
        never = asyncio.Event()

        async def hang() -> dict[str, Any]:
            await never.wait()
            return _DOCUMENT

        client = AsyncMock()
        client.fetch_power_flow = AsyncMock(side_effect=hang)
        store = _make_store(existing=False)
        ctx = _make_context(
            settings=_make_settings(cycle_timeout_s=0.05), store=store, client=client
        )

        with caplog.at_level(logging.WARNING, logger="powerflow.src.cycle"):
            outcome = await asyncio.wait_for(run_cycle(ctx), timeout=5.0)

        assert outcome is CycleOutcome.TIMEOUT
        assert "Timeout, stopping..." in caplog.text
        store.declare.assert_not_awaited()
        store.set_changed_many.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fast_cycle_leaves_no_pending_tasks(self) -> None:
        ctx = _make_context(settings=_make_settings(cycle_timeout_s=0.05))

        outcome = await run_cycle(ctx)
        await asyncio.sleep(0.1)

        assert outcome is CycleOutcome.DONE
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        assert pending == []


# ---------------------------------------------------------------------------
# Store lifecycle under the deadline
# ---------------------------------------------------------------------------


class TestOwnedStore:
    """A store owned by the cycle is opened and closed inside the deadline."""

    @pytest.mark.asyncio
    async def test_store_opened_and_closed(self) -> None:
        store = _make_store()
        store.__aenter__ = AsyncMock(return_value=store)
        store.__aexit__ = AsyncMock(return_value=False)
        ctx = _make_context(store=store, owns_store=True)

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.DONE
        store.__aenter__.assert_awaited_once()
        store.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hung_store_open_times_out(self) -> None:
        never = asyncio.Event()

        async def hang() -> None:
            await never.wait()

        store = _make_store()
        store.__aenter__ = AsyncMock(side_effect=hang)
        store.__aexit__ = AsyncMock(return_value=False)
        client = _make_client()
        ctx = _make_context(
            settings=_make_settings(cycle_timeout_s=0.05),
            store=store,
            client=client,
            owns_store=True,
        )

        outcome = await asyncio.wait_for(run_cycle(ctx), timeout=5.0)

        assert outcome is CycleOutcome.TIMEOUT
        client.fetch_power_flow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_open_failure_contained(self) -> None:
        store = _make_store()
        store.__aenter__ = AsyncMock(side_effect=OSError("unable to open database file"))
        store.__aexit__ = AsyncMock(return_value=False)
        ctx = _make_context(store=store, owns_store=True)

        outcome = await run_cycle(ctx)

        assert outcome is CycleOutcome.ERROR
        store.exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stalled_publish_leaves_previous_values(self, tmp_path: Path) -> None:
        """Timing out part-way through the value writes commits none of them."""
        async with SqliteStateStore(tmp_path / "states.db", namespace="solaredge.0") as store:
            first = await run_cycle(_make_context(store=store))

            real_get = store.get
            reads = 0

            async def _stalling_get(path: str) -> Any:
                nonlocal reads
                reads += 1
                if reads >= 3:
                    await asyncio.sleep(10)
                return await real_get(path)

            document = json.loads(json.dumps(_DOCUMENT))
            document["siteCurrentPowerFlow"]["PV"]["currentPower"] = 4
            store.get = _stalling_get  # type: ignore[method-assign]
            second = await run_cycle(
                _make_context(
                    settings=_make_settings(cycle_timeout_s=0.2),
                    store=store,
                    client=_make_client(document),
                )
            )
            store.get = real_get  # type: ignore[method-assign]

            pv = await store.get("123456.pvProduction")

        assert first is CycleOutcome.DONE
        assert second is CycleOutcome.TIMEOUT
        assert reads == 3
        assert pv is not None
        assert pv.value == 3000.0


# ---------------------------------------------------------------------------
# Health file
# ---------------------------------------------------------------------------


class TestHealthRecording:
    """Outcome is written to the health file when configured."""

    @pytest.mark.asyncio
    async def test_success_recorded(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        ctx = _make_context(health=HealthWriter(health_path))

        await run_cycle(ctx)

        data = json.loads(health_path.read_text())
        assert data["last_outcome"] == "done"
        assert data["last_success_ts"] == data["last_cycle_ts"]

    @pytest.mark.asyncio
    async def test_failure_recorded(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        ctx = _make_context(
            health=HealthWriter(health_path),
            client=_make_client(error=FetchError(FetchErrorKind.TRANSPORT)),
        )

        await run_cycle(ctx)

        data = json.loads(health_path.read_text())
        assert data["last_outcome"] == "fetch_error"
        assert data["last_success_ts"] is None


# ---------------------------------------------------------------------------
# Integration with the SQLite store
# ---------------------------------------------------------------------------


class TestSqliteIntegration:
    """Two consecutive cycles against a real store."""

    @pytest.mark.asyncio
    async def test_bootstrap_then_steady_state(self, tmp_path: Path) -> None:
        db_path = tmp_path / "states.db"

        async with SqliteStateStore(db_path, namespace="solaredge.0") as store:
            first = await run_cycle(_make_context(store=store))

            assert first is CycleOutcome.DONE
            assert await store.exists("123456.load") is True
            load = await store.get("123456.load")
            soc = await store.get("123456.batterySoC")
            updated = await store.get("123456.lastUpdateTime")

        assert load is not None and load.value == 4500.0 and load.ack is True
        assert soc is not None and soc.value == 80.0
        assert updated is not None and updated.value == _NOW.isoformat()

        async with SqliteStateStore(db_path, namespace="solaredge.0") as store:
            spy = AsyncMock(wraps=store.declare)
            store.declare = spy  # type: ignore[method-assign]
            second = await run_cycle(_make_context(store=store))

        assert second is CycleOutcome.DONE
        spy.assert_not_awaited()
