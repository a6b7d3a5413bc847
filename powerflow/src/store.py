"""
Persistent, change-detected state store for published metrics.

A state has two halves, kept apart the way home-automation state stores do:

- an *object* (the declaration): display name, value type, role and
  read/write flags;
- a *state* (the current value): JSON-encoded value, ack flag and timestamp.

Every id is ``{namespace}.{path}``, e.g. ``solaredge.0.123456.pvProduction``.

Operations:
- exists(path): True if the object has been declared.
- declare(path, definition): idempotent object upsert; the value is kept.
- set_changed(path, value, ack): write only when value or ack differ from
  the stored state; returns whether a write happened.
- set_changed_many(values, ack): set_changed for several paths as one
  all-or-nothing write; returns how many states changed.
- get(path): current StoredState or None.

Two backends implement the StateStore protocol:
- SqliteStateStore: local file, aiosqlite, WAL mode.
- RedisStateStore: redis.asyncio, ``obj:{id}`` / ``state:{id}`` string keys.

Both support the async context manager protocol for clean resource
management.

CHANGELOG:
- 2026-10-16: Add atomic set_changed_many (one SQLite transaction, one Redis MULTI)
- 2026-10-16: Add Redis backend
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

import aiosqlite
import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from powerflow.src.config import PollerSettings

logger = logging.getLogger(__name__)


class StateDefinition(BaseModel):
    """Declaration of one stored state."""

    model_config = ConfigDict(frozen=True)

    name: str
    value_type: Literal["number", "string"]
    role: str = "value"
    read: bool = True
    write: bool = False


class StoredState(BaseModel):
    """Current value of one stored state."""

    value: Any
    ack: bool
    ts: datetime


class StateStore(Protocol):
    """Operations the poller consumes from a state store."""

    async def exists(self, path: str) -> bool: ...

    async def declare(self, path: str, definition: StateDefinition) -> None: ...

    async def set_changed(self, path: str, value: Any, *, ack: bool = True) -> bool: ...

    async def set_changed_many(self, values: Mapping[str, Any], *, ack: bool = True) -> int: ...

    async def get(self, path: str) -> StoredState | None: ...

    async def __aenter__(self) -> Any: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None: ...


def _now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_CREATE_OBJECTS_SQL = """\
CREATE TABLE IF NOT EXISTS objects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    value_type TEXT NOT NULL,
    role TEXT NOT NULL,
    read INTEGER NOT NULL,
    write INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_CREATE_STATES_SQL = """\
CREATE TABLE IF NOT EXISTS states (
    id TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    ack INTEGER NOT NULL,
    ts TEXT NOT NULL
);
"""

_UPSERT_OBJECT_SQL = """\
INSERT INTO objects (id, name, value_type, role, read, write, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    value_type = excluded.value_type,
    role = excluded.role,
    read = excluded.read,
    write = excluded.write,
    updated_at = excluded.updated_at;
"""

_UPSERT_STATE_SQL = """\
INSERT INTO states (id, value, ack, ts) VALUES (?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    value = excluded.value,
    ack = excluded.ack,
    ts = excluded.ts;
"""

_OBJECT_EXISTS_SQL = "SELECT 1 FROM objects WHERE id = ?;"

_SELECT_STATE_SQL = "SELECT value, ack, ts FROM states WHERE id = ?;"


class SqliteStateStore:
    """State store backed by a local SQLite database file.

    Args:
        path: Filesystem path for the SQLite database file.
        namespace: Prefix prepended to every state path.

    Usage::

        async with SqliteStateStore("/data/states.db", namespace="solaredge.0") as store:
            if not await store.exists("123456.load"):
                await store.declare("123456.load", definition)
            await store.set_changed("123456.load", 4500.0)
    """

    def __init__(self, path: str | Path, *, namespace: str) -> None:
        self._path = Path(path)
        self._namespace = namespace
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_OBJECTS_SQL)
        await self._db.execute(_CREATE_STATES_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStateStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def state_id(self, path: str) -> str:
        """Full state id for *path*."""
        return f"{self._namespace}.{path}"

    async def exists(self, path: str) -> bool:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_OBJECT_EXISTS_SQL, (self.state_id(path),))
        return await cursor.fetchone() is not None

    async def declare(self, path: str, definition: StateDefinition) -> None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(
            _UPSERT_OBJECT_SQL,
            (
                self.state_id(path),
                definition.name,
                definition.value_type,
                definition.role,
                int(definition.read),
                int(definition.write),
                _now().isoformat(),
            ),
        )
        await self._db.commit()

    async def get(self, path: str) -> StoredState | None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_SELECT_STATE_SQL, (self.state_id(path),))
        row = await cursor.fetchone()
        if row is None:
            return None
        return StoredState(value=json.loads(row[0]), ack=bool(row[1]), ts=row[2])

    async def set_changed(self, path: str, value: Any, *, ack: bool = True) -> bool:
        """Write *value* unless it equals the stored value with the same ack.

        Returns:
            True if the state was written, False if it was unchanged.
        """
        return await self.set_changed_many({path: value}, ack=ack) == 1

    async def set_changed_many(self, values: Mapping[str, Any], *, ack: bool = True) -> int:
        """Change-detected write of several states in one transaction.

        Nothing is committed unless every upsert succeeded; an error or a
        cancellation part-way through rolls the whole batch back.

        Returns:
            Number of states written.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        changed = 0
        try:
            for path, value in values.items():
                current = await self.get(path)
                if current is not None and current.value == value and current.ack == ack:
                    continue
                await self._db.execute(
                    _UPSERT_STATE_SQL,
                    (self.state_id(path), json.dumps(value), int(ack), _now().isoformat()),
                )
                changed += 1
            await self._db.commit()
        except BaseException:
            await self._db.rollback()
            raise
        return changed


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStateStore:
    """State store backed by Redis string keys holding JSON documents.

    Args:
        client: An async Redis client created with ``decode_responses=True``.
        namespace: Prefix prepended to every state path.
    """

    def __init__(self, client: redis.Redis, *, namespace: str) -> None:
        self._redis = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, *, namespace: str) -> RedisStateStore:
        """Create a store with a client for *url*."""
        return cls(redis.from_url(url, decode_responses=True), namespace=namespace)

    async def close(self) -> None:
        """Close the Redis client."""
        await self._redis.aclose()

    async def __aenter__(self) -> RedisStateStore:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def state_id(self, path: str) -> str:
        """Full state id for *path*."""
        return f"{self._namespace}.{path}"

    async def exists(self, path: str) -> bool:
        return await self._redis.exists(f"obj:{self.state_id(path)}") > 0

    async def declare(self, path: str, definition: StateDefinition) -> None:
        await self._redis.set(
            f"obj:{self.state_id(path)}", definition.model_dump_json()
        )

    async def get(self, path: str) -> StoredState | None:
        raw = await self._redis.get(f"state:{self.state_id(path)}")
        if raw is None:
            return None
        return StoredState.model_validate_json(raw)

    async def set_changed(self, path: str, value: Any, *, ack: bool = True) -> bool:
        """Write *value* unless it equals the stored value with the same ack."""
        return await self.set_changed_many({path: value}, ack=ack) == 1

    async def set_changed_many(self, values: Mapping[str, Any], *, ack: bool = True) -> int:
        """Change-detected write of several states in one MULTI/EXEC block."""
        if not values:
            return 0
        keys = {path: f"state:{self.state_id(path)}" for path in values}
        current = await self._redis.mget(list(keys.values()))

        ts = _now()
        pending: dict[str, str] = {}
        for (path, key), raw in zip(keys.items(), current, strict=True):
            value = values[path]
            if raw is not None:
                stored = StoredState.model_validate_json(raw)
                if stored.value == value and stored.ack == ack:
                    continue
            pending[key] = StoredState(value=value, ack=ack, ts=ts).model_dump_json()

        if pending:
            async with self._redis.pipeline(transaction=True) as pipe:
                for key, document in pending.items():
                    pipe.set(key, document)
                await pipe.execute()
        return len(pending)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_store(settings: PollerSettings) -> SqliteStateStore | RedisStateStore:
    """Build the (unopened) store selected by STORE_BACKEND."""
    if settings.store_backend == "redis":
        logger.info("Using Redis state store")
        return RedisStateStore.from_url(
            settings.redis_url, namespace=settings.state_namespace
        )
    logger.info("Using SQLite state store at %s", settings.store_path)
    return SqliteStateStore(settings.store_path, namespace=settings.state_namespace)
