"""
World state stores for Turnkeeper sessions.

A WorldStore holds the canonical snapshot for each session, the append-only
event log, the record of applied turns (for idempotent commits) and the
session's outstanding PendingAction. Storage is pluggable and OPTIONAL: the
in-memory store needs no files or database.

Three included implementations:
1. InMemoryWorldStore - dicts guarded by per-world asyncio locks (tests, prototyping)
2. JsonWorldStore - one JSON document per session, replaced atomically (small games)
3. PostgresWorldStore - asyncpg pool, row lock per commit (production)

Commit contract:
- ``append_commit`` applies a validated delta and its stamped events as ONE
  unit: either snapshot, events and the applied-turn record all change, or
  none of them do
- commits are serialized per world; a stale ``base_version`` returns
  ``"conflict"`` so the World Writer can re-validate against a fresh snapshot
- a turn id already applied returns ``"duplicate"`` and changes nothing

Usage pattern:
    store = InMemoryWorldStore()   # or JsonWorldStore(path), PostgresWorldStore(url)
    await store.initialize()
    await store.seed_snapshot(snapshot)
    ...
    await store.close()
"""

import asyncio
import json
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Config
from .deltas import apply_delta
from .schemas import (
    AppendStatus,
    CommitResult,
    Event,
    PendingAction,
    StateDelta,
    WorldSnapshot,
)

try:  # Optional dependency (only needed for PostgresWorldStore)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg is an extra
    asyncpg = None


class CommitConflictError(RuntimeError):
    """The world version moved between validation and append."""

    def __init__(self, turn_id: str, base_version: int):
        self.turn_id = turn_id
        self.base_version = base_version
        super().__init__(
            f"Commit for turn {turn_id} was based on version {base_version}, "
            "but the world has moved on. Re-read the snapshot and validate again."
        )


class StoreUnavailableError(RuntimeError):
    """A store operation could not be completed (unknown session, closed pool, ...)."""


class WorldStore(ABC):
    """Abstract base class for session world storage.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Snapshots: seed_snapshot(), read_snapshot()
    3. Commits: append_commit(), has_applied(), get_commit_result()
    4. Events: list_events()
    5. Pending actions: save/get/delete_pending_action()

    The coordinator and World Writer depend only on this interface.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (pools, directories, tables)."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def seed_snapshot(self, snapshot: WorldSnapshot) -> None:
        """Install the starting snapshot for a session, replacing any existing one."""

    @abstractmethod
    async def read_snapshot(self, session_id: str) -> Optional[WorldSnapshot]:
        """Return the latest committed snapshot, or None for an unknown session."""

    @abstractmethod
    async def append_commit(
        self,
        session_id: str,
        turn_id: str,
        delta: StateDelta,
        events: List[Event],
        *,
        base_version: int,
        result: CommitResult,
    ) -> AppendStatus:
        """
        Atomically apply ``delta``, append ``events`` and record ``result``.

        Args:
            session_id: Session whose world is being changed
            turn_id: Turn being committed (the idempotency key)
            delta: Validated accumulated delta
            events: Events already stamped against the base snapshot
            base_version: Snapshot version the delta was validated against
            result: CommitResult returned to later duplicate calls

        Returns:
            "ok" when applied, "duplicate" when the turn was applied before,
            "conflict" when the snapshot version is no longer ``base_version``

        Raises:
            StoreUnavailableError: If the session is unknown
        """

    @abstractmethod
    async def has_applied(self, turn_id: str) -> bool:
        """Whether a commit for ``turn_id`` has been applied."""

    @abstractmethod
    async def get_commit_result(self, turn_id: str) -> Optional[CommitResult]:
        """Return the recorded result for an applied turn."""

    @abstractmethod
    async def list_events(
        self, session_id: str, since_sequence: int = 0, limit: Optional[int] = None
    ) -> List[Event]:
        """
        Return events with sequence > ``since_sequence`` in ascending order.

        When ``limit`` is given only the LAST ``limit`` matching events are
        returned, still in ascending order.
        """

    @abstractmethod
    async def save_pending_action(self, action: PendingAction) -> None:
        """Store the session's pending action, replacing any previous one."""

    @abstractmethod
    async def get_pending_action(self, session_id: str) -> Optional[PendingAction]:
        """Return the session's pending action, if any."""

    @abstractmethod
    async def delete_pending_action(self, session_id: str, turn_id: str) -> bool:
        """Delete the pending action only if it belongs to ``turn_id``."""


def _tail(events: List[Event], since_sequence: int, limit: Optional[int]) -> List[Event]:
    selected = [event for event in events if event.sequence > since_sequence]
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected


class InMemoryWorldStore(WorldStore):
    """Dict-based store; data is lost on exit.

    Storage structure:
    - snapshots: Dict[session_id, WorldSnapshot] - swapped wholesale per commit
    - events: Dict[session_id, List[Event]] - append-only
    - results: Dict[turn_id, CommitResult] - applied turns
    - pending: Dict[session_id, PendingAction]

    Snapshots are copied on the way in and out, so callers can never mutate
    canonical state behind the store's back.
    """

    def __init__(self):
        self.snapshots: Dict[str, WorldSnapshot] = {}
        self.events: Dict[str, List[Event]] = {}
        self.results: Dict[str, CommitResult] = {}
        self.pending: Dict[str, PendingAction] = {}
        self._world_locks: Dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept so callers can inspect it after a session.
        pass

    async def seed_snapshot(self, snapshot: WorldSnapshot) -> None:
        self.snapshots[snapshot.session_id] = snapshot.model_copy(deep=True)
        self.events.setdefault(snapshot.session_id, [])

    async def read_snapshot(self, session_id: str) -> Optional[WorldSnapshot]:
        snapshot = self.snapshots.get(session_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def append_commit(
        self,
        session_id: str,
        turn_id: str,
        delta: StateDelta,
        events: List[Event],
        *,
        base_version: int,
        result: CommitResult,
    ) -> AppendStatus:
        current = self.snapshots.get(session_id)
        if current is None:
            raise StoreUnavailableError(f"Unknown session {session_id}")

        lock = self._world_locks.setdefault(current.world_id, asyncio.Lock())
        async with lock:
            if turn_id in self.results:
                return "duplicate"
            current = self.snapshots[session_id]
            if current.version != base_version:
                return "conflict"
            updated = apply_delta(current, delta, events)
            # No awaits from here on: other tasks never see a partial commit.
            self.snapshots[session_id] = updated
            self.events.setdefault(session_id, []).extend(events)
            self.results[turn_id] = result
            return "ok"

    async def has_applied(self, turn_id: str) -> bool:
        return turn_id in self.results

    async def get_commit_result(self, turn_id: str) -> Optional[CommitResult]:
        return self.results.get(turn_id)

    async def list_events(
        self, session_id: str, since_sequence: int = 0, limit: Optional[int] = None
    ) -> List[Event]:
        return _tail(self.events.get(session_id, []), since_sequence, limit)

    async def save_pending_action(self, action: PendingAction) -> None:
        self.pending[action.session_id] = action

    async def get_pending_action(self, session_id: str) -> Optional[PendingAction]:
        return self.pending.get(session_id)

    async def delete_pending_action(self, session_id: str, turn_id: str) -> bool:
        action = self.pending.get(session_id)
        if action is None or action.turn_id != turn_id:
            return False
        del self.pending[session_id]
        return True


class JsonWorldStore(WorldStore):
    """File-based store with one human-readable document per session.

    Directory structure:
    ```
    {base_path}/
      {session_id}/
        session.json    # {"snapshot", "events", "results", "pending"}
    ```

    Every write serializes the whole document to ``session.json.tmp`` and
    swaps it in with ``os.replace``, so a crash leaves either the old or the
    new document on disk, never a mix. Suitable for small, single-process
    games; the event log grows with the document.

    All file I/O runs in a worker thread (``asyncio.to_thread``).
    """

    def __init__(self, base_path: Path | str | None = None):
        self.base_path = Path(base_path) if base_path is not None else Config.DATA_DIR
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._turn_index: Dict[str, str] = {}

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)
        self._turn_index = await asyncio.to_thread(self._scan_turns)

    async def close(self) -> None:
        return None

    def _document_path(self, session_id: str) -> Path:
        return self.base_path / session_id / "session.json"

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    def _read_document(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self._document_path(session_id)
        if not path.exists():
            return None
        return json.loads(path.read_text("utf-8"))

    def _write_document(self, session_id: str, document: Dict[str, Any]) -> None:
        path = self._document_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_suffix(".json.tmp")
        with temp.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp, path)

    def _scan_turns(self) -> Dict[str, str]:
        index: Dict[str, str] = {}
        for path in self.base_path.glob("*/session.json"):
            document = json.loads(path.read_text("utf-8"))
            for turn_id in document.get("results", {}):
                index[turn_id] = path.parent.name
        return index

    async def _load(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_document, session_id)

    async def seed_snapshot(self, snapshot: WorldSnapshot) -> None:
        async with self._lock(snapshot.session_id):
            document = await self._load(snapshot.session_id) or {
                "events": [],
                "results": {},
                "pending": None,
            }
            document["snapshot"] = snapshot.model_dump(mode="json")
            await asyncio.to_thread(self._write_document, snapshot.session_id, document)

    async def read_snapshot(self, session_id: str) -> Optional[WorldSnapshot]:
        document = await self._load(session_id)
        if document is None:
            return None
        return WorldSnapshot.model_validate(document["snapshot"])

    async def append_commit(
        self,
        session_id: str,
        turn_id: str,
        delta: StateDelta,
        events: List[Event],
        *,
        base_version: int,
        result: CommitResult,
    ) -> AppendStatus:
        async with self._lock(session_id):
            document = await self._load(session_id)
            if document is None:
                raise StoreUnavailableError(f"Unknown session {session_id}")
            if turn_id in document["results"]:
                return "duplicate"

            current = WorldSnapshot.model_validate(document["snapshot"])
            if current.version != base_version:
                return "conflict"

            updated = apply_delta(current, delta, events)
            document["snapshot"] = updated.model_dump(mode="json")
            document["events"].extend(event.model_dump(mode="json") for event in events)
            document["results"][turn_id] = result.model_dump(mode="json")
            await asyncio.to_thread(self._write_document, session_id, document)
            self._turn_index[turn_id] = session_id
            return "ok"

    async def has_applied(self, turn_id: str) -> bool:
        return turn_id in self._turn_index

    async def get_commit_result(self, turn_id: str) -> Optional[CommitResult]:
        session_id = self._turn_index.get(turn_id)
        if session_id is None:
            return None
        document = await self._load(session_id)
        payload = (document or {}).get("results", {}).get(turn_id)
        return CommitResult.model_validate(payload) if payload else None

    async def list_events(
        self, session_id: str, since_sequence: int = 0, limit: Optional[int] = None
    ) -> List[Event]:
        document = await self._load(session_id)
        if document is None:
            return []
        events = [Event.model_validate(item) for item in document["events"]]
        return _tail(events, since_sequence, limit)

    async def save_pending_action(self, action: PendingAction) -> None:
        async with self._lock(action.session_id):
            document = await self._load(action.session_id)
            if document is None:
                raise StoreUnavailableError(f"Unknown session {action.session_id}")
            document["pending"] = action.model_dump(mode="json")
            await asyncio.to_thread(self._write_document, action.session_id, document)

    async def get_pending_action(self, session_id: str) -> Optional[PendingAction]:
        document = await self._load(session_id)
        payload = (document or {}).get("pending")
        return PendingAction.model_validate(payload) if payload else None

    async def delete_pending_action(self, session_id: str, turn_id: str) -> bool:
        async with self._lock(session_id):
            document = await self._load(session_id)
            pending = (document or {}).get("pending")
            if not pending or pending.get("turn_id") != turn_id:
                return False
            document["pending"] = None
            await asyncio.to_thread(self._write_document, session_id, document)
            return True

    async def delete_session(self, session_id: str) -> None:
        session_dir = self.base_path / session_id
        if session_dir.exists():
            await asyncio.to_thread(shutil.rmtree, session_dir)
        self._turn_index = {
            turn_id: owner for turn_id, owner in self._turn_index.items() if owner != session_id
        }


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS turnkeeper_snapshots (
    session_id TEXT PRIMARY KEY,
    world_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    snapshot JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS turnkeeper_events (
    session_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    turn_id TEXT NOT NULL,
    event JSONB NOT NULL,
    PRIMARY KEY (session_id, sequence)
);
CREATE TABLE IF NOT EXISTS turnkeeper_commits (
    turn_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    result JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS turnkeeper_pending (
    session_id TEXT PRIMARY KEY,
    turn_id TEXT NOT NULL,
    action JSONB NOT NULL
);
"""


class PostgresWorldStore(WorldStore):
    """PostgreSQL-backed store using an asyncpg connection pool.

    Tables (created by ``initialize``):
    - turnkeeper_snapshots: latest snapshot per session (JSONB) and its version
    - turnkeeper_events: append-only event log keyed by (session, sequence)
    - turnkeeper_commits: applied turns and their CommitResult
    - turnkeeper_pending: at most one PendingAction per session

    ``append_commit`` runs in one transaction and takes the snapshot row with
    ``SELECT ... FOR UPDATE``, which serializes commits for the world across
    processes.
    """

    def __init__(self, database_url: Optional[str] = None):
        if asyncpg is None:  # pragma: no cover - depends on installed extras
            raise ImportError(
                "asyncpg is required for PostgresWorldStore. "
                "Install with `pip install turnkeeper[postgres]`."
            )

        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional["asyncpg.Pool"] = None

    async def initialize(self) -> None:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.database_url)
            async with self.pool.acquire() as conn:
                await conn.execute(POSTGRES_SCHEMA)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> "asyncpg.Pool":
        if self.pool is None:
            raise StoreUnavailableError("PostgresWorldStore used before initialize()")
        return self.pool

    async def seed_snapshot(self, snapshot: WorldSnapshot) -> None:
        query = """
            INSERT INTO turnkeeper_snapshots (session_id, world_id, version, snapshot)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (session_id) DO UPDATE
            SET world_id = $2, version = $3, snapshot = $4::jsonb
        """
        async with self._require_pool().acquire() as conn:
            await conn.execute(
                query,
                snapshot.session_id,
                snapshot.world_id,
                snapshot.version,
                snapshot.model_dump_json(),
            )

    async def read_snapshot(self, session_id: str) -> Optional[WorldSnapshot]:
        query = "SELECT snapshot FROM turnkeeper_snapshots WHERE session_id = $1"
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(query, session_id)
        if not row:
            return None
        return WorldSnapshot.model_validate_json(row["snapshot"])

    async def append_commit(
        self,
        session_id: str,
        turn_id: str,
        delta: StateDelta,
        events: List[Event],
        *,
        base_version: int,
        result: CommitResult,
    ) -> AppendStatus:
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT snapshot FROM turnkeeper_snapshots WHERE session_id = $1 FOR UPDATE",
                    session_id,
                )
                if not row:
                    raise StoreUnavailableError(f"Unknown session {session_id}")

                applied = await conn.fetchval(
                    "SELECT 1 FROM turnkeeper_commits WHERE turn_id = $1", turn_id
                )
                if applied:
                    return "duplicate"

                current = WorldSnapshot.model_validate_json(row["snapshot"])
                if current.version != base_version:
                    return "conflict"

                updated = apply_delta(current, delta, events)
                await conn.execute(
                    """
                    UPDATE turnkeeper_snapshots
                    SET version = $2, snapshot = $3::jsonb
                    WHERE session_id = $1
                    """,
                    session_id,
                    updated.version,
                    updated.model_dump_json(),
                )
                if events:
                    await conn.executemany(
                        """
                        INSERT INTO turnkeeper_events (session_id, sequence, turn_id, event)
                        VALUES ($1, $2, $3, $4::jsonb)
                        """,
                        [
                            (session_id, event.sequence, turn_id, event.model_dump_json())
                            for event in events
                        ],
                    )
                await conn.execute(
                    """
                    INSERT INTO turnkeeper_commits (turn_id, session_id, result)
                    VALUES ($1, $2, $3::jsonb)
                    """,
                    turn_id,
                    session_id,
                    result.model_dump_json(),
                )
        return "ok"

    async def has_applied(self, turn_id: str) -> bool:
        async with self._require_pool().acquire() as conn:
            value = await conn.fetchval(
                "SELECT 1 FROM turnkeeper_commits WHERE turn_id = $1", turn_id
            )
        return bool(value)

    async def get_commit_result(self, turn_id: str) -> Optional[CommitResult]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(
                "SELECT result FROM turnkeeper_commits WHERE turn_id = $1", turn_id
            )
        if not row:
            return None
        return CommitResult.model_validate_json(row["result"])

    async def list_events(
        self, session_id: str, since_sequence: int = 0, limit: Optional[int] = None
    ) -> List[Event]:
        if limit is not None:
            query = """
                SELECT event FROM (
                    SELECT event, sequence FROM turnkeeper_events
                    WHERE session_id = $1 AND sequence > $2
                    ORDER BY sequence DESC
                    LIMIT $3
                ) AS recent
                ORDER BY sequence
            """
            args = (session_id, since_sequence, max(limit, 0))
        else:
            query = """
                SELECT event FROM turnkeeper_events
                WHERE session_id = $1 AND sequence > $2
                ORDER BY sequence
            """
            args = (session_id, since_sequence)

        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [Event.model_validate_json(row["event"]) for row in rows]

    async def save_pending_action(self, action: PendingAction) -> None:
        query = """
            INSERT INTO turnkeeper_pending (session_id, turn_id, action)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (session_id) DO UPDATE SET turn_id = $2, action = $3::jsonb
        """
        async with self._require_pool().acquire() as conn:
            await conn.execute(query, action.session_id, action.turn_id, action.model_dump_json())

    async def get_pending_action(self, session_id: str) -> Optional[PendingAction]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(
                "SELECT action FROM turnkeeper_pending WHERE session_id = $1", session_id
            )
        if not row:
            return None
        return PendingAction.model_validate_json(row["action"])

    async def delete_pending_action(self, session_id: str, turn_id: str) -> bool:
        async with self._require_pool().acquire() as conn:
            status = await conn.execute(
                "DELETE FROM turnkeeper_pending WHERE session_id = $1 AND turn_id = $2",
                session_id,
                turn_id,
            )
        return status.endswith(" 1")
