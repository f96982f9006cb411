"""
World Writer: the only component that changes canonical world state.

``commit`` is idempotent per turn id. A commit either applies the whole
accumulated delta (entity and quest changes, module additions, events with
fresh sequence numbers, clock advance) or nothing at all.
"""

from __future__ import annotations

from typing import Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import TurnSettings
from .deltas import stamp_events, validate_delta
from .logging_utils import log_deterministic, log_error, log_info, log_success
from .persistence import CommitConflictError, StoreUnavailableError, WorldStore
from .schemas import CommitResult, StateDelta


class WorldWriter:
    def __init__(
        self,
        store: WorldStore,
        settings: Optional[TurnSettings] = None,
        *,
        known_content_ids: Iterable[str] = (),
    ):
        self.store = store
        self.settings = settings or TurnSettings()
        self.known_content_ids = frozenset(known_content_ids)

    async def commit(self, turn_id: str, delta: StateDelta, *, session_id: str) -> CommitResult:
        """Validate and apply ``delta`` for ``turn_id``.

        Returns a CommitResult with status ``committed``, ``duplicate`` (the
        turn was applied before; the original events are returned) or
        ``rejected`` (validation failed; nothing was written).

        Raises:
            StoreUnavailableError: If the store cannot be read or written
        """

        prior = await self._prior_result(turn_id)
        if prior is not None:
            return prior

        if delta.turn_id and delta.turn_id != turn_id:
            return CommitResult(
                turn_id=turn_id,
                status="rejected",
                errors=[f"delta belongs to turn {delta.turn_id}"],
            )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(CommitConflictError),
                stop=stop_after_attempt(self.settings.commit_retry_attempts),
                reraise=True,
            ):
                with attempt:
                    return await self._attempt(turn_id, delta, session_id)
        except CommitConflictError as exc:
            log_error(f"[{turn_id}] giving up after repeated commit conflicts: {exc}")
            return CommitResult(turn_id=turn_id, status="rejected", errors=[str(exc)])

        raise RuntimeError("commit retry loop exited without a result")

    async def _prior_result(self, turn_id: str) -> Optional[CommitResult]:
        if not await self.store.has_applied(turn_id):
            return None
        prior = await self.store.get_commit_result(turn_id)
        log_info(f"[{turn_id}] already committed; returning recorded result")
        if prior is None:
            return CommitResult(turn_id=turn_id, status="duplicate")
        return prior.model_copy(update={"status": "duplicate"})

    async def _attempt(self, turn_id: str, delta: StateDelta, session_id: str) -> CommitResult:
        snapshot = await self.store.read_snapshot(session_id)
        if snapshot is None:
            raise StoreUnavailableError(f"No world snapshot for session {session_id}")

        errors = validate_delta(
            snapshot,
            delta,
            power_budget=self.settings.module_patch_power_budget,
            known_content_ids=self.known_content_ids,
        )
        if errors:
            for error in errors:
                log_error(f"[{turn_id}] commit validation: {error}")
            return CommitResult(turn_id=turn_id, status="rejected", errors=errors)

        events = stamp_events(snapshot, delta, turn_id=turn_id)
        result = CommitResult(
            turn_id=turn_id,
            status="committed",
            events=events,
            state_version=snapshot.version + 1,
        )
        log_deterministic(
            f"[{turn_id}] appending {len(events)} events on version {snapshot.version}"
        )
        status = await self.store.append_commit(
            session_id, turn_id, delta, events, base_version=snapshot.version, result=result
        )
        if status == "conflict":
            raise CommitConflictError(turn_id, snapshot.version)
        if status == "duplicate":
            prior = await self._prior_result(turn_id)
            return prior or CommitResult(turn_id=turn_id, status="duplicate")

        log_success(f"[{turn_id}] committed version {result.state_version}")
        return result
