"""
Memory Curator: promotes durable committed events into retrieval facts.

Curation runs after a commit and never undoes it. A failed batch is logged
and kept so ``retry_failed`` can promote it later; promotion is idempotent
because duplicates are detected against existing facts.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional, Sequence

from .logging_utils import log_deterministic, log_error
from .retrieval import RetrievalIndex
from .schemas import MODULE_PATCHED_EVENT, Event, Fact

DURABLE_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        MODULE_PATCHED_EVENT,
        "RelationshipChanged",
        "ReputationChanged",
        "QuestAdvanced",
        "QuestCompleted",
        "DiscoveryMade",
        "EntityDefeated",
        "ItemAcquired",
        "LocationEntered",
        "LockOpened",
    }
)


def _normalize(statement: str) -> str:
    return " ".join(statement.lower().split()).rstrip(".")


class MemoryCurator:
    def __init__(
        self,
        index: RetrievalIndex,
        *,
        durable_types: Iterable[str] = DURABLE_EVENT_TYPES,
    ):
        self.index = index
        self.durable_types = frozenset(durable_types)
        self.failed_batches: List[List[Event]] = []

    def is_durable(self, event: Event) -> bool:
        flag = event.payload.get("durable")
        if flag is not None:
            return bool(flag)
        return event.type in self.durable_types

    def to_fact(self, event: Event) -> Optional[Fact]:
        payload = event.payload
        statement = payload.get("fact") or event.summary
        if event.type == MODULE_PATCHED_EVENT and not payload.get("fact"):
            patch = payload.get("patch") or {}
            statement = f"{patch.get('name', 'New content')} exists: {patch.get('description', '')}".strip()
        if not statement or not str(statement).strip():
            return None

        entity_refs = list(event.entity_refs)
        if event.type == MODULE_PATCHED_EVENT:
            patch_id = (payload.get("patch") or {}).get("patch_id")
            if patch_id and patch_id not in entity_refs:
                entity_refs.append(patch_id)

        return Fact(
            session_id=event.session_id,
            statement=str(statement).strip(),
            citations=[event.event_id],
            entity_refs=entity_refs,
            quest_id=payload.get("quest_id"),
            tags=[event.type, *entity_refs],
            subject_key=payload.get("subject_key"),
        )

    async def curate(self, new_events: Sequence[Event]) -> List[Fact]:
        """Promote durable events to facts. Never raises."""

        try:
            return await self._promote(new_events)
        except Exception as exc:
            log_error(f"Memory curation failed ({exc}); batch kept for retry")
            self.failed_batches.append(list(new_events))
            return []

    async def retry_failed(self) -> List[Fact]:
        """Re-run failed batches. Batches that fail again stay queued."""

        pending, self.failed_batches = self.failed_batches, []
        promoted: List[Fact] = []
        for batch in pending:
            promoted.extend(await self.curate(batch))
        return promoted

    async def _promote(self, events: Sequence[Event]) -> List[Fact]:
        promoted: List[Fact] = []
        for event in events:
            if not self.is_durable(event):
                continue
            candidate = self.to_fact(event)
            if candidate is None:
                continue

            existing = await self.index.facts_for(
                candidate.entity_refs, candidate.quest_id, session_id=candidate.session_id
            )
            existing = [*existing, *(fact for fact in promoted if fact.session_id == candidate.session_id)]

            if any(_normalize(fact.statement) == _normalize(candidate.statement) for fact in existing):
                log_deterministic(f"Skipping duplicate fact from {event.event_id}")
                continue

            if candidate.subject_key:
                # Same subject anywhere in the session, not only on the same entities.
                same_subject = await self.index.facts_by_subject(
                    candidate.subject_key, session_id=candidate.session_id
                )
                if same_subject:
                    candidate = candidate.model_copy(update={"supersedes": same_subject[-1].fact_id})

            await self.index.upsert(candidate)
            promoted.append(candidate)
            log_deterministic(f"Promoted fact {candidate.fact_id} from {event.event_id}")
        return promoted
