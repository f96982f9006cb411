"""
Context Broker: assembles the read-only ContextPack for one turn.

The broker only reads. It pulls the committed snapshot, a window of recent
events and a few retrieval snippets, shapes them into previews, and trims the
result to the configured size budget. Nothing it returns outlives the turn.

Trimming order when over budget:
1. oldest dialogue recap lines
2. oldest recent events
3. lowest-scoring snippets
4. objectives (last first)
5. participants other than the player, from the end of the list
6. the scene summary, then the player input, then resumed text are clipped
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from .config import TurnSettings
from .logging_utils import debug_enabled, log_deterministic, log_error
from .persistence import StoreUnavailableError, WorldStore
from .retrieval import RetrievalIndex
from .schemas import (
    DIALOGUE_EVENT,
    ContextPack,
    Event,
    EventPreview,
    ObjectivePreview,
    ParticipantRef,
    ResumeContext,
    RetrievalSnippet,
    WorldSnapshot,
)

# Entity attributes copied into participant refs; the rest stay in the store.
PARTICIPANT_ATTRIBUTES = ("hp", "max_hp", "disposition", "hostile", "defeated", "locked", "dc")


class ContextBroker:
    def __init__(self, settings: Optional[TurnSettings] = None):
        self.settings = settings or TurnSettings()

    async def build_context(
        self,
        player_input: str,
        store: WorldStore,
        index: RetrievalIndex,
        *,
        session_id: str,
        turn_id: str,
        resume: Optional[ResumeContext] = None,
    ) -> ContextPack:
        """Build the pack, falling back to a minimal degraded pack on any failure."""

        try:
            return await asyncio.wait_for(
                self._assemble(player_input, store, index, session_id, turn_id, resume),
                timeout=self.settings.context_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log_error(f"[{turn_id}] context assembly timed out; using minimal context")
        except Exception as exc:
            log_error(f"[{turn_id}] context assembly failed ({exc}); using minimal context")
        return ContextPack.minimal(
            turn_id=turn_id, session_id=session_id, player_input=player_input, resume=resume
        )

    async def _assemble(
        self,
        player_input: str,
        store: WorldStore,
        index: RetrievalIndex,
        session_id: str,
        turn_id: str,
        resume: Optional[ResumeContext],
    ) -> ContextPack:
        snapshot = await store.read_snapshot(session_id)
        if snapshot is None:
            raise StoreUnavailableError(f"no snapshot for session {session_id}")

        window = max(self.settings.recent_event_window, self.settings.recap_lines * 3)
        events = await store.list_events(session_id, limit=window) if window else []

        participants = self._participants(snapshot)
        degraded = False
        snippets: List[RetrievalSnippet] = []
        if self.settings.retrieval_top_k:
            query = player_input if resume is None else f"{player_input} {resume.answer}"
            tags = [snapshot.scene.scene_id, *(ref.entity_id for ref in participants)]
            try:
                snippets = await index.search(
                    tags, query, self.settings.retrieval_top_k, session_id=session_id
                )
            except Exception as exc:
                log_error(f"[{turn_id}] retrieval failed ({exc}); continuing without snippets")
                degraded = True

        fields = dict(
            turn_id=turn_id,
            session_id=session_id,
            player_input=player_input,
            scene_id=snapshot.scene.scene_id,
            scene_summary=snapshot.scene.summary,
            participants=participants,
            dialogue_recap=self._recap(events),
            recent_events=self._previews(events),
            objectives=self._objectives(snapshot),
            time_of_day=snapshot.time_of_day,
            weather=snapshot.weather,
            snippets=sorted(snippets, key=lambda snippet: snippet.score, reverse=True),
            resume=resume,
            degraded=degraded,
        )
        return self._fit(fields, turn_id)

    def _participants(self, snapshot: WorldSnapshot) -> List[ParticipantRef]:
        scene = snapshot.scene
        ids = list(dict.fromkeys(scene.participants))
        ids.extend(
            entity_id
            for entity_id, entity in snapshot.entities.items()
            if entity.location == scene.scene_id and entity_id not in ids
        )
        refs = []
        for entity_id in ids:
            entity = snapshot.entities.get(entity_id)
            if entity is None:
                continue
            refs.append(
                ParticipantRef(
                    entity_id=entity_id,
                    name=entity.name,
                    kind=entity.kind,
                    attributes={
                        key: entity.attributes[key]
                        for key in PARTICIPANT_ATTRIBUTES
                        if key in entity.attributes
                    },
                )
            )
        return refs

    def _recap(self, events: List[Event]) -> List[str]:
        if not self.settings.recap_lines:
            return []
        lines = [event.summary for event in events if event.type == DIALOGUE_EVENT and event.summary]
        return lines[-self.settings.recap_lines :]

    def _previews(self, events: List[Event]) -> List[EventPreview]:
        if not self.settings.recent_event_window:
            return []
        window = events[-self.settings.recent_event_window :]
        return [
            EventPreview(sequence=event.sequence, type=event.type, summary=event.summary)
            for event in window
        ]

    def _objectives(self, snapshot: WorldSnapshot) -> List[ObjectivePreview]:
        previews = []
        for quest in snapshot.quests.values():
            if quest.status != "active":
                continue
            for objective in quest.open_objectives():
                previews.append(
                    ObjectivePreview(
                        quest_id=quest.quest_id,
                        quest_title=quest.title,
                        objective_id=objective.objective_id,
                        text=objective.text,
                    )
                )
        return previews

    def _size(self, fields: dict) -> int:
        return len(ContextPack(**fields).model_dump_json())

    def _clip(self, text: str, size: int, budget: int) -> str:
        return text[: max(len(text) - (size - budget), 0)]

    def _fit(self, fields: dict, turn_id: str) -> ContextPack:
        budget = self.settings.context_budget_chars
        size = self._size(fields)
        if debug_enabled("DEBUG_CONTEXT"):
            log_deterministic(f"[{turn_id}] context size {size}/{budget} chars")
        if size <= budget:
            return ContextPack(**fields)

        for key in ("dialogue_recap", "recent_events", "snippets", "objectives"):
            items = list(fields[key])
            while items and size > budget:
                # Recap and events are oldest-first; snippets are best-first.
                if key in ("dialogue_recap", "recent_events"):
                    items.pop(0)
                else:
                    items.pop()
                fields[key] = items
                size = self._size(fields)
            if debug_enabled("DEBUG_CONTEXT"):
                log_deterministic(f"[{turn_id}] trimmed {key} to {len(items)} -> {size} chars")
            if size <= budget:
                return ContextPack(**fields)

        # Scene-listed participants come first; drop from the tail, never the player.
        participants = list(fields["participants"])
        droppable = [index for index, ref in enumerate(participants) if ref.kind != "player"]
        while droppable and size > budget:
            participants.pop(droppable.pop())
            fields["participants"] = participants
            size = self._size(fields)
        if debug_enabled("DEBUG_CONTEXT"):
            log_deterministic(f"[{turn_id}] trimmed participants to {len(participants)} -> {size} chars")

        for key in ("scene_summary", "player_input"):
            while fields[key] and size > budget:
                fields[key] = self._clip(fields[key], size, budget)
                size = self._size(fields)

        resume = fields["resume"]
        if resume is not None:
            for key in ("original_input", "answer"):
                while getattr(resume, key) and size > budget:
                    resume = resume.model_copy(update={key: self._clip(getattr(resume, key), size, budget)})
                    fields["resume"] = resume
                    size = self._size(fields)

        if size > budget:
            log_error(f"[{turn_id}] context budget {budget} is below the minimal pack size {size}")
        return ContextPack(**fields)
