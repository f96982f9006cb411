"""Deterministic reference agents.

These run without a language model, which makes them useful for offline
play, examples and tests. Each one reads only the ContextPack and proposes
changes through its DomainResult.
"""

from __future__ import annotations

from typing import List, Optional

from ..logging_utils import log_deterministic
from ..schemas import (
    ContextPack,
    DomainResult,
    EntityChange,
    ParticipantRef,
    PlotDirective,
    PromptDescriptor,
    ProposedEvent,
    SceneState,
    StateDelta,
)
from .base import AgentScope


def _mentioned(text: str, refs: List[ParticipantRef]) -> Optional[ParticipantRef]:
    for ref in refs:
        if (ref.name and ref.name.lower() in text) or ref.entity_id.lower() in text:
            return ref
    return None


def _npcs(context: ContextPack, directive: PlotDirective) -> List[ParticipantRef]:
    others = [ref for ref in context.participants if ref.kind not in ("player", "location")]
    spotlight = [ref for ref in others if ref.entity_id in directive.spotlight]
    return spotlight + [ref for ref in others if ref not in spotlight]


class DialogueAgent:
    name = "dialogue"

    async def handle(
        self, context: ContextPack, directive: PlotDirective, scope: AgentScope
    ) -> DomainResult:
        said = context.player_input.strip()
        if not said:
            return DomainResult(status="completed", narrative="The world waits patiently. What do you do?")

        speakers = _npcs(context, directive)
        speaker = _mentioned(said.lower(), speakers) or (speakers[0] if speakers else None)
        speaker_name = speaker.name if speaker and speaker.name else "The barkeep"
        reply = f"{speaker_name} nods thoughtfully and replies with a friendly smile."
        refs = [speaker.entity_id] if speaker else []

        delta = StateDelta(
            time_advance_minutes=1,
            events=[
                ProposedEvent(
                    type="DialogueSpoken",
                    summary=f'Player: "{said}"',
                    payload={"player": True, "text": said},
                ),
                ProposedEvent(
                    type="DialogueSpoken",
                    summary=f"{speaker_name}: {reply}",
                    entity_refs=refs,
                    payload={"player": False, "text": reply},
                ),
            ],
        )
        return DomainResult(
            status="completed",
            narrative=f'You say, "{said}". {reply}',
            delta=delta,
        )


class CombatAgent:
    """Resolves a single attack against a participant named in the input."""

    name = "combat"

    def __init__(self, damage_formula: str = "1d6+1"):
        self.damage_formula = damage_formula

    async def handle(
        self, context: ContextPack, directive: PlotDirective, scope: AgentScope
    ) -> DomainResult:
        target = _mentioned(context.player_input.lower(), _npcs(context, directive))
        if target is None:
            return DomainResult(status="completed", narrative="You swing at empty air.")
        label = target.name or target.entity_id
        if target.attributes.get("defeated"):
            return DomainResult(status="completed", narrative=f"{label} is already down.")

        damage = scope.rng.roll_formula(self.damage_formula)
        log_deterministic(f"[{scope.turn_id}] combat: {self.damage_formula} = {damage} against {target.entity_id}")

        changes: List[EntityChange] = []
        events = [
            ProposedEvent(
                type="CombatTurn",
                summary=f"Player hits {label} for {damage} damage",
                entity_refs=[target.entity_id],
                payload={"damage": damage},
            )
        ]
        narrative = f"You strike {label} for {damage} damage."

        hp = target.attributes.get("hp")
        if isinstance(hp, (int, float)):
            changes.append(
                EntityChange(entity_id=target.entity_id, op="increment", attribute="hp", value=-damage)
            )
            if hp - damage <= 0:
                changes.append(
                    EntityChange(entity_id=target.entity_id, op="set", attribute="defeated", value=True)
                )
                events.append(
                    ProposedEvent(
                        type="EntityDefeated",
                        summary=f"{label} is defeated",
                        entity_refs=[target.entity_id],
                        payload={
                            "fact": f"{label} was defeated in combat.",
                            "subject_key": f"{target.entity_id}:status",
                        },
                    )
                )
                narrative += f" {label} collapses."

        return DomainResult(
            status="completed",
            narrative=narrative,
            delta=StateDelta(entity_changes=changes, events=events, time_advance_minutes=1),
        )


class ExplorationAgent:
    """Searching, moving between locations and picking locks.

    Lock picking pauses the turn for a ``dice_roll`` the player makes; the
    resumed turn compares the reported total with the lock's DC.
    """

    name = "exploration"

    def __init__(self, lock_formula: str = "d20+DEX", default_dc: int = 12):
        self.lock_formula = lock_formula
        self.default_dc = default_dc

    async def handle(
        self, context: ContextPack, directive: PlotDirective, scope: AgentScope
    ) -> DomainResult:
        text = context.player_input.lower()
        if self._answers_lock_roll(context):
            return self._resolve_lock(context)
        if "lock" in text or "pick" in text:
            return self._ask_for_roll(context, text)

        destinations = [ref for ref in context.participants if ref.kind == "location"]
        destination = _mentioned(text, destinations)
        if destination is not None and any(word in text for word in ("go", "enter", "walk", "head")):
            return self._travel(context, destination)
        return self._search(context)

    def _answers_lock_roll(self, context: ContextPack) -> bool:
        resume = context.resume
        return (
            resume is not None
            and resume.requested_by == self.name
            and resume.prompt.type == "dice_roll"
            and bool(resume.prompt.data.get("target"))
        )

    def _ask_for_roll(self, context: ContextPack, text: str) -> DomainResult:
        locked = [ref for ref in context.participants if ref.attributes.get("locked")]
        target = _mentioned(text, locked) or (locked[0] if locked else None)
        if target is None:
            return DomainResult(status="completed", narrative="There is no lock here worth picking.")

        dc = int(target.attributes.get("dc", self.default_dc))
        label = target.name or target.entity_id
        return DomainResult(
            status="needs_player_input",
            narrative=f"You kneel by the {label} and study the lock.",
            prompt=PromptDescriptor(
                type="dice_roll",
                data={"formula": self.lock_formula, "dc": dc, "target": target.entity_id},
                message=f"Roll {self.lock_formula} to pick the lock on the {label}.",
            ),
        )

    def _resolve_lock(self, context: ContextPack) -> DomainResult:
        resume = context.resume
        data = resume.prompt.data
        try:
            total = int(resume.answer.strip())
        except ValueError:
            return DomainResult(
                status="needs_player_input",
                narrative="That isn't a roll.",
                prompt=resume.prompt.model_copy(
                    update={"message": f"Enter the total of your {data.get('formula', 'roll')}."}
                ),
            )

        target_id = data.get("target", "")
        target = context.participant(target_id)
        label = target.name if target and target.name else target_id
        dc = int(data.get("dc", self.default_dc))
        if total < dc:
            return DomainResult(
                status="completed",
                narrative=f"You rolled {total}. The pick slips; the {label} stays locked.",
                delta=StateDelta(
                    time_advance_minutes=5,
                    events=[
                        ProposedEvent(
                            type="LockPickFailed",
                            summary=f"Failed to pick the lock on the {label}",
                            entity_refs=[target_id] if target else [],
                            payload={"roll": total, "dc": dc},
                        )
                    ],
                ),
            )

        return DomainResult(
            status="completed",
            narrative=f"You rolled {total}. The {label} clicks open.",
            delta=StateDelta(
                time_advance_minutes=5,
                entity_changes=[
                    EntityChange(entity_id=target_id, op="set", attribute="locked", value=False)
                ],
                events=[
                    ProposedEvent(
                        type="LockOpened",
                        summary=f"Picked the lock on the {label}",
                        entity_refs=[target_id],
                        payload={
                            "roll": total,
                            "dc": dc,
                            "fact": f"The {label} has been unlocked.",
                            "subject_key": f"{target_id}:locked",
                        },
                    )
                ],
            ),
        )

    def _travel(self, context: ContextPack, destination: ParticipantRef) -> DomainResult:
        label = destination.name or destination.entity_id
        changes = []
        if context.participant("player") is not None:
            changes.append(
                EntityChange(entity_id="player", op="set", attribute="location", value=destination.entity_id)
            )
        return DomainResult(
            status="completed",
            narrative=f"You make your way to {label}.",
            delta=StateDelta(
                time_advance_minutes=10,
                entity_changes=changes,
                scene_changes=[
                    SceneState(
                        scene_id=destination.entity_id,
                        summary=f"You are in {label}.",
                        participants=["player"] if changes else [],
                    )
                ],
                events=[
                    ProposedEvent(
                        type="LocationEntered",
                        summary=f"Entered {label}",
                        entity_refs=[destination.entity_id],
                        payload={
                            "fact": f"The player travelled to {label}.",
                            "subject_key": "player:location",
                        },
                    )
                ],
            ),
        )

    def _search(self, context: ContextPack) -> DomainResult:
        summary = context.scene_summary or "Nothing stands out."
        return DomainResult(
            status="completed",
            narrative=f"You take a careful look around. {summary}",
            delta=StateDelta(
                time_advance_minutes=5,
                events=[ProposedEvent(type="AreaSearched", summary=f"Searched {context.scene_id or 'the area'}")],
            ),
        )
