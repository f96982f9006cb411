"""
Pydantic schemas for the Turnkeeper turn engine.

Every contract that crosses a component boundary is defined here: the
canonical world snapshot, proposed and committed changes, agent decisions,
pending player prompts, events and facts.

Design Philosophy:
- Upstream components only ever build *proposals* (StateDelta, ModulePatch);
  committed history is represented by immutable Event records
- Decision models validate their own shape, so a language-model reply that
  violates a contract fails at `model_validate` before anything trusts it
- Metadata/payload dicts keep content-specific data out of the core schema
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Literals and constants
# ============================================================================

TurnStatus = Literal["committed", "rejected", "paused"]
GuardStatus = Literal["valid", "reject", "improv", "needs_player_input"]
DomainStatus = Literal["completed", "continue", "needs_player_input", "error"]
CommitStatus = Literal["committed", "duplicate", "rejected"]
AppendStatus = Literal["ok", "duplicate", "conflict"]
QuestStatus = Literal["not_started", "active", "completed", "failed"]
ChangeOp = Literal["set", "increment", "create", "remove"]

MODULE_PATCHED_EVENT = "ModulePatched"
DIALOGUE_EVENT = "DialogueSpoken"

# Entity fields addressable by an EntityChange; anything else lives in attributes.
ENTITY_CORE_FIELDS = ("name", "kind", "location")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def time_block(clock: datetime) -> str:
    """Map a simulated clock to a coarse time-of-day label."""

    hour = clock.hour
    if 5 <= hour < 8:
        return "dawn"
    if 8 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


# ============================================================================
# World snapshot
# ============================================================================


class Entity(BaseModel):
    """A canonical thing in the world: the player, an NPC, a door, a shop."""

    entity_id: str = Field(..., min_length=1, description="Unique entity identifier")
    kind: str = Field("npc", description="Entity kind (player, npc, location, item, shop)")
    name: str = Field("", description="Display name used in narrative")
    location: Optional[str] = Field(None, description="Scene/location id the entity is in")
    # Free-form numeric and flag attributes (hp, gold, locked, disposition, ...)
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Entity attributes")
    tags: List[str] = Field(default_factory=list, description="Labels (hostile, merchant, ...)")


class Objective(BaseModel):
    objective_id: str = Field(..., min_length=1)
    text: str = Field(..., description="What the player needs to do")
    done: bool = Field(False, description="Whether the objective is complete")


class QuestState(BaseModel):
    """Progress of one quest in the session."""

    quest_id: str = Field(..., min_length=1)
    title: str = Field(..., description="Quest title")
    status: QuestStatus = Field("active", description="Quest lifecycle status")
    objectives: List[Objective] = Field(default_factory=list)

    def open_objectives(self) -> List[Objective]:
        return [objective for objective in self.objectives if not objective.done]


class SceneState(BaseModel):
    scene_id: str = Field(..., min_length=1, description="Current location/scene id")
    summary: str = Field("", description="Short description of the scene")
    participants: List[str] = Field(default_factory=list, description="Entity ids present")


class ModulePatch(BaseModel):
    """A proposed addition to the authored adventure content.

    Only the Guard proposes these (when improvising around content the module
    lacks). Kind, name and power are deliberately loose here: the World Writer
    enforces the allowed kinds and the power budget at commit time so that a
    bad patch degrades the turn to a rejection instead of failing earlier.
    """

    patch_id: str = Field(..., description="Identifier for the new content")
    kind: str = Field(..., description="Content kind (npc, shop, location, item)")
    name: str = Field("", description="Display name")
    description: str = Field("", description="What the new content is")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    power: int = Field(0, description="Power rating checked against the patch budget")


class AdventureModule(BaseModel):
    """Authored adventure content the Plot Director steers toward."""

    module_id: str
    title: str
    setting: str = ""
    theme: str = ""
    plot_hooks: List[str] = Field(default_factory=list)
    content_ids: List[str] = Field(
        default_factory=list, description="Ids of authored NPCs/locations/items"
    )


class WorldSnapshot(BaseModel):
    """Canonical state of one session's world at a committed version.

    Only the World Writer produces new snapshots; every other component reads
    them. `version` increases by exactly one per commit and `last_sequence`
    tracks the highest event sequence number appended so far.
    """

    session_id: str = Field(..., min_length=1)
    world_id: str = Field("", description="Serialization key for commits (defaults to session)")
    version: int = Field(0, ge=0, description="Number of commits applied")
    clock: datetime = Field(..., description="Simulated time")
    weather: str = Field("clear")
    scene: SceneState
    entities: Dict[str, Entity] = Field(default_factory=dict)
    quests: Dict[str, QuestState] = Field(default_factory=dict)
    module_additions: Dict[str, ModulePatch] = Field(default_factory=dict)
    last_sequence: int = Field(0, ge=0, description="Highest committed event sequence")

    @model_validator(mode="after")
    def _default_world(self) -> "WorldSnapshot":
        if not self.world_id:
            self.world_id = self.session_id
        return self

    @property
    def time_of_day(self) -> str:
        return time_block(self.clock)


# ============================================================================
# Proposed changes
# ============================================================================


class EntityChange(BaseModel):
    """One ordered change to an entity.

    - ``create``: ``entity`` carries the new record
    - ``remove``: deletes the entity
    - ``set``: ``attribute`` = ``value`` (core field or attributes key)
    - ``increment``: numeric ``attributes[attribute] += value``
    """

    entity_id: str = Field(..., min_length=1)
    op: ChangeOp
    attribute: Optional[str] = None
    value: Any = None
    entity: Optional[Entity] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "EntityChange":
        if self.op in ("set", "increment") and not self.attribute:
            raise ValueError(f"'{self.op}' change on {self.entity_id} needs an attribute")
        if self.op == "increment" and (
            isinstance(self.value, bool) or not isinstance(self.value, (int, float))
        ):
            raise ValueError(f"increment on {self.entity_id}.{self.attribute} needs a number")
        if self.op == "create":
            if self.entity is None:
                raise ValueError(f"create change for {self.entity_id} needs an entity")
            if self.entity.entity_id != self.entity_id:
                raise ValueError("create change entity_id does not match its entity")
        return self


class QuestChange(BaseModel):
    quest_id: str = Field(..., min_length=1)
    status: Optional[QuestStatus] = None
    complete_objectives: List[str] = Field(default_factory=list)


class ProposedEvent(BaseModel):
    """An event an agent wants appended if (and only if) the turn commits."""

    type: str = Field(..., min_length=1, description="Event type (CombatTurn, LockOpened, ...)")
    summary: str = Field("", description="One-line human-readable summary")
    entity_refs: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    parent_ids: List[str] = Field(default_factory=list, description="Causal parent event ids")


class StateDelta(BaseModel):
    """Accumulated, not-yet-committed changes for one turn.

    Agents return partial deltas; the coordinator folds them together with
    `merge_deltas` in handoff order. Nothing here is applied until the turn is
    declared completed and handed to the World Writer.
    """

    turn_id: str = Field("", description="Owning turn (stamped by the coordinator)")
    entity_changes: List[EntityChange] = Field(default_factory=list)
    quest_changes: List[QuestChange] = Field(default_factory=list)
    scene_changes: List[SceneState] = Field(default_factory=list)
    time_advance_minutes: int = Field(0, ge=0)
    events: List[ProposedEvent] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.entity_changes
            or self.quest_changes
            or self.scene_changes
            or self.time_advance_minutes
            or self.events
        )

    def module_patch_events(self) -> List[ProposedEvent]:
        return [event for event in self.events if event.type == MODULE_PATCHED_EVENT]


# ============================================================================
# Committed history
# ============================================================================


class Event(BaseModel):
    """Immutable, append-only record of something that happened."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Unique event id")
    sequence: int = Field(..., ge=1, description="Monotonic per-session sequence")
    session_id: str
    turn_id: str = Field(..., description="Turn that committed this event")
    type: str
    summary: str = ""
    entity_refs: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    parent_ids: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(..., description="Simulated time the event was committed")


class Fact(BaseModel):
    """Durable, citation-backed statement promoted after a commit.

    Facts are never edited. A contradicting fact is written with
    ``supersedes`` pointing at the old one, which hides it from retrieval.
    """

    model_config = ConfigDict(frozen=True)

    fact_id: str = Field(default_factory=lambda: uuid4().hex)
    session_id: str = ""
    statement: str = Field(..., min_length=1)
    citations: List[str] = Field(..., min_length=1, description="Event ids this fact derives from")
    entity_refs: List[str] = Field(default_factory=list)
    quest_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    subject_key: Optional[str] = Field(None, description="Key for supersession (same subject)")
    supersedes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class CommitResult(BaseModel):
    turn_id: str
    status: CommitStatus
    events: List[Event] = Field(default_factory=list)
    state_version: Optional[int] = None
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Context
# ============================================================================


class ParticipantRef(BaseModel):
    entity_id: str
    name: str = ""
    kind: str = ""
    attributes: Dict[str, Any] = Field(default_factory=dict)


class EventPreview(BaseModel):
    sequence: int
    type: str
    summary: str = ""


class ObjectivePreview(BaseModel):
    quest_id: str
    quest_title: str = ""
    objective_id: str
    text: str


class RetrievalSnippet(BaseModel):
    text: str
    citation_ids: List[str] = Field(default_factory=list)
    score: float = 0.0
    fact_id: Optional[str] = None


class PromptDescriptor(BaseModel):
    """What the player is being asked for (dice roll, choice, retry, ...)."""

    type: str = Field(..., min_length=1, description="Prompt type (dice_roll, choice, retry, continue)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Prompt details, e.g. formula")
    message: str = Field("", description="Text shown to the player")


class ResumeContext(BaseModel):
    """The paused turn a new input is answering."""

    resumed_turn_id: str
    requested_by: str
    original_input: str
    prompt: PromptDescriptor
    answer: str


class ContextPack(BaseModel):
    """Read-only, turn-scoped snapshot handed to Guard, Director and agents.

    Built fresh for every turn and discarded when the turn ends; it is never
    persisted as conversational history.
    """

    model_config = ConfigDict(frozen=True)

    turn_id: str
    session_id: str
    player_input: str
    scene_id: str = ""
    scene_summary: str = ""
    participants: List[ParticipantRef] = Field(default_factory=list)
    dialogue_recap: List[str] = Field(default_factory=list)
    recent_events: List[EventPreview] = Field(default_factory=list)
    objectives: List[ObjectivePreview] = Field(default_factory=list)
    time_of_day: str = ""
    weather: str = ""
    snippets: List[RetrievalSnippet] = Field(default_factory=list)
    resume: Optional[ResumeContext] = None
    degraded: bool = Field(False, description="True when built from a failed read")

    @classmethod
    def minimal(
        cls,
        *,
        turn_id: str,
        session_id: str,
        player_input: str,
        resume: Optional[ResumeContext] = None,
    ) -> "ContextPack":
        return cls(
            turn_id=turn_id,
            session_id=session_id,
            player_input=player_input,
            resume=resume,
            degraded=True,
        )

    def participant(self, entity_id: str) -> Optional[ParticipantRef]:
        for ref in self.participants:
            if ref.entity_id == entity_id:
                return ref
        return None


# ============================================================================
# Decisions
# ============================================================================


class GuardDecision(BaseModel):
    status: GuardStatus
    narrative: Optional[str] = Field(None, description="In-world text when rejecting")
    patch: Optional[ModulePatch] = Field(None, description="Proposed content when improvising")
    prompt: Optional[PromptDescriptor] = Field(None, description="What to ask the player")
    reason: str = ""

    @model_validator(mode="after")
    def _check_payload(self) -> "GuardDecision":
        if self.status == "improv" and self.patch is None:
            raise ValueError("improv decision requires a patch")
        if self.status == "needs_player_input" and self.prompt is None:
            raise ValueError("needs_player_input decision requires a prompt")
        return self


class PlotDirective(BaseModel):
    """Advisory steering for the turn. Never persisted, never mutates state."""

    target_objectives: List[str] = Field(default_factory=list)
    suggested_beat: Optional[str] = None
    pacing: str = "normal"
    starting_agent: Optional[str] = None
    spotlight: List[str] = Field(default_factory=list, description="Entity ids to feature")

    @classmethod
    def empty(cls) -> "PlotDirective":
        return cls()


class DomainResult(BaseModel):
    status: DomainStatus
    narrative: str = ""
    delta: Optional[StateDelta] = None
    next_agent: Optional[str] = Field(None, description="Handoff target when status=continue")
    prompt: Optional[PromptDescriptor] = None
    tool_calls: int = Field(0, ge=0, description="Tool calls spent producing this result")
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "DomainResult":
        if self.status == "continue" and not self.next_agent:
            raise ValueError("continue result must name next_agent")
        if self.status == "needs_player_input" and self.prompt is None:
            raise ValueError("needs_player_input result requires a prompt")
        return self


class PendingAction(BaseModel):
    """A paused turn awaiting player input. At most one per session."""

    turn_id: str
    session_id: str
    requested_by: str
    prompt: PromptDescriptor
    original_input: str
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    @classmethod
    def create(
        cls,
        *,
        turn_id: str,
        session_id: str,
        requested_by: str,
        prompt: PromptDescriptor,
        original_input: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "PendingAction":
        created = now or utc_now()
        return cls(
            turn_id=turn_id,
            session_id=session_id,
            requested_by=requested_by,
            prompt=prompt,
            original_input=original_input,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at


# ============================================================================
# Turn I/O
# ============================================================================


class TurnInput(BaseModel):
    """One player input. ``resume_of``/``answer`` answer a paused turn."""

    session_id: str = Field(..., min_length=1)
    text: str = ""
    resume_of: Optional[str] = None
    answer: Optional[str] = None

    @model_validator(mode="after")
    def _check_resume(self) -> "TurnInput":
        if self.resume_of and self.answer is None:
            raise ValueError("resume_of requires an answer")
        return self


class TurnOutcome(BaseModel):
    turn_id: str
    session_id: str
    status: TurnStatus
    narrative: str = ""
    prompt: Optional[PromptDescriptor] = None
    events: List[Event] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)
    reason: Optional[str] = Field(None, description="Why the turn was rejected or paused")
    trace: List[str] = Field(default_factory=list, description="States visited, in order")
