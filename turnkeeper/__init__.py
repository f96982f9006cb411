"""
Turnkeeper - turn orchestration for LLM-driven tabletop role-playing.

One player input becomes one turn: context is assembled, a Guard validates
the intent, a Plot Director advises, domain agents hand off to each other,
and a World Writer commits the accumulated changes atomically (or nothing).

Fully decoupled library: no file I/O, database or global state required.
All collaborators are injected by the caller.
"""

__version__ = "0.1.0"

from .coordinator import PendingActionError, TurnCoordinator, TurnState
from .config import Config, TurnSettings

from .persistence import (
    CommitConflictError,
    InMemoryWorldStore,
    JsonWorldStore,
    PostgresWorldStore,
    StoreUnavailableError,
    WorldStore,
)
from .retrieval import InMemoryRetrievalIndex, RetrievalIndex
from .invoke import (
    DecisionError,
    InvokeResult,
    Invoker,
    LLMInvoker,
    ScriptedInvoker,
    ToolCallRequest,
    ToolSpec,
    parse_decision,
)
from .prompts import DEFAULT_PROMPTS, PromptLibrary, PromptTemplate, render_prompt
from .context_broker import ContextBroker
from .guard import Guard, GuardCheck, LLMGuard, RuleGuard
from .director import KeywordPlotDirector, LLMPlotDirector, PlotDirector, safe_direct
from .agents import (
    AgentRegistry,
    AgentScope,
    CombatAgent,
    DialogueAgent,
    DomainAgent,
    ExplorationAgent,
    LLMDomainAgent,
    default_registry,
)
from .world_writer import WorldWriter
from .curator import DURABLE_EVENT_TYPES, MemoryCurator
from .deltas import apply_delta, merge_deltas, stamp_events, validate_delta
from .rng import TurnRandom, turn_seed
from .local_llm import LocalLLMError

# Core schemas
from .schemas import (
    AdventureModule,
    CommitResult,
    ContextPack,
    DomainResult,
    Entity,
    EntityChange,
    Event,
    Fact,
    GuardDecision,
    ModulePatch,
    Objective,
    PendingAction,
    PlotDirective,
    PromptDescriptor,
    ProposedEvent,
    QuestChange,
    QuestState,
    ResumeContext,
    RetrievalSnippet,
    SceneState,
    StateDelta,
    TurnInput,
    TurnOutcome,
    WorldSnapshot,
)

__all__ = [
    # Main class
    "TurnCoordinator",
    "TurnState",
    "TurnSettings",
    "Config",
    # Collaborators
    "WorldStore",
    "InMemoryWorldStore",
    "JsonWorldStore",
    "PostgresWorldStore",
    "RetrievalIndex",
    "InMemoryRetrievalIndex",
    "Invoker",
    "InvokeResult",
    "ToolCallRequest",
    "ToolSpec",
    "LLMInvoker",
    "ScriptedInvoker",
    "parse_decision",
    "PromptTemplate",
    "PromptLibrary",
    "DEFAULT_PROMPTS",
    "render_prompt",
    # Turn components
    "ContextBroker",
    "Guard",
    "GuardCheck",
    "RuleGuard",
    "LLMGuard",
    "PlotDirector",
    "KeywordPlotDirector",
    "LLMPlotDirector",
    "safe_direct",
    "AgentRegistry",
    "AgentScope",
    "DomainAgent",
    "DialogueAgent",
    "CombatAgent",
    "ExplorationAgent",
    "LLMDomainAgent",
    "default_registry",
    "WorldWriter",
    "MemoryCurator",
    "DURABLE_EVENT_TYPES",
    "merge_deltas",
    "validate_delta",
    "apply_delta",
    "stamp_events",
    "TurnRandom",
    "turn_seed",
    # Errors
    "CommitConflictError",
    "StoreUnavailableError",
    "DecisionError",
    "PendingActionError",
    "LocalLLMError",
    # Schemas
    "AdventureModule",
    "CommitResult",
    "ContextPack",
    "DomainResult",
    "Entity",
    "EntityChange",
    "Event",
    "Fact",
    "GuardDecision",
    "ModulePatch",
    "Objective",
    "PendingAction",
    "PlotDirective",
    "PromptDescriptor",
    "ProposedEvent",
    "QuestChange",
    "QuestState",
    "ResumeContext",
    "RetrievalSnippet",
    "SceneState",
    "StateDelta",
    "TurnInput",
    "TurnOutcome",
    "WorldSnapshot",
]
