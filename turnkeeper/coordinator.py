"""
Turn Coordinator: drives one player input through the turn state machine.

    Built -> Guarded -> Directed -> Handoff* -> Accumulating -> Committing -> Done
                 |                      |
                 +-> Rejected / Paused  +-> Rejected / Paused

Guarantees per turn:
- at most one commit, and only from Committing
- no intermediate agent result ever reaches the store
- Rejected and Paused turns leave canonical state untouched
- every turn ends Done, Rejected or Paused; only cancellation escapes

Turns for one session run strictly one after another.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from .agents.base import AgentRegistry, AgentScope
from .config import TurnSettings
from .context_broker import ContextBroker
from .curator import MemoryCurator
from .deltas import merge_deltas
from .director import PlotDirector, safe_direct
from .guard import Guard
from .logging_utils import log_deterministic, log_error, log_info, log_success
from .persistence import WorldStore
from .retrieval import RetrievalIndex
from .rng import TurnRandom
from .schemas import (
    MODULE_PATCHED_EVENT,
    AdventureModule,
    CommitResult,
    DomainResult,
    Event,
    Fact,
    GuardDecision,
    PendingAction,
    PromptDescriptor,
    ProposedEvent,
    ResumeContext,
    StateDelta,
    TurnInput,
    TurnOutcome,
    utc_now,
)
from .world_writer import WorldWriter


# =============================
# Module-level Exceptions
# =============================


class PendingActionError(Exception):
    """Raised when a resume does not match a live PendingAction."""

    def __init__(self, *, session_id: str, resume_of: str, reason: str) -> None:
        self.session_id = session_id
        self.resume_of = resume_of
        self.reason = reason
        super().__init__(
            f"Cannot resume turn {resume_of} in session {session_id}: {reason}\n"
            "Send a fresh input (without resume_of) to continue playing."
        )


class TurnState(str, Enum):
    BUILT = "built"
    GUARDED = "guarded"
    DIRECTED = "directed"
    HANDOFF = "handoff"
    ACCUMULATING = "accumulating"
    COMMITTING = "committing"
    DONE = "done"
    REJECTED = "rejected"
    PAUSED = "paused"


GENERIC_REJECT_NARRATIVE = "That doesn't work out. Nothing changes."
COMMIT_FAILURE_NARRATIVE = "The moment slips away before anything comes of it. Nothing changes."
STALE_RESUME_NARRATIVE = "There is nothing waiting on that answer anymore."
BUDGET_PROMPT = PromptDescriptor(
    type="continue",
    message="That is going to take more than one step. Do you keep going?",
)
RETRY_PROMPT = PromptDescriptor(
    type="retry",
    message="The world hesitates for a moment. Try that again.",
)


@dataclass
class _TurnRun:
    """Mutable bookkeeping private to one process_turn call."""

    turn_id: str
    session_id: str
    player_input: str
    rng: TurnRandom
    trace: List[str] = field(default_factory=list)
    narratives: List[str] = field(default_factory=list)
    # Pending action consumed by (or made stale by) this turn; cleared when the turn ends.
    superseded_pending: Optional[str] = None

    def enter(self, state: TurnState, detail: str = "") -> None:
        self.trace.append(state.value if not detail else f"{state.value}:{detail}")
        suffix = f" ({detail})" if detail else ""
        log_deterministic(f"[{self.turn_id}] -> {state.value}{suffix}")


class TurnCoordinator:
    """Runs turns. Every collaborator is injected; nothing here is global.

    Args:
        store: Canonical world store (read by the broker, written only via the writer)
        index: Retrieval index for facts
        guard: Intent validator
        director: Advisory plot director (may be None)
        registry: Domain agents available for handoffs
        writer: World Writer (defaults to one over ``store``)
        curator: Memory Curator (defaults to one over ``index``)
        settings: Budgets, timeouts and context bounds
        module: Authored adventure content passed to the director
        broker: Context Broker (defaults to one using ``settings``)
        clock: Wall-clock source for PendingAction expiry
    """

    def __init__(
        self,
        *,
        store: WorldStore,
        index: RetrievalIndex,
        guard: Guard,
        director: Optional[PlotDirector],
        registry: AgentRegistry,
        writer: Optional[WorldWriter] = None,
        curator: Optional[MemoryCurator] = None,
        settings: Optional[TurnSettings] = None,
        module: Optional[AdventureModule] = None,
        broker: Optional[ContextBroker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or TurnSettings()
        self.store = store
        self.index = index
        self.guard = guard
        self.director = director
        self.registry = registry
        self.module = module
        self.writer = writer or WorldWriter(
            store, self.settings, known_content_ids=module.content_ids if module else ()
        )
        self.curator = curator or MemoryCurator(index)
        self.broker = broker or ContextBroker(self.settings)
        self.clock = clock
        self._session_locks: Dict[str, asyncio.Lock] = {}

    async def process_turn(self, turn_input: TurnInput) -> TurnOutcome:
        """Run one input to a terminal outcome (committed, rejected or paused)."""

        lock = self._session_locks.setdefault(turn_input.session_id, asyncio.Lock())
        async with lock:
            return await self._run_turn(turn_input)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_turn(self, turn_input: TurnInput) -> TurnOutcome:
        turn_id = uuid4().hex
        session_id = turn_input.session_id

        try:
            pending = await self.store.get_pending_action(session_id)
        except Exception as exc:
            log_error(f"[{turn_id}] could not read pending action: {exc}")
            pending = None

        resume: Optional[ResumeContext] = None
        player_input = turn_input.text
        if turn_input.resume_of:
            try:
                pending = await self._check_resume(turn_input, pending)
            except PendingActionError as exc:
                log_error(f"[{turn_id}] {exc.reason}")
                run = _TurnRun(turn_id, session_id, player_input, TurnRandom.for_turn(turn_id, player_input))
                return await self._reject(run, STALE_RESUME_NARRATIVE, reason=exc.reason)
            player_input = pending.original_input
            resume = ResumeContext(
                resumed_turn_id=pending.turn_id,
                requested_by=pending.requested_by,
                original_input=pending.original_input,
                prompt=pending.prompt,
                answer=turn_input.answer or "",
            )

        run = _TurnRun(turn_id, session_id, player_input, TurnRandom.for_turn(turn_id, player_input))
        if pending is not None:
            if resume is None:
                log_info(f"[{turn_id}] new input discards pending turn {pending.turn_id}")
            run.superseded_pending = pending.turn_id

        context = await self.broker.build_context(
            player_input,
            self.store,
            self.index,
            session_id=session_id,
            turn_id=turn_id,
            resume=resume,
        )
        run.enter(TurnState.BUILT, "degraded" if context.degraded else "")

        accumulated = StateDelta(turn_id=turn_id)
        try:
            decision = await asyncio.wait_for(
                self.guard.evaluate(player_input, context, run.rng),
                timeout=self.settings.guard_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log_error(f"[{turn_id}] guard timed out")
            return await self._pause(run, "guard", RETRY_PROMPT, reason="guard timed out")
        except Exception as exc:
            return await self._reject(run, GENERIC_REJECT_NARRATIVE, reason=f"guard failed: {exc}")
        if not isinstance(decision, GuardDecision):
            return await self._reject(
                run, GENERIC_REJECT_NARRATIVE, reason=f"guard returned {type(decision).__name__}, not a GuardDecision"
            )

        if decision.status == "reject":
            return await self._reject(
                run, decision.narrative or GENERIC_REJECT_NARRATIVE, reason=decision.reason or "guard rejected"
            )
        if decision.status == "needs_player_input":
            return await self._pause(run, "guard", decision.prompt, reason=decision.reason or "guard needs input")
        if decision.status == "improv":
            patch = decision.patch
            accumulated = merge_deltas(
                accumulated,
                StateDelta(
                    events=[
                        ProposedEvent(
                            type=MODULE_PATCHED_EVENT,
                            summary=f"New {patch.kind} appears: {patch.name}",
                            payload={"patch": patch.model_dump(mode="json")},
                        )
                    ]
                ),
            )
        run.enter(TurnState.GUARDED, decision.status)

        directive = await safe_direct(
            self.director, context, self.module, timeout=self.settings.director_timeout_seconds
        )
        run.enter(TurnState.DIRECTED)

        agent_name = self._starting_agent(resume, directive.starting_agent)
        if agent_name is None:
            return await self._reject(
                run, GENERIC_REJECT_NARRATIVE, reason="no domain agent available for this turn"
            )

        rounds = 0
        tool_calls: Dict[str, int] = {}
        note: Optional[str] = None
        while True:
            if rounds >= self.settings.max_handoff_rounds:
                log_error(f"[{turn_id}] handoff budget of {rounds} rounds exhausted")
                return await self._pause(run, agent_name, BUDGET_PROMPT, reason="handoff budget exhausted")
            if tool_calls.get(agent_name, 0) >= self.settings.max_tool_calls_per_agent:
                log_error(f"[{turn_id}] tool budget exhausted for {agent_name}")
                return await self._pause(run, agent_name, BUDGET_PROMPT, reason=f"tool budget exhausted for {agent_name}")

            rounds += 1
            run.enter(TurnState.HANDOFF, agent_name)
            agent = self.registry.get(agent_name)
            scope = AgentScope(
                turn_id=turn_id,
                rng=run.rng,
                accumulated=accumulated.model_copy(deep=True),
                round=rounds,
                tool_budget=self.settings.max_tool_calls_per_agent - tool_calls.get(agent_name, 0),
                note=note,
            )
            try:
                result: DomainResult = await asyncio.wait_for(
                    agent.handle(context, directive, scope),
                    timeout=self.settings.agent_timeout_seconds,
                )
            except asyncio.TimeoutError:
                log_error(f"[{turn_id}] agent {agent_name} timed out")
                return await self._pause(run, agent_name, RETRY_PROMPT, reason=f"{agent_name} timed out")
            except Exception as exc:
                return await self._reject(
                    run, GENERIC_REJECT_NARRATIVE, reason=f"{agent_name} failed: {exc}"
                )
            if not isinstance(result, DomainResult):
                return await self._reject(
                    run,
                    GENERIC_REJECT_NARRATIVE,
                    reason=f"{agent_name} returned {type(result).__name__}, not a DomainResult",
                )

            tool_calls[agent_name] = tool_calls.get(agent_name, 0) + result.tool_calls
            if result.narrative:
                run.narratives.append(result.narrative)

            if result.status == "error":
                return await self._reject(
                    run, GENERIC_REJECT_NARRATIVE, reason=f"{agent_name} error: {result.error or 'unspecified'}"
                )
            if result.status == "needs_player_input":
                return await self._pause(run, agent_name, result.prompt, reason=f"{agent_name} needs input")

            accumulated = merge_deltas(accumulated, result.delta)
            if result.status == "completed":
                break

            if result.next_agent not in self.registry:
                return await self._reject(
                    run, GENERIC_REJECT_NARRATIVE, reason=f"unknown handoff target '{result.next_agent}'"
                )
            note = result.narrative or None
            agent_name = result.next_agent

        run.enter(TurnState.ACCUMULATING, f"{len(accumulated.events)} events")
        return await self._commit(run, accumulated)

    def _starting_agent(self, resume: Optional[ResumeContext], suggested: Optional[str]) -> Optional[str]:
        if resume is not None and resume.requested_by in self.registry:
            return resume.requested_by
        if suggested and suggested in self.registry:
            return suggested
        if self.settings.default_agent in self.registry:
            return self.settings.default_agent
        return None

    async def _check_resume(
        self, turn_input: TurnInput, pending: Optional[PendingAction]
    ) -> PendingAction:
        def fail(reason: str) -> PendingActionError:
            return PendingActionError(
                session_id=turn_input.session_id, resume_of=turn_input.resume_of, reason=reason
            )

        if pending is None or pending.turn_id != turn_input.resume_of:
            raise fail(f"no pending action for turn {turn_input.resume_of}")
        if pending.is_expired(self.clock()):
            with contextlib.suppress(Exception):
                await self.store.delete_pending_action(pending.session_id, pending.turn_id)
            raise fail(f"pending action for turn {pending.turn_id} has expired")
        return pending

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _commit(self, run: _TurnRun, accumulated: StateDelta) -> TurnOutcome:
        run.enter(TurnState.COMMITTING)
        landing = asyncio.ensure_future(self._land(run, accumulated))
        try:
            result, facts = await asyncio.shield(landing)
        except asyncio.CancelledError:
            # Cancellation after Committing starts waits for the commit to land.
            log_info(f"[{run.turn_id}] cancel requested during commit; finishing commit first")
            with contextlib.suppress(Exception):
                await landing
            raise
        except Exception as exc:
            log_error(f"[{run.turn_id}] commit failed: {exc}")
            return await self._reject(run, COMMIT_FAILURE_NARRATIVE, reason=f"commit failed: {exc}")

        if result.status == "rejected":
            log_error(
                f"[{run.turn_id}] ANOMALY: guard approved but world writer rejected: "
                + "; ".join(result.errors)
            )
            return await self._reject(
                run, COMMIT_FAILURE_NARRATIVE, reason="commit validation failed: " + "; ".join(result.errors)
            )

        run.enter(TurnState.DONE, f"v{result.state_version}")
        log_success(f"[{run.turn_id}] turn committed with {len(result.events)} events")
        return TurnOutcome(
            turn_id=run.turn_id,
            session_id=run.session_id,
            status="committed",
            narrative="\n\n".join(run.narratives),
            events=result.events,
            facts=facts,
            trace=run.trace,
        )

    async def _land(self, run: _TurnRun, accumulated: StateDelta) -> Tuple[CommitResult, List[Fact]]:
        """Commit, then retire the resumed PendingAction and curate the new events.

        Runs shielded: once started, all three steps finish even if the caller
        is cancelled.
        """
        result = await self.writer.commit(run.turn_id, accumulated, session_id=run.session_id)
        if result.status == "rejected":
            return result, []
        await self._clear_pending(run)
        return result, await self._curate(run, result.events)

    async def _curate(self, run: _TurnRun, events: List[Event]) -> List[Fact]:
        try:
            return await self.curator.curate(events)
        except Exception as exc:
            log_error(f"[{run.turn_id}] curator raised unexpectedly: {exc}")
            return []

    async def _reject(self, run: _TurnRun, narrative: str, *, reason: str) -> TurnOutcome:
        run.enter(TurnState.REJECTED, reason)
        await self._clear_pending(run)
        return TurnOutcome(
            turn_id=run.turn_id,
            session_id=run.session_id,
            status="rejected",
            narrative=narrative,
            reason=reason,
            trace=run.trace,
        )

    async def _pause(
        self,
        run: _TurnRun,
        requested_by: str,
        prompt: PromptDescriptor,
        *,
        reason: str,
    ) -> TurnOutcome:
        action = PendingAction.create(
            turn_id=run.turn_id,
            session_id=run.session_id,
            requested_by=requested_by,
            prompt=prompt,
            original_input=run.player_input,
            ttl_seconds=self.settings.pending_action_ttl_seconds,
            now=self.clock(),
        )
        try:
            await self.store.save_pending_action(action)
        except Exception as exc:
            log_error(f"[{run.turn_id}] could not save pending action: {exc}")
            return await self._reject(run, GENERIC_REJECT_NARRATIVE, reason=f"pause failed: {exc}")

        run.enter(TurnState.PAUSED, reason)
        return TurnOutcome(
            turn_id=run.turn_id,
            session_id=run.session_id,
            status="paused",
            narrative="\n\n".join([*run.narratives, prompt.message] if prompt.message else run.narratives),
            prompt=prompt,
            reason=reason,
            trace=run.trace,
        )

    async def _clear_pending(self, run: _TurnRun) -> None:
        if run.superseded_pending is None:
            return
        try:
            await self.store.delete_pending_action(run.session_id, run.superseded_pending)
        except Exception as exc:
            log_error(f"[{run.turn_id}] could not clear pending action {run.superseded_pending}: {exc}")
