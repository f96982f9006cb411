"""
Guard: decides whether a player's intent is allowed before any agent acts.

A Guard returns exactly one GuardDecision and never writes state. An
``improv`` decision only *proposes* a ModulePatch; the World Writer decides
whether it is applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol, Sequence

from .invoke import Invoker, parse_decision
from .logging_utils import log_deterministic, log_llm
from .prompts import DEFAULT_PROMPTS, PromptLibrary, render_prompt
from .rng import TurnRandom
from .schemas import ContextPack, GuardDecision, ModulePatch, PromptDescriptor

DEFAULT_REJECT_PHRASES = ("million gold", "instantly win", "cheat", "infinite gold")
DEFAULT_REJECT_NARRATIVE = "You look around, but nothing like that is here."


class Guard(Protocol):
    async def evaluate(
        self, player_input: str, context: ContextPack, rng: TurnRandom
    ) -> GuardDecision:
        ...


@dataclass
class GuardCheck:
    """Dice-backed feasibility check triggered by a phrase in the input."""

    phrase: str
    formula: str
    target: int
    failure_narrative: str


class RuleGuard:
    """Deterministic guard driven by phrase rules.

    Rules are checked in order: reject phrases, input rules (skipped when the
    turn is already answering a pending request), dice checks, then improv
    rules. Anything left over is valid.
    """

    def __init__(
        self,
        *,
        reject_phrases: Sequence[str] = DEFAULT_REJECT_PHRASES,
        reject_narrative: str = DEFAULT_REJECT_NARRATIVE,
        input_rules: Optional[Mapping[str, PromptDescriptor]] = None,
        checks: Sequence[GuardCheck] = (),
        improv_rules: Optional[Mapping[str, ModulePatch]] = None,
    ):
        self.reject_phrases = tuple(phrase.lower() for phrase in reject_phrases)
        self.reject_narrative = reject_narrative
        self.input_rules: Dict[str, PromptDescriptor] = {
            phrase.lower(): prompt for phrase, prompt in (input_rules or {}).items()
        }
        self.checks = list(checks)
        self.improv_rules: Dict[str, ModulePatch] = {
            phrase.lower(): patch for phrase, patch in (improv_rules or {}).items()
        }

    async def evaluate(
        self, player_input: str, context: ContextPack, rng: TurnRandom
    ) -> GuardDecision:
        text = player_input.lower()

        for phrase in self.reject_phrases:
            if phrase in text:
                log_deterministic(f"Guard rejected input matching '{phrase}'")
                return GuardDecision(
                    status="reject", narrative=self.reject_narrative, reason=f"matched '{phrase}'"
                )

        if context.resume is None:
            for phrase, prompt in self.input_rules.items():
                if phrase in text:
                    return GuardDecision(
                        status="needs_player_input", prompt=prompt, reason=f"matched '{phrase}'"
                    )

        for check in self.checks:
            if check.phrase.lower() not in text:
                continue
            total = rng.roll_formula(check.formula)
            log_deterministic(f"Guard check '{check.phrase}': {check.formula} = {total} vs {check.target}")
            if total < check.target:
                return GuardDecision(
                    status="reject",
                    narrative=check.failure_narrative,
                    reason=f"check failed ({total} < {check.target})",
                )

        present = {ref.entity_id for ref in context.participants}
        for phrase, patch in self.improv_rules.items():
            if phrase in text and patch.patch_id not in present:
                return GuardDecision(status="improv", patch=patch, reason=f"improvised {patch.patch_id}")

        return GuardDecision(status="valid")


class LLMGuard:
    """Guard that asks a language model for the decision."""

    def __init__(
        self,
        invoker: Invoker,
        *,
        library: PromptLibrary = DEFAULT_PROMPTS,
        template_name: str = "guard",
    ):
        self.invoker = invoker
        self.template = library.get(template_name)

    async def evaluate(
        self, player_input: str, context: ContextPack, rng: TurnRandom
    ) -> GuardDecision:
        prompt = render_prompt(self.template, context)
        log_llm(f"[{context.turn_id}] guard evaluating input")
        result = await self.invoker.invoke("guard", prompt, ())
        return parse_decision("guard", result, GuardDecision)
