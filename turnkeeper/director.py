"""
Plot Director: advisory steering for a turn.

Directives are suggestions. A failing or slow director never affects the
turn: ``safe_direct`` logs the problem and substitutes an empty directive.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol, Sequence

from .invoke import Invoker, parse_decision
from .logging_utils import log_deterministic, log_error, log_llm
from .prompts import DEFAULT_PROMPTS, PromptLibrary, render_prompt
from .schemas import AdventureModule, ContextPack, PlotDirective

DEFAULT_INTENT_KEYWORDS: Dict[str, Sequence[str]] = {
    "combat": ("attack", "strike", "fight", "stab", "shoot", "swing", "punch"),
    "exploration": ("look", "search", "explore", "open", "pick", "lock", "go ", "enter", "climb", "walk"),
    "dialogue": ("say", "ask", "tell", "talk", "greet", "buy", "\""),
}


class PlotDirector(Protocol):
    async def direct(
        self, context: ContextPack, module: Optional[AdventureModule]
    ) -> PlotDirective:
        ...


class KeywordPlotDirector:
    """Deterministic director keyed on intent words in the player's input."""

    def __init__(
        self,
        keywords: Optional[Dict[str, Sequence[str]]] = None,
        *,
        max_targets: int = 2,
    ):
        self.keywords = keywords or DEFAULT_INTENT_KEYWORDS
        self.max_targets = max_targets

    def _starting_agent(self, text: str) -> Optional[str]:
        for agent, words in self.keywords.items():
            if any(word in text for word in words):
                return agent
        return None

    async def direct(
        self, context: ContextPack, module: Optional[AdventureModule]
    ) -> PlotDirective:
        text = f" {context.player_input.lower()} "
        agent = self._starting_agent(text)

        combat_recent = sum(1 for event in context.recent_events if event.type.startswith("Combat"))
        if agent == "combat" or combat_recent >= 2:
            pacing = "fast"
        elif len(context.dialogue_recap) >= 3:
            pacing = "slow"
        else:
            pacing = "normal"

        beat = None
        if module and module.plot_hooks:
            beat = module.plot_hooks[len(context.recent_events) % len(module.plot_hooks)]

        directive = PlotDirective(
            target_objectives=[obj.objective_id for obj in context.objectives[: self.max_targets]],
            suggested_beat=beat,
            pacing=pacing,
            starting_agent=agent,
            spotlight=[ref.entity_id for ref in context.participants if ref.kind != "player"],
        )
        log_deterministic(
            f"[{context.turn_id}] director: start={directive.starting_agent} pacing={pacing}"
        )
        return directive


class LLMPlotDirector:
    def __init__(
        self,
        invoker: Invoker,
        *,
        agent_names: Sequence[str] = (),
        library: PromptLibrary = DEFAULT_PROMPTS,
        template_name: str = "director",
    ):
        self.invoker = invoker
        self.agent_names = list(agent_names)
        self.template = library.get(template_name)

    async def direct(
        self, context: ContextPack, module: Optional[AdventureModule]
    ) -> PlotDirective:
        prompt = render_prompt(
            self.template,
            context,
            extra={
                "module_json": module.model_dump(mode="json") if module else {},
                "agent_names": ", ".join(self.agent_names) or "any",
            },
        )
        log_llm(f"[{context.turn_id}] director planning beat")
        result = await self.invoker.invoke("director", prompt, ())
        return parse_decision("director", result, PlotDirective)


async def safe_direct(
    director: Optional[PlotDirector],
    context: ContextPack,
    module: Optional[AdventureModule],
    *,
    timeout: float,
) -> PlotDirective:
    """Run the director with a timeout; any failure yields an empty directive."""

    if director is None:
        return PlotDirective.empty()
    try:
        return await asyncio.wait_for(director.direct(context, module), timeout=timeout)
    except asyncio.TimeoutError:
        log_error(f"[{context.turn_id}] plot director timed out after {timeout:g}s; ignoring")
    except Exception as exc:
        log_error(f"[{context.turn_id}] plot director failed ({exc}); ignoring")
    return PlotDirective.empty()
