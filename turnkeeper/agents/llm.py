"""Domain agent backed by a language model with optional tools."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..invoke import Invoker, ToolSpec, parse_decision
from ..logging_utils import log_error, log_llm
from ..prompts import DEFAULT_PROMPTS, PromptLibrary, render_prompt
from ..schemas import ContextPack, DomainResult, PlotDirective
from .base import AgentScope


class LLMDomainAgent:
    """Runs a bounded prompt/tool loop and returns the model's DomainResult.

    Each tool call costs one unit of ``scope.tool_budget``. When the budget is
    spent before the model decides, the agent hands the turn back to itself
    with ``continue`` so the coordinator's budget check ends the turn.
    """

    def __init__(
        self,
        name: str,
        invoker: Invoker,
        *,
        tools: Sequence[ToolSpec] = (),
        library: PromptLibrary = DEFAULT_PROMPTS,
        template_name: Optional[str] = None,
        handoff_targets: Sequence[str] = (),
    ):
        self.name = name
        self.invoker = invoker
        self.tools: Dict[str, ToolSpec] = {tool.name: tool for tool in tools}
        self.template = library.get(template_name or name)
        self.handoff_targets = list(handoff_targets)

    async def handle(
        self, context: ContextPack, directive: PlotDirective, scope: AgentScope
    ) -> DomainResult:
        tool_results: List[Dict[str, Any]] = []
        calls = 0

        while True:
            prompt = render_prompt(
                self.template,
                context,
                directive=directive,
                extra={
                    "handoff_note": scope.note or "none",
                    "accumulated_json": scope.accumulated.model_dump(mode="json", exclude={"turn_id"}),
                    "tool_results": tool_results,
                    "tool_catalog": "\n".join(tool.catalog_line() for tool in self.tools.values())
                    or "none",
                    "agent_names": ", ".join(self.handoff_targets) or "none",
                },
            )
            result = await self.invoker.invoke(self.name, prompt, list(self.tools.values()))

            if result.kind == "tool_call":
                request = result.tool_call
                if calls >= scope.tool_budget:
                    log_error(f"[{scope.turn_id}] {self.name} exhausted its tool budget")
                    return DomainResult(status="continue", next_agent=self.name, tool_calls=calls)
                calls += 1
                tool = self.tools.get(request.name)
                if tool is None:
                    return DomainResult(
                        status="error", error=f"unknown tool '{request.name}'", tool_calls=calls
                    )
                log_llm(f"[{scope.turn_id}] {self.name} calls {request.name}({request.arguments})")
                try:
                    output = await tool.handler(request.arguments)
                except Exception as exc:
                    log_error(f"[{scope.turn_id}] tool {request.name} failed: {exc}")
                    output = {"error": str(exc)}
                tool_results.append({"tool": request.name, "arguments": request.arguments, "result": output})
                continue

            if result.kind == "text":
                return DomainResult(status="completed", narrative=result.text or "", tool_calls=calls)

            decision = parse_decision(self.name, result, DomainResult)
            return decision.model_copy(update={"tool_calls": decision.tool_calls + calls})
