"""
Language-model invocation boundary.

Guard, Director and domain agents never talk to a provider directly. They
render a prompt and ask an ``Invoker`` for exactly one of:

- a structured decision (a dict validated afterwards by ``parse_decision``)
- free text
- a tool call request

``LLMInvoker`` goes through ``call_llm_with_retries`` (mirascope/Ollama with
schema retries). ``ScriptedInvoker`` replays canned results and is what the
tests and offline examples use.
"""

from __future__ import annotations

import json
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Literal, Optional, Protocol, Sequence, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, model_validator

from .config import Config
from .llm_utils import DEFAULT_LLM_TIMEOUT_SECONDS, call_llm_with_retries
from .logging_utils import debug_enabled, log_llm
from .prompts import RenderedPrompt

ModelT = TypeVar("ModelT", bound=BaseModel)


class DecisionError(ValueError):
    """An agent's reply could not be turned into the expected decision."""

    def __init__(self, role: str, message: str):
        self.role = role
        super().__init__(f"{role}: {message}")


class ToolCallRequest(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)


class InvokeResult(BaseModel):
    """Exactly one of decision, text or tool_call, selected by ``kind``."""

    kind: Literal["decision", "text", "tool_call"]
    decision: Optional[Dict[str, Any]] = None
    text: Optional[str] = None
    tool_call: Optional[ToolCallRequest] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "InvokeResult":
        present = {
            "decision": self.decision is not None,
            "text": self.text is not None,
            "tool_call": self.tool_call is not None,
        }
        if not present[self.kind] or sum(present.values()) != 1:
            raise ValueError(f"InvokeResult of kind '{self.kind}' must carry only that field")
        return self

    @classmethod
    def of_decision(cls, decision: Dict[str, Any]) -> "InvokeResult":
        return cls(kind="decision", decision=decision)

    @classmethod
    def of_text(cls, text: str) -> "InvokeResult":
        return cls(kind="text", text=text)

    @classmethod
    def of_tool_call(cls, name: str, **arguments: Any) -> "InvokeResult":
        return cls(kind="tool_call", tool_call=ToolCallRequest(name=name, arguments=arguments))


ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class ToolSpec:
    """A tool an LLM-backed agent may call during its turn."""

    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(default_factory=dict)

    def catalog_line(self) -> str:
        params = json.dumps(self.parameters) if self.parameters else "{}"
        return f"- {self.name}: {self.description} (arguments: {params})"


class Invoker(Protocol):
    async def invoke(
        self, role: str, prompt: RenderedPrompt, tools: Sequence[ToolSpec] = ()
    ) -> InvokeResult:
        ...


def parse_decision(role: str, result: InvokeResult, model: Type[ModelT]) -> ModelT:
    """Validate a decision result against ``model`` or raise DecisionError."""

    if result.kind != "decision" or result.decision is None:
        raise DecisionError(role, f"expected a {model.__name__} decision, got {result.kind}")
    try:
        return model.model_validate(result.decision)
    except ValidationError as exc:
        raise DecisionError(role, f"invalid {model.__name__}: {exc.errors()[0]['msg']}") from exc


_ENVELOPE_INSTRUCTIONS = (
    "Wrap your reply in a JSON envelope with field \"kind\":\n"
    "- {\"kind\": \"decision\", \"decision\": {...the JSON requested above...}}\n"
    "- {\"kind\": \"tool_call\", \"tool_call\": {\"name\": \"...\", \"arguments\": {...}}}\n"
    "- {\"kind\": \"text\", \"text\": \"...\"}"
)


class LLMInvoker:
    """Invoker backed by a real provider (openai, anthropic, ollama, ...)."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        *,
        max_attempts: int = 3,
        timeout: float = DEFAULT_LLM_TIMEOUT_SECONDS,
    ):
        self.provider = provider or Config.LLM_PROVIDER
        self.model = model or Config.LLM_MODEL
        self.max_attempts = max_attempts
        self.timeout = timeout

    async def invoke(
        self, role: str, prompt: RenderedPrompt, tools: Sequence[ToolSpec] = ()
    ) -> InvokeResult:
        sections = [prompt.user]
        if tools:
            sections.append("Tools you may call:\n" + "\n".join(tool.catalog_line() for tool in tools))
        sections.append(_ENVELOPE_INSTRUCTIONS)

        log_llm(f"{role} -> {self.provider}/{self.model}")
        result = await call_llm_with_retries(
            system_prompt=prompt.system,
            user_prompt="\n\n".join(sections),
            llm_provider=self.provider,
            llm_model=self.model,
            response_model=InvokeResult,
            max_attempts=self.max_attempts,
            timeout=self.timeout,
        )
        if debug_enabled("DEBUG_LLM"):
            log_llm(f"{role} <- {result.model_dump_json()}")
        return result


ScriptStep = Any


class ScriptedInvoker:
    """Replays canned results per role, in order.

    A step may be an InvokeResult, a dict or BaseModel (decision), a str
    (text), a ToolCallRequest, an Exception instance (raised), or a callable
    taking the rendered prompt and returning any of those.
    """

    def __init__(self, script: Optional[Dict[str, Sequence[ScriptStep]]] = None):
        self._queues: Dict[str, Deque[ScriptStep]] = defaultdict(deque)
        self.calls: List[tuple[str, RenderedPrompt]] = []
        for role, steps in (script or {}).items():
            self.add(role, *steps)

    def add(self, role: str, *steps: ScriptStep) -> "ScriptedInvoker":
        self._queues[role].extend(steps)
        return self

    def remaining(self, role: str) -> int:
        return len(self._queues[role])

    async def invoke(
        self, role: str, prompt: RenderedPrompt, tools: Sequence[ToolSpec] = ()
    ) -> InvokeResult:
        self.calls.append((role, prompt))
        queue = self._queues[role]
        if not queue:
            raise DecisionError(role, "scripted invoker has no more steps for this role")

        step = queue.popleft()
        if callable(step) and not isinstance(step, (BaseModel, type)):
            step = step(prompt)
        if isinstance(step, BaseException):
            raise step
        return _coerce(step)


def _coerce(step: ScriptStep) -> InvokeResult:
    if isinstance(step, InvokeResult):
        return step
    if isinstance(step, ToolCallRequest):
        return InvokeResult(kind="tool_call", tool_call=step)
    if isinstance(step, BaseModel):
        return InvokeResult.of_decision(step.model_dump(mode="json"))
    if isinstance(step, dict):
        return InvokeResult.of_decision(step)
    if isinstance(step, str):
        return InvokeResult.of_text(step)
    raise TypeError(f"Unsupported scripted step: {step!r}")
