"""Structured language-model calls with validation-aware retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TypeVar

from mirascope import llm
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .local_llm import LocalLLMError, call_ollama_chat
from .logging_utils import debug_enabled, log_error, log_llm


ModelT = TypeVar("ModelT", bound=BaseModel)
DEFAULT_LLM_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class ValidationFeedback:
    """Correction text for the model plus the individual issues for logs."""

    llm_text: str
    issues: Sequence[str]


def _preview(value: Any, *, limit: int = 80) -> str:
    if value is None:
        return "null"
    text = repr(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def inject_validation_feedback(error: ValidationError) -> ValidationFeedback:
    """Turn a pydantic ValidationError into a correction request.

    Each issue reads ``path: message [type=...] | received=...`` so the model
    can see exactly which field of its decision was wrong.
    """

    issues: list[str] = []
    for err in error.errors(include_url=False):
        path = ".".join(str(part) for part in err.get("loc", ())) or "root"
        line = f"{path}: {err.get('msg', 'validation error')}"
        if err.get("type"):
            line += f" [type={err['type']}]"
        if "input" in err:
            line += f" | received={_preview(err['input'])}"
        issues.append(line)

    if not issues:
        issues.append("root: response did not match the expected schema")

    text = "\n".join(
        [
            "Your previous JSON decision did not match the required schema.",
            "Reply again with corrected JSON only, no prose and no code fences.",
            "Problems found:",
            *(f"- {issue}" for issue in issues),
        ]
    )
    return ValidationFeedback(llm_text=text, issues=issues)


def _join(*sections: str) -> str:
    return "\n\n".join(section for section in sections if section)


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
    timeout: float = DEFAULT_LLM_TIMEOUT_SECONDS,
    feedback_builder: Callable[[ValidationError], ValidationFeedback] = inject_validation_feedback,
) -> ModelT:
    """Call a provider for a ``response_model`` decision, retrying schema failures.

    Only ``ValidationError`` is retried; each retry appends the feedback from
    the previous failure to the original prompt. Timeouts and provider errors
    propagate on the first occurrence. After ``max_attempts`` validation
    failures the last ``ValidationError`` is re-raised.
    """

    system_prompt = system_prompt.strip()
    base_prompt = user_prompt.strip()
    use_ollama = llm_provider.lower() == "ollama"
    feedback: ValidationFeedback | None = None

    remote_call: Callable[[str], Any] | None = None
    if not use_ollama:

        @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
        async def _remote(prompt: str) -> str:
            return prompt

        remote_call = _remote

    attempt_number = 0
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            attempt_number += 1
            if attempt_number > 1:
                log_llm(
                    f"Retry {attempt_number}/{max_attempts} for {response_model.__name__} "
                    "with schema feedback"
                )
            user_section = _join(base_prompt, feedback.llm_text if feedback else "")
            if debug_enabled("DEBUG_LLM"):
                log_llm(f"Prompt for {response_model.__name__}:\n{_join(system_prompt, user_section)}")

            try:
                if use_ollama:
                    raw = await asyncio.wait_for(
                        call_ollama_chat(
                            system_prompt=system_prompt,
                            user_prompt=user_section,
                            llm_model=llm_model,
                            json_mode=True,
                        ),
                        timeout=timeout,
                    )
                    if debug_enabled("DEBUG_LLM"):
                        log_llm(f"Raw reply: {raw}")
                    return response_model.model_validate_json(raw)

                assert remote_call is not None
                return await asyncio.wait_for(
                    remote_call(_join(system_prompt, user_section)), timeout=timeout
                )
            except ValidationError as exc:
                feedback = feedback_builder(exc)
                log_error(
                    f"{response_model.__name__} failed validation "
                    f"(attempt {attempt_number}/{max_attempts})"
                )
                for issue in feedback.issues:
                    log_error(f"  - {issue}")
                raise
            except asyncio.TimeoutError:
                log_error(f"LLM call for {response_model.__name__} timed out after {timeout:g}s")
                raise
            except LocalLLMError as exc:
                raise RuntimeError(f"Local LLM provider error ({llm_provider}): {exc}") from exc

    raise RuntimeError("LLM retry loop exited without a result")
