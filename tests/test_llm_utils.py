"""Unit tests for the LLM retry helper."""

import asyncio

import pytest
from pydantic import BaseModel, ValidationError

from turnkeeper.llm_utils import call_llm_with_retries, inject_validation_feedback
from turnkeeper.local_llm import LocalLLMError


class DummyDecision(BaseModel):
    status: str


def _validation_error() -> ValidationError:
    try:
        DummyDecision.model_validate({})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


def _decorator_for(fake_caller):
    def fake_decorator(*, provider, model, response_model):
        assert response_model is DummyDecision

        def wrapper(fn):
            async def inner(prompt: str):
                return await fake_caller(prompt)

            return inner

        return wrapper

    return fake_decorator


@pytest.mark.asyncio
async def test_call_llm_with_retries_success(monkeypatch):
    recorded_prompts: list[str] = []

    async def fake_caller(prompt: str) -> DummyDecision:
        recorded_prompts.append(prompt)
        return DummyDecision(status="valid")

    monkeypatch.setattr("turnkeeper.llm_utils.llm.call", _decorator_for(fake_caller))

    result = await call_llm_with_retries(
        system_prompt="You are the referee.",
        user_prompt="Player action: open the door",
        llm_provider="openai",
        llm_model="gpt-5-nano",
        response_model=DummyDecision,
    )

    assert result.status == "valid"
    assert recorded_prompts == ["You are the referee.\n\nPlayer action: open the door"]


@pytest.mark.asyncio
async def test_call_llm_with_retries_injects_feedback(monkeypatch):
    attempts: list[str] = []
    validation_error = _validation_error()

    async def fake_caller(prompt: str) -> DummyDecision:
        attempts.append(prompt)
        if len(attempts) == 1:
            raise validation_error
        return DummyDecision(status="reject")

    monkeypatch.setattr("turnkeeper.llm_utils.llm.call", _decorator_for(fake_caller))

    result = await call_llm_with_retries(
        system_prompt="System",
        user_prompt="User",
        llm_provider="openai",
        llm_model="gpt-5-nano",
        response_model=DummyDecision,
    )

    assert result.status == "reject"
    assert len(attempts) == 2
    assert "Your previous JSON decision did not match the required schema." in attempts[1]
    assert "- status: Field required" in attempts[1]
    assert attempts[1].startswith("System\n\nUser")


@pytest.mark.asyncio
async def test_call_llm_with_retries_gives_up_after_max_attempts(monkeypatch):
    calls = 0
    validation_error = _validation_error()

    async def always_invalid(prompt: str) -> DummyDecision:
        nonlocal calls
        calls += 1
        raise validation_error

    monkeypatch.setattr("turnkeeper.llm_utils.llm.call", _decorator_for(always_invalid))

    with pytest.raises(ValidationError):
        await call_llm_with_retries(
            system_prompt="System",
            user_prompt="User",
            llm_provider="openai",
            llm_model="gpt-5-nano",
            response_model=DummyDecision,
            max_attempts=2,
        )
    assert calls == 2


@pytest.mark.asyncio
async def test_call_llm_with_retries_timeout_is_not_retried(monkeypatch):
    calls = 0

    async def slow(prompt: str) -> DummyDecision:
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)
        return DummyDecision(status="valid")

    monkeypatch.setattr("turnkeeper.llm_utils.llm.call", _decorator_for(slow))

    with pytest.raises(asyncio.TimeoutError):
        await call_llm_with_retries(
            system_prompt="System",
            user_prompt="User",
            llm_provider="openai",
            llm_model="gpt-5-nano",
            response_model=DummyDecision,
            timeout=0.05,
        )
    assert calls == 1


@pytest.mark.asyncio
async def test_call_llm_with_retries_local_provider(monkeypatch):
    captured_kwargs: dict[str, object] = {}

    async def fake_local_call(*, system_prompt, user_prompt, llm_model, base_url=None, timeout=120.0, json_mode=False):
        captured_kwargs["system_prompt"] = system_prompt
        captured_kwargs["user_prompt"] = user_prompt
        captured_kwargs["llm_model"] = llm_model
        captured_kwargs["json_mode"] = json_mode
        return '{"status":"valid"}'

    def fail_decorator(*args, **kwargs):
        raise AssertionError("remote provider path should not be used for ollama")

    monkeypatch.setattr("turnkeeper.llm_utils.call_ollama_chat", fake_local_call)
    monkeypatch.setattr("turnkeeper.llm_utils.llm.call", fail_decorator)

    result = await call_llm_with_retries(
        system_prompt="System context",
        user_prompt="User payload",
        llm_provider="ollama",
        llm_model="llama3.1",
        response_model=DummyDecision,
    )

    assert result.status == "valid"
    assert captured_kwargs["system_prompt"] == "System context"
    assert captured_kwargs["user_prompt"] == "User payload"
    assert captured_kwargs["llm_model"] == "llama3.1"
    assert captured_kwargs["json_mode"] is True


@pytest.mark.asyncio
async def test_local_provider_errors_surface_as_runtime_error(monkeypatch):
    async def unreachable(**kwargs):
        raise LocalLLMError("connection refused")

    monkeypatch.setattr("turnkeeper.llm_utils.call_ollama_chat", unreachable)

    with pytest.raises(RuntimeError, match="Local LLM provider error"):
        await call_llm_with_retries(
            system_prompt="",
            user_prompt="User",
            llm_provider="ollama",
            llm_model="llama3.1",
            response_model=DummyDecision,
        )


def test_feedback_lists_each_issue():
    feedback = inject_validation_feedback(_validation_error())

    assert feedback.issues == ["status: Field required [type=missing] | received={}"]
    assert feedback.llm_text.splitlines()[0] == "Your previous JSON decision did not match the required schema."
