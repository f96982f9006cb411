"""Calls to a locally hosted model server (Ollama chat API)."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib import error, request

from .config import Config

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
CHAT_PATH = "/api/chat"


class LocalLLMError(RuntimeError):
    """The local model server could not produce a reply."""


def build_messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    messages = []
    if system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt.strip()})
    messages.append({"role": "user", "content": user_prompt.strip()})
    return messages


def _extract_content(raw: str) -> str:
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LocalLLMError("Ollama replied with something other than JSON.") from exc

    content = (body.get("message") or {}).get("content")
    if not content:
        raise LocalLLMError("Ollama reply had no assistant message content.")
    return content


def _post_chat(payload: dict[str, Any], url: str, timeout: float) -> str:
    req = request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore") if exc.fp else ""
        raise LocalLLMError(f"Ollama returned HTTP {exc.code}: {detail or exc.reason}") from exc
    except error.URLError as exc:
        raise LocalLLMError(
            f"Could not reach Ollama at {url} ({exc.reason}). Is `ollama serve` running?"
        ) from exc
    return _extract_content(raw)


async def call_ollama_chat(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_model: str,
    base_url: str | None = None,
    timeout: float = 120.0,
    json_mode: bool = False,
) -> str:
    """Send one non-streaming chat request and return the assistant text.

    ``json_mode`` asks the server to constrain output to JSON, which is what
    decision calls need.
    """

    if not user_prompt.strip():
        raise LocalLLMError("Refusing to call Ollama with an empty prompt.")

    root = (base_url or Config.OLLAMA_BASE_URL or DEFAULT_OLLAMA_BASE_URL).rstrip("/")
    payload: dict[str, Any] = {
        "model": llm_model,
        "messages": build_messages(system_prompt, user_prompt),
        "stream": False,
    }
    if json_mode:
        payload["format"] = "json"

    return await asyncio.to_thread(_post_chat, payload, f"{root}{CHAT_PATH}", timeout)


__all__ = ["LocalLLMError", "call_ollama_chat", "build_messages", "DEFAULT_OLLAMA_BASE_URL"]
