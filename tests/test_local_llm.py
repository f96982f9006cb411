import pytest

from turnkeeper.local_llm import LocalLLMError, _extract_content, call_ollama_chat


@pytest.mark.asyncio
async def test_call_ollama_chat_builds_payload(monkeypatch):
    captured: dict[str, object] = {}

    def fake_post(payload, url, timeout):
        captured["payload"] = payload
        captured["url"] = url
        captured["timeout"] = timeout
        return '{"status":"valid"}'

    monkeypatch.setattr("turnkeeper.local_llm._post_chat", fake_post)

    result = await call_ollama_chat(
        system_prompt="System context",
        user_prompt="User payload",
        llm_model="llama3.1",
        base_url="http://localhost:11434/",
        timeout=30,
        json_mode=True,
    )

    assert result == '{"status":"valid"}'
    payload = captured["payload"]
    assert payload["model"] == "llama3.1"
    assert payload["stream"] is False
    assert payload["format"] == "json"
    assert payload["messages"][0] == {"role": "system", "content": "System context"}
    assert payload["messages"][1] == {"role": "user", "content": "User payload"}
    assert captured["url"] == "http://localhost:11434/api/chat"
    assert captured["timeout"] == 30


@pytest.mark.asyncio
async def test_call_ollama_chat_omits_empty_system_and_format(monkeypatch):
    captured: dict[str, object] = {}

    def fake_post(payload, url, timeout):
        captured["payload"] = payload
        return "ok"

    monkeypatch.setattr("turnkeeper.local_llm._post_chat", fake_post)

    await call_ollama_chat(system_prompt="  ", user_prompt="Hi", llm_model="llama3.1", base_url="http://x")

    payload = captured["payload"]
    assert payload["messages"] == [{"role": "user", "content": "Hi"}]
    assert "format" not in payload


@pytest.mark.asyncio
async def test_call_ollama_chat_rejects_empty_prompt():
    with pytest.raises(LocalLLMError):
        await call_ollama_chat(system_prompt="System", user_prompt="   ", llm_model="llama3.1")


def test_extract_content():
    assert _extract_content('{"message": {"role": "assistant", "content": "hello"}}') == "hello"
    with pytest.raises(LocalLLMError):
        _extract_content("not json")
    with pytest.raises(LocalLLMError):
        _extract_content('{"message": {}}')
