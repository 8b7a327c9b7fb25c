import json

import httpx
import pytest

from promptworks import llm_client
from promptworks.llm_client import LLMError, generate_chat


@pytest.fixture
def ollama(monkeypatch):
    """Route the client's requests to a handler instead of a live Ollama."""
    real_client = httpx.AsyncClient
    seen = []

    def install(handler):
        def _handler(request):
            seen.append(request)
            return handler(request)

        def factory(*args, **kwargs):
            return real_client(*args, transport=httpx.MockTransport(_handler), **kwargs)

        monkeypatch.setattr(llm_client.httpx, "AsyncClient", factory)
        return seen

    return install


async def test_returns_assistant_text(ollama):
    seen = ollama(lambda request: httpx.Response(200, json={"message": {"content": "Hello"}}))
    out = await generate_chat([{"role": "user", "content": "hi"}], model="tiny", temperature=0.2)
    assert out == "Hello"
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/chat"
    assert body["model"] == "tiny"
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.2}


async def test_default_temperature(ollama):
    seen = ollama(lambda request: httpx.Response(200, json={"message": {"content": "ok"}}))
    await generate_chat([{"role": "user", "content": "hi"}])
    assert json.loads(seen[0].content)["options"]["temperature"] == 0.7


async def test_http_error_raises(ollama):
    ollama(lambda request: httpx.Response(500, text="overloaded"))
    with pytest.raises(LLMError):
        await generate_chat([{"role": "user", "content": "hi"}])


async def test_empty_reply_raises(ollama):
    ollama(lambda request: httpx.Response(200, json={"message": {"content": "  "}}))
    with pytest.raises(LLMError, match="Empty response"):
        await generate_chat([{"role": "user", "content": "hi"}])


async def test_no_messages():
    with pytest.raises(LLMError):
        await generate_chat([])
