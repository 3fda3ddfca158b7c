from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest
from groq import APIConnectionError

from config import GroqConfig
from live_memory import compute_live_memory
from llm import CompletionClient, CompletionError
from prompts import PERSONAS


class FakeCompletions:
    def __init__(self, content="Here is an answer.", exc=None, delay=0.0):
        self.content = content
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions, **config):
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return CompletionClient(api_key=None, config=GroqConfig(**config), client=fake)


@pytest.mark.asyncio
async def test_generate_reply_sends_system_prompt_and_message():
    completions = FakeCompletions("  Take it one step at a time.  ")
    client = _client(completions, temperature=0.3)
    state = compute_live_memory(["frustration"])

    reply = await client.generate_reply("Why does my loop hang?", state, PERSONAS["sage"])

    assert reply == "Take it one step at a time."
    call = completions.calls[0]
    assert call["model"] == "llama-3.3-70b-versatile"
    assert call["temperature"] == 0.3
    assert "top_p" not in call
    system, user = call["messages"]
    assert system["role"] == "system"
    assert "Cognitive Load: high" in system["content"]
    assert "User Model: beginner" in system["content"]
    assert user == {"role": "user", "content": "Why does my loop hang?"}


@pytest.mark.asyncio
async def test_generate_reply_with_image_uses_vision_model():
    completions = FakeCompletions()
    client = _client(completions)

    await client.generate_reply("What is this?", compute_live_memory([]), PERSONAS["atlas"], image_base64="QUJD")

    call = completions.calls[0]
    assert call["model"] == GroqConfig().vision_model
    parts = call["messages"][1]["content"]
    assert parts[0] == {"type": "text", "text": "What is this?"}
    assert parts[1]["image_url"]["url"] == "data:image/jpeg;base64,QUJD"


@pytest.mark.asyncio
async def test_empty_completion_raises():
    client = _client(FakeCompletions(content=None))
    with pytest.raises(CompletionError):
        await client.generate_reply("hi", compute_live_memory([]), PERSONAS["atlas"])


@pytest.mark.asyncio
async def test_vendor_error_raises_completion_error():
    exc = APIConnectionError(request=httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions"))
    client = _client(FakeCompletions(exc=exc))
    with pytest.raises(CompletionError):
        await client.generate_reply("hi", compute_live_memory([]), PERSONAS["atlas"])


@pytest.mark.asyncio
async def test_timeout_raises_completion_error():
    client = _client(FakeCompletions(delay=0.5), timeout_sec=0.01)
    with pytest.raises(CompletionError, match="timed out"):
        await client.generate_reply("hi", compute_live_memory([]), PERSONAS["atlas"])


@pytest.mark.asyncio
async def test_missing_api_key_raises():
    client = CompletionClient(api_key=None, config=GroqConfig())
    assert not client.configured
    with pytest.raises(CompletionError):
        await client.generate_reply("hi", compute_live_memory([]), PERSONAS["atlas"])


@pytest.mark.asyncio
async def test_session_report_prompt():
    completions = FakeCompletions("# Report")
    client = _client(completions)

    report = await client.generate_session_report([{"role": "user", "text": "hello"}])

    assert report == "# Report"
    (only,) = completions.calls[0]["messages"]
    assert only["role"] == "user"
    assert "USER: hello" in only["content"]
