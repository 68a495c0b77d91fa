from __future__ import annotations

import json

import httpx
import pytest

from vhisper.config import Config, LLMProvider
from vhisper.errors import LLMApiError, LLMNetworkError, LLMTimeoutError
from vhisper.llm import (
    REFINE_PROMPT,
    DashScopeLLMClient,
    HTTPChatClient,
    OllamaLLMClient,
    OpenAILLMClient,
    build_messages,
    build_system_prompt,
    create_llm_client,
)


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------


class Recorder:
    """MockTransport handler returning a canned response and keeping the requests."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def json(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


def dashscope_client(recorder: Recorder) -> DashScopeLLMClient:
    return DashScopeLLMClient(Config.DashScopeLLM(), "sk-test", "SYSTEM", transport=recorder.transport)


def ollama_client(recorder: Recorder) -> OllamaLLMClient:
    return OllamaLLMClient(Config.OllamaLLM(endpoint="http://localhost:11434/"), "SYSTEM", transport=recorder.transport)


def openai_client(recorder: Recorder, **config) -> OpenAILLMClient:
    http_client = httpx.AsyncClient(transport=recorder.transport)
    return OpenAILLMClient(Config.OpenAILLM(**config), "sk-test", "SYSTEM", http_client=http_client)


def chat_completion(content: str | None) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"},
        ],
    }


# ---------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------


def test_default_prompt() -> None:
    assert build_system_prompt() == REFINE_PROMPT
    assert build_system_prompt("   ") == REFINE_PROMPT
    assert REFINE_PROMPT.startswith("You are a text refinement assistant.")
    assert REFINE_PROMPT.endswith("Text to refine:")


def test_custom_prompt_and_vocabulary_context() -> None:
    prompt = build_system_prompt(" Make it formal ", "Important vocabulary corrections:\n- x")
    assert prompt == "Make it formal\n\nImportant vocabulary corrections:\n- x"


def test_messages() -> None:
    assert build_messages("S", "hi") == [{"role": "system", "content": "S"}, {"role": "user", "content": "hi"}]


# ---------------------------------------------------------------
# DashScope
# ---------------------------------------------------------------


async def test_dashscope_refines_text() -> None:
    recorder = Recorder(httpx.Response(200, json={"output": {"choices": [{"message": {"content": " Hello, world. "}}]}}))

    assert await dashscope_client(recorder).refine_text("hello world") == "Hello, world."

    request = recorder.requests[0]
    assert str(request.url) == DashScopeLLMClient.URL
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = recorder.json()
    assert body["model"] == "qwen-plus"
    assert body["input"]["messages"] == build_messages("SYSTEM", "hello world")
    assert body["parameters"] == {"result_format": "message", "temperature": 0.3, "max_tokens": 2000}


async def test_empty_text_makes_no_request() -> None:
    recorder = Recorder(httpx.Response(500))
    assert await dashscope_client(recorder).refine_text("") == ""
    assert recorder.requests == []


async def test_dashscope_error_envelope() -> None:
    recorder = Recorder(httpx.Response(401, json={"code": "InvalidApiKey", "message": "Invalid API-key provided."}))
    with pytest.raises(LLMApiError, match=r"Invalid API-key provided\. \(InvalidApiKey\)"):
        await dashscope_client(recorder).refine_text("hi")


async def test_http_status_fallback() -> None:
    recorder = Recorder(httpx.Response(502, text="bad gateway"))
    with pytest.raises(LLMApiError, match="HTTP 502"):
        await dashscope_client(recorder).refine_text("hi")


async def test_missing_content() -> None:
    recorder = Recorder(httpx.Response(200, json={"output": {"choices": []}}))
    with pytest.raises(LLMApiError, match="No content in response"):
        await dashscope_client(recorder).refine_text("hi")


async def test_invalid_json() -> None:
    recorder = Recorder(httpx.Response(200, text="<html>"))
    with pytest.raises(LLMApiError, match="Invalid JSON response"):
        await dashscope_client(recorder).refine_text("hi")


async def test_network_error() -> None:
    recorder = Recorder(httpx.ConnectError("connection refused"))
    with pytest.raises(LLMNetworkError, match="connection refused"):
        await dashscope_client(recorder).refine_text("hi")


async def test_timeout() -> None:
    recorder = Recorder(httpx.ReadTimeout("too slow"))
    with pytest.raises(LLMTimeoutError):
        await dashscope_client(recorder).refine_text("hi")


# ---------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------


async def test_ollama_refines_text() -> None:
    recorder = Recorder(httpx.Response(200, json={"message": {"role": "assistant", "content": "Refined."}}))

    assert await ollama_client(recorder).refine_text("refined") == "Refined."

    assert str(recorder.requests[0].url) == "http://localhost:11434/api/chat"
    body = recorder.json()
    assert body["model"] == "qwen3:8b"
    assert body["stream"] is False
    assert body["messages"][1] == {"role": "user", "content": "refined"}


async def test_ollama_error_field() -> None:
    recorder = Recorder(httpx.Response(404, json={"error": "model 'qwen3:8b' not found"}))
    with pytest.raises(LLMApiError, match="not found"):
        await ollama_client(recorder).refine_text("hi")


async def test_ollama_connection_check() -> None:
    recorder = Recorder(httpx.Response(200, json={"models": []}))
    assert await ollama_client(recorder).test_connection()
    assert recorder.requests[0].url.path == "/api/tags"

    assert not await ollama_client(Recorder(httpx.ConnectError("down"))).test_connection()


# ---------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------


async def test_openai_refines_text() -> None:
    recorder = Recorder(httpx.Response(200, json=chat_completion(" Fixed. ")))

    assert await openai_client(recorder).refine_text("fixed") == "Fixed."

    assert recorder.requests[0].url.path.endswith("/chat/completions")
    body = recorder.json()
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 2000
    assert body["messages"] == build_messages("SYSTEM", "fixed")


async def test_openai_compatible_base_url() -> None:
    recorder = Recorder(httpx.Response(200, json=chat_completion("ok")))
    await openai_client(recorder, base_url="http://llm.local:8000/v1").refine_text("ok")
    assert str(recorder.requests[0].url) == "http://llm.local:8000/v1/chat/completions"


async def test_openai_error_message() -> None:
    recorder = Recorder(httpx.Response(429, json={"error": {"message": "rate limited", "type": "requests"}}))
    with pytest.raises(LLMApiError, match="rate limited"):
        await openai_client(recorder).refine_text("hi")


async def test_openai_empty_content() -> None:
    recorder = Recorder(httpx.Response(200, json=chat_completion("  ")))
    with pytest.raises(LLMApiError, match="No content in response"):
        await openai_client(recorder).refine_text("hi")


async def test_openai_aclose_releases_http_client() -> None:
    http_client = httpx.AsyncClient(transport=Recorder(httpx.Response(200)).transport)
    client = OpenAILLMClient(Config.OpenAILLM(), "sk-test", "SYSTEM", http_client=http_client)
    await client.aclose()
    assert http_client.is_closed


def test_http_chat_client_is_abstract() -> None:
    with pytest.raises(TypeError):
        HTTPChatClient("SYSTEM")


# ---------------------------------------------------------------
# Factory
# ---------------------------------------------------------------


def test_factory_disabled() -> None:
    assert create_llm_client(Config.LLM(dashscope=Config.DashScopeLLM(api_key="k"))) is None


def test_factory_uses_own_key() -> None:
    client = create_llm_client(Config.LLM(enabled=True, dashscope=Config.DashScopeLLM(api_key="own")), asr_api_key="asr", asr_vendor="dashscope")
    assert isinstance(client, DashScopeLLMClient)
    assert client.api_key == "own"


def test_factory_borrows_asr_key_from_same_vendor() -> None:
    client = create_llm_client(Config.LLM(enabled=True), asr_api_key="asr", asr_vendor="dashscope")
    assert isinstance(client, DashScopeLLMClient)
    assert client.api_key == "asr"


def test_factory_does_not_borrow_key_across_vendors() -> None:
    assert create_llm_client(Config.LLM(enabled=True), asr_api_key="asr", asr_vendor="openai") is None
    assert create_llm_client(Config.LLM(enabled=True, provider=LLMProvider.OPENAI), asr_api_key="asr", asr_vendor="dashscope") is None


def test_factory_ollama_needs_no_key() -> None:
    client = create_llm_client(Config.LLM(enabled=True, provider=LLMProvider.OLLAMA), vocabulary_context="VOCAB")
    assert isinstance(client, OllamaLLMClient)
    assert client.system_prompt == f"{REFINE_PROMPT}\n\nVOCAB"


def test_factory_openai() -> None:
    client = create_llm_client(Config.LLM(enabled=True, provider=LLMProvider.OPENAI), asr_api_key="sk", asr_vendor="openai")
    assert isinstance(client, OpenAILLMClient)
