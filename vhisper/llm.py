from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from .config import Config, LLMProvider
from .errors import LLMApiError, LLMNetworkError, LLMTimeoutError
from .log import debug

REQUEST_TIMEOUT_SECONDS = 30.0

REFINE_PROMPT = """You are a text refinement assistant. Your task is to:
1. Fix any obvious spelling or grammar errors
2. Add appropriate punctuation
3. Keep the original meaning and style intact
4. Do NOT add any explanations or comments
5. Only output the refined text

Text to refine:"""


class LLMClient(Protocol):
    name: str

    async def refine_text(self, text: str) -> str: ...


def build_system_prompt(custom_prompt: str | None = None, vocabulary_context: str = "") -> str:
    prompt = custom_prompt.strip() if custom_prompt and custom_prompt.strip() else REFINE_PROMPT
    if vocabulary_context:
        prompt = f"{prompt}\n\n{vocabulary_context}"
    return prompt


def build_messages(system_prompt: str, text: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": text},
    ]


def _dig(data: Any, *path: str | int) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
        elif not isinstance(data, dict):
            return None
        data = data[key] if isinstance(key, int) else data.get(key)
    return data


class HTTPChatClient(ABC):
    """Shared request/response handling for the providers called with plain JSON over httpx."""

    name = "http"

    def __init__(
        self,
        system_prompt: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.system_prompt = system_prompt
        self.transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, trust_env=False, transport=self.transport)

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError("request timed out", self.name) from exc
        except httpx.HTTPError as exc:
            raise LLMNetworkError(str(exc), self.name) from exc

        try:
            data = response.json()
        except ValueError:
            data = None
        if response.status_code != 200:
            raise LLMApiError(self.error_message(data) or f"HTTP {response.status_code}", self.name)
        if data is None:
            raise LLMApiError("Invalid JSON response", self.name)
        return data

    @abstractmethod
    def error_message(self, data: Any) -> str | None:
        """Provider error text found in a failed response body, if any."""

    @abstractmethod
    def content(self, data: Any) -> Any:
        """The refined text inside a successful response body."""

    @abstractmethod
    async def refine_text(self, text: str) -> str: ...

    def _refined(self, data: Any) -> str:
        content = self.content(data)
        if not isinstance(content, str) or not content.strip():
            raise LLMApiError("No content in response", self.name)
        return content.strip()


class DashScopeLLMClient(HTTPChatClient):
    name = "dashscope"
    URL = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation"
    TEMPERATURE = 0.3
    MAX_TOKENS = 2000

    def __init__(self, config: Config.DashScopeLLM, api_key: str, system_prompt: str, **kwargs):
        super().__init__(system_prompt, **kwargs)
        self.api_key = api_key
        self.model = config.model

    def error_message(self, data: Any) -> str | None:
        message = _dig(data, "message")
        if not message:
            return None
        code = _dig(data, "code")
        return f"{message} ({code})" if code else str(message)

    def content(self, data: Any) -> Any:
        return _dig(data, "output", "choices", 0, "message", "content")

    async def refine_text(self, text: str) -> str:
        if not text:
            return ""
        data = await self._request(
            "POST",
            self.URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "input": {"messages": build_messages(self.system_prompt, text)},
                "parameters": {
                    "result_format": "message",
                    "temperature": self.TEMPERATURE,
                    "max_tokens": self.MAX_TOKENS,
                },
            },
        )
        return self._refined(data)


class OllamaLLMClient(HTTPChatClient):
    name = "ollama"

    def __init__(self, config: Config.OllamaLLM, system_prompt: str, **kwargs):
        super().__init__(system_prompt, **kwargs)
        self.endpoint = config.endpoint.rstrip("/")
        self.model = config.model

    def error_message(self, data: Any) -> str | None:
        message = _dig(data, "error")
        return str(message) if message else None

    def content(self, data: Any) -> Any:
        return _dig(data, "message", "content")

    async def refine_text(self, text: str) -> str:
        if not text:
            return ""
        data = await self._request(
            "POST",
            f"{self.endpoint}/api/chat",
            json={
                "model": self.model,
                "messages": build_messages(self.system_prompt, text),
                "stream": False,
            },
        )
        return self._refined(data)

    async def test_connection(self) -> bool:
        """Check that the server answers and lists its local models."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.endpoint}/api/tags")
        except httpx.HTTPError as exc:
            debug(f"Ollama connection test failed: {exc}")
            return False
        return response.status_code == 200


class OpenAILLMClient:
    name = "openai"

    def __init__(
        self,
        config: Config.OpenAILLM,
        api_key: str,
        system_prompt: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.model = config.model
        self.temperature = config.temperature
        self.max_tokens = config.max_tokens
        self.system_prompt = system_prompt
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=config.base_url or None,
            max_retries=0,
            timeout=timeout,
            http_client=http_client or httpx.AsyncClient(trust_env=False),
        )

    async def aclose(self) -> None:
        await self.client.close()

    async def refine_text(self, text: str) -> str:
        if not text:
            return ""
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=build_messages(self.system_prompt, text),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except APITimeoutError as exc:
            raise LLMTimeoutError("request timed out", self.name) from exc
        except APIConnectionError as exc:
            raise LLMNetworkError(str(exc), self.name) from exc
        except APIStatusError as exc:
            body: Any = exc.body
            message = body.get("message") if isinstance(body, dict) else None
            raise LLMApiError(message or f"HTTP {exc.status_code}", self.name) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise LLMApiError("No content in response", self.name)
        return content.strip()


def create_llm_client(
    config: Config.LLM,
    vocabulary_context: str = "",
    asr_api_key: str = "",
    asr_vendor: str | None = None,
) -> LLMClient | None:
    """Build the configured refinement client, or None when disabled or missing its key.

    A key-based provider without its own key borrows ``asr_api_key`` when the ASR provider comes
    from the same vendor.
    """
    if not config.enabled:
        return None
    system_prompt = build_system_prompt(config.custom_prompt, vocabulary_context)

    def api_key(own_key: str) -> str:
        if own_key:
            return own_key
        if asr_api_key and asr_vendor == config.provider.vendor:
            return asr_api_key
        return ""

    match config.provider:
        case LLMProvider.DASHSCOPE:
            if key := api_key(config.dashscope.api_key):
                return DashScopeLLMClient(config.dashscope, key, system_prompt)
        case LLMProvider.OPENAI:
            if key := api_key(config.openai.api_key):
                return OpenAILLMClient(config.openai, key, system_prompt)
        case LLMProvider.OLLAMA:
            return OllamaLLMClient(config.ollama, system_prompt)
    debug(f"LLM provider {config.provider.value} has no API key, refinement disabled")
    return None
