"""
Model/tool invokers for AgentRun.

WHAT THIS FILE DOES:
-------------------
The Step Scheduler treats the language model (or any tool behind it) as an
opaque service with one call:

    result = await invoker.invoke(messages, options)
    result.content        -> text produced by the step
    result.usage.tokens   -> tokens consumed (input + output)

This file defines that contract and the HTTP implementations behind it.

ERROR CLASSIFICATION:
--------------------
Every failure surfaces as ToolInvocationError with a `retryable` flag:
    - HTTP 408/429/5xx, timeouts, connection errors  -> retryable
    - anything else (401, 400, malformed response)   -> fatal

The scheduler itself never retries. RetryingInvoker is the explicit wrapper
for callers that want retries on retryable errors.

PROVIDERS:
---------
    anthropic -> AnthropicInvoker (Messages API)
    openai    -> OpenAIInvoker (chat completions)
    ollama    -> OpenAIInvoker against Ollama's OpenAI-compatible endpoint
    echo      -> EchoInvoker (offline, echoes the step back; no cost)
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, Field, model_validator

from .errors import ToolInvocationError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


# =============================================================================
# RESULT TYPES
# =============================================================================

class Usage(BaseModel):
    """Token usage of one call. `tokens` defaults to input + output."""
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    tokens: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def fill_total(self) -> "Usage":
        if not self.tokens:
            self.tokens = self.input_tokens + self.output_tokens
        return self


class InvocationResult(BaseModel):
    """What one external call produced."""
    content: str = ""
    usage: Usage = Field(default_factory=Usage)
    model: Optional[str] = None
    cost_usd: Optional[Decimal] = Field(
        default=None,
        description="Exact cost if the backend reports it; otherwise priced from costs.py"
    )
    files_modified: list[str] = Field(default_factory=list)


class StreamChunk(BaseModel):
    """One increment of a streamed call. The final chunk carries usage."""
    content: str = ""
    done: bool = False
    usage: Optional[Usage] = None


# =============================================================================
# ERROR HELPERS
# =============================================================================

def classify_http_error(error: httpx.HTTPError, backend: str) -> ToolInvocationError:
    """Turn an httpx error into a ToolInvocationError with the right retry flag."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        body = error.response.text[:200]
        return ToolInvocationError(
            f"{backend} returned HTTP {status}: {body}",
            retryable=status in RETRYABLE_STATUS,
            status=status,
        )
    return ToolInvocationError(
        f"{backend} request failed: {error}",
        retryable=isinstance(error, httpx.TransportError),
    )


# =============================================================================
# BASE INVOKER CLASS
# =============================================================================

class ModelInvoker(ABC):
    """
    Base class for invokers.

    All invokers must implement invoke(). stream() defaults to a single chunk
    built from invoke(); HTTP invokers override it with real streaming.

    `options` is a plain dict. Keys the engine sets: model, action_kind,
    step_number. Keys the HTTP invokers read: max_tokens, temperature.
    """

    @abstractmethod
    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        pass

    async def stream(
        self,
        messages: list[dict],
        options: Optional[dict] = None
    ) -> AsyncGenerator[StreamChunk, None]:
        result = await self.invoke(messages, options)
        yield StreamChunk(content=result.content)
        yield StreamChunk(done=True, usage=result.usage)

    async def collect(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        """Consume stream() into a single InvocationResult."""
        parts = []
        usage = Usage()
        async for chunk in self.stream(messages, options):
            parts.append(chunk.content)
            if chunk.usage is not None:
                usage = chunk.usage
        return InvocationResult(content="".join(parts), usage=usage)


class HttpInvoker(ModelInvoker):
    """Shared plumbing for the HTTP-backed invokers."""

    backend = "model"

    def __init__(
        self,
        model: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout: float = 120.0,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client = client

    @asynccontextmanager
    async def _client_session(self):
        """Use the injected client if there is one, else a fresh one per call."""
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def _headers(self) -> dict:
        return {"content-type": "application/json"}

    async def _post_json(self, path: str, payload: dict) -> dict:
        async with self._client_session() as client:
            try:
                response = await client.post(
                    f"{self.base_url}{path}",
                    headers=self._headers(),
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise classify_http_error(e, self.backend) from e
            try:
                return response.json()
            except ValueError as e:
                raise ToolInvocationError(f"{self.backend} returned invalid JSON: {e}") from e

    async def _stream_lines(self, path: str, payload: dict) -> AsyncGenerator[str, None]:
        async with self._client_session() as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}{path}",
                    headers=self._headers(),
                    json=payload,
                    timeout=self.timeout,
                ) as response:
                    if response.is_error:
                        await response.aread()
                        response.raise_for_status()
                    async for line in response.aiter_lines():
                        yield line
            except httpx.HTTPError as e:
                raise classify_http_error(e, self.backend) from e

    def _option(self, options: Optional[dict], key: str, default):
        if options and options.get(key) is not None:
            return options[key]
        return default


# =============================================================================
# ANTHROPIC INVOKER (Claude)
# =============================================================================

class AnthropicInvoker(HttpInvoker):
    """
    Anthropic Messages API.

    System messages are lifted out of the message list into the top-level
    `system` field, which is where the Messages API expects them.
    """

    backend = "anthropic"

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com/v1",
        **kwargs,
    ):
        super().__init__(model, base_url, **kwargs)
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not set")

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def _payload(self, messages: list[dict], options: Optional[dict], stream: bool = False) -> dict:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        payload = {
            "model": self.model,
            "max_tokens": self._option(options, "max_tokens", self.max_tokens),
            "temperature": self._option(options, "temperature", self.temperature),
            "messages": [m for m in messages if m["role"] != "system"],
        }
        if system:
            payload["system"] = system
        if stream:
            payload["stream"] = True
        return payload

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        data = await self._post_json("/messages", self._payload(messages, options))
        try:
            text = "".join(
                block.get("text", "") for block in data["content"] if block.get("type") == "text"
            )
            usage = Usage(
                input_tokens=data["usage"]["input_tokens"],
                output_tokens=data["usage"]["output_tokens"],
            )
        except (KeyError, TypeError) as e:
            raise ToolInvocationError(f"Unexpected anthropic response shape: {e}") from e
        return InvocationResult(content=text, usage=usage, model=data.get("model", self.model))

    async def stream(
        self,
        messages: list[dict],
        options: Optional[dict] = None
    ) -> AsyncGenerator[StreamChunk, None]:
        input_tokens = 0
        output_tokens = 0
        async for line in self._stream_lines("/messages", self._payload(messages, options, stream=True)):
            if not line.startswith("data: "):
                continue
            data = json.loads(line[6:])
            event = data.get("type")
            if event == "message_start":
                input_tokens = data["message"]["usage"].get("input_tokens", 0)
            elif event == "content_block_delta":
                text = data["delta"].get("text", "")
                if text:
                    yield StreamChunk(content=text)
            elif event == "message_delta":
                output_tokens = data.get("usage", {}).get("output_tokens", output_tokens)
        yield StreamChunk(done=True, usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens))


# =============================================================================
# OPENAI-COMPATIBLE INVOKER (OpenAI, Ollama)
# =============================================================================

class OpenAIInvoker(HttpInvoker):
    """
    OpenAI chat completions, or any server that speaks the same API.

    Ollama exposes a compatible endpoint at http://localhost:11434/v1 and
    ignores the API key, so `require_key=False` is used for it.
    """

    backend = "openai"

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        require_key: bool = True,
        **kwargs,
    ):
        super().__init__(model, base_url, **kwargs)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if require_key and not self.api_key:
            raise ValueError("OPENAI_API_KEY not set")

    def _get_token_param(self, max_tokens: int) -> dict:
        """
        GPT-5.x models use 'max_completion_tokens', older models use 'max_tokens'.
        """
        if self.model.startswith("gpt-5"):
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens}

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, messages: list[dict], options: Optional[dict], stream: bool = False) -> dict:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self._option(options, "temperature", self.temperature),
            **self._get_token_param(self._option(options, "max_tokens", self.max_tokens)),
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        data = await self._post_json("/chat/completions", self._payload(messages, options))
        try:
            content = data["choices"][0]["message"]["content"] or ""
            usage_data = data.get("usage") or {}
            usage = Usage(
                input_tokens=usage_data.get("prompt_tokens", 0),
                output_tokens=usage_data.get("completion_tokens", 0),
            )
        except (KeyError, IndexError, TypeError) as e:
            raise ToolInvocationError(f"Unexpected {self.backend} response shape: {e}") from e
        return InvocationResult(content=content, usage=usage, model=data.get("model", self.model))

    async def stream(
        self,
        messages: list[dict],
        options: Optional[dict] = None
    ) -> AsyncGenerator[StreamChunk, None]:
        usage = Usage()
        async for line in self._stream_lines("/chat/completions", self._payload(messages, options, stream=True)):
            if not line.startswith("data: ") or line == "data: [DONE]":
                continue
            data = json.loads(line[6:])
            if data.get("usage"):
                usage = Usage(
                    input_tokens=data["usage"].get("prompt_tokens", 0),
                    output_tokens=data["usage"].get("completion_tokens", 0),
                )
            for choice in data.get("choices", []):
                content = choice.get("delta", {}).get("content")
                if content:
                    yield StreamChunk(content=content)
        yield StreamChunk(done=True, usage=usage)


# =============================================================================
# OFFLINE INVOKER
# =============================================================================

class EchoInvoker(ModelInvoker):
    """
    Echoes the last user message back. No network, no cost.

    Used by `agentrun run --model echo` to exercise a plan end to end.
    """

    def __init__(self, model: str = "echo"):
        self.model = model

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        last = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        return InvocationResult(
            content=f"Done: {last}",
            usage=Usage(input_tokens=len(last) // 4, output_tokens=len(last) // 4),
            model=self.model,
            cost_usd=Decimal("0"),
        )


# =============================================================================
# RETRY WRAPPER
# =============================================================================

class RetryingInvoker(ModelInvoker):
    """
    Retries retryable ToolInvocationErrors with exponential backoff.

    Fatal errors are raised immediately. After `max_attempts` the last error
    is raised unchanged.
    """

    def __init__(
        self,
        inner: ModelInvoker,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.inner = inner
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.inner.invoke(messages, options)
            except ToolInvocationError as e:
                if not e.retryable or attempt == self.max_attempts:
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Invocation failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def get_invoker(config, model_name: str, client: Optional[httpx.AsyncClient] = None) -> ModelInvoker:
    """
    Build an invoker for a configured model.

    Example config:
        models:
          claude:
            provider: "anthropic"
            model: "claude-sonnet-4-20250514"
          local:
            provider: "ollama"
            model: "deepseek-coder-v2:16b"

    Args:
        config: AgentRunConfig (see config.py)
        model_name: Key under `models`
        client: Optional shared httpx client

    Raises:
        ValueError: Unknown model, bad provider type, or missing API key
    """
    model_config = config.models.get(model_name)
    if model_config is None:
        available = list(config.models.keys())
        raise ValueError(
            f"Model '{model_name}' not found in config. "
            f"Available models: {', '.join(available) or 'none'}"
        )

    provider_type = model_config.provider
    if provider_type not in ("anthropic", "openai", "ollama", "echo"):
        raise ValueError(
            f"Model '{model_name}' has invalid provider type: '{provider_type}'. "
            f"Must be one of: anthropic, openai, ollama, echo"
        )

    common = {
        "client": client,
        "max_tokens": model_config.max_tokens,
        "temperature": model_config.temperature,
    }

    if provider_type == "echo":
        invoker: ModelInvoker = EchoInvoker(model=model_config.model)
    elif provider_type == "ollama":
        invoker = OpenAIInvoker(
            model=model_config.model,
            api_key="ollama",
            base_url=model_config.base_url or "http://localhost:11434/v1",
            require_key=False,
            **common,
        )
    else:
        default_env = "ANTHROPIC_API_KEY" if provider_type == "anthropic" else "OPENAI_API_KEY"
        api_key_env = model_config.api_key_env or default_env
        api_key = os.environ.get(api_key_env)
        if not api_key:
            raise ValueError(f"Model '{model_name}' requires {api_key_env} but it's not set")
        cls = AnthropicInvoker if provider_type == "anthropic" else OpenAIInvoker
        kwargs = dict(common)
        if model_config.base_url:
            kwargs["base_url"] = model_config.base_url
        invoker = cls(model=model_config.model, api_key=api_key, **kwargs)

    if model_config.retries > 0:
        return RetryingInvoker(invoker, max_attempts=model_config.retries + 1)
    return invoker
