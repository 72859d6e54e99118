"""
Model Invoker Tests

No network: every HTTP call goes through httpx.MockTransport.

Test list:
1. test_anthropic_invoke - Payload shape, system lifting, usage parsing
2. test_openai_invoke - Chat completions payload, gpt-5 token param
3. test_streaming - SSE lines become chunks, final chunk carries usage
4. test_http_errors - Status codes classified retryable / fatal
5. test_retrying_invoker - Backoff on retryable errors only
6. test_get_invoker - Factory validation and key handling
"""

import json
from decimal import Decimal

import httpx
import pytest

from agentrun.config import AgentRunConfig, ModelConfig
from agentrun.errors import ToolInvocationError
from agentrun.providers import (
    AnthropicInvoker,
    EchoInvoker,
    OpenAIInvoker,
    RetryingInvoker,
    classify_http_error,
    get_invoker,
)

from .conftest import ScriptedInvoker, result


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


MESSAGES = [
    {"role": "system", "content": "You are careful."},
    {"role": "user", "content": "Write the intro"},
]


# =============================================================================
# TEST 1: Anthropic
# =============================================================================

@pytest.mark.asyncio
async def test_anthropic_invoke():
    """
    Test 1: AnthropicInvoker talks to /messages.

    Verifies:
    - System messages move to the top-level `system` field
    - Auth headers are sent
    - Text blocks are joined and usage is parsed
    """
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "model": "claude-test",
            "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "world"}],
            "usage": {"input_tokens": 12, "output_tokens": 8},
        })

    async with mock_client(handler) as client:
        invoker = AnthropicInvoker(model="claude-test", api_key="sk-test", client=client)
        response = await invoker.invoke(MESSAGES, {"max_tokens": 256})

    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["body"]["system"] == "You are careful."
    assert seen["body"]["messages"] == [{"role": "user", "content": "Write the intro"}]
    assert seen["body"]["max_tokens"] == 256

    assert response.content == "Hello world"
    assert response.usage.tokens == 20
    assert response.model == "claude-test"

    print("✓ Test 1 passed: anthropic invoke")


def test_anthropic_requires_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ValueError):
        AnthropicInvoker()


# =============================================================================
# TEST 2: OpenAI-compatible
# =============================================================================

@pytest.mark.asyncio
async def test_openai_invoke():
    """
    Test 2: OpenAIInvoker talks to /chat/completions.
    """
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer sk-openai"
        return httpx.Response(200, json={
            "model": "gpt-4o",
            "choices": [{"message": {"role": "assistant", "content": "Done"}}],
            "usage": {"prompt_tokens": 30, "completion_tokens": 5},
        })

    async with mock_client(handler) as client:
        gpt4 = OpenAIInvoker(model="gpt-4o", api_key="sk-openai", client=client)
        response = await gpt4.invoke(MESSAGES)

        gpt5 = OpenAIInvoker(model="gpt-5.2", api_key="sk-openai", client=client)
        await gpt5.invoke(MESSAGES, {"max_tokens": 100})

    assert response.content == "Done"
    assert response.usage.input_tokens == 30
    assert response.usage.tokens == 35

    assert bodies[0]["messages"] == MESSAGES
    assert bodies[0]["max_tokens"] == 4096
    assert "max_tokens" not in bodies[1]
    assert bodies[1]["max_completion_tokens"] == 100

    print("✓ Test 2 passed: openai invoke")


@pytest.mark.asyncio
async def test_unexpected_response_shape():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    async with mock_client(handler) as client:
        invoker = OpenAIInvoker(api_key="sk-openai", client=client)
        with pytest.raises(ToolInvocationError) as exc_info:
            await invoker.invoke(MESSAGES)

    assert exc_info.value.retryable is False


# =============================================================================
# TEST 3: Streaming
# =============================================================================

@pytest.mark.asyncio
async def test_streaming():
    """
    Test 3: Server-sent events are turned into StreamChunks.

    Verifies:
    - Anthropic deltas and usage events
    - OpenAI deltas, [DONE] and include_usage
    - collect() joins the chunks
    """
    anthropic_events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "usage": {"output_tokens": 4}},
    ]
    anthropic_body = "".join(f"event: x\ndata: {json.dumps(e)}\n\n" for e in anthropic_events)

    openai_events = [
        {"choices": [{"delta": {"content": "Hi"}}]},
        {"choices": [{"delta": {"content": " there"}}]},
        {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2}},
    ]
    openai_body = "".join(f"data: {json.dumps(e)}\n\n" for e in openai_events) + "data: [DONE]\n\n"

    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        body = anthropic_body if request.url.path.endswith("/messages") else openai_body
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    async with mock_client(handler) as client:
        claude = AnthropicInvoker(api_key="sk-test", client=client)
        chunks = [chunk async for chunk in claude.stream(MESSAGES)]

        gpt = OpenAIInvoker(api_key="sk-openai", client=client)
        collected = await gpt.collect(MESSAGES)

    assert [c.content for c in chunks if not c.done] == ["Hel", "lo"]
    assert chunks[-1].done is True
    assert chunks[-1].usage.tokens == 13

    assert payloads[0]["stream"] is True
    assert payloads[1]["stream_options"] == {"include_usage": True}

    assert collected.content == "Hi there"
    assert collected.usage.tokens == 5

    print("✓ Test 3 passed: streaming")


# =============================================================================
# TEST 4: HTTP errors
# =============================================================================

@pytest.mark.asyncio
async def test_http_errors():
    """
    Test 4: 429/5xx are retryable, 4xx are fatal, transport errors retryable.
    """
    statuses = iter([429, 503, 401])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), text="nope")

    async with mock_client(handler) as client:
        invoker = AnthropicInvoker(api_key="sk-test", client=client)
        errors = []
        for _ in range(3):
            with pytest.raises(ToolInvocationError) as exc_info:
                await invoker.invoke(MESSAGES)
            errors.append(exc_info.value)

    assert [e.retryable for e in errors] == [True, True, False]
    assert errors[2].details["status"] == 401
    assert "HTTP 401" in errors[2].message

    request = httpx.Request("POST", "https://example.invalid")
    timeout = classify_http_error(httpx.ConnectTimeout("timed out", request=request), "openai")
    assert timeout.retryable is True
    assert timeout.kind == "tool_invocation_error"

    print("✓ Test 4 passed: HTTP errors classified")


# =============================================================================
# TEST 5: Retries
# =============================================================================

@pytest.mark.asyncio
async def test_retrying_invoker():
    """
    Test 5: RetryingInvoker backs off on retryable errors and gives up cleanly.
    """
    delays = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    flaky = ScriptedInvoker([
        ToolInvocationError("busy", retryable=True),
        ToolInvocationError("busy", retryable=True),
        result("finally"),
    ])
    retrying = RetryingInvoker(flaky, max_attempts=3, base_delay=0.5, sleep=fake_sleep)
    response = await retrying.invoke(MESSAGES)

    assert response.content == "finally"
    assert delays == [0.5, 1.0]
    assert len(flaky.calls) == 3

    fatal = ScriptedInvoker([ToolInvocationError("bad request")])
    with pytest.raises(ToolInvocationError):
        await RetryingInvoker(fatal, sleep=fake_sleep).invoke(MESSAGES)
    assert len(fatal.calls) == 1

    always_busy = ScriptedInvoker(default=None)
    always_busy.script = [ToolInvocationError("busy", retryable=True)] * 2
    with pytest.raises(ToolInvocationError) as exc_info:
        await RetryingInvoker(always_busy, max_attempts=2, sleep=fake_sleep).invoke(MESSAGES)
    assert exc_info.value.message == "busy"

    with pytest.raises(ValueError):
        RetryingInvoker(flaky, max_attempts=0)

    print("✓ Test 5 passed: retries")


# =============================================================================
# TEST 6: Factory
# =============================================================================

def test_get_invoker(monkeypatch):
    """
    Test 6: get_invoker builds the right invoker or explains why it cannot.
    """
    config = AgentRunConfig(models={
        "claude": ModelConfig(provider="anthropic", model="claude-test", api_key_env="TEST_CLAUDE_KEY"),
        "local": ModelConfig(provider="ollama", model="llama3"),
        "echo": ModelConfig(provider="echo", model="echo"),
        "flaky": ModelConfig(provider="echo", model="echo", retries=2),
        "weird": ModelConfig(provider="carrier-pigeon", model="coo"),
    })

    with pytest.raises(ValueError) as exc_info:
        get_invoker(config, "missing")
    assert "Available models" in str(exc_info.value)

    with pytest.raises(ValueError):
        get_invoker(config, "weird")

    monkeypatch.delenv("TEST_CLAUDE_KEY", raising=False)
    with pytest.raises(ValueError) as exc_info:
        get_invoker(config, "claude")
    assert "TEST_CLAUDE_KEY" in str(exc_info.value)

    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test")
    claude = get_invoker(config, "claude")
    assert isinstance(claude, AnthropicInvoker)
    assert claude.api_key == "sk-test"

    local = get_invoker(config, "local")
    assert isinstance(local, OpenAIInvoker)
    assert local.base_url == "http://localhost:11434/v1"

    assert isinstance(get_invoker(config, "echo"), EchoInvoker)

    flaky = get_invoker(config, "flaky")
    assert isinstance(flaky, RetryingInvoker)
    assert flaky.max_attempts == 3


@pytest.mark.asyncio
async def test_echo_invoker():
    response = await EchoInvoker().invoke(MESSAGES)
    assert response.content == "Done: Write the intro"
    assert response.cost_usd == Decimal("0")
