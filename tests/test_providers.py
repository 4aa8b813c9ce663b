"""
Tests for the provider adapters
===============================

Cloud SDK clients are replaced with mocks and HTTP adapters run against
httpx.MockTransport, so no network access or API keys are needed.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ai_router.errors import (
    AIRouterError,
    NoResponseBodyError,
    NotInitializedError,
    ProviderTimeoutError,
    UnsupportedModelError,
    UpstreamHTTPError,
)
from ai_router.models import ChatOptions, Message, StreamOptions
from ai_router.providers import (
    PROVIDER_CLASSES,
    AdapterConfig,
    AnthropicProvider,
    GoogleProvider,
    GrokProvider,
    GroqProvider,
    LMStudioProvider,
    OllamaProvider,
    OpenAIProvider,
    RetryHandler,
    VLLMProvider,
    parse_review,
)

from .fakes import FakeProvider

SSE_BODY = (
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":" world"}}]}\n\n'
    b"data: [DONE]\n\n"
)


def completion(content):
    return {"choices": [{"message": {"content": content}}]}


def openai_client(reply="hi"):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
        )
    )
    client.close = AsyncMock()
    return client


class FakeSDKStream:
    """Async-iterable SDK stream with a close() coroutine"""

    def __init__(self, items):
        self.items = items
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.items:
            yield item

    async def close(self):
        self.closed = True


def local_config(base_url, attempts=3):
    return AdapterConfig(base_url=base_url, retry_attempts=attempts, retry_delay=0.0)


class TestBaseProviderContract:
    """Initialization and model validation shared by every adapter"""

    def test_every_vendor_is_registered(self):
        assert set(PROVIDER_CLASSES) == {
            "openai", "anthropic", "google", "groq", "grok", "lmstudio", "ollama", "vllm",
        }

    @pytest.mark.asyncio
    async def test_chat_before_initialize_fails(self):
        """Using an adapter before initialize() should raise"""
        provider = FakeProvider()
        with pytest.raises(NotInitializedError, match="fake provider is not initialized"):
            await provider.chat([Message("user", "hi")])

    def test_stream_before_initialize_fails_eagerly(self):
        provider = FakeProvider()
        with pytest.raises(NotInitializedError):
            provider.chat_stream([Message("user", "hi")])

    @pytest.mark.asyncio
    async def test_validate_model(self):
        provider = FakeProvider(models=("model-a", "model-b"))
        await provider.initialize()

        assert provider.validate_model() == "model-a"
        assert provider.validate_model("model-b") == "model-b"
        with pytest.raises(UnsupportedModelError) as exc_info:
            provider.validate_model("model-z")
        assert exc_info.value.model == "model-z"
        assert "not supported by fake provider" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_generate_code_uses_low_temperature(self):
        provider = FakeProvider(reply="def add(a, b):\n    return a + b")
        await provider.initialize()

        code = await provider.generate_code("add two numbers", "python")

        messages, _, options = provider.calls[0]
        assert code.startswith("def add")
        assert options.temperature == 0.2
        assert messages[0].role == "system"
        assert "expert python developer" in messages[0].content
        assert messages[1].content == "add two numbers"

    @pytest.mark.asyncio
    async def test_review_code_parses_json(self):
        provider = FakeProvider(
            reply=json.dumps(
                {
                    "issues": [{"line": 3, "severity": "warning", "message": "unused"}],
                    "summary": "mostly fine",
                    "improvements": ["add tests"],
                }
            )
        )
        await provider.initialize()

        review = await provider.review_code("x = 1")

        assert review.summary == "mostly fine"
        assert review.issues[0].line == 3
        assert review.improvements == ["add tests"]
        assert provider.calls[0][2].temperature == 0.1


class TestParseReview:
    def test_fenced_json(self):
        raw = '```json\n{"issues": [], "summary": "clean", "improvements": []}\n```'
        assert parse_review(raw).summary == "clean"

    def test_non_json_degrades_to_summary(self):
        """Unparseable reviews should keep the raw text"""
        review = parse_review("Looks good to me")
        assert review.summary == "Looks good to me"
        assert review.issues == []
        assert review.improvements == []


class TestStreamDelivery:
    """Callback and cancellation behavior of chat_stream"""

    @pytest.mark.asyncio
    async def test_chunks_are_yielded_and_passed_to_callback(self):
        provider = FakeProvider(chunks=("a", "b", "c"))
        await provider.initialize()
        tokens = []

        options = ChatOptions(stream_options=StreamOptions(on_token=tokens.append))
        chunks = [c async for c in provider.chat_stream([Message("user", "hi")], None, options)]

        assert chunks == ["a", "b", "c"]
        assert tokens == chunks

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        provider = FakeProvider(chunks=("a", "b"))
        await provider.initialize()
        tokens = []

        async def on_token(chunk):
            tokens.append(chunk)

        options = ChatOptions(stream_options=StreamOptions(on_token=on_token))
        async for _ in provider.chat_stream([Message("user", "hi")], None, options):
            pass

        assert tokens == ["a", "b"]

    @pytest.mark.asyncio
    async def test_signal_stops_stream(self):
        """Setting the signal mid-stream should end it quietly"""
        provider = FakeProvider(chunks=("1", "2", "3", "4"))
        await provider.initialize()
        signal = asyncio.Event()
        tokens = []

        def on_token(chunk):
            tokens.append(chunk)
            if len(tokens) == 2:
                signal.set()

        options = ChatOptions(stream_options=StreamOptions(on_token=on_token, signal=signal))
        chunks = [c async for c in provider.chat_stream([Message("user", "hi")], None, options)]

        assert chunks == ["1", "2"]

    @pytest.mark.asyncio
    async def test_presignalled_stream_yields_nothing(self):
        provider = FakeProvider()
        await provider.initialize()
        signal = asyncio.Event()
        signal.set()

        options = ChatOptions(stream_options=StreamOptions(signal=signal))
        chunks = [c async for c in provider.chat_stream([Message("user", "hi")], None, options)]

        assert chunks == []


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_initialize_without_key_fails(self):
        provider = OpenAIProvider()
        with pytest.raises(AIRouterError, match="API key not configured"):
            await provider.initialize("")
        assert provider.initialized is False

    @pytest.mark.asyncio
    async def test_reasoning_models_force_temperature_1(self):
        """gpt-5 and o1 models only accept temperature=1"""
        client = openai_client()
        provider = OpenAIProvider(client=client)
        await provider.initialize("sk-test")

        for model in ("gpt-5-2025-08-07", "o1-mini"):
            await provider.chat([Message("user", "hi")], model, ChatOptions(temperature=0.2))
            assert client.chat.completions.create.call_args.kwargs["temperature"] == 1.0

    @pytest.mark.asyncio
    async def test_regular_models_keep_temperature(self):
        client = openai_client(reply="hello")
        provider = OpenAIProvider(client=client)
        await provider.initialize("sk-test")

        reply = await provider.chat(
            [{"role": "user", "content": "hi"}], "gpt-4o", ChatOptions(temperature=0.2, max_tokens=50)
        )

        kwargs = client.chat.completions.create.call_args.kwargs
        assert reply == "hello"
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_stream_closes_sdk_stream(self):
        stream = FakeSDKStream(
            [
                SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hi"))]),
                SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
                SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=" there"))]),
            ]
        )
        client = openai_client()
        client.chat.completions.create = AsyncMock(return_value=stream)
        provider = OpenAIProvider(client=client)
        await provider.initialize("sk-test")

        chunks = [c async for c in provider.chat_stream([Message("user", "hi")], "gpt-4o")]

        assert chunks == ["Hi", " there"]
        assert stream.closed is True
        assert client.chat.completions.create.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_sdk_status_errors_are_translated(self):
        class RateLimited(Exception):
            status_code = 429

        client = openai_client()
        client.chat.completions.create = AsyncMock(side_effect=RateLimited("slow down"))
        provider = OpenAIProvider(client=client)
        await provider.initialize("sk-test")

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await provider.chat([Message("user", "hi")])
        assert exc_info.value.status == 429
        assert exc_info.value.retryable is True


class TestAnthropicProvider:
    @pytest.mark.asyncio
    async def test_system_prompt_is_top_level(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(type="text", text="sure")])
        )
        provider = AnthropicProvider(client=client)
        await provider.initialize("sk-ant-test")

        reply = await provider.chat(
            [Message("system", "Be terse"), Message("user", "hi")],
            options=ChatOptions(stop_sequences=["END"]),
        )

        kwargs = client.messages.create.call_args.kwargs
        assert reply == "sure"
        assert kwargs["system"] == "Be terse"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["max_tokens"] == 4096
        assert kwargs["stop_sequences"] == ["END"]
        assert kwargs["model"] == "claude-opus-4-1-20250805"

    @pytest.mark.asyncio
    async def test_stream_keeps_only_text_deltas(self):
        stream = FakeSDKStream(
            [
                SimpleNamespace(type="message_start"),
                SimpleNamespace(
                    type="content_block_delta",
                    delta=SimpleNamespace(type="text_delta", text="Hi"),
                ),
                SimpleNamespace(
                    type="content_block_delta",
                    delta=SimpleNamespace(type="input_json_delta", text="{}"),
                ),
                SimpleNamespace(type="message_stop"),
            ]
        )
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=stream)
        provider = AnthropicProvider(client=client)
        await provider.initialize("sk-ant-test")

        chunks = [c async for c in provider.chat_stream([Message("user", "hi")])]

        assert chunks == ["Hi"]
        assert stream.closed is True


class TestGoogleProvider:
    @pytest.mark.asyncio
    async def test_system_prompt_becomes_priming_pair(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(return_value=SimpleNamespace(text="ok"))
        provider = GoogleProvider(client=client)
        await provider.initialize("google-test-key")

        await provider.chat(
            [Message("system", "Be terse"), Message("user", "hi")],
            "gemini-2.5-flash",
            ChatOptions(max_tokens=100),
        )

        kwargs = client.aio.models.generate_content.call_args.kwargs
        contents = kwargs["contents"]
        assert contents[0] == {"role": "user", "parts": [{"text": "System: Be terse"}]}
        assert contents[1]["role"] == "model"
        assert contents[1]["parts"][0]["text"] == GoogleProvider.SYSTEM_ACK
        assert contents[2] == {"role": "user", "parts": [{"text": "hi"}]}
        assert kwargs["config"]["max_output_tokens"] == 100


class TestGroqProvider:
    @pytest.mark.asyncio
    async def test_chat_over_http(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=completion("fast answer"))

        provider = GroqProvider(transport=httpx.MockTransport(handler))
        await provider.initialize("gsk_test")

        reply = await provider.chat([Message("user", "hi")])

        payload = json.loads(requests[0].content)
        assert reply == "fast answer"
        assert requests[0].url.path == "/openai/v1/chat/completions"
        assert requests[0].headers["Authorization"] == "Bearer gsk_test"
        assert payload["model"] == "llama-3.3-70b-versatile"
        assert payload["max_tokens"] == 4096
        assert payload["stream"] is False

    @pytest.mark.asyncio
    async def test_server_error_raises_upstream_error(self):
        provider = GroqProvider(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        )
        await provider.initialize("gsk_test")

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await provider.chat([Message("user", "hi")])
        assert exc_info.value.status == 500
        assert exc_info.value.retryable is True
        assert exc_info.value.provider == "groq"

    @pytest.mark.asyncio
    async def test_transport_timeout_is_translated(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        provider = GroqProvider(transport=httpx.MockTransport(handler))
        await provider.initialize("gsk_test")

        with pytest.raises(ProviderTimeoutError):
            await provider.chat([Message("user", "hi")])

    @pytest.mark.asyncio
    async def test_sse_stream(self):
        tokens = []
        provider = GroqProvider(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(
                    200, content=SSE_BODY, headers={"Content-Type": "text/event-stream"}
                )
            )
        )
        await provider.initialize("gsk_test")

        options = ChatOptions(stream_options=StreamOptions(on_token=tokens.append))
        chunks = [c async for c in provider.chat_stream([Message("user", "hi")], None, options)]

        assert chunks == ["Hel", "lo", " world"]
        assert tokens == chunks

    @pytest.mark.asyncio
    async def test_empty_stream_body_raises(self):
        provider = GroqProvider(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b""))
        )
        await provider.initialize("gsk_test")

        with pytest.raises(NoResponseBodyError):
            async for _ in provider.chat_stream([Message("user", "hi")]):
                pass

    @pytest.mark.asyncio
    async def test_stream_error_status_includes_body(self):
        provider = GroqProvider(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(429, text="rate limited")
            )
        )
        await provider.initialize("gsk_test")

        with pytest.raises(UpstreamHTTPError, match="rate limited") as exc_info:
            async for _ in provider.chat_stream([Message("user", "hi")]):
                pass
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_grok_uses_xai_endpoint(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=completion("hi"))

        provider = GrokProvider(transport=httpx.MockTransport(handler))
        await provider.initialize("xai-test")
        await provider.chat([Message("user", "hi")])

        assert requests[0].url.host == "api.x.ai"
        assert json.loads(requests[0].content)["model"] == "grok-4-0709"
        assert "vision" not in provider.capabilities


class TestLMStudioProvider:
    @staticmethod
    def server(calls, fail_first=0):
        def handler(request):
            calls.append(request)
            if request.url.path == "/v1/models":
                return httpx.Response(
                    200, json={"data": [{"id": "qwen3-30b"}, {"id": "local-model"}]}
                )
            if request.url.path == "/v1/chat/completions":
                chat_calls = [c for c in calls if c.url.path == "/v1/chat/completions"]
                if len(chat_calls) <= fail_first:
                    return httpx.Response(503, text="loading model")
                return httpx.Response(200, json=completion("local reply"))
            return httpx.Response(404)

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_initialize_discovers_models(self):
        calls = []
        provider = LMStudioProvider(transport=self.server(calls))
        await provider.initialize(config=local_config("http://localhost:1234/v1"))

        assert provider.initialized is True
        assert provider.get_models() == ["qwen3-30b", "local-model"]
        assert calls[0].headers["Authorization"] == "Bearer lm-studio"

    @pytest.mark.asyncio
    async def test_unreachable_server_keeps_static_catalog(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = LMStudioProvider(transport=httpx.MockTransport(handler))
        await provider.initialize(config=local_config("http://localhost:1234/v1"))

        assert provider.initialized is True
        assert await provider.validate_connection() is False
        assert provider.get_models() == list(LMStudioProvider.DEFAULT_MODELS)

    @pytest.mark.asyncio
    async def test_chat_retries_transient_failures(self):
        calls = []
        provider = LMStudioProvider(transport=self.server(calls, fail_first=1))
        await provider.initialize(config=local_config("http://localhost:1234/v1"))

        reply = await provider.chat([Message("user", "hi")], "qwen3-30b")

        chat_calls = [c for c in calls if c.url.path == "/v1/chat/completions"]
        assert reply == "local reply"
        assert len(chat_calls) == 2
        payload = json.loads(chat_calls[-1].content)
        assert payload["top_p"] == 0.95
        assert payload["max_tokens"] == 4096

    @pytest.mark.asyncio
    async def test_chat_gives_up_after_retry_attempts(self):
        calls = []
        provider = LMStudioProvider(transport=self.server(calls, fail_first=10))
        await provider.initialize(config=local_config("http://localhost:1234/v1", attempts=2))

        with pytest.raises(UpstreamHTTPError):
            await provider.chat([Message("user", "hi")])
        assert len([c for c in calls if c.url.path == "/v1/chat/completions"]) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if request.url.path == "/v1/models":
                return httpx.Response(200, json={"data": [{"id": "qwen3-30b"}]})
            return httpx.Response(404, text="no such route")

        provider = LMStudioProvider(transport=httpx.MockTransport(handler))
        await provider.initialize(config=local_config("http://localhost:1234/v1", attempts=3))

        with pytest.raises(UpstreamHTTPError) as excinfo:
            await provider.chat([Message("user", "hi")])

        assert excinfo.value.status == 404
        assert len([c for c in calls if c.url.path == "/v1/chat/completions"]) == 1

    @pytest.mark.asyncio
    async def test_server_started_after_initialize(self):
        """Models loaded on a server that came up late are discovered on refresh"""
        state = {"up": False}

        def handler(request):
            if not state["up"]:
                raise httpx.ConnectError("connection refused", request=request)
            if request.url.path == "/v1/models":
                return httpx.Response(200, json={"data": [{"id": "qwen2.5-coder-7b"}]})
            return httpx.Response(200, json=completion("late reply"))

        provider = LMStudioProvider(transport=httpx.MockTransport(handler))
        await provider.initialize(config=local_config("http://localhost:1234/v1"))
        assert provider.get_models() == list(LMStudioProvider.DEFAULT_MODELS)

        state["up"] = True
        assert await provider.refresh_models() == ["qwen2.5-coder-7b"]
        reply = await provider.chat([Message("user", "hi")], "qwen2.5-coder-7b")

        assert reply == "late reply"


class TestVLLMProvider:
    @staticmethod
    def transport(requests):
        def handler(request):
            requests.append(request)
            if request.url.path == "/v1/models":
                return httpx.Response(
                    200,
                    json={
                        "data": [
                            {"id": "mistralai/Mistral-7B-Instruct-v0.1"},
                            {"id": "stabilityai/japanese-stablelm-2-instruct-1_6b"},
                        ]
                    },
                )
            return httpx.Response(200, json=completion("vllm reply"))

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_sampling_defaults(self):
        requests = []
        provider = VLLMProvider(transport=self.transport(requests))
        await provider.initialize(config=local_config("http://localhost:8000/v1"))

        await provider.chat([Message("user", "hi")], options=ChatOptions(top_k=20))

        payload = json.loads(requests[-1].content)
        assert payload["max_tokens"] == 2048
        assert payload["top_k"] == 20
        assert payload["frequency_penalty"] == 0.0
        assert "Authorization" not in requests[-1].headers

    @pytest.mark.asyncio
    async def test_select_model_for_task(self):
        provider = VLLMProvider(transport=self.transport([]))
        await provider.initialize(config=local_config("http://localhost:8000/v1"))

        assert provider.select_model_for_task("japanese") == (
            "stabilityai/japanese-stablelm-2-instruct-1_6b"
        )
        assert provider.select_model_for_task("anything") == "mistralai/Mistral-7B-Instruct-v0.1"


class TestOllamaProvider:
    @staticmethod
    def transport(requests, generate=None, pull_lines=None):
        def handler(request):
            requests.append(request)
            path = request.url.path
            if path == "/api/version":
                return httpx.Response(200, json={"version": "0.5.0"})
            if path == "/api/tags":
                return httpx.Response(
                    200, json={"models": [{"name": "llama3.2:3b"}, {"name": "qwen2.5-vl:7b"}]}
                )
            if path == "/api/generate":
                return generate(request)
            if path == "/api/pull":
                body = "\n".join(json.dumps(line) for line in pull_lines) + "\n"
                return httpx.Response(200, content=body.encode())
            if path == "/api/delete":
                return httpx.Response(200)
            return httpx.Response(404)

        return httpx.MockTransport(handler)

    async def connect(self, requests, **kwargs):
        provider = OllamaProvider(transport=self.transport(requests, **kwargs))
        await provider.initialize(config=local_config("http://localhost:11434", attempts=1))
        return provider

    def test_build_prompt(self):
        prompt = OllamaProvider.build_prompt(
            [Message("system", "Be terse"), Message("user", "hi"), Message("assistant", "hey")]
        )
        assert prompt == "System: Be terse\n\nUser: hi\n\nAssistant: hey\n\nAssistant: "

    @pytest.mark.asyncio
    async def test_chat_uses_generate_endpoint(self):
        requests = []
        provider = await self.connect(
            requests, generate=lambda request: httpx.Response(200, json={"response": "hello"})
        )

        reply = await provider.chat([Message("user", "hi")], options=ChatOptions(max_tokens=64))

        payload = json.loads(requests[-1].content)
        assert reply == "hello"
        assert provider.get_models() == ["llama3.2:3b", "qwen2.5-vl:7b"]
        assert payload["model"] == "llama3.2:3b"
        assert payload["prompt"] == "User: hi\n\nAssistant: "
        assert payload["options"]["num_predict"] == 64
        assert payload["stream"] is False

    @pytest.mark.asyncio
    async def test_ndjson_stream_stops_on_done(self):
        lines = [
            {"response": "Hel", "done": False},
            {"response": "lo", "done": False},
            {"response": "", "done": True},
            {"response": "ignored", "done": False},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode()
        provider = await self.connect(
            [], generate=lambda request: httpx.Response(200, content=body)
        )

        chunks = [c async for c in provider.chat_stream([Message("user", "hi")])]

        assert chunks == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_error_line_in_stream_raises(self):
        body = b'{"response": "Hel", "done": false}\n{"error": "model crashed"}\n'
        provider = await self.connect(
            [], generate=lambda request: httpx.Response(200, content=body)
        )

        received = []
        with pytest.raises(UpstreamHTTPError, match="model crashed"):
            async for chunk in provider.chat_stream([Message("user", "hi")]):
                received.append(chunk)
        assert received == ["Hel"]

    @pytest.mark.asyncio
    async def test_vision_sends_base64_image(self):
        requests = []
        provider = await self.connect(
            requests, generate=lambda request: httpx.Response(200, json={"response": "a cat"})
        )

        reply = await provider.vision(b"\x89PNG fake", "what is this?")

        payload = json.loads(requests[-1].content)
        assert reply == "a cat"
        assert payload["model"] == "qwen2.5-vl:7b"
        assert len(payload["images"]) == 1

    @pytest.mark.asyncio
    async def test_pull_model_reports_progress(self):
        progress = []
        provider = await self.connect(
            [],
            pull_lines=[
                {"status": "pulling manifest"},
                {"status": "downloading", "completed": 10, "total": 100},
                {"status": "success"},
            ],
        )

        await provider.pull_model("llama3.2:1b", on_progress=progress.append)

        assert [p["status"] for p in progress] == ["pulling manifest", "downloading", "success"]

    @pytest.mark.asyncio
    async def test_delete_model(self):
        requests = []
        provider = await self.connect(requests)

        await provider.delete_model("qwen2.5-vl:7b")

        assert requests[-1].method == "DELETE"
        assert json.loads(requests[-1].content) == {"name": "qwen2.5-vl:7b"}
        assert provider.get_models() == ["llama3.2:3b"]


class TestRetryHandler:
    """Test retry logic"""

    @pytest.mark.asyncio
    async def test_retry_on_failure(self):
        """Should retry until the call succeeds"""
        call_count = 0

        async def failing_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise Exception("connection reset")
            return "success"

        result = await RetryHandler.execute_with_retry(failing_func, attempts=3, base_delay=0.0)

        assert result == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_last_error_is_raised(self):
        async def always_fails():
            raise ValueError("still broken")

        with pytest.raises(ValueError, match="still broken"):
            await RetryHandler.execute_with_retry(always_fails, attempts=2, base_delay=0.0)

    @pytest.mark.asyncio
    async def test_non_retryable_errors_fail_fast(self):
        call_count = 0

        async def rejected():
            nonlocal call_count
            call_count += 1
            raise UpstreamHTTPError(401, "bad key", provider="openai", message="unauthorized")

        with pytest.raises(UpstreamHTTPError):
            await RetryHandler.execute_with_retry(rejected, attempts=3, base_delay=0.0)
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retryable_router_errors_are_retried(self):
        call_count = 0

        async def overloaded():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise UpstreamHTTPError(429, "slow down", provider="groq", message="rate limited")
            return "done"

        assert await RetryHandler.execute_with_retry(overloaded, attempts=3, base_delay=0.0) == "done"
        assert call_count == 2

    def test_is_retryable(self):
        assert RetryHandler.is_retryable(ProviderTimeoutError("slow", provider="ollama"))
        assert RetryHandler.is_retryable(ConnectionError("reset"))
        assert not RetryHandler.is_retryable(AIRouterError("bad request"))
