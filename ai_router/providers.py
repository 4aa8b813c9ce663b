"""
Provider Adapters
=================
One adapter per vendor, all behind the same BaseProvider contract:

- initialize(api_key, config)
- get_models / get_default_model / validate_model
- chat / chat_stream
- generate_code / review_code

Cloud adapters (OpenAI, Anthropic, Google) wrap the official SDKs, which
are imported lazily in initialize(). Groq and xAI Grok speak the
OpenAI-compatible wire format over httpx. Local runtimes (LM Studio,
Ollama, vLLM) are plain httpx clients that probe the server on startup,
discover the loaded models, and retry every call with exponential backoff.

Streaming adapters yield text chunks in transport order. Every chunk is
also handed to ``StreamOptions.on_token``, and ``StreamOptions.signal`` is
checked around each chunk so a cancelled stream ends quietly.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import httpx

from .errors import (
    AIRouterError,
    NoModelsAvailableError,
    NoResponseBodyError,
    NotInitializedError,
    ProviderTimeoutError,
    UnsupportedModelError,
    UpstreamHTTPError,
)
from .models import ChatOptions, Message, ReviewResult, StreamOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_PROVIDERS = frozenset({"lmstudio", "ollama", "vllm"})

CODE_SYSTEM_PROMPT = (
    "You are an expert {language} developer. Generate clean, well-commented code "
    "based on the user's request. Only return the code without any explanations "
    "or markdown formatting."
)

REVIEW_SYSTEM_PROMPT = """You are an expert code reviewer. Analyze the following {language} code and provide a detailed review. Format your response as JSON with the following structure:
{{
  "issues": [
    {{
      "line": <line_number>,
      "severity": "error" | "warning" | "info",
      "message": "<issue description>",
      "suggestion": "<optional fix suggestion>"
    }}
  ],
  "summary": "<overall code quality summary>",
  "improvements": ["<improvement suggestion 1>", "<improvement suggestion 2>", ...]
}}"""

_JSON_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def as_messages(messages: Sequence[Message | Mapping[str, Any]]) -> list[Message]:
    """Accept Message objects or {"role", "content"} dicts."""
    normalized = []
    for msg in messages:
        if isinstance(msg, Message):
            normalized.append(msg)
        else:
            normalized.append(Message(role=str(msg["role"]), content=str(msg["content"])))
    return normalized


def split_system(messages: Sequence[Message]) -> tuple[str, list[Message]]:
    """Pull system turns out of the conversation for vendors with a side channel."""
    system_parts = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    return "\n\n".join(system_parts), rest


def guess_image_mime(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if image[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def parse_review(raw: str) -> ReviewResult:
    """Parse a JSON review, falling back to the raw text as the summary."""
    text = raw.strip()
    fenced = _JSON_FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        data = json.loads(text)
    except ValueError:
        return ReviewResult(issues=[], summary=raw, improvements=[])
    if not isinstance(data, dict):
        return ReviewResult(issues=[], summary=raw, improvements=[])
    return ReviewResult.from_dict(data)


@contextmanager
def translate_errors(provider: str) -> Iterator[None]:
    """Map transport and SDK failures onto the router error taxonomy."""
    try:
        yield
    except AIRouterError:
        raise
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"{provider} request timed out", provider=provider) from exc
    except httpx.HTTPStatusError as exc:
        raise UpstreamHTTPError.from_response(exc, provider) from exc
    except Exception as exc:
        # openai/anthropic expose status_code, google-genai exposes code
        status = getattr(exc, "status_code", None)
        if not isinstance(status, int):
            status = getattr(exc, "code", None)
        if isinstance(status, int):
            body = getattr(exc, "body", None) or getattr(exc, "message", None) or str(exc)
            if not isinstance(body, str):
                body = json.dumps(body, default=str)
            raise UpstreamHTTPError(status, body, provider=provider) from exc
        if "timeout" in type(exc).__name__.lower():
            raise ProviderTimeoutError(str(exc), provider=provider) from exc
        raise


def raise_for_status(response: httpx.Response, provider: str) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise UpstreamHTTPError.from_response(exc, provider) from exc


class RetryHandler:
    """Exponential backoff retry handler"""

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        """Router errors say whether they are worth retrying; anything else is."""
        return bool(getattr(error, "retryable", True))

    @classmethod
    async def execute_with_retry(
        cls,
        func: Callable[[], Awaitable[T]],
        attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        label: str = "",
    ) -> T:
        """Call func up to ``attempts`` times, sleeping base_delay * 2**attempt between tries."""
        attempts = max(1, attempts)

        for attempt in range(attempts):
            try:
                return await func()
            except Exception as e:
                if attempt == attempts - 1 or not cls.is_retryable(e):
                    raise

                delay = min(base_delay * (2**attempt), max_delay)
                logger.warning(
                    f"{label or 'call'} failed (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry loop exited without a result")


@dataclass(frozen=True)
class AdapterConfig:
    """Vendor connection settings. Times are in seconds."""

    base_url: str | None = None
    timeout: float = 120.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> AdapterConfig:
        values = dict(values)
        known = {}
        for key in ("base_url", "timeout", "retry_attempts", "retry_delay"):
            if key in values:
                known[key] = values.pop(key)
        return cls(**known, extra=values)


class BaseProvider(ABC):
    """Abstract base class for AI providers"""

    name: str = ""
    DEFAULT_MODELS: tuple[str, ...] = ()
    DEFAULT_BASE_URL: str | None = None
    DEFAULT_TIMEOUT: float = 120.0
    capabilities: frozenset[str] = frozenset({"text", "code"})
    # Models matching this pattern only accept temperature=1
    REASONING_MODEL_PATTERN: re.Pattern[str] | None = None
    CODE_MAX_TOKENS: int | None = None

    def __init__(self) -> None:
        self.api_key = ""
        self.config = AdapterConfig(
            base_url=self.DEFAULT_BASE_URL, timeout=self.DEFAULT_TIMEOUT
        )
        self.models: list[str] = list(self.DEFAULT_MODELS)
        self.initialized = False

    @property
    def is_local(self) -> bool:
        return self.name in LOCAL_PROVIDERS

    def _apply_config(
        self, api_key: str, config: AdapterConfig | Mapping[str, Any] | None
    ) -> None:
        self.api_key = api_key or ""
        if config is None:
            config = AdapterConfig(timeout=self.DEFAULT_TIMEOUT)
        elif not isinstance(config, AdapterConfig):
            config = AdapterConfig.from_mapping(
                {"timeout": self.DEFAULT_TIMEOUT, **dict(config)}
            )
        if config.base_url is None:
            config = replace(config, base_url=self.DEFAULT_BASE_URL)
        self.config = config

    @abstractmethod
    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        """Build the vendor client. Must run before any other call."""

    def ensure_initialized(self) -> None:
        if not self.initialized:
            raise NotInitializedError(self.name)

    def get_models(self) -> list[str]:
        self.ensure_initialized()
        return list(self.models)

    def get_default_model(self) -> str:
        models = self.get_models()
        if not models:
            raise NoModelsAvailableError(self.name)
        return models[0]

    def validate_model(self, model: str | None = None) -> str:
        self.ensure_initialized()
        if model is None:
            return self.get_default_model()
        if model not in self.get_models():
            raise UnsupportedModelError(self.name, model)
        return model

    def resolve_temperature(self, model: str, options: ChatOptions) -> float:
        if self.REASONING_MODEL_PATTERN and self.REASONING_MODEL_PATTERN.search(model):
            return 1.0
        return options.temperature

    @abstractmethod
    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        """Send a chat request and return the full reply."""

    @abstractmethod
    def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        """Yield raw reply chunks from the vendor stream."""

    def chat_stream(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[str]:
        """Stream the reply. Raises NotInitializedError/UnsupportedModelError eagerly."""
        self.ensure_initialized()
        model_id = self.validate_model(model)
        opts = options or ChatOptions()
        return self._deliver(
            self._stream(as_messages(messages), model_id, opts),
            opts.stream_options or StreamOptions(),
        )

    @staticmethod
    async def _deliver(
        chunks: AsyncIterator[str], stream_options: StreamOptions
    ) -> AsyncIterator[str]:
        try:
            if stream_options.cancelled:
                return
            async for chunk in chunks:
                if not chunk:
                    continue
                if stream_options.cancelled:
                    return
                if stream_options.on_token is not None:
                    result = stream_options.on_token(chunk)
                    if inspect.isawaitable(result):
                        await result
                yield chunk
                if stream_options.cancelled:
                    return
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def generate_code(
        self, prompt: str, language: str = "typescript", model: str | None = None
    ) -> str:
        messages = [
            Message("system", CODE_SYSTEM_PROMPT.format(language=language)),
            Message("user", prompt),
        ]
        options = ChatOptions(temperature=0.2, max_tokens=self.CODE_MAX_TOKENS)
        return await self.chat(messages, model, options)

    async def review_code(
        self, code: str, language: str = "typescript", model: str | None = None
    ) -> ReviewResult:
        messages = [
            Message("system", REVIEW_SYSTEM_PROMPT.format(language=language)),
            Message("user", code),
        ]
        raw = await self.chat(messages, model, ChatOptions(temperature=0.1))
        return parse_review(raw)

    async def close(self) -> None:
        """Release the underlying client, if any."""


class OpenAICompatibleClient:
    """Minimal /chat/completions client over httpx, shared by several adapters"""

    def __init__(self, provider: str, http: httpx.AsyncClient) -> None:
        self.provider = provider
        self.http = http

    @classmethod
    def connect(
        cls,
        provider: str,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OpenAICompatibleClient:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return cls(
            provider,
            httpx.AsyncClient(
                base_url=base_url, headers=headers, timeout=timeout, transport=transport
            ),
        )

    async def complete(self, payload: dict[str, Any]) -> str:
        with translate_errors(self.provider):
            response = await self.http.post("/chat/completions", json=payload)
            raise_for_status(response, self.provider)
            data = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("message", {}).get("content") or ""

    async def open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        with translate_errors(self.provider):
            request = self.http.build_request("POST", "/chat/completions", json=payload)
            response = await self.http.send(request, stream=True)
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                await response.aclose()
                raise UpstreamHTTPError(
                    response.status_code,
                    body,
                    provider=self.provider,
                    message=f"{self.provider} API error: {response.reason_phrase} - {body}",
                )
        return response

    async def iter_sse(self, response: httpx.Response) -> AsyncIterator[str]:
        """Yield delta content from an SSE body until [DONE]."""
        received = False
        with translate_errors(self.provider):
            async for line in response.aiter_lines():
                received = True
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    return
                try:
                    event = json.loads(data)
                except ValueError:
                    continue
                choices = event.get("choices") or []
                if choices:
                    content = (choices[0].get("delta") or {}).get("content")
                    if content:
                        yield content
        if not received:
            raise NoResponseBodyError(self.provider)

    async def list_models(self, timeout: float = 5.0) -> list[str]:
        response = await self.http.get("/models", timeout=timeout)
        raise_for_status(response, self.provider)
        return [item["id"] for item in response.json().get("data", []) if "id" in item]

    async def aclose(self) -> None:
        await self.http.aclose()


def openai_chat_payload(
    messages: Sequence[Message],
    model: str,
    temperature: float,
    options: ChatOptions,
    stream: bool = False,
    **defaults: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in messages],
        "temperature": temperature,
    }
    payload.update(defaults)
    if options.max_tokens is not None:
        payload["max_tokens"] = options.max_tokens
    if options.top_p is not None:
        payload["top_p"] = options.top_p
    if options.stop_sequences:
        payload["stop"] = options.stop_sequences
    payload["stream"] = stream
    return payload


# ---------------------------------------------------------------------------
# Cloud adapters
# ---------------------------------------------------------------------------


class OpenAIProvider(BaseProvider):
    """OpenAI API provider"""

    name = "openai"
    DEFAULT_MODELS = (
        "gpt-5-2025-08-07",
        "gpt-5-mini-2025-08-07",
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
        "o1-preview",
        "o1-mini",
    )
    capabilities = frozenset({"text", "code", "vision"})
    REASONING_MODEL_PATTERN = re.compile(r"o1|gpt-5")
    VISION_MODEL = "gpt-4o"

    def __init__(self, client: Any | None = None) -> None:
        super().__init__()
        self._client = client

    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        self._apply_config(api_key, config)
        if self._client is None:
            if not self.api_key:
                raise AIRouterError("OpenAI API key not configured", provider=self.name)
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise AIRouterError("openai package not installed", provider=self.name) from e

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        self.initialized = True

    def _request(
        self, messages: list[Message], model: str, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        return openai_chat_payload(
            messages, model, self.resolve_temperature(model, options), options, stream
        )

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        request = self._request(as_messages(messages), model_id, options or ChatOptions())
        with translate_errors(self.name):
            response = await self._client.chat.completions.create(**request)
        return response.choices[0].message.content or ""

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        with translate_errors(self.name):
            stream = await self._client.chat.completions.create(
                **self._request(messages, model, options, stream=True)
            )
            try:
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield chunk.choices[0].delta.content
            finally:
                await stream.close()

    async def vision(self, image: bytes, prompt: str, model: str | None = None) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model or self.VISION_MODEL)
        data_url = f"data:{guess_image_mime(image)};base64,{base64.b64encode(image).decode()}"
        with translate_errors(self.name):
            response = await self._client.chat.completions.create(
                model=model_id,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                max_tokens=4096,
            )
        return response.choices[0].message.content or ""

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()


class AnthropicProvider(BaseProvider):
    """Anthropic Claude API provider"""

    name = "anthropic"
    DEFAULT_MODELS = (
        "claude-opus-4-1-20250805",
        "claude-sonnet-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    )
    capabilities = frozenset({"text", "code", "vision"})
    VISION_MODEL = "claude-3-5-sonnet-20241022"

    def __init__(self, client: Any | None = None) -> None:
        super().__init__()
        self._client = client

    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        self._apply_config(api_key, config)
        if self._client is None:
            if not self.api_key:
                raise AIRouterError("Anthropic API key not configured", provider=self.name)
            try:
                import anthropic
            except ImportError as e:
                raise AIRouterError("anthropic package not installed", provider=self.name) from e

            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key, timeout=self.config.timeout
            )
        self.initialized = True

    def _request(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> dict[str, Any]:
        # Anthropic takes the system prompt as a top-level field
        system, turns = split_system(messages)
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or 4096,
            "messages": [m.to_dict() for m in turns],
            "temperature": self.resolve_temperature(model, options),
        }
        if system:
            request["system"] = system
        if options.top_p is not None:
            request["top_p"] = options.top_p
        if options.stop_sequences:
            request["stop_sequences"] = options.stop_sequences
        return request

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        request = self._request(as_messages(messages), model_id, options or ChatOptions())
        with translate_errors(self.name):
            response = await self._client.messages.create(**request)
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        with translate_errors(self.name):
            stream = await self._client.messages.create(
                **self._request(messages, model, options), stream=True
            )
            try:
                async for event in stream:
                    if (
                        event.type == "content_block_delta"
                        and getattr(event.delta, "type", "") == "text_delta"
                    ):
                        yield event.delta.text
            finally:
                await stream.close()

    async def vision(self, image: bytes, prompt: str, model: str | None = None) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model or self.VISION_MODEL)
        with translate_errors(self.name):
            response = await self._client.messages.create(
                model=model_id,
                max_tokens=4096,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": guess_image_mime(image),
                                    "data": base64.b64encode(image).decode(),
                                },
                            },
                            {"type": "text", "text": prompt},
                        ],
                    }
                ],
            )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()


class GoogleProvider(BaseProvider):
    """Google Gemini API provider using the google-genai SDK"""

    name = "google"
    DEFAULT_MODELS = (
        "gemini-2.5-pro",
        "gemini-2.5-flash",
        "gemini-2.5-flash-lite",
        "gemini-2.0-flash-exp",
        "gemini-1.5-pro",
        "gemini-1.5-pro-002",
        "gemini-1.5-flash",
        "gemini-1.5-flash-002",
        "gemini-1.5-flash-8b",
        "gemini-1.0-pro",
    )
    SYSTEM_ACK = "Understood. I will follow these instructions."

    def __init__(self, client: Any | None = None) -> None:
        super().__init__()
        self._client = client

    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        self._apply_config(api_key, config)
        if self._client is None:
            if not self.api_key:
                raise AIRouterError("Google API key not configured", provider=self.name)
            try:
                from google import genai
            except ImportError as e:
                raise AIRouterError(
                    "google-genai package not installed", provider=self.name
                ) from e

            self._client = genai.Client(api_key=self.api_key)
        self.initialized = True

    def _contents(self, messages: list[Message]) -> list[dict[str, Any]]:
        # Gemini has no system role: prime the conversation with a turn pair
        system, turns = split_system(messages)
        contents: list[dict[str, Any]] = []
        if system:
            contents.append({"role": "user", "parts": [{"text": f"System: {system}"}]})
            contents.append({"role": "model", "parts": [{"text": self.SYSTEM_ACK}]})
        for msg in turns:
            role = "user" if msg.role == "user" else "model"
            contents.append({"role": role, "parts": [{"text": msg.content}]})
        return contents

    def _generation_config(self, model: str, options: ChatOptions) -> dict[str, Any]:
        config: dict[str, Any] = {"temperature": self.resolve_temperature(model, options)}
        if options.max_tokens is not None:
            config["max_output_tokens"] = options.max_tokens
        if options.top_p is not None:
            config["top_p"] = options.top_p
        if options.stop_sequences:
            config["stop_sequences"] = options.stop_sequences
        return config

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        opts = options or ChatOptions()
        with translate_errors(self.name):
            response = await self._client.aio.models.generate_content(
                model=model_id,
                contents=self._contents(as_messages(messages)),
                config=self._generation_config(model_id, opts),
            )
        return response.text or ""

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        with translate_errors(self.name):
            stream = await self._client.aio.models.generate_content_stream(
                model=model,
                contents=self._contents(messages),
                config=self._generation_config(model, options),
            )
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text


class GroqProvider(BaseProvider):
    """Groq API provider for fast inference"""

    name = "groq"
    DEFAULT_MODELS = (
        "llama-3.3-70b-versatile",
        "llama-3.1-70b-versatile",
        "llama-3.1-8b-instant",
        "mixtral-8x7b-32768",
        "gemma2-9b-it",
        "gemma-7b-it",
        "llama-3.2-90b-vision-preview",
    )
    DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
    capabilities = frozenset({"text", "code", "vision"})
    VISION_MODEL = "llama-3.2-90b-vision-preview"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__()
        self._transport = transport
        self._api: OpenAICompatibleClient | None = None

    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        self._apply_config(api_key, config)
        if not self.api_key:
            raise AIRouterError(f"{self.name} API key not configured", provider=self.name)
        self._api = OpenAICompatibleClient.connect(
            self.name,
            self.config.base_url or self.DEFAULT_BASE_URL,
            api_key=self.api_key,
            timeout=self.config.timeout,
            transport=self._transport,
        )
        self.initialized = True

    def _payload(
        self, messages: list[Message], model: str, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        return openai_chat_payload(
            messages,
            model,
            self.resolve_temperature(model, options),
            options,
            stream,
            max_tokens=4096,
        )

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        return await self._api.complete(
            self._payload(as_messages(messages), model_id, options or ChatOptions())
        )

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        response = await self._api.open_stream(
            self._payload(messages, model, options, stream=True)
        )
        try:
            async for chunk in self._api.iter_sse(response):
                yield chunk
        finally:
            await response.aclose()

    async def vision(self, image: bytes, prompt: str, model: str | None = None) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model or self.VISION_MODEL)
        data_url = f"data:{guess_image_mime(image)};base64,{base64.b64encode(image).decode()}"
        return await self._api.complete(
            {
                "model": model_id,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                "max_tokens": 4096,
            }
        )

    async def close(self) -> None:
        if self._api is not None:
            await self._api.aclose()


class GrokProvider(GroqProvider):
    """xAI Grok API provider (OpenAI-compatible)"""

    name = "grok"
    DEFAULT_MODELS = ("grok-4-0709", "grok-3", "grok-3-mini", "grok-2-1212")
    DEFAULT_BASE_URL = "https://api.x.ai/v1"
    capabilities = frozenset({"text", "code"})


# ---------------------------------------------------------------------------
# Local runtimes
# ---------------------------------------------------------------------------


class LocalProvider(BaseProvider):
    """Shared startup probe, model discovery and retry for local servers"""

    HEALTH_PATH = "/models"
    CONNECT_TIMEOUT = 5.0
    CODE_MAX_TOKENS = 8192
    DEFAULT_API_KEY = ""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._live_models: list[str] = []

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key or self.DEFAULT_API_KEY
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return httpx.AsyncClient(
            base_url=self.config.base_url or self.DEFAULT_BASE_URL or "",
            headers=headers,
            timeout=self.config.timeout,
            transport=self._transport,
        )

    async def initialize(
        self, api_key: str = "", config: AdapterConfig | Mapping[str, Any] | None = None
    ) -> None:
        self._apply_config(api_key, config)
        self._http = self._build_client()
        self.initialized = True

        if await self.validate_connection():
            await self.refresh_models()
            logger.info(f"{self.name} reachable at {self.config.base_url}")
        else:
            logger.info(f"{self.name} not reachable at {self.config.base_url}")

    @abstractmethod
    async def _fetch_models(self) -> list[str]:
        """Ask the server which models are loaded."""

    def get_models(self) -> list[str]:
        self.ensure_initialized()
        return list(self._live_models or self.models)

    async def refresh_models(self) -> list[str]:
        self.ensure_initialized()
        try:
            self._live_models = await self._fetch_models()
        except Exception as e:
            logger.debug(f"Could not list {self.name} models: {e}")
            self._live_models = []
        return self.get_models()

    async def validate_connection(self) -> bool:
        """GET the health endpoint. Never raises."""
        self.ensure_initialized()
        try:
            response = await self._http.get(self.HEALTH_PATH, timeout=self.CONNECT_TIMEOUT)
            return response.is_success
        except Exception as e:
            logger.debug(f"{self.name} connection check failed: {e}")
            return False

    async def is_server_running(self) -> bool:
        return await self.validate_connection()

    async def retry_with_backoff(
        self, fn: Callable[[], Awaitable[T]], attempts: int | None = None
    ) -> T:
        return await RetryHandler.execute_with_retry(
            fn,
            attempts=attempts if attempts is not None else self.config.retry_attempts,
            base_delay=self.config.retry_delay,
            label=self.name,
        )

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()


class LMStudioProvider(LocalProvider):
    """LM Studio local server (OpenAI-compatible)"""

    name = "lmstudio"
    DEFAULT_MODELS = (
        "gpt-oss-120b",
        "gpt-oss-20b",
        "qwen3-30b",
        "llama-3-70b",
        "mistral-7b",
        "codellama-34b",
    )
    DEFAULT_BASE_URL = "http://localhost:1234/v1"
    DEFAULT_TIMEOUT = 300.0
    DEFAULT_API_KEY = "lm-studio"

    def _api(self) -> OpenAICompatibleClient:
        return OpenAICompatibleClient(self.name, self._http)

    async def _fetch_models(self) -> list[str]:
        return await self._api().list_models(timeout=self.CONNECT_TIMEOUT)

    def _payload(
        self, messages: list[Message], model: str, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        return openai_chat_payload(
            messages,
            model,
            self.resolve_temperature(model, options),
            options,
            stream,
            max_tokens=4096,
            top_p=0.95,
        )

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        payload = self._payload(as_messages(messages), model_id, options or ChatOptions())
        return await self.retry_with_backoff(lambda: self._api().complete(payload))

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        api = self._api()
        payload = self._payload(messages, model, options, stream=True)
        response = await self.retry_with_backoff(lambda: api.open_stream(payload))
        try:
            async for chunk in api.iter_sse(response):
                yield chunk
        finally:
            await response.aclose()


class VLLMProvider(LMStudioProvider):
    """vLLM OpenAI-compatible server"""

    name = "vllm"
    DEFAULT_MODELS = (
        "stabilityai/japanese-stablelm-2-instruct-1_6b",
        "mistralai/Mistral-7B-v0.1",
        "mistralai/Mistral-7B-Instruct-v0.1",
        "meta-llama/Llama-2-7b-hf",
        "meta-llama/Llama-2-7b-chat-hf",
        "meta-llama/Llama-2-13b-hf",
        "meta-llama/Llama-2-13b-chat-hf",
        "codellama/CodeLlama-7b-hf",
        "codellama/CodeLlama-13b-hf",
    )
    DEFAULT_BASE_URL = "http://localhost:8000/v1"
    DEFAULT_TIMEOUT = 120.0
    DEFAULT_API_KEY = ""

    def _payload(
        self, messages: list[Message], model: str, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        return openai_chat_payload(
            messages,
            model,
            self.resolve_temperature(model, options),
            options,
            stream,
            max_tokens=2048,
            top_p=0.95,
            top_k=options.top_k if options.top_k is not None else 50,
            frequency_penalty=options.frequency_penalty or 0.0,
            presence_penalty=options.presence_penalty or 0.0,
        )

    def select_model_for_task(self, task: str) -> str:
        """Pick a loaded model suited to 'japanese', 'code', 'fast' or anything else."""
        models = self.get_models()
        hints = {
            "japanese": ("japanese", "jp"),
            "code": ("code", "instruct"),
            "fast": ("1_6b", "1.6b", "7b"),
        }.get(task, ())
        for model in models:
            lowered = model.lower()
            if any(hint in lowered for hint in hints):
                return model
        return models[0] if models else self.get_default_model()


class OllamaProvider(LocalProvider):
    """Ollama local model provider"""

    name = "ollama"
    DEFAULT_MODELS = (
        "llama3.2:3b",
        "llama3.2:1b",
        "qwen2.5:7b",
        "qwen2.5:14b",
        "qwen2.5:32b",
        "qwen2.5-vl:7b",
        "codellama:7b",
        "codellama:13b",
        "codellama:34b",
        "deepseek-coder:6.7b",
        "deepseek-coder:33b",
        "phi3.5:3.8b",
        "phi3.5:14b",
        "mistral:7b",
        "mixtral:8x7b",
        "nomic-embed-text",
    )
    DEFAULT_BASE_URL = "http://localhost:11434"
    DEFAULT_TIMEOUT = 300.0
    HEALTH_PATH = "/api/version"
    PULL_TIMEOUT = 600.0
    capabilities = frozenset({"text", "code", "vision"})
    VISION_MODEL = "qwen2.5-vl:7b"

    async def _fetch_models(self) -> list[str]:
        response = await self._http.get("/api/tags", timeout=self.CONNECT_TIMEOUT)
        raise_for_status(response, self.name)
        return [m["name"] for m in response.json().get("models", []) if "name" in m]

    @staticmethod
    def build_prompt(messages: Sequence[Message]) -> str:
        """Flatten the conversation into Ollama's single prompt string."""
        labels = {"system": "System", "user": "User", "assistant": "Assistant"}
        prompt = "".join(
            f"{labels[m.role]}: {m.content}\n\n" for m in messages if m.role in labels
        )
        return prompt + "Assistant: "

    def _payload(
        self, messages: list[Message], model: str, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        ollama_options: dict[str, Any] = {
            "temperature": self.resolve_temperature(model, options),
            "top_p": options.top_p if options.top_p is not None else 0.95,
            "num_predict": options.max_tokens or 4096,
        }
        if options.stop_sequences:
            ollama_options["stop"] = options.stop_sequences
        return {
            "model": model,
            "prompt": self.build_prompt(messages),
            "stream": stream,
            "options": ollama_options,
        }

    async def _generate(self, payload: dict[str, Any]) -> str:
        with translate_errors(self.name):
            response = await self._http.post("/api/generate", json=payload)
            raise_for_status(response, self.name)
            return response.json().get("response", "")

    async def chat(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model)
        payload = self._payload(as_messages(messages), model_id, options or ChatOptions())
        return await self.retry_with_backoff(lambda: self._generate(payload))

    async def _open(
        self, method: str, path: str, payload: dict[str, Any], timeout: float | None = None
    ) -> httpx.Response:
        with translate_errors(self.name):
            request = self._http.build_request(
                method,
                path,
                json=payload,
                timeout=timeout if timeout is not None else self.config.timeout,
            )
            response = await self._http.send(request, stream=True)
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                await response.aclose()
                raise UpstreamHTTPError(response.status_code, body, provider=self.name)
        return response

    async def _iter_ndjson(self, response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        received = False
        with translate_errors(self.name):
            async for line in response.aiter_lines():
                received = True
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except ValueError:
                    continue
                if data.get("error"):
                    raise UpstreamHTTPError(
                        response.status_code, str(data["error"]), provider=self.name
                    )
                yield data
        if not received:
            raise NoResponseBodyError(self.name)

    async def _stream(
        self, messages: list[Message], model: str, options: ChatOptions
    ) -> AsyncIterator[str]:
        payload = self._payload(messages, model, options, stream=True)
        response = await self.retry_with_backoff(
            lambda: self._open("POST", "/api/generate", payload)
        )
        try:
            async for data in self._iter_ndjson(response):
                if data.get("response"):
                    yield data["response"]
                if data.get("done"):
                    break
        finally:
            await response.aclose()

    async def vision(self, image: bytes, prompt: str, model: str | None = None) -> str:
        self.ensure_initialized()
        model_id = self.validate_model(model or self.VISION_MODEL)
        payload = {
            "model": model_id,
            "prompt": prompt,
            "images": [base64.b64encode(image).decode()],
            "stream": False,
        }
        return await self.retry_with_backoff(lambda: self._generate(payload))

    async def pull_model(
        self,
        model: str,
        on_progress: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        """Download a model, reporting NDJSON progress until status 'success'."""
        self.ensure_initialized()
        logger.info(f"Pulling Ollama model {model}")
        response = await self._open(
            "POST", "/api/pull", {"name": model}, timeout=self.PULL_TIMEOUT
        )
        try:
            async for data in self._iter_ndjson(response):
                if on_progress is not None:
                    on_progress(data)
                if data.get("status") == "success":
                    break
        finally:
            await response.aclose()
        await self.refresh_models()

    async def delete_model(self, model: str) -> None:
        self.ensure_initialized()
        with translate_errors(self.name):
            response = await self._http.request(
                "DELETE", "/api/delete", json={"name": model}
            )
            raise_for_status(response, self.name)
        self._live_models = [m for m in self._live_models if m != model]
        logger.info(f"Deleted Ollama model {model}")


PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    cls.name: cls
    for cls in (
        OpenAIProvider,
        AnthropicProvider,
        GoogleProvider,
        GroqProvider,
        GrokProvider,
        LMStudioProvider,
        OllamaProvider,
        VLLMProvider,
    )
}
