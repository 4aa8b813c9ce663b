"""
Request Router
==============
Classifies a request into a task type, picks a provider through the
manager's priority ordering, resolves a concrete model and dispatches.

Routing is a function of the request, the priority mode and the
manager's current available set. Nothing is cached between requests.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from .concurrency import race_with_timeout
from .errors import (
    NoProvidersAvailableError,
    NoVisionProvidersAvailableError,
    ProviderNotAvailableError,
)
from .manager import ProviderManager
from .models import (
    ChatOptions,
    Message,
    PriorityMode,
    ReviewResult,
    RouteRequest,
    RouteResult,
    RoutingDecision,
    TaskType,
)
from .providers import BaseProvider, as_messages

logger = logging.getLogger(__name__)

# Checked in order; the first category with a matching keyword wins
TASK_KEYWORDS: tuple[tuple[TaskType, tuple[str, ...]], ...] = (
    (TaskType.CODING, ("code", "function", "class", "programming", "debug", "implement")),
    (TaskType.REASONING, ("analyze", "reason", "solve", "logic", "problem", "math")),
    (TaskType.VISION, ("image", "picture", "visual", "see", "look", "describe")),
    (TaskType.QUICK_TASKS, ("quick", "fast", "simple", "brief")),
    (TaskType.COST_EFFECTIVE, ("cheap", "cost", "budget", "affordable")),
    (TaskType.PRIVACY, ("private", "local", "offline", "secure")),
    (TaskType.MULTILINGUAL, ("japanese", "chinese", "korean", "translate")),
    (TaskType.CURRENT_EVENTS, ("news", "current", "today", "recent", "latest")),
)

TASK_ROUTING: dict[TaskType, tuple[str, ...]] = {
    TaskType.CODING: ("gpt-5", "claude-sonnet-4-20250514", "qwen2.5:32b", "codellama:13b"),
    TaskType.REASONING: ("o1", "claude-opus-4-1-20250805", "gpt-5", "llama-3.3-70b-versatile"),
    TaskType.VISION: (
        "gpt-4o",
        "claude-3-5-sonnet-20241022",
        "qwen2.5-vl:7b",
        "llama-3.2-90b-vision-preview",
    ),
    TaskType.QUICK_TASKS: (
        "gpt-5-mini",
        "gemini-2.5-flash",
        "claude-3-5-haiku-20241022",
        "llama3.2:3b",
    ),
    TaskType.COST_EFFECTIVE: (
        "gemini-2.5-flash",
        "claude-3-5-haiku-20241022",
        "gpt-4o-mini",
        "mixtral-8x7b-32768",
    ),
    TaskType.PRIVACY: (
        "gpt-oss-120b",
        "qwen2.5:32b",
        "japanese-stablelm-2-instruct-1_6b",
        "mistral-7b-instruct",
    ),
    TaskType.MULTILINGUAL: ("qwen2.5:32b", "qwen2.5-vl:7b", "gemini-2.5-pro", "mixtral-8x7b-32768"),
    TaskType.CURRENT_EVENTS: ("grok-2", "gemini-2.5-pro", "gpt-5", "claude-opus-4-1-20250805"),
    TaskType.CHAT: (
        "gpt-4o-mini",
        "claude-3-5-haiku-20241022",
        "gemini-2.5-flash",
        "mixtral-8x7b-32768",
    ),
}


def detect_task_type(messages: Sequence[Message | Mapping[str, Any]]) -> TaskType:
    text = " ".join(m.content for m in as_messages(messages)).lower()
    for task_type, keywords in TASK_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return task_type
    return TaskType.CHAT


def get_recommended_model(task_type: TaskType, available_models: Sequence[str]) -> str | None:
    """
    First recommended model for the task that the provider actually has.

    Recommendations may name a model family ("gpt-5") rather than a dated
    release, so a catalog entry starting with the recommendation also
    counts. Falls back to the first available model.
    """
    if not available_models:
        return None

    recommended = TASK_ROUTING.get(task_type, TASK_ROUTING[TaskType.CHAT])
    for candidate in recommended:
        if candidate in available_models:
            return candidate
    for candidate in recommended:
        for model in available_models:
            if model.startswith(candidate):
                return model
    return available_models[0]


class Router:
    """Picks a provider and model per request and dispatches to it"""

    VISION_PROVIDERS = ("openai", "anthropic", "ollama", "groq")

    def __init__(
        self,
        manager: ProviderManager,
        priority_mode: PriorityMode | str = PriorityMode.AUTO,
        request_timeout: float | None = None,
    ) -> None:
        self.manager = manager
        self.priority_mode = PriorityMode.parse(priority_mode)
        self.request_timeout = request_timeout

    def update_priority_mode(self, mode: PriorityMode | str) -> None:
        self.priority_mode = PriorityMode.parse(mode)
        logger.info(f"Priority mode set to {self.priority_mode.value}")

    def decide(
        self, request: RouteRequest, priority_mode: PriorityMode | str | None = None
    ) -> RoutingDecision:
        """Resolve provider, model and task type for a request."""
        task_type = request.task_type or detect_task_type(request.messages)

        if request.provider:
            if not self.manager.is_available(request.provider):
                raise ProviderNotAvailableError(request.provider)
            provider_name = request.provider
        else:
            mode = PriorityMode.parse(priority_mode or self.priority_mode)
            provider_name = self.manager.select_optimal_provider(task_type, mode)
            if provider_name is None:
                raise NoProvidersAvailableError()

        model_id = request.model or get_recommended_model(
            task_type, self.manager.get_models_for_provider(provider_name)
        )
        if model_id is None:
            raise NoProvidersAvailableError(f"No models available for {provider_name}")

        return RoutingDecision(provider_name=provider_name, model_id=model_id, task_type=task_type)

    def _provider(self, name: str) -> BaseProvider:
        provider = self.manager.get_provider(name)
        if provider is None:
            raise ProviderNotAvailableError(name)
        return provider

    async def _chat(
        self,
        provider: BaseProvider,
        messages: list[Message],
        model: str | None,
        options: ChatOptions | None,
    ) -> str:
        return await race_with_timeout(
            provider.chat(messages, model, options),
            self.request_timeout,
            provider=provider.name,
        )

    async def route(
        self, request: RouteRequest, priority_mode: PriorityMode | str | None = None
    ) -> RouteResult:
        decision = self.decide(request, priority_mode)
        provider = self._provider(decision.provider_name)
        messages = as_messages(request.messages)
        logger.info(
            f"Routing {decision.task_type.value} request to "
            f"{decision.provider_name}/{decision.model_id}"
        )

        if request.provider or request.model:
            content = await self._chat(provider, messages, decision.model_id, request.options)
        else:
            # Some adapters fail on their default model but succeed when it is pinned
            try:
                content = await self._chat(provider, messages, None, request.options)
            except Exception as e:
                logger.warning(
                    f"{decision.provider_name} failed on its default model, "
                    f"retrying with {decision.model_id}: {e}"
                )
                content = await self._chat(
                    provider, messages, decision.model_id, request.options
                )

        return RouteResult(
            content=content, model=decision.model_id, provider=decision.provider_name
        )

    def route_stream(
        self, request: RouteRequest, priority_mode: PriorityMode | str | None = None
    ) -> tuple[RoutingDecision, AsyncIterator[str]]:
        """Select as route() does, then open a stream pinned to the chosen model."""
        decision = self.decide(request, priority_mode)
        provider = self._provider(decision.provider_name)
        stream = provider.chat_stream(request.messages, decision.model_id, request.options)
        return decision, stream

    async def route_vision(self, image: bytes, prompt: str) -> RouteResult:
        last_error: Exception | None = None
        for name in self.VISION_PROVIDERS:
            provider = self.manager.get_provider(name)
            if (
                provider is None
                or not self.manager.is_available(name)
                or "vision" not in provider.capabilities
            ):
                continue
            model = getattr(provider, "VISION_MODEL", None)
            try:
                content = await race_with_timeout(
                    provider.vision(image, prompt), self.request_timeout, provider=name
                )
            except Exception as e:
                logger.warning(f"Vision request to {name} failed: {e}")
                last_error = e
                continue
            return RouteResult(content=content, model=model or "", provider=name)

        raise NoVisionProvidersAvailableError() from last_error

    async def route_code(
        self,
        prompt: str,
        language: str = "typescript",
        priority_mode: PriorityMode | str | None = None,
    ) -> RouteResult:
        request = RouteRequest(
            messages=[Message("user", f"Generate {language} code: {prompt}")],
            task_type=TaskType.CODING,
        )
        return await self.route(request, priority_mode)

    async def route_review(
        self,
        code: str,
        language: str = "typescript",
        priority_mode: PriorityMode | str | None = None,
    ) -> ReviewResult:
        decision = self.decide(
            RouteRequest(messages=[Message("user", code)], task_type=TaskType.CODING),
            priority_mode,
        )
        provider = self._provider(decision.provider_name)
        return await race_with_timeout(
            provider.review_code(code, language, decision.model_id),
            self.request_timeout,
            provider=decision.provider_name,
        )
