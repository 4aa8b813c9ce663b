"""
AI Router - Multi-Provider Facade
=================================
Single entry point for the CLI: chat, streaming chat, vision, code
generation/review, model listing and health reporting across cloud
providers (OpenAI, Anthropic, Google, Groq, xAI) and local runtimes
(LM Studio, Ollama, vLLM).

Composes the ProviderManager, the Router and the HealthMonitor. The
monitor's health updates feed back into the manager's available set so
offline providers drop out of routing until they recover.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from collections.abc import AsyncIterator
from typing import Any

from .config import RouterConfig, load_config, setup_logging
from .errors import AIRouterError
from .health import HealthMonitor, HealthStatus, SystemHealth
from .manager import ProviderManager
from .models import (
    ChatOptions,
    Message,
    ModelInfo,
    PriorityMode,
    ReviewResult,
    RouteRequest,
    RouteResult,
    TaskType,
)
from .router import Router
from .storage import HealthSnapshotStore

logger = logging.getLogger(__name__)


class InputValidator:
    """Prompt checks and log redaction"""

    MAX_PROMPT_LENGTH = 500000

    @classmethod
    def validate_prompt(cls, prompt: str) -> tuple[bool, str]:
        if not prompt or not isinstance(prompt, str):
            return False, "Invalid prompt: must be a non-empty string"

        if len(prompt) > cls.MAX_PROMPT_LENGTH:
            return False, f"Prompt exceeds maximum length of {cls.MAX_PROMPT_LENGTH}"

        return True, ""

    @classmethod
    def sanitize_for_logging(cls, text: str, max_len: int = 100) -> str:
        """Truncate and redact anything that looks like an API key."""
        if not text:
            return ""
        sanitized = re.sub(
            r"(sk-|xai-|gsk_|api[_-]?key|bearer\s+)[a-zA-Z0-9\-_]{20,}",
            "[REDACTED]",
            text[:max_len],
            flags=re.IGNORECASE,
        )
        return sanitized + ("..." if len(text) > max_len else "")


def _task_type(value: TaskType | str | None) -> TaskType | None:
    if value is None or isinstance(value, TaskType):
        return value
    return TaskType(value)


class AIOrchestrator:
    """
    Main facade over provider selection and health supervision.

    Public methods initialize lazily, so ``await orchestrator.chat(...)``
    works without an explicit ``initialize()`` call.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        manager: ProviderManager | None = None,
        health_monitor: HealthMonitor | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.config = config or load_config()
        self.manager = manager or ProviderManager(self.config)
        if request_timeout is None:
            request_timeout = self.config.request_timeout
        self.router = Router(self.manager, self.config.priority_mode, request_timeout)
        self.health_monitor = health_monitor or HealthMonitor(
            self.config.health, HealthSnapshotStore(self.config.snapshot_path)
        )
        self.health_monitor.on("health-updated", self._on_health_updated)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            await self.manager.initialize()
            for name, provider in self.manager.get_providers().items():
                self.health_monitor.register_provider(name, provider)

            if self.config.health_monitoring:
                self.health_monitor.start()

            self._initialized = True
            logger.info(
                f"AI router ready: {len(self.manager.get_available_providers())} "
                f"provider(s) available, priority {self.router.priority_mode.value}"
            )

    def _on_health_updated(self, system: SystemHealth) -> None:
        online = {r.name for r in system.providers if r.status != HealthStatus.OFFLINE}
        self.manager.update_availability(online)

    @staticmethod
    def _validated(prompt: str) -> str:
        is_valid, error = InputValidator.validate_prompt(prompt)
        if not is_valid:
            raise ValueError(error)
        return prompt

    def _request(
        self,
        message: str,
        task_type: TaskType | str | None,
        provider: str | None,
        model: str | None,
        options: ChatOptions | None,
    ) -> RouteRequest:
        return RouteRequest(
            messages=[Message("user", self._validated(message))],
            task_type=_task_type(task_type),
            provider=provider,
            model=model,
            options=options,
        )

    async def chat(
        self,
        message: str,
        *,
        task_type: TaskType | str | None = None,
        provider: str | None = None,
        model: str | None = None,
        priority_mode: PriorityMode | str | None = None,
        options: ChatOptions | None = None,
    ) -> RouteResult:
        await self.initialize()
        request = self._request(message, task_type, provider, model, options)
        logger.debug(f"chat: {InputValidator.sanitize_for_logging(message)}")
        return await self.router.route(request, priority_mode)

    async def chat_stream(
        self,
        message: str,
        *,
        task_type: TaskType | str | None = None,
        provider: str | None = None,
        model: str | None = None,
        priority_mode: PriorityMode | str | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[str]:
        await self.initialize()
        request = self._request(message, task_type, provider, model, options)
        decision, stream = self.router.route_stream(request, priority_mode)
        logger.debug(f"Streaming from {decision.provider_name}/{decision.model_id}")
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def vision(self, image: bytes, prompt: str) -> RouteResult:
        await self.initialize()
        return await self.router.route_vision(image, self._validated(prompt))

    async def generate_code(
        self, prompt: str, language: str = "typescript"
    ) -> RouteResult:
        await self.initialize()
        return await self.router.route_code(self._validated(prompt), language)

    async def review_code(self, code: str, language: str = "typescript") -> ReviewResult:
        await self.initialize()
        return await self.router.route_review(self._validated(code), language)

    async def get_models(self) -> list[ModelInfo]:
        await self.initialize()
        return self.manager.get_available_models()

    async def get_health(self) -> SystemHealth:
        await self.initialize()
        return self.health_monitor.get_system_health()

    def set_priority_mode(self, mode: PriorityMode | str) -> None:
        self.router.update_priority_mode(mode)

    async def close(self) -> None:
        await self.health_monitor.stop()
        await self.manager.close()
        self._initialized = False

    async def __aenter__(self) -> AIOrchestrator:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _print_health(health: SystemHealth) -> None:
    print(f"\nOverall: {health.overall.value}")
    print("=" * 60)
    for record in health.providers:
        line = f"  {record.name:<10} {record.status.value:<9} {record.response_time:>7.0f}ms"
        if record.error:
            line += f"  ({record.error})"
        print(line)
    if health.recommendations:
        print("\nRecommendations:")
        for rec in health.recommendations:
            command = f"  [{rec.action.command}]" if rec.action and rec.action.command else ""
            print(f"  - {rec.type}: {rec.message}{command}")


async def main(argv: list[str] | None = None) -> int:
    """CLI interface for the router"""
    import argparse

    parser = argparse.ArgumentParser(description="AI Router CLI")
    parser.add_argument("prompt", nargs="?", help="The prompt to send")
    parser.add_argument("--provider", "-p", help="Use a specific provider")
    parser.add_argument("--model", "-m", help="Use a specific model")
    parser.add_argument(
        "--task", "-t", choices=[t.value for t in TaskType], help="Override task detection"
    )
    parser.add_argument(
        "--priority", choices=[m.value for m in PriorityMode], help="Priority mode"
    )
    parser.add_argument("--code", metavar="LANGUAGE", help="Generate code in LANGUAGE")
    parser.add_argument("--stream", "-s", action="store_true", help="Stream the reply")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--configure", action="store_true", help="Configure API keys")
    parser.add_argument("--list-models", action="store_true", help="List available models")
    parser.add_argument("--health", action="store_true", help="Show provider health")

    args = parser.parse_args(argv)

    if args.configure:
        from .credentials import configure_credentials_interactive

        configure_credentials_interactive()
        return 0

    config = load_config()
    setup_logging(config, args.verbose)
    if args.priority:
        config.priority_mode = PriorityMode.parse(args.priority)
    # One-shot commands only need the availability probe
    config.health_monitoring = False

    if not (args.prompt or args.list_models or args.health):
        parser.print_help()
        return 0

    async with AIOrchestrator(config) as orchestrator:
        try:
            if args.list_models:
                print("\nAvailable Models:")
                print("=" * 60)
                for info in await orchestrator.get_models():
                    print(f"  {info.id:<50} {', '.join(info.capabilities)}")
                return 0

            if args.health:
                _print_health(await orchestrator.health_monitor.force_health_check())
                return 0

            if args.code:
                result = await orchestrator.generate_code(args.prompt, args.code)
            elif args.stream:
                async for chunk in orchestrator.chat_stream(
                    args.prompt, task_type=args.task, provider=args.provider, model=args.model
                ):
                    print(chunk, end="", flush=True)
                print()
                return 0
            else:
                result = await orchestrator.chat(
                    args.prompt, task_type=args.task, provider=args.provider, model=args.model
                )
        except (AIRouterError, ValueError) as e:
            print(f"\nError: {e}", file=sys.stderr)
            return 1

    print(f"\n[{result.provider}/{result.model}]")
    print("-" * 60)
    print(result.content)
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
