"""
Provider Manager
================
Owns the adapter instances and the set of providers currently
considered available. The available set is only ever replaced as a
whole (a new frozenset), so readers always see a consistent snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from .concurrency import gather_isolated
from .config import CLOUD_PROVIDER_NAMES, RouterConfig
from .models import ModelInfo, PriorityMode, TaskType
from .providers import PROVIDER_CLASSES, AdapterConfig, BaseProvider

logger = logging.getLogger(__name__)

PRIORITY_ORDERINGS: dict[PriorityMode, tuple[str, ...]] = {
    PriorityMode.PRIVACY_FIRST: (
        "lmstudio", "ollama", "vllm", "anthropic", "openai", "google", "groq", "grok",
    ),
    PriorityMode.PERFORMANCE: (
        "groq", "grok", "openai", "anthropic", "google", "ollama", "lmstudio", "vllm",
    ),
    PriorityMode.COST_EFFECTIVE: (
        "google", "groq", "openai", "anthropic", "grok", "ollama", "vllm", "lmstudio",
    ),
    PriorityMode.AUTO: (
        "openai", "anthropic", "google", "groq", "grok", "lmstudio", "ollama", "vllm",
    ),
}


class ProviderManager:
    """Adapter registry plus the live 'available' subset"""

    def __init__(
        self,
        config: RouterConfig | None = None,
        provider_factories: Mapping[str, Callable[[], BaseProvider]] | None = None,
    ) -> None:
        self.config = config or RouterConfig()
        self._factories = dict(provider_factories or PROVIDER_CLASSES)
        self._providers: dict[str, BaseProvider] = {}
        self._available: frozenset[str] = frozenset()

    def _adapter_settings(self) -> dict[str, tuple[str, AdapterConfig | None]]:
        settings: dict[str, tuple[str, AdapterConfig | None]] = {}
        for name in CLOUD_PROVIDER_NAMES:
            key = self.config.api_keys.get(name)
            if key:
                settings[name] = (key, None)
        for name in self.config.enabled_local_providers():
            local = self.config.local_providers[name]
            settings[name] = (
                "",
                AdapterConfig(
                    base_url=local.api_base,
                    timeout=local.timeout,
                    retry_attempts=local.retry_attempts,
                    retry_delay=local.retry_delay,
                ),
            )
        return settings

    async def initialize(self) -> None:
        """Create and initialize one adapter per configured vendor, then probe them."""
        pending: dict[str, BaseProvider] = {}
        calls = {}
        for name, (api_key, adapter_config) in self._adapter_settings().items():
            factory = self._factories.get(name)
            if factory is None:
                logger.warning(f"No adapter registered for provider '{name}'")
                continue
            provider = factory()
            pending[name] = provider
            calls[name] = provider.initialize(api_key, adapter_config)

        results = await gather_isolated(calls)
        for name, result in results.items():
            if isinstance(result, BaseException):
                logger.error(f"Failed to initialize {name}: {result}")
                continue
            self._providers[name] = pending[name]

        logger.info(f"Initialized providers: {', '.join(self._providers) or 'none'}")
        await self.check_availability()

    def add_provider(self, name: str, provider: BaseProvider, available: bool = True) -> None:
        """Register an already-initialized adapter."""
        self._providers[name] = provider
        if available:
            self._available = self._available | {name}

    @staticmethod
    async def _probe(provider: BaseProvider) -> bool:
        # Cloud adapters have no free probe and count as available once built
        validate = getattr(provider, "validate_connection", None)
        if validate is None:
            return True
        if not await validate():
            return False
        # A server that came up after initialize() may have loaded different models
        refresh = getattr(provider, "refresh_models", None)
        if refresh is not None:
            await refresh()
        return True

    async def check_availability(self) -> frozenset[str]:
        results = await gather_isolated(
            {name: self._probe(provider) for name, provider in self._providers.items()}
        )

        available = set()
        for name, result in results.items():
            if isinstance(result, BaseException):
                logger.warning(f"Availability check for {name} failed: {result}")
            elif result:
                available.add(name)

        self._available = frozenset(available)
        logger.info(f"Available providers: {', '.join(sorted(self._available)) or 'none'}")
        return self._available

    async def refresh_availability(self) -> frozenset[str]:
        return await self.check_availability()

    def update_availability(self, names: set[str] | frozenset[str] | list[str]) -> None:
        """Replace the available set, e.g. from a health check."""
        self._available = frozenset(n for n in names if n in self._providers)

    def get_provider(self, name: str) -> BaseProvider | None:
        return self._providers.get(name)

    def get_providers(self) -> dict[str, BaseProvider]:
        return dict(self._providers)

    def get_available_providers(self) -> list[str]:
        available = self._available
        return [name for name in self._providers if name in available]

    def is_available(self, name: str) -> bool:
        return name in self._available

    def select_optimal_provider(
        self,
        task_type: TaskType | str | None = None,
        priority_mode: PriorityMode | str = PriorityMode.AUTO,
    ) -> str | None:
        """First available provider in the priority ordering, or None."""
        available = self._available
        if not available:
            return None

        for name in PRIORITY_ORDERINGS[PriorityMode.parse(priority_mode)]:
            if name in available:
                return name

        for name in self._providers:
            if name in available:
                return name
        return None

    def get_models_for_provider(self, name: str) -> list[str]:
        provider = self._providers.get(name)
        if provider is None:
            return []
        try:
            return provider.get_models()
        except Exception as e:
            logger.debug(f"Could not list models for {name}: {e}")
            return []

    def get_available_models(self) -> list[ModelInfo]:
        models: list[ModelInfo] = []
        for name in self.get_available_providers():
            provider = self._providers[name]
            try:
                model_ids = provider.get_models()
            except Exception as e:
                logger.debug(f"Skipping models for {name}: {e}")
                continue

            for model_id in model_ids:
                models.append(
                    ModelInfo(
                        id=f"{name}-{model_id}",
                        name=model_id,
                        provider=name,
                        description=f"{model_id} from {name}",
                        capabilities=tuple(sorted(provider.capabilities)),
                    )
                )
        return models

    async def close(self) -> None:
        providers = self._providers
        self._providers = {}
        self._available = frozenset()
        results = await gather_isolated(
            {name: provider.close() for name, provider in providers.items()}
        )
        for name, result in results.items():
            if isinstance(result, BaseException):
                logger.warning(f"Error closing {name}: {result}")
