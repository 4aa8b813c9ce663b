"""
Router Configuration
====================
Builds a RouterConfig from built-in defaults, the user config file
(~/.ai_router/config.json) and environment variables, in that order.

Example config.json:

    {
        "priorityMode": "privacy-first",
        "healthMonitoring": true,
        "requestTimeout": 60,
        "providers": {
            "ollama": {"apiBase": "http://gpu-box:11434", "retryAttempts": 5},
            "vllm": {"enabled": false}
        },
        "healthCheck": {"interval": 120, "timeout": 5},
        "logging": {"level": "DEBUG", "file": "~/.ai_router/router.log"}
    }
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .credentials import CLOUD_PROVIDERS, CONFIG_DIR, get_api_key
from .health import HealthCheckConfig
from .models import PriorityMode

logger = logging.getLogger(__name__)

LOCAL_PROVIDER_NAMES = ("lmstudio", "ollama", "vllm")
CLOUD_PROVIDER_NAMES = tuple(name for name, _ in CLOUD_PROVIDERS)


@dataclass(frozen=True)
class LocalProviderSettings:
    """Connection settings for a local runtime. Times are in seconds."""

    api_base: str
    timeout: float = 300.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    enabled: bool = True


DEFAULT_LOCAL_SETTINGS: dict[str, LocalProviderSettings] = {
    "lmstudio": LocalProviderSettings(api_base="http://localhost:1234/v1"),
    "ollama": LocalProviderSettings(api_base="http://localhost:11434"),
    "vllm": LocalProviderSettings(api_base="http://localhost:8000/v1", timeout=120.0),
}


@dataclass
class RouterConfig:
    priority_mode: PriorityMode = PriorityMode.PRIVACY_FIRST
    api_keys: dict[str, str] = field(default_factory=dict)
    local_providers: dict[str, LocalProviderSettings] = field(
        default_factory=lambda: dict(DEFAULT_LOCAL_SETTINGS)
    )
    health_monitoring: bool = True
    # Seconds allowed for each routed call; None waits for the vendor's own timeout
    request_timeout: float | None = None
    health: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    logging: dict[str, Any] = field(default_factory=dict)
    snapshot_path: Path | None = None

    def enabled_local_providers(self) -> list[str]:
        return [
            name
            for name in LOCAL_PROVIDER_NAMES
            if name in self.local_providers and self.local_providers[name].enabled
        ]


def _load_user_config(path: Path | None = None) -> dict[str, Any]:
    config_path = path or CONFIG_DIR / "config.json"
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except (OSError, ValueError) as exc:
        # Logging is not configured yet
        print(f"Warning: Failed to load config from {config_path}: {exc}")
        return {}

    if not isinstance(loaded, dict):
        print(f"Warning: Config file {config_path} did not contain an object.")
        return {}

    return loaded


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() != "false"


def _env_number(env: Mapping[str, str], name: str, cast: type, default: Any) -> Any:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}")
        return default


def _local_settings(
    name: str, file_settings: Any, env: Mapping[str, str]
) -> LocalProviderSettings:
    settings = DEFAULT_LOCAL_SETTINGS[name]
    if isinstance(file_settings, dict):
        settings = replace(
            settings,
            api_base=file_settings.get("apiBase", settings.api_base),
            timeout=float(file_settings.get("timeout", settings.timeout)),
            retry_attempts=int(file_settings.get("retryAttempts", settings.retry_attempts)),
            retry_delay=float(file_settings.get("retryDelay", settings.retry_delay)),
            enabled=bool(file_settings.get("enabled", settings.enabled)),
        )

    prefix = name.upper()
    # Environment timeouts and delays are given in milliseconds
    timeout_ms = _env_number(env, f"{prefix}_TIMEOUT", float, None)
    delay_ms = _env_number(env, f"{prefix}_RETRY_DELAY", float, None)
    return replace(
        settings,
        api_base=env.get(f"{prefix}_API_BASE") or settings.api_base,
        timeout=timeout_ms / 1000 if timeout_ms is not None else settings.timeout,
        retry_attempts=_env_number(
            env, f"{prefix}_RETRY_ATTEMPTS", int, settings.retry_attempts
        ),
        retry_delay=delay_ms / 1000 if delay_ms is not None else settings.retry_delay,
        enabled=_env_flag(env, f"{prefix}_ENABLED", settings.enabled),
    )


def _health_settings(file_settings: Any) -> HealthCheckConfig:
    health = HealthCheckConfig()
    if not isinstance(file_settings, dict):
        return health
    return replace(
        health,
        interval=float(file_settings.get("interval", health.interval)),
        timeout=float(file_settings.get("timeout", health.timeout)),
        retry_attempts=int(file_settings.get("retryAttempts", health.retry_attempts)),
    )


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
    resolve_keys: bool = True,
) -> RouterConfig:
    """Merge defaults, config file and environment into a RouterConfig."""
    env = os.environ if env is None else env
    user_config = _load_user_config(path)

    priority = env.get("AI_ROUTER_PRIORITY") or user_config.get("priorityMode")
    try:
        priority_mode = (
            PriorityMode.parse(priority) if priority else PriorityMode.PRIVACY_FIRST
        )
    except ValueError as exc:
        logger.warning(f"{exc}; using privacy-first")
        priority_mode = PriorityMode.PRIVACY_FIRST

    file_providers = user_config.get("providers", {})
    if not isinstance(file_providers, dict):
        file_providers = {}

    api_keys: dict[str, str] = {}
    if resolve_keys:
        for name in CLOUD_PROVIDER_NAMES:
            key = get_api_key(name)
            if key:
                api_keys[name] = key

    log_config = user_config.get("logging", {})

    request_timeout = user_config.get("requestTimeout")
    if not isinstance(request_timeout, (int, float)) or isinstance(request_timeout, bool):
        request_timeout = None
    # Milliseconds, like the other environment times
    timeout_ms = _env_number(env, "AI_ROUTER_REQUEST_TIMEOUT", float, None)
    if timeout_ms is not None:
        request_timeout = timeout_ms / 1000
    if request_timeout is not None and request_timeout <= 0:
        request_timeout = None

    return RouterConfig(
        priority_mode=priority_mode,
        api_keys=api_keys,
        local_providers={
            name: _local_settings(name, file_providers.get(name), env)
            for name in LOCAL_PROVIDER_NAMES
        },
        health_monitoring=_env_flag(
            env, "HEALTH_MONITORING", bool(user_config.get("healthMonitoring", True))
        ),
        request_timeout=float(request_timeout) if request_timeout is not None else None,
        health=_health_settings(user_config.get("healthCheck")),
        logging=log_config if isinstance(log_config, dict) else {},
    )


def setup_logging(config: RouterConfig | None = None, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO

    log_config = config.logging if config else {}
    if not verbose and "level" in log_config:
        level = getattr(logging, str(log_config["level"]).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if log_file:
        try:
            handlers.append(
                logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8")
            )
        except OSError as e:
            print(f"Failed to setup log file {log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
