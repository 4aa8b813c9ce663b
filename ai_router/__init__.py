"""
AI Router - Provider routing and health supervision for a CLI assistant.

Usage:
    from ai_router import AIOrchestrator

    async with AIOrchestrator() as ai:
        result = await ai.chat("write a function to reverse a string")
        print(result.provider, result.model, result.content)
"""

__version__ = "1.0.0"
__author__ = "AI Router Contributors"

from .config import RouterConfig, load_config
from .credentials import (
    CredentialManager,
    configure_credentials_interactive,
    get_api_key,
    get_credential_manager,
    set_api_key,
)
from .errors import (
    AIRouterError,
    NoModelsAvailableError,
    NoProvidersAvailableError,
    NoResponseBodyError,
    NotInitializedError,
    NoVisionProvidersAvailableError,
    ProviderNotAvailableError,
    ProviderTimeoutError,
    UnsupportedModelError,
    UpstreamHTTPError,
)
from .health import HealthCheckConfig, HealthMonitor, HealthStatus, SystemHealth
from .manager import ProviderManager
from .models import (
    ChatOptions,
    Message,
    ModelInfo,
    PriorityMode,
    ReviewResult,
    RouteRequest,
    RouteResult,
    StreamOptions,
    TaskType,
)
from .orchestrator import AIOrchestrator
from .router import Router, detect_task_type

__all__ = [
    "__version__",
    # Credential management
    "get_api_key",
    "set_api_key",
    "get_credential_manager",
    "CredentialManager",
    "configure_credentials_interactive",
    # Routing and health
    "AIOrchestrator",
    "AIRouterError",
    "ChatOptions",
    "HealthCheckConfig",
    "HealthMonitor",
    "HealthStatus",
    "Message",
    "ModelInfo",
    "NoModelsAvailableError",
    "NoProvidersAvailableError",
    "NoResponseBodyError",
    "NotInitializedError",
    "NoVisionProvidersAvailableError",
    "PriorityMode",
    "ProviderManager",
    "ProviderNotAvailableError",
    "ProviderTimeoutError",
    "ReviewResult",
    "RouteRequest",
    "RouteResult",
    "Router",
    "RouterConfig",
    "StreamOptions",
    "SystemHealth",
    "TaskType",
    "UnsupportedModelError",
    "UpstreamHTTPError",
    "detect_task_type",
    "load_config",
]
