"""
Shared Data Types
=================
Messages, per-call options and the result shapes passed between the
adapters, the manager, the router and the facade.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class PriorityMode(str, Enum):
    """Static provider preference orderings"""

    PRIVACY_FIRST = "privacy-first"
    PERFORMANCE = "performance"
    COST_EFFECTIVE = "cost-effective"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: str | PriorityMode) -> PriorityMode:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown priority mode '{value}'. "
                f"Expected one of: {', '.join(m.value for m in cls)}"
            ) from None


class TaskType(str, Enum):
    """Coarse request categories used to pick a recommended model"""

    CODING = "coding"
    REASONING = "reasoning"
    VISION = "vision"
    QUICK_TASKS = "quick_tasks"
    COST_EFFECTIVE = "cost_effective"
    PRIVACY = "privacy"
    MULTILINGUAL = "multilingual"
    CURRENT_EVENTS = "current_events"
    CHAT = "chat"


@dataclass(frozen=True)
class Message:
    """A single chat turn"""

    role: str  # 'user', 'assistant', 'system'
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class StreamOptions:
    """Token callback and cancellation signal for streaming calls."""

    on_token: Callable[[str], Any] | None = None
    signal: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.signal is not None and self.signal.is_set()


@dataclass
class ChatOptions:
    """Per-call overrides. Nothing here outlives the call."""

    temperature: float = 0.7
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    stream_options: StreamOptions | None = None
    # OpenAI-compatible local runtimes only
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


@dataclass
class ReviewIssue:
    line: int | None
    severity: str
    message: str
    suggestion: str | None = None


@dataclass
class ReviewResult:
    """Structured code review. Degrades to raw text in summary on bad JSON."""

    issues: list[ReviewIssue] = field(default_factory=list)
    summary: str = ""
    improvements: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewResult:
        issues = []
        for item in data.get("issues") or []:
            if not isinstance(item, dict):
                continue
            issues.append(
                ReviewIssue(
                    line=item.get("line"),
                    severity=str(item.get("severity", "info")),
                    message=str(item.get("message", "")),
                    suggestion=item.get("suggestion"),
                )
            )
        return cls(
            issues=issues,
            summary=str(data.get("summary", "")),
            improvements=[str(i) for i in data.get("improvements") or []],
        )


@dataclass(frozen=True)
class ModelInfo:
    """One entry of the aggregated model catalog"""

    id: str
    name: str
    provider: str
    description: str
    context_length: int = 8192
    capabilities: tuple[str, ...] = ("text", "code")
    available: bool = True
    recommended_for: tuple[str, ...] = ("general",)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoutingDecision:
    provider_name: str
    model_id: str
    task_type: TaskType


@dataclass
class RouteRequest:
    """Input to Router.route()"""

    messages: list[Message]
    task_type: TaskType | None = None
    provider: str | None = None
    model: str | None = None
    options: ChatOptions | None = None


@dataclass
class RouteResult:
    content: str
    model: str
    provider: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)
