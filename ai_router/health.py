"""
Provider Health Monitor
=======================
Probes every registered provider on an interval and keeps one
ProviderHealthRecord per provider. The monitor is the only writer of
those records; everyone else reads snapshots.

States: offline -> healthy | degraded | critical on a successful probe,
and back to offline once all retries of a probe fail. Every provider
starts offline.

Nothing raised by a probe escapes the monitor. Failures end up in the
health records, and snapshot write failures are reported through the
'error' event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from .concurrency import gather_isolated, race_with_timeout
from .errors import AIRouterError
from .models import ChatOptions, Message
from .storage import HealthSnapshotStore

if TYPE_CHECKING:
    from .providers import BaseProvider

logger = logging.getLogger(__name__)

LOCAL_PROVIDER_TYPES = frozenset({"lmstudio", "ollama", "vllm"})

RESTART_COMMANDS = {
    "lmstudio": 'open -a "LM Studio"',
    "ollama": "ollama serve",
    "vllm": "python -m vllm.entrypoints.api_server",
}

EVENTS = (
    "monitoring-started",
    "monitoring-stopped",
    "health-updated",
    "provider-healthy",
    "provider-unhealthy",
    "error",
)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    OFFLINE = "offline"


@dataclass(frozen=True)
class HealthThresholds:
    """Response times in ms, error rates as fractions"""

    response_time_warning: float = 2000.0
    response_time_critical: float = 5000.0
    error_rate_warning: float = 0.1
    error_rate_critical: float = 0.25


@dataclass(frozen=True)
class HealthCheckConfig:
    """Interval, timeout and backoff are in seconds."""

    interval: float = 60.0
    timeout: float = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    # Weight of the newest sample in the error-rate moving average
    error_rate_smoothing: float = 0.2
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass
class HealthMetadata:
    total_requests: int = 0
    error_rate: float = 0.0
    average_response_time: float = 0.0
    last_request: datetime | None = None
    models: list[str] = field(default_factory=list)


@dataclass
class ProviderHealthRecord:
    name: str
    type: str  # 'local' or 'cloud'
    status: HealthStatus = HealthStatus.OFFLINE
    uptime: float = 0.0
    last_check: datetime | None = None
    response_time: float = 0.0
    error: str | None = None
    metadata: HealthMetadata = field(default_factory=HealthMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "status": self.status.value,
            "uptime": self.uptime,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "responseTime": self.response_time,
            "error": self.error,
            "metadata": {
                "totalRequests": self.metadata.total_requests,
                "errorRate": self.metadata.error_rate,
                "averageResponseTime": self.metadata.average_response_time,
                "lastRequest": (
                    self.metadata.last_request.isoformat()
                    if self.metadata.last_request
                    else None
                ),
                "models": list(self.metadata.models),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderHealthRecord:
        meta = data.get("metadata") or {}
        return cls(
            name=data["name"],
            type=data.get("type", "cloud"),
            status=HealthStatus(data.get("status", "offline")),
            uptime=float(data.get("uptime", 0.0)),
            last_check=_parse_time(data.get("lastCheck")),
            response_time=float(data.get("responseTime", 0.0)),
            error=data.get("error"),
            metadata=HealthMetadata(
                total_requests=int(meta.get("totalRequests", 0)),
                error_rate=float(meta.get("errorRate", 0.0)),
                average_response_time=float(meta.get("averageResponseTime", 0.0)),
                last_request=_parse_time(meta.get("lastRequest")),
                models=list(meta.get("models", [])),
            ),
        )


@dataclass(frozen=True)
class RecommendationAction:
    type: str  # 'restart', 'reconfigure', 'contact-support'
    command: str | None = None


@dataclass(frozen=True)
class Recommendation:
    type: str  # 'info', 'warning', 'error', 'action'
    message: str
    provider: str | None = None
    action: RecommendationAction | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SystemHealth:
    overall: HealthStatus
    providers: list[ProviderHealthRecord]
    recommendations: list[Recommendation]
    uptime: float
    last_update: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "providers": [p.to_dict() for p in self.providers],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "uptime": self.uptime,
            "lastUpdate": self.last_update.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemHealth:
        recommendations = []
        for item in data.get("recommendations") or []:
            action = item.get("action")
            recommendations.append(
                Recommendation(
                    type=item["type"],
                    message=item["message"],
                    provider=item.get("provider"),
                    action=RecommendationAction(**action) if action else None,
                )
            )
        return cls(
            overall=HealthStatus(data["overall"]),
            providers=[ProviderHealthRecord.from_dict(p) for p in data.get("providers", [])],
            recommendations=recommendations,
            uptime=float(data.get("uptime", 0.0)),
            last_update=_parse_time(data.get("lastUpdate")) or _now(),
        )


def classify_status(
    response_time: float, error_rate: float, thresholds: HealthThresholds
) -> HealthStatus:
    if (
        response_time > thresholds.response_time_critical
        or error_rate > thresholds.error_rate_critical
    ):
        return HealthStatus.CRITICAL
    if (
        response_time > thresholds.response_time_warning
        or error_rate > thresholds.error_rate_warning
    ):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def aggregate_overall(records: list[ProviderHealthRecord]) -> HealthStatus:
    statuses = [r.status for r in records]
    offline = statuses.count(HealthStatus.OFFLINE)
    if (
        offline == len(statuses)
        or HealthStatus.CRITICAL in statuses
        or offline > len(statuses) / 2
    ):
        return HealthStatus.CRITICAL
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Periodic provider probing with retries and status classification"""

    def __init__(
        self,
        config: HealthCheckConfig | None = None,
        store: HealthSnapshotStore | None = None,
        seed_from_snapshot: bool = True,
    ) -> None:
        self.config = config or HealthCheckConfig()
        self._store = store or HealthSnapshotStore()
        self._seed_from_snapshot = seed_from_snapshot
        self._seed: dict[str, ProviderHealthRecord] | None = None
        self._providers: dict[str, BaseProvider] = {}
        self._records: dict[str, ProviderHealthRecord] = {}
        self._online_since: dict[str, float] = {}
        self._listeners: dict[str, list[Callable[[Any], Any]]] = {e: [] for e in EVENTS}
        self._scheduler: asyncio.Task[None] | None = None
        self._checks: set[asyncio.Task[Any]] = set()
        self._started_at = time.monotonic()

    # -- events -------------------------------------------------------------

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown health event '{event}'")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[[Any], Any]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Health listener for '{event}' failed: {e}")

    # -- registration -------------------------------------------------------

    def _seed_records(self) -> dict[str, ProviderHealthRecord]:
        if self._seed is None:
            self._seed = {}
            if self._seed_from_snapshot:
                previous = self.load_health_data()
                if previous is not None:
                    self._seed = {p.name: p for p in previous.providers}
        return self._seed

    def register_provider(self, name: str, provider: BaseProvider) -> None:
        self._providers[name] = provider
        record = ProviderHealthRecord(
            name=name, type="local" if name in LOCAL_PROVIDER_TYPES else "cloud"
        )
        seed = self._seed_records().get(name)
        if seed is not None:
            # Only metrics carry over; status always starts offline
            record.metadata = replace(seed.metadata, models=[])
        self._records[name] = record

    def unregister_provider(self, name: str) -> None:
        self._providers.pop(name, None)
        self._records.pop(name, None)
        self._online_since.pop(name, None)

    # -- lifecycle ----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    def start(self) -> None:
        """Check now, then every interval. Needs a running event loop."""
        if self.is_running:
            return
        self._scheduler = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Health monitoring started (interval {self.config.interval:g}s)")
        self._emit("monitoring-started")

    async def stop(self) -> None:
        if not self.is_running and not self._checks:
            return
        tasks = [t for t in (self._scheduler, *self._checks) if t is not None]
        self._scheduler = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._checks.clear()
        logger.info("Health monitoring stopped")
        self._emit("monitoring-stopped")

    async def _run(self) -> None:
        # Each tick gets its own task so a slow check never delays the schedule
        while True:
            task = asyncio.create_task(self._scheduled_check())
            self._checks.add(task)
            task.add_done_callback(self._checks.discard)
            await asyncio.sleep(self.config.interval)

    async def _scheduled_check(self) -> None:
        try:
            await self.perform_health_check()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            self._emit("error", e)

    async def update_config(self, **changes: Any) -> None:
        thresholds = changes.get("thresholds")
        if isinstance(thresholds, dict):
            changes["thresholds"] = replace(self.config.thresholds, **thresholds)
        self.config = replace(self.config, **changes)

        if self.is_running:
            await self.stop()
            self.start()

    # -- checks -------------------------------------------------------------

    async def perform_health_check(self) -> SystemHealth:
        results = await gather_isolated(
            {name: self.check_provider_health(name) for name in list(self._providers)}
        )
        for name, result in results.items():
            if isinstance(result, Exception):
                logger.error(f"Health check for {name} raised: {result}")

        system = self.get_system_health()
        self._emit("health-updated", system)
        self._save_snapshot(system)
        return system

    async def force_health_check(self) -> SystemHealth:
        return await self.perform_health_check()

    @staticmethod
    async def _probe(provider: BaseProvider) -> bool:
        validate = getattr(provider, "validate_connection", None)
        if validate is not None:
            return bool(await validate())
        await provider.chat([Message("user", "ping")], None, ChatOptions())
        return True

    async def check_provider_health(
        self, name: str, provider: BaseProvider | None = None
    ) -> ProviderHealthRecord:
        provider = provider or self._providers[name]
        attempts = max(1, self.config.retry_attempts)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                ok = await race_with_timeout(
                    self._probe(provider), self.config.timeout, provider=name
                )
                if not ok:
                    raise AIRouterError(f"{name} connection check failed", provider=name)
            except Exception as e:
                last_error = e
                logger.debug(f"Health probe {attempt}/{attempts} for {name} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_backoff * attempt)
                continue

            response_time = (time.monotonic() - started) * 1000
            refresh = getattr(provider, "refresh_models", None)
            if name not in self._online_since and refresh is not None:
                await refresh()
            return self._record_success(name, provider, response_time)

        return self._record_failure(name, str(last_error) if last_error else "unknown error")

    def _update_metadata(
        self, metadata: HealthMetadata, failed: bool, response_time: float | None
    ) -> HealthMetadata:
        total = metadata.total_requests + 1
        average = metadata.average_response_time
        if response_time is not None:
            average = (average * metadata.total_requests + response_time) / total

        alpha = self.config.error_rate_smoothing
        sample = 1.0 if failed else 0.0
        error_rate = metadata.error_rate + alpha * (sample - metadata.error_rate)

        return replace(
            metadata,
            total_requests=total,
            error_rate=min(1.0, max(0.0, error_rate)),
            average_response_time=average,
            last_request=_now(),
        )

    def _record_success(
        self, name: str, provider: BaseProvider, response_time: float
    ) -> ProviderHealthRecord:
        previous = self._records[name]
        status = classify_status(
            response_time, previous.metadata.error_rate, self.config.thresholds
        )

        now = time.monotonic()
        since = self._online_since.setdefault(name, now)
        try:
            models = provider.get_models()
        except Exception:
            models = []

        metadata = self._update_metadata(previous.metadata, False, response_time)
        metadata.models = models
        record = replace(
            previous,
            status=status,
            uptime=(now - since) * 1000,
            last_check=_now(),
            response_time=response_time,
            error=None,
            metadata=metadata,
        )
        self._records[name] = record
        self._emit("provider-healthy", record)
        return record

    def _record_failure(self, name: str, error: str) -> ProviderHealthRecord:
        previous = self._records[name]
        self._online_since.pop(name, None)
        record = replace(
            previous,
            status=HealthStatus.OFFLINE,
            uptime=0.0,
            last_check=_now(),
            error=error,
            metadata=self._update_metadata(previous.metadata, True, None),
        )
        self._records[name] = record
        if previous.status != HealthStatus.OFFLINE or previous.last_check is None:
            logger.warning(f"{name} is offline: {error}")
        self._emit("provider-unhealthy", record)
        return record

    # -- reporting ----------------------------------------------------------

    def get_provider_health(self, name: str) -> ProviderHealthRecord | None:
        return self._records.get(name)

    def get_all_provider_health(self) -> list[ProviderHealthRecord]:
        return list(self._records.values())

    def _recommendations(self, records: list[ProviderHealthRecord]) -> list[Recommendation]:
        thresholds = self.config.thresholds
        recommendations: list[Recommendation] = []

        for record in records:
            name = record.name
            if record.status == HealthStatus.OFFLINE:
                if record.type == "local":
                    recommendations.append(
                        Recommendation(
                            type="action",
                            provider=name,
                            message=f"{name} is offline. Try restarting the local server.",
                            action=RecommendationAction(
                                type="restart", command=RESTART_COMMANDS.get(name)
                            ),
                        )
                    )
                else:
                    recommendations.append(
                        Recommendation(
                            type="warning",
                            provider=name,
                            message=f"{name} is offline. Check API key and network connectivity.",
                        )
                    )

            if record.response_time > thresholds.response_time_critical:
                recommendations.append(
                    Recommendation(
                        type="warning",
                        provider=name,
                        message=(
                            f"{name} has very high response time ({record.response_time:.0f}ms). "
                            "Consider switching to a faster provider."
                        ),
                    )
                )

            if record.metadata.error_rate > thresholds.error_rate_warning:
                recommendations.append(
                    Recommendation(
                        type="warning",
                        provider=name,
                        message=(
                            f"{name} has high error rate ({record.metadata.error_rate * 100:.1f}%). "
                            "Check configuration and quotas, or switch providers."
                        ),
                    )
                )

            if record.status != HealthStatus.OFFLINE and not record.metadata.models:
                recommendations.append(
                    Recommendation(
                        type="info",
                        provider=name,
                        message=f"{name} has no models configured. Add models to enable functionality.",
                        action=RecommendationAction(type="reconfigure"),
                    )
                )

        healthy = [r for r in records if r.status == HealthStatus.HEALTHY]
        if not healthy:
            recommendations.append(
                Recommendation(
                    type="error",
                    message="No healthy providers available. System functionality is severely limited.",
                    action=RecommendationAction(type="contact-support"),
                )
            )
        elif len(healthy) == 1:
            recommendations.append(
                Recommendation(
                    type="info",
                    message=(
                        "Only one healthy provider available. "
                        "Consider setting up additional providers for redundancy."
                    ),
                )
            )
        return recommendations

    def get_system_health(self) -> SystemHealth:
        records = self.get_all_provider_health()
        return SystemHealth(
            overall=aggregate_overall(records),
            providers=records,
            recommendations=self._recommendations(records),
            uptime=(time.monotonic() - self._started_at) * 1000,
            last_update=_now(),
        )

    def get_statistics(self) -> dict[str, Any]:
        records = self.get_all_provider_health()
        count = len(records)

        def _count(status: HealthStatus) -> int:
            return sum(1 for r in records if r.status == status)

        return {
            "total_providers": count,
            "healthy_providers": _count(HealthStatus.HEALTHY),
            "degraded_providers": _count(HealthStatus.DEGRADED),
            "critical_providers": _count(HealthStatus.CRITICAL),
            "offline_providers": _count(HealthStatus.OFFLINE),
            "total_requests": sum(r.metadata.total_requests for r in records),
            "average_response_time": (
                sum(r.metadata.average_response_time for r in records) / count if count else 0.0
            ),
            "average_error_rate": (
                sum(r.metadata.error_rate for r in records) / count if count else 0.0
            ),
            "uptime": (time.monotonic() - self._started_at) * 1000,
            "is_running": self.is_running,
        }

    # -- persistence --------------------------------------------------------

    def _save_snapshot(self, system: SystemHealth) -> None:
        snapshot = system.to_dict()
        snapshot["config"] = self.config.to_dict()
        try:
            self._store.save(snapshot)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not save health snapshot: {e}")
            self._emit("error", e)

    def load_health_data(self) -> SystemHealth | None:
        data = self._store.load()
        if data is None:
            return None
        try:
            return SystemHealth.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed health snapshot: {e}")
            return None
