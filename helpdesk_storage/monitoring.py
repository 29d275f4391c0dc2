"""
Health monitoring and auto-reconnection.

A HealthMonitor probes one provider on a fixed cadence. Each probe races
``provider.health_check()`` against a timeout; a timeout, an exception or a
False result counts as a failure. After ``max_retries`` consecutive failures
the monitor attempts one reconnection (disconnect, wait, initialize,
re-probe). A failed reconnection is retried on a later probe, never in a
tight loop.

``on_health_change`` fires on healthy/unhealthy transitions only.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from .exceptions import StorageLayerError
from .logging_utils import StorageLoggerAdapter, get_storage_logger
from .providers.base import StorageProvider

logger = get_storage_logger("monitoring")

HealthCallback = Callable[["HealthStatus"], Awaitable[None] | None]
ReconnectCallback = Callable[[bool], Awaitable[None] | None]


@dataclass
class HealthStatus:
    """Last known health of a monitored provider."""

    healthy: bool = True
    last_check: datetime = field(default_factory=lambda: datetime.now(UTC))
    consecutive_failures: int = 0
    latency_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_check"] = self.last_check.isoformat()
        return data


@dataclass
class MonitoringConfig:
    """Probe cadence and reconnection policy (seconds)."""

    check_interval: float = 30.0
    timeout: float = 5.0
    max_retries: int = 3
    retry_delay: float = 5.0
    on_health_change: HealthCallback | None = None
    on_reconnect: ReconnectCallback | None = None

    def __post_init__(self) -> None:
        if self.check_interval <= 0 or self.timeout <= 0:
            raise ValueError("check_interval and timeout must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")

    @classmethod
    def from_env(cls) -> MonitoringConfig:
        """Create config from HELPDESK_HEALTH_* environment variables."""
        return cls(
            check_interval=float(os.environ.get("HELPDESK_HEALTH_CHECK_INTERVAL", "30")),
            timeout=float(os.environ.get("HELPDESK_HEALTH_TIMEOUT", "5")),
            max_retries=int(os.environ.get("HELPDESK_HEALTH_MAX_RETRIES", "3")),
            retry_delay=float(os.environ.get("HELPDESK_HEALTH_RETRY_DELAY", "5")),
        )


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.error(f"Monitoring callback failed: {e}")


class HealthMonitor:
    """
    Periodic health probe with bounded reconnection for one provider.

    Example:
        >>> monitor = HealthMonitor(provider, MonitoringConfig(check_interval=10))
        >>> monitor.start()
        >>> monitor.get_status().healthy
        True
        >>> await monitor.stop()
    """

    def __init__(self, provider: StorageProvider, config: MonitoringConfig | None = None):
        self.provider = provider
        self.config = config or MonitoringConfig()
        self._status = HealthStatus()
        self._task: asyncio.Task[None] | None = None
        self._is_reconnecting = False
        self._log = StorageLoggerAdapter(logger, {"provider": provider.name})

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_healthy(self) -> bool:
        return self._status.healthy

    @property
    def is_reconnecting(self) -> bool:
        return self._is_reconnecting

    def get_status(self) -> HealthStatus:
        """Copy of the last known status."""
        return replace(self._status)

    def start(self) -> None:
        """Run the first probe now and then every ``check_interval`` seconds."""
        if self.is_running:
            self._log.warning("Health monitor already running")
            return
        self._log.info(
            f"Starting health checks every {self.config.check_interval}s "
            f"(timeout {self.config.timeout}s)"
        )
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._log.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            await self.check_now()
            await asyncio.sleep(self.config.check_interval)

    # =========================================================================
    # Probing
    # =========================================================================

    async def _probe(self) -> tuple[bool, float, str | None]:
        started = time.monotonic()
        try:
            healthy = await asyncio.wait_for(
                self.provider.health_check(), timeout=self.config.timeout
            )
            error = None if healthy else "Health check returned false"
        except asyncio.TimeoutError:
            healthy, error = False, "Health check timeout"
        except Exception as e:
            healthy, error = False, str(e)
        return bool(healthy), (time.monotonic() - started) * 1000, error

    async def check_now(self) -> HealthStatus:
        """Probe once, update the status and reconnect if the threshold is reached."""
        healthy, latency_ms, error = await self._probe()
        if healthy:
            await self._record_healthy(latency_ms)
        else:
            await self._record_unhealthy(error, latency_ms)
            if self._status.consecutive_failures >= self.config.max_retries:
                await self._attempt_reconnection()
        return self.get_status()

    async def _record_healthy(self, latency_ms: float) -> None:
        was_unhealthy = not self._status.healthy
        self._status = HealthStatus(healthy=True, latency_ms=latency_ms)
        self._log.debug(f"Health check passed in {latency_ms:.1f}ms")
        if was_unhealthy:
            self._log.info("Provider recovered")
            await _invoke(self.config.on_health_change, self.get_status())

    async def _record_unhealthy(self, error: str | None, latency_ms: float | None) -> None:
        was_healthy = self._status.healthy
        self._status = HealthStatus(
            healthy=False,
            latency_ms=latency_ms,
            consecutive_failures=self._status.consecutive_failures + 1,
            error=error,
        )
        self._log.warning(
            f"Health check failed ({self._status.consecutive_failures} consecutive): {error}"
        )
        if was_healthy:
            await _invoke(self.config.on_health_change, self.get_status())

    # =========================================================================
    # Reconnection
    # =========================================================================

    async def _attempt_reconnection(self) -> None:
        if self._is_reconnecting:
            self._log.debug("Reconnection already in progress")
            return

        self._is_reconnecting = True
        self._log.info("Attempting reconnection")
        try:
            await self.provider.disconnect()
            await asyncio.sleep(self.config.retry_delay)
            await self.provider.initialize()
            healthy, latency_ms, error = await self._probe()
            if not healthy:
                raise StorageLayerError(f"Health check failed after reconnection: {error}")
        except Exception as e:
            self._log.error(f"Reconnection failed: {e}")
            await _invoke(self.config.on_reconnect, False)
        else:
            self._log.info("Reconnection successful")
            await self._record_healthy(latency_ms)
            await _invoke(self.config.on_reconnect, True)
        finally:
            self._is_reconnecting = False

    async def force_reconnect(self) -> bool:
        """Reconnect out of band and return the resulting health."""
        self._log.info("Forcing reconnection")
        await self._attempt_reconnection()
        return self._status.healthy


class MonitoringManager:
    """Owns one HealthMonitor per provider id."""

    def __init__(self) -> None:
        self._monitors: dict[str, HealthMonitor] = {}

    async def monitor(
        self,
        provider_id: str,
        provider: StorageProvider,
        config: MonitoringConfig | None = None,
    ) -> HealthMonitor:
        """Start monitoring a provider, replacing any existing monitor for the id."""
        await self.stop_monitoring(provider_id)
        health_monitor = HealthMonitor(provider, config)
        self._monitors[provider_id] = health_monitor
        health_monitor.start()
        logger.info(f"Started monitoring provider: {provider_id}")
        return health_monitor

    async def stop_monitoring(self, provider_id: str) -> None:
        health_monitor = self._monitors.pop(provider_id, None)
        if health_monitor is not None:
            await health_monitor.stop()
            logger.info(f"Stopped monitoring provider: {provider_id}")

    def get_monitor(self, provider_id: str) -> HealthMonitor | None:
        return self._monitors.get(provider_id)

    def get_all_statuses(self) -> dict[str, HealthStatus]:
        return {pid: m.get_status() for pid, m in self._monitors.items()}

    async def stop_all(self) -> None:
        for provider_id in list(self._monitors):
            await self.stop_monitoring(provider_id)
