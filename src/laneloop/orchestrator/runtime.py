"""Process runtime: instance lock, lane threads, maintenance thread and signals."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from laneloop.config import Settings
from laneloop.orchestrator.backend.base import DecisionOracle, ToolExecutor
from laneloop.orchestrator.dispatcher import LaneDispatcher
from laneloop.orchestrator.loop import build_execution_loop
from laneloop.orchestrator.recovery import InstanceLock, RecoveryMonitor, RecoverySweepResult
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.scheduler import HeartbeatScheduler, TickResult
from laneloop.orchestrator.services import ProducerService

logger = logging.getLogger(__name__)

_MAINTENANCE_WAKEUP_SECONDS = 1.0


@dataclass(slots=True)
class MaintenanceResult:
    """One pass of the periodic side processes."""

    requeued: list[str] = field(default_factory=list)
    recovery: RecoverySweepResult | None = None
    tick: TickResult | None = None


class OrchestratorRuntime:
    """Owns every long-lived component of one `serve` process."""

    def __init__(
        self,
        *,
        settings: Settings,
        oracle: DecisionOracle,
        executor: ToolExecutor,
        store: ActionStore | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or ActionStore(
            settings.db_path,
            busy_timeout_ms=settings.store.busy_timeout_ms,
        )
        self.loop = build_execution_loop(
            settings,
            store=self.store,
            oracle=oracle,
            executor=executor,
        )
        self.dispatcher = LaneDispatcher(loop=self.loop, settings=settings.lanes)
        self.retry_policy = self.loop.retry_policy
        self.recovery = RecoveryMonitor(
            store=self.store,
            trace_store=self.loop.trace_store,
            retry_policy=self.retry_policy,
            fallback=self.loop.fallback,
            settings=settings.recovery,
            retain_trace=settings.loop.retain_trace,
        )
        self.producer = ProducerService(
            store=self.store,
            settings=settings.producer,
            default_max_attempts=settings.retry.max_attempts,
        )
        self.scheduler = HeartbeatScheduler(
            store=self.store,
            producer=self.producer,
            settings=settings.scheduler,
        )
        self.lock = InstanceLock(settings.lock_path)
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._last_recovery_at = 0.0
        self._last_tick_at = 0.0

    def run(self, *, duration_seconds: float | None = None) -> None:
        """Serve until a stop signal (or `duration_seconds` elapsed)."""

        self.store.init_schema()
        with self.lock:
            startup = self.recovery.sweep()
            requeued = self.retry_policy.sweep()
            logger.info(
                "Startup recovery: %d action(s) reclaimed, %d retry(ies) re-queued",
                startup.total,
                len(requeued),
            )
            self.dispatcher.start()
            maintenance = threading.Thread(
                target=self._maintenance_loop,
                name="laneloop-maintenance",
                daemon=True,
            )
            maintenance.start()
            deadline = None if duration_seconds is None else time.monotonic() + duration_seconds
            with self._signal_handlers():
                while not self._stop_event.is_set():
                    if deadline is not None and time.monotonic() >= deadline:
                        break
                    self._stop_event.wait(0.2)
            self.stop()
            self.dispatcher.stop()
            maintenance.join(timeout=_MAINTENANCE_WAKEUP_SECONDS * 5)
        logger.info("Runtime stopped (%s)", self._stop_signal_name or "requested")

    def stop(self) -> None:
        self._stop_event.set()

    def run_maintenance_once(self, *, force: bool = False) -> MaintenanceResult:
        """Retry sweep every pass; recovery sweep and scheduler tick on their intervals."""

        now = time.monotonic()
        result = MaintenanceResult(requeued=self.retry_policy.sweep())
        if force or now - self._last_recovery_at >= self.settings.recovery.sweep_interval_seconds:
            self._last_recovery_at = now
            result.recovery = self.recovery.sweep()
        if force or now - self._last_tick_at >= self.settings.scheduler.tick_interval_seconds:
            self._last_tick_at = now
            result.tick = self.scheduler.tick()
        return result

    def _maintenance_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_maintenance_once()
            except Exception:
                logger.exception("Maintenance pass failed")
            self._stop_event.wait(_MAINTENANCE_WAKEUP_SECONDS)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self.stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
