"""Watchdog, stale-action sweep, waiting timeout and the single-instance lock."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from laneloop.config import RecoverySettings
from laneloop.orchestrator.fallback import FallbackNotifier
from laneloop.orchestrator.loop import settle_action
from laneloop.orchestrator.models import ActionStatus, ActionView, FailureClass
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.retry import RetryPolicy
from laneloop.orchestrator.trace import TraceStore
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

WAITING_TIMEOUT_NOTE = (
    "No reply arrived while this task was waiting for more input. Continue with the "
    "information you have, or tell the user what is still missing."
)


@dataclass(slots=True)
class RecoverySweepResult:
    """Action ids touched by one recovery sweep."""

    watchdog_failed: list[str] = field(default_factory=list)
    stale_failed: list[str] = field(default_factory=list)
    waiting_resumed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    settled: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.watchdog_failed) + len(self.stale_failed) + len(self.waiting_resumed)


class RecoveryMonitor:
    """Periodic sweep over the store for actions no lane will ever finish."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ActionStore,
        trace_store: TraceStore,
        retry_policy: RetryPolicy,
        fallback: FallbackNotifier,
        settings: RecoverySettings,
        retain_trace: bool = False,
    ) -> None:
        self.store = store
        self.trace_store = trace_store
        self.retry_policy = retry_policy
        self.fallback = fallback
        self.settings = settings
        self.retain_trace = retain_trace

    def sweep(self, *, now: datetime | None = None) -> RecoverySweepResult:
        current = now or utc_now()
        result = RecoverySweepResult()

        overdue = self.store.overdue_in_progress(
            started_before=current - timedelta(seconds=self.settings.max_run_seconds),
        )
        for action in overdue:
            self.store.request_cancel(action.action_id)
            if self._fail(
                action,
                reason="watchdog_timeout",
                failure_class=FailureClass.WATCHDOG_TIMEOUT,
                error_summary=(
                    f"In progress longer than {self.settings.max_run_seconds}s."
                ),
                result=result,
            ):
                result.watchdog_failed.append(action.action_id)

        stale = self.store.stale_in_progress(
            heartbeat_before=current - timedelta(seconds=self.settings.stale_after_seconds),
        )
        for action in stale:
            if action.action_id in result.watchdog_failed:
                continue
            if self._fail(
                action,
                reason="stale_orphan",
                failure_class=FailureClass.STALE_ORPHAN,
                error_summary=(
                    f"No heartbeat for more than {self.settings.stale_after_seconds}s."
                ),
                result=result,
            ):
                result.stale_failed.append(action.action_id)

        expired = self.store.expired_waiting(
            updated_before=current - timedelta(seconds=self.settings.waiting_timeout_seconds),
        )
        for action in expired:
            if self.store.resume_waiting(
                action.action_id,
                note=WAITING_TIMEOUT_NOTE,
                event_type="waiting_timeout",
            ):
                logger.info("Waiting action %s timed out; back to pending", action.action_id)
                result.waiting_resumed.append(action.action_id)

        # A process that died between the terminal update and settling left no fallback.
        unsettled = self.store.unsettled_failures(
            finished_before=current - timedelta(seconds=self.settings.sweep_interval_seconds),
            sources=self.fallback.user_facing_sources,
        )
        for action in unsettled:
            logger.warning("Settling failed action %s left unsettled", action.action_id)
            settle_action(
                store=self.store,
                trace_store=self.trace_store,
                fallback=self.fallback,
                action_id=action.action_id,
                retain_trace=self.retain_trace,
            )
            result.settled.append(action.action_id)

        if result.total:
            logger.info(
                "Recovery sweep: %d watchdog, %d stale, %d waiting timeout",
                len(result.watchdog_failed),
                len(result.stale_failed),
                len(result.waiting_resumed),
            )
        return result

    def _fail(  # noqa: PLR0913
        self,
        action: ActionView,
        *,
        reason: str,
        failure_class: FailureClass,
        error_summary: str,
        result: RecoverySweepResult,
    ) -> bool:
        outcome = self.retry_policy.schedule_or_fail(
            action,
            reason=reason,
            failure_class=failure_class,
            error_summary=error_summary,
            expected=ActionStatus.IN_PROGRESS,
        )
        if outcome.retried:
            result.retried.append(action.action_id)
        if outcome.failed:
            settle_action(
                store=self.store,
                trace_store=self.trace_store,
                fallback=self.fallback,
                action_id=action.action_id,
                retain_trace=self.retain_trace,
            )
        return outcome.retried or outcome.failed


class InstanceLockError(RuntimeError):
    """Another live process holds the instance lock."""

    def __init__(self, path: Path, pid: int) -> None:
        super().__init__(f"Another laneloop instance (pid {pid}) holds {path}.")
        self.path = path
        self.pid = pid


class InstanceLock:
    """Advisory PID lock file; a lock left by a dead process is cleared."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self) -> None:
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._read_owner()
                if owner is not None and owner != os.getpid() and _pid_alive(owner):
                    raise InstanceLockError(self.path, owner) from None
                logger.warning("Clearing stale lock %s (pid %s)", self.path, owner)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            return

    def release(self) -> None:
        if not self._held:
            return
        if self._read_owner() == os.getpid():
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> InstanceLock:
        self.acquire()
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    def _read_owner(self) -> int | None:
        try:
            raw = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    return True
