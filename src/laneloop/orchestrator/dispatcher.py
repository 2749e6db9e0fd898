"""Two independent lane workers claiming actions from the shared store."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from laneloop.config import LaneSettings
from laneloop.orchestrator.loop import ExecutionLoop, LoopOutcome, settle_action
from laneloop.orchestrator.models import ActionStatus, FailureClass, Lane

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LaneRunSummary:
    """Aggregate lane counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    waiting: int = 0
    idle_polls: int = 0

    def add(self, outcome: LoopOutcome | None) -> None:
        if outcome is None:
            self.idle_polls += 1
            return
        self.processed += 1
        if outcome.retried:
            self.retried += 1
        elif outcome.status == ActionStatus.COMPLETED:
            self.completed += 1
        elif outcome.status == ActionStatus.FAILED:
            self.failed += 1
        elif outcome.status == ActionStatus.WAITING:
            self.waiting += 1


class LaneDispatcher:
    """Polls each lane on its own thread; a lane runs at most one action at a time."""

    def __init__(self, *, loop: ExecutionLoop, settings: LaneSettings) -> None:
        self.loop = loop
        self.store = loop.store
        self.settings = settings
        self._busy: dict[Lane, bool] = {lane: False for lane in Lane}
        self._busy_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.summaries: dict[Lane, LaneRunSummary] = {lane: LaneRunSummary() for lane in Lane}

    def worker_id(self, lane: Lane) -> str:
        return f"{self.settings.worker_prefix}-{lane.value}"

    def is_busy(self, lane: Lane) -> bool:
        with self._busy_lock:
            return self._busy[lane]

    def run_once(self, lane: Lane) -> LoopOutcome | None:
        """Claim and run at most one action of `lane`; `None` when nothing ran."""

        if not self._mark_busy(lane):
            return None
        try:
            action = self.store.claim_next(lane=lane, worker_id=self.worker_id(lane))
            if action is None:
                return None
            logger.info("Lane %s claimed action %s", lane.value, action.action_id)
            try:
                return self.loop.run(action)
            except Exception as error:
                logger.exception("Lane %s crashed on action %s", lane.value, action.action_id)
                self.store.update_status(
                    action.action_id,
                    ActionStatus.FAILED,
                    reason="internal_error",
                    failure_class=FailureClass.INTERNAL_ERROR,
                    error_summary=f"{type(error).__name__}: {error}",
                    expected=ActionStatus.IN_PROGRESS,
                )
                settle_action(
                    store=self.store,
                    trace_store=self.loop.trace_store,
                    fallback=self.loop.fallback,
                    action_id=action.action_id,
                    retain_trace=self.loop.settings.retain_trace,
                )
                return LoopOutcome(
                    action_id=action.action_id,
                    status=ActionStatus.FAILED,
                    reason="internal_error",
                )
        finally:
            self._mark_idle(lane)

    def start(self) -> None:
        self._stop_event.clear()
        for lane in Lane:
            thread = threading.Thread(
                target=self._poll_lane,
                args=(lane,),
                name=self.worker_id(lane),
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def stop(self, *, timeout: float | None = None) -> None:
        """Ask lanes to stop after their current action and wait for them."""

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _poll_lane(self, lane: Lane) -> None:
        summary = self.summaries[lane]
        while not self._stop_event.is_set():
            try:
                outcome = self.run_once(lane)
            except Exception:
                # Store errors (e.g. a locked database) must not kill the lane.
                logger.exception("Lane %s poll failed", lane.value)
                outcome = None
            summary.add(outcome)
            if outcome is None:
                self._stop_event.wait(self.settings.poll_interval_seconds)

    def _mark_busy(self, lane: Lane) -> bool:
        with self._busy_lock:
            if self._busy[lane]:
                return False
            if (
                lane == Lane.AUTONOMY
                and not self.settings.allow_parallel_autonomy
                and self._busy[Lane.USER]
            ):
                return False
            self._busy[lane] = True
            return True

    def _mark_idle(self, lane: Lane) -> None:
        with self._busy_lock:
            self._busy[lane] = False


def run_until_idle(
    dispatcher: LaneDispatcher,
    *,
    max_actions: int | None = None,
) -> dict[Lane, LaneRunSummary]:
    """Run both lanes in this thread, user lane first, until neither has work."""

    summaries = {lane: LaneRunSummary() for lane in Lane}
    processed = 0
    while max_actions is None or processed < max_actions:
        ran = False
        for lane in Lane:
            if max_actions is not None and processed >= max_actions:
                break
            outcome = dispatcher.run_once(lane)
            summaries[lane].add(outcome)
            if outcome is not None:
                processed += 1
                ran = True
        if not ran:
            break
    return summaries
