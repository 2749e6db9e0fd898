"""Action-level retry scheduling and the oracle call retry combinator."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, NamedTuple, TypeVar

from laneloop.orchestrator.failure_classifier import (
    OracleFailureClassification,
    classify_oracle_error,
)
from laneloop.orchestrator.models import (
    RETRYABLE_FAILURE_CLASSES,
    ActionStatus,
    ActionView,
    FailureClass,
)
from laneloop.orchestrator.repository import ActionStore
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JITTER_SHARE = 0.3


@dataclass(slots=True)
class OracleSuccess(Generic[T]):
    value: T
    attempts: int


@dataclass(slots=True)
class OracleFailure:
    classification: OracleFailureClassification
    attempts: int

    @property
    def message(self) -> str:
        return self.classification.message


def call_with_retry(  # noqa: PLR0913
    fn: Callable[[], T],
    *,
    attempts: int,
    base_delay_seconds: float,
    max_delay_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> OracleSuccess[T] | OracleFailure:
    """Call `fn` until it succeeds, fails non-retryably, or attempts run out."""

    generator = rng or random.Random()  # noqa: S311
    attempt = 0
    while True:
        attempt += 1
        try:
            return OracleSuccess(value=fn(), attempts=attempt)
        except Exception as error:  # noqa: BLE001
            classification = classify_oracle_error(error)

        if not classification.retryable or attempt >= attempts:
            logger.warning(
                "Oracle call failed after %d attempt(s): %s (%s)",
                attempt,
                classification.message,
                classification.kind.value,
            )
            return OracleFailure(classification=classification, attempts=attempt)

        exponential = min(base_delay_seconds * (2 ** (attempt - 1)), max_delay_seconds)
        delay = exponential + generator.uniform(0, _JITTER_SHARE * exponential)
        if classification.cooldown_seconds is not None:
            delay = max(delay, min(classification.cooldown_seconds, max_delay_seconds))
        logger.info(
            "Oracle call attempt %d failed (%s); retrying in %.1fs",
            attempt,
            classification.kind.value,
            delay,
        )
        sleep(delay)


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


class RetryPolicy:
    """Decides between scheduled re-attempt and terminal failure for actions."""

    def __init__(
        self,
        *,
        store: ActionStore,
        base_delay_seconds: int = 30,
        max_delay_seconds: int = 900,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._random = rng or random.Random()  # noqa: S311

    def compute_delay(self, *, retry_number: int) -> float:
        """Full-jitter exponential backoff for the `retry_number`-th re-attempt."""

        max_delay = min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def schedule_or_fail(
        self,
        action: ActionView,
        *,
        reason: str,
        failure_class: FailureClass,
        error_summary: str | None = None,
        expected: ActionStatus | None = ActionStatus.IN_PROGRESS,
        now: datetime | None = None,
    ) -> RetryOutcome:
        """Fail `action`, scheduling a re-attempt when the failure class allows it.

        `failed` is set only when this call moved the action to terminal failure.
        """

        attempts = action.retry.attempts if action.retry is not None else 0
        limit = action.max_attempts

        if failure_class in RETRYABLE_FAILURE_CLASSES and attempts < limit:
            delay = self.compute_delay(retry_number=attempts + 1)
            retry_at = (now or utc_now()) + timedelta(seconds=delay)
            if self.store.fail_action(
                action.action_id,
                reason=reason,
                failure_class=failure_class,
                error_summary=error_summary,
                retry_at=retry_at,
                expected=expected,
            ):
                logger.info(
                    "Action %s failed (%s); retry %d/%d at %s",
                    action.action_id,
                    reason,
                    attempts + 1,
                    limit,
                    retry_at.isoformat(),
                )
                return RetryOutcome(retried=True, failed=False)
            return RetryOutcome(retried=False, failed=False)

        failed = self.store.fail_action(
            action.action_id,
            reason=reason,
            failure_class=failure_class,
            error_summary=error_summary,
            expected=expected,
        )
        if failed:
            logger.info("Action %s failed terminally: %s", action.action_id, reason)
        return RetryOutcome(retried=False, failed=failed)

    def sweep(self, *, now: datetime | None = None) -> list[str]:
        """Re-queue failed actions whose retry time has passed."""

        requeued = self.store.requeue_due_retries(now=now)
        if requeued:
            logger.info("Retry sweep re-queued %d action(s)", len(requeued))
        return requeued
