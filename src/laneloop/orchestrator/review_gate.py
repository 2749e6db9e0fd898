"""Narrow oracle query arbitrating forced terminations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from laneloop.orchestrator.backend.base import DecisionOracle
from laneloop.orchestrator.models import (
    ReviewDecision,
    ReviewReason,
    ReviewRequest,
    ReviewVerdict,
)
from laneloop.orchestrator.retry import OracleFailure, call_with_retry

logger = logging.getLogger(__name__)


class ReviewGate:
    """Asks the oracle `continue` or `terminate`; fails closed."""

    def __init__(
        self,
        *,
        oracle: DecisionOracle,
        attempts: int = 1,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.oracle = oracle
        self.attempts = attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    def review(self, request: ReviewRequest) -> ReviewDecision:
        if (
            request.reason == ReviewReason.STEP_EXHAUSTION
            and request.delivery.substantive_deliveries_sent > 0
        ):
            return ReviewDecision(
                verdict=ReviewVerdict.TERMINATE,
                source="fast_path",
                detail="A substantive delivery already succeeded.",
            )

        outcome = call_with_retry(
            lambda: self.oracle.review(request),
            attempts=self.attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            sleep=self._sleep,
        )
        if isinstance(outcome, OracleFailure):
            logger.warning(
                "Review for action %s (%s) failed closed: %s",
                request.action.action_id,
                request.reason.value,
                outcome.message,
            )
            return ReviewDecision(
                verdict=ReviewVerdict.TERMINATE,
                source="fail_closed",
                detail=outcome.message,
            )

        logger.info(
            "Review for action %s (%s): %s",
            request.action.action_id,
            request.reason.value,
            outcome.value.value,
        )
        return ReviewDecision(verdict=outcome.value, source="oracle")
