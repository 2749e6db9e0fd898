"""Task complexity tiers: oracle pre-classification with a heuristic fallback."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from laneloop.config import LoopSettings, TierBudget
from laneloop.orchestrator.backend.base import DecisionOracle
from laneloop.orchestrator.models import ActionView, Tier
from laneloop.orchestrator.retry import OracleFailure, call_with_retry

logger = logging.getLogger(__name__)


def heuristic_tier(description: str, settings: LoopSettings) -> Tier:
    """Length/keyword fallback used when the oracle cannot classify."""

    text = description.strip()
    lowered = text.lower()
    has_deep_keyword = any(keyword in lowered for keyword in settings.deep_keywords)
    if has_deep_keyword or len(text) >= settings.deep_min_chars:
        return Tier.DEEP
    if len(text) <= settings.trivial_max_chars:
        return Tier.TRIVIAL
    return Tier.STANDARD


def budget_for(tier: Tier, settings: LoopSettings) -> TierBudget:
    if tier == Tier.TRIVIAL:
        return settings.trivial
    if tier == Tier.DEEP:
        return settings.deep
    return settings.standard


class TierClassifier:
    """Picks the budget tier of an action once per execution."""

    def __init__(
        self,
        *,
        oracle: DecisionOracle,
        settings: LoopSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.oracle = oracle
        self.settings = settings
        self._sleep = sleep

    def classify(self, action: ActionView) -> tuple[Tier, str]:
        """Return the tier and where it came from (`oracle` or `heuristic`)."""

        outcome = call_with_retry(
            lambda: self.oracle.classify(action),
            attempts=1,
            base_delay_seconds=self.settings.oracle_base_delay_seconds,
            max_delay_seconds=self.settings.oracle_max_delay_seconds,
            sleep=self._sleep,
        )
        if isinstance(outcome, OracleFailure):
            tier = heuristic_tier(action.description, self.settings)
            logger.info(
                "Tier pre-classification failed for %s (%s); heuristic picked %s",
                action.action_id,
                outcome.classification.kind.value,
                tier.value,
            )
            return tier, "heuristic"
        return outcome.value, "oracle"
