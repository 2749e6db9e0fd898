"""Deterministic JSON-scripted oracle for demos and tests."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from laneloop.orchestrator.contracts import OracleOutputError, parse_decision
from laneloop.orchestrator.models import (
    ActionView,
    Decision,
    ReviewRequest,
    ReviewVerdict,
    StepContext,
    Tier,
)


class ScriptedOracle:
    """Replays a fixed list of decisions, one per `decide` call of each action.

    Once the script runs out the last decision repeats. `tier=None` makes
    `classify` fail so callers exercise their heuristic fallback.
    """

    def __init__(
        self,
        steps: list[dict[str, Any] | str],
        *,
        tier: Tier | None = Tier.STANDARD,
        review: ReviewVerdict | None = ReviewVerdict.TERMINATE,
    ) -> None:
        if not steps:
            raise ValueError("ScriptedOracle needs at least one step.")
        self.steps = list(steps)
        self.tier = tier
        self.review_verdict = review
        self.calls: list[tuple[str, int]] = []
        self.review_requests: list[ReviewRequest] = []
        self._positions: dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Path) -> ScriptedOracle:
        """Load `{"steps": [...], "tier": "...", "review": "..."}`."""

        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {path}")
        steps = payload.get("steps")
        if not isinstance(steps, list):
            raise TypeError("oracle script .steps must be an array")
        tier_raw = payload.get("tier", Tier.STANDARD.value)
        review_raw = payload.get("review", ReviewVerdict.TERMINATE.value)
        return cls(
            steps,
            tier=Tier(tier_raw) if tier_raw else None,
            review=ReviewVerdict(review_raw) if review_raw else None,
        )

    def decide(self, action: ActionView, context: StepContext) -> Decision:
        with self._lock:
            position = self._positions.get(action.action_id, 0)
            self._positions[action.action_id] = position + 1
            self.calls.append((action.action_id, context.step))
        step = self.steps[min(position, len(self.steps) - 1)]
        return parse_decision(step)

    def review(self, request: ReviewRequest) -> ReviewVerdict:
        with self._lock:
            self.review_requests.append(request)
        if self.review_verdict is None:
            raise OracleOutputError("Scripted oracle has no review verdict.")
        return self.review_verdict

    def classify(self, action: ActionView) -> Tier:
        if self.tier is None:
            raise OracleOutputError("Scripted oracle has no tier.")
        return self.tier
