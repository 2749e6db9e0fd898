"""Interfaces of the external decision oracle and tool executor."""

from __future__ import annotations

from typing import Any, Protocol

from laneloop.orchestrator.models import (
    ActionView,
    Decision,
    ReviewRequest,
    ReviewVerdict,
    StepContext,
    Tier,
    ToolResult,
)


class DecisionOracle(Protocol):
    """Planner consulted every step; its output is validated, never trusted."""

    def decide(self, action: ActionView, context: StepContext) -> Decision:
        """Return tool invocations plus a verification verdict for one step."""

    def review(self, request: ReviewRequest) -> ReviewVerdict:
        """Answer `continue` or `terminate` at a forced-termination point."""

    def classify(self, action: ActionView) -> Tier:
        """Cheap pre-classification of task complexity."""


class ToolExecutor(Protocol):
    """Runs named tools; all side effects live behind this boundary."""

    def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one tool and return `ToolSuccess` or `ToolError`."""
