"""Subprocess-based decision oracle for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from laneloop.orchestrator.contracts import (
    DECISION_SCHEMA_EXAMPLE,
    parse_decision,
    parse_review_verdict,
    parse_tier,
)
from laneloop.orchestrator.models import (
    ActionView,
    Decision,
    ReviewRequest,
    ReviewVerdict,
    StepContext,
    Tier,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 600


class OracleCommandError(RuntimeError):
    """CLI agent exited unsuccessfully; message carries the stderr tail."""


class CommandOracle:
    """Render a prompt, run the configured agent command, parse its stdout."""

    def __init__(self, *, command_template: str, timeout_seconds: int = 120) -> None:
        if not command_template.strip():
            raise ValueError("LANELOOP_ORACLE_COMMAND is empty.")
        if "{prompt}" not in command_template and "{prompt_file}" not in command_template:
            raise ValueError("Oracle command template must include {prompt} or {prompt_file}.")
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def decide(self, action: ActionView, context: StepContext) -> Decision:
        return parse_decision(self._run(build_decision_prompt(action, context)))

    def review(self, request: ReviewRequest) -> ReviewVerdict:
        return parse_review_verdict(self._run(build_review_prompt(request)))

    def classify(self, action: ActionView) -> Tier:
        return parse_tier(self._run(build_classify_prompt(action)))

    def _run(self, prompt: str) -> str:
        with tempfile.TemporaryDirectory(prefix="laneloop-oracle-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            argv = _build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    env=os.environ.copy(),
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as error:
                raise TimeoutError(
                    f"Oracle command timed out after {self.timeout_seconds}s",
                ) from error
            except FileNotFoundError as error:
                raise OracleCommandError(f"Oracle command not found: {argv[0]}") from error

        if completed.returncode != 0:
            stderr_tail = completed.stderr.strip()[-_STDERR_TAIL_CHARS:]
            raise OracleCommandError(
                f"Oracle command exited with {completed.returncode}: {stderr_tail}",
            )
        logger.debug("Oracle stdout: %d chars", len(completed.stdout))
        return completed.stdout


def build_decision_prompt(action: ActionView, context: StepContext) -> str:
    notes = "\n".join(f"- {note}" for note in context.notes) or "- (none)"
    observations = "\n".join(f"- {item}" for item in context.observations) or "- (none)"
    return (
        f"Task: {action.description}\n"
        f"\n"
        f"Step {context.step} of {context.max_steps}. "
        f"Messages sent {context.messages_sent} of {context.max_messages}.\n"
        f"Origin: {action.source or 'internal'} {action.source_id or ''}\n"
        f"\n"
        f"Notes:\n{notes}\n"
        f"\n"
        f"Observations so far:\n{observations}\n"
        f"\n"
        f"Reply with one JSON object only, following this schema:\n"
        f"{DECISION_SCHEMA_EXAMPLE}\n"
        f"Set goals_met to true only when the user already has the final result.\n"
    )


def build_review_prompt(request: ReviewRequest) -> str:
    trace = "\n".join(f"- {line}" for line in request.recent_trace) or "- (empty)"
    delivery = request.delivery
    tool_line = f"Tool: {request.tool}\n" if request.tool else ""
    return (
        f"Task: {request.action.description}\n"
        f"Forced termination point: {request.reason.value}\n"
        f"{tool_line}"
        f"Messages sent: {delivery.messages_sent}; any delivery succeeded: "
        f"{json.dumps(delivery.any_delivery_succeeded)}; substantive deliveries: "
        f"{delivery.substantive_deliveries_sent}\n"
        f"\n"
        f"Recent steps:\n{trace}\n"
        f"\n"
        f'Reply with {{"verdict": "continue"}} only if a little more work will deliver a '
        f'final result, otherwise {{"verdict": "terminate"}}.\n'
    )


def build_classify_prompt(action: ActionView) -> str:
    return (
        f"Task: {action.description}\n"
        f"\n"
        f"Classify the effort this task needs. Reply with "
        f'{{"tier": "trivial"}} for a one-line reply, {{"tier": "deep"}} for multi-tool '
        f'research or building, otherwise {{"tier": "standard"}}.\n'
    )


def _build_run_args(*, command_template: str, prompt: str, prompt_file: Path) -> list[str]:
    try:
        rendered = command_template.strip().format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Oracle command template rendered empty command.")
    return argv
