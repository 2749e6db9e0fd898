from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from laneloop.main import laneloop

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI Ops"),
]

_ACTION_ID = re.compile(r"action_id=(\S+)")
_SCHEDULE_ID = re.compile(r"schedule_id=(\S+)")


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("LANELOOP_DB_PATH", "LANELOOP_ORACLE_SCRIPT", "LANELOOP_ORACLE_COMMAND"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LANELOOP_OUTBOX_PATH", str(tmp_path / "outbox.jsonl"))


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(laneloop, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _push(db_path: Path, description: str, *extra: str) -> str:
    output = _invoke("push", "--db-path", str(db_path), *extra, description)
    match = _ACTION_ID.search(output)
    assert match is not None, output
    return match.group(1)


def test_push_list_inspect_and_cancel(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    action_id = _push(db_path, "Find tomorrow's weather in Paris", "--source", "telegram", "--source-id", "42")
    duplicate = _invoke(
        "push",
        "--db-path",
        str(db_path),
        "--source",
        "telegram",
        "--source-id",
        "42",
        "find tomorrow's weather in paris",
    )
    assert f"Action deduplicated: action_id={action_id}" in duplicate

    listing = _invoke("list", "--db-path", str(db_path), "--status", "pending")
    assert "Actions: 1" in listing
    assert f"{action_id} lane=user status=pending priority=10" in listing

    inspected = _invoke("inspect", "--db-path", str(db_path), action_id)
    assert f"Action: {action_id}" in inspected
    assert "Origin: telegram/42" in inspected
    assert "push_deduplicated" in inspected
    assert "Trace entries: 0" in inspected

    assert f"Action canceled: {action_id}" in _invoke("cancel", "--db-path", str(db_path), action_id)
    assert f"Action not cancelable: {action_id}" in _invoke(
        "cancel",
        "--db-path",
        str(db_path),
        action_id,
    )
    assert "Action not found: missing" in _invoke("inspect", "--db-path", str(db_path), "missing")


def test_push_rejects_blank_description(tmp_path: Path) -> None:
    result = CliRunner().invoke(laneloop, ["push", "--db-path", str(tmp_path / "cli.db"), "   "])

    assert result.exit_code != 0
    assert "must not be empty" in result.output


def test_clear_and_stats(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    first = _push(db_path, "Tidy the notes folder")
    second = _push(db_path, "Check the inbox", "--lane", "autonomy", "--priority", "3")

    cleared = _invoke("clear", "--db-path", str(db_path), "--reason", "operator_reset")
    assert "Queue cleared: 2 action(s)" in cleared
    assert first in cleared
    assert second in cleared

    stats = _invoke("stats", "--db-path", str(db_path), "--hours", "1")
    assert "Action queue health (window=1h)" in stats
    assert "Terminal status distribution: failed=2" in stats
    assert "Failure reasons: operator_reset=2" in stats
    assert "Failure-class distribution: canceled=2" in stats


def test_maintenance_commands_on_empty_queue(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    assert "Recovery sweep: watchdog_failed=0 stale_failed=0 waiting_resumed=0 retry_scheduled=0 settled=0" in (
        _invoke("recover", "--db-path", str(db_path))
    )
    assert "Retries re-queued: 0" in _invoke("retry-sweep", "--db-path", str(db_path))


def test_schedule_add_list_remove(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    added = _invoke(
        "schedule",
        "add",
        "--db-path",
        str(db_path),
        "--name",
        "inbox",
        "--interval-seconds",
        "900",
        "--first-delay-seconds",
        "60",
        "Check the inbox for anything urgent",
    )
    match = _SCHEDULE_ID.search(added)
    assert match is not None, added
    schedule_id = match.group(1)
    assert "interval=900s" in added

    listing = _invoke("schedule", "list", "--db-path", str(db_path))
    assert "Schedules: 1" in listing
    assert f"{schedule_id} name=inbox interval=900s priority=5 enabled=yes" in listing
    assert "last_fired_at=-" in listing

    assert f"Schedule removed: {schedule_id}" in _invoke(
        "schedule",
        "remove",
        "--db-path",
        str(db_path),
        schedule_id,
    )
    assert "Schedules: 0" in _invoke("schedule", "list", "--db-path", str(db_path))
    assert "Schedule not found: nope" in _invoke(
        "schedule",
        "remove",
        "--db-path",
        str(db_path),
        "nope",
    )


def test_serve_until_idle_with_scripted_oracle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "cli.db"
    script_path = tmp_path / "oracle.json"
    script_path.write_text(
        json.dumps(
            {
                "steps": [
                    {
                        "tools": [
                            {
                                "name": "send_telegram",
                                "metadata": {"chat_id": "42", "message": "Paris tomorrow: sunny, 21C"},
                            },
                        ],
                        "verification": {"goals_met": False},
                    },
                    {"tools": [], "verification": {"goals_met": True}},
                ],
                "tier": "standard",
                "review": "terminate",
            },
        ),
        "utf-8",
    )
    monkeypatch.setenv("LANELOOP_ORACLE_SCRIPT", str(script_path))
    action_id = _push(db_path, "Find tomorrow's weather in Paris", "--source", "telegram", "--source-id", "42")

    output = _invoke("serve", "--db-path", str(db_path), "--until-idle")

    assert "Lane summary:" in output
    assert "lane=user processed=1 completed=1 failed=0 retried=0 waiting=0" in output
    assert "lane=autonomy processed=0" in output
    assert "Status: completed" in _invoke("inspect", "--db-path", str(db_path), action_id)
    outbox = (tmp_path / "outbox.jsonl").read_text("utf-8").splitlines()
    assert len(outbox) == 1
    assert json.loads(outbox[0])["tool"] == "send_telegram"
    assert not (tmp_path / "cli.db.lock").exists()


def test_serve_without_oracle_is_a_usage_error(tmp_path: Path) -> None:
    result = CliRunner().invoke(laneloop, ["serve", "--db-path", str(tmp_path / "cli.db"), "--until-idle"])

    assert result.exit_code == 1
    assert "LANELOOP_ORACLE_SCRIPT" in result.output
