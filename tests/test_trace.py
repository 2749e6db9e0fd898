from __future__ import annotations

import allure
import pytest

from laneloop.orchestrator.models import ActionCreate, TraceEntryWrite, TraceKind
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.trace import SqlTraceStore

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Trace Store"),
]


@pytest.fixture()
def trace(store: ActionStore) -> SqlTraceStore:
    return SqlTraceStore(store.engine)


@pytest.fixture()
def action_ids(store: ActionStore) -> tuple[str, str]:
    first = store.push(ActionCreate(description="Find tomorrow's weather in Paris"))
    second = store.push(ActionCreate(description="Check the inbox"))
    return first.action_id, second.action_id


def test_entries_come_back_in_append_order(
    trace: SqlTraceStore,
    action_ids: tuple[str, str],
) -> None:
    first_id, second_id = action_ids
    trace.append(
        first_id,
        TraceEntryWrite(
            kind=TraceKind.TOOL,
            step=1,
            tool="web_search",
            signature="web_search:paris weather",
            arguments={"query": "paris weather"},
            success=True,
            duration_ms=420,
            content="Sunny, 21C",
        ),
    )
    trace.append(first_id, TraceEntryWrite(kind=TraceKind.NOTE, step=2, content="slow tool"))
    trace.append(second_id, TraceEntryWrite(kind=TraceKind.ORACLE, step=1))

    first, second = trace.list_for_action(first_id)

    assert first.kind is TraceKind.TOOL
    assert first.action_id == first_id
    assert first.arguments == {"query": "paris weather"}
    assert first.success is True
    assert first.duration_ms == 420
    assert first.content == "Sunny, 21C"
    assert second.kind is TraceKind.NOTE
    assert second.arguments == {}
    assert first.entry_id < second.entry_id


def test_secrets_are_redacted_before_storage(
    trace: SqlTraceStore,
    action_ids: tuple[str, str],
) -> None:
    action_id, _ = action_ids
    trace.append(
        action_id,
        TraceEntryWrite(
            kind=TraceKind.TOOL,
            step=1,
            tool="http_fetch",
            arguments={"url": "https://api.example.io/x?token=abc123"},
            success=False,
            error="401 for bob@example.com",
        ),
    )

    [entry] = trace.list_for_action(action_id)

    assert entry.arguments == {"url": "https://api.example.io/x?token=[redacted]"}
    assert entry.error == "401 for [redacted-email]"


def test_oversized_arguments_load_as_preview(
    trace: SqlTraceStore,
    action_ids: tuple[str, str],
) -> None:
    action_id, _ = action_ids
    trace.append(
        action_id,
        TraceEntryWrite(kind=TraceKind.TOOL, step=1, arguments={"body": "x" * 5_000}),
    )

    [entry] = trace.list_for_action(action_id)

    assert set(entry.arguments) == {"preview"}
    assert len(str(entry.arguments["preview"])) == 4_000


def test_cleanup_only_touches_one_action(
    trace: SqlTraceStore,
    action_ids: tuple[str, str],
) -> None:
    first_id, second_id = action_ids
    for step in (1, 2):
        trace.append(first_id, TraceEntryWrite(kind=TraceKind.ORACLE, step=step))
    trace.append(second_id, TraceEntryWrite(kind=TraceKind.ORACLE, step=1))

    assert trace.cleanup(first_id) == 2
    assert trace.list_for_action(first_id) == []
    assert len(trace.list_for_action(second_id)) == 1
    assert trace.cleanup(first_id) == 0
