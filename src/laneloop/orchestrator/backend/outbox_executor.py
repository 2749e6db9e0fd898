"""Tool executor writing deliveries to a JSONL outbox."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from laneloop.orchestrator.failure_classifier import normalize_tool_result
from laneloop.orchestrator.models import ToolError, ToolResult, ToolSuccess
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], object]


class OutboxToolExecutor:
    """Delivery tools append one JSON line each; other tools call registered handlers."""

    def __init__(
        self,
        *,
        outbox_path: Path,
        delivery_tools: Iterable[str],
        handlers: dict[str, ToolHandler] | None = None,
    ) -> None:
        self.outbox_path = outbox_path
        self.delivery_tools = frozenset(delivery_tools)
        self.handlers: dict[str, ToolHandler] = dict(handlers or {})
        self._lock = threading.Lock()

    def register(self, name: str, handler: ToolHandler) -> None:
        self.handlers[name] = handler

    def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        if name in self.delivery_tools:
            return self._deliver(name, arguments)
        handler = self.handlers.get(name)
        if handler is None:
            return ToolError(message=f"Unknown tool: {name}")
        return normalize_tool_result(handler(arguments))

    def read_outbox(self) -> list[dict[str, Any]]:
        """Return delivered records in write order."""

        if not self.outbox_path.exists():
            return []
        records: list[dict[str, Any]] = []
        for line in self.outbox_path.read_text("utf-8").splitlines():
            if line.strip():
                records.append(json.loads(line))
        return records

    def _deliver(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        record = {
            "tool": name,
            "arguments": arguments,
            "delivered_at": utc_now().isoformat(),
        }
        with self._lock:
            self.outbox_path.parent.mkdir(parents=True, exist_ok=True)
            with self.outbox_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False, sort_keys=True, default=str))
                handle.write("\n")
        logger.debug("Delivered %s to outbox %s", name, self.outbox_path)
        return ToolSuccess(value={"success": True, "tool": name})
