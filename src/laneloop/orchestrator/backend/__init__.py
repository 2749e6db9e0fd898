"""Decision oracle and tool executor implementations."""

from laneloop.orchestrator.backend.base import DecisionOracle, ToolExecutor
from laneloop.orchestrator.backend.command_oracle import CommandOracle, OracleCommandError
from laneloop.orchestrator.backend.outbox_executor import OutboxToolExecutor
from laneloop.orchestrator.backend.scripted import ScriptedOracle

__all__ = [
    "CommandOracle",
    "DecisionOracle",
    "OracleCommandError",
    "OutboxToolExecutor",
    "ScriptedOracle",
    "ToolExecutor",
]
