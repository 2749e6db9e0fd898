"""CLI entrypoint for laneloop."""

import logging
from pathlib import Path

import rich_click as click

from laneloop import __version__
from laneloop.orchestrator.controllers import (
    CancelActionCommand,
    ClearQueueCommand,
    InspectActionCommand,
    LaneloopCliController,
    ListActionsCommand,
    MaintenanceCommand,
    PushCommand,
    ScheduleAddCommand,
    ScheduleListCommand,
    ScheduleRemoveCommand,
    ServeCommand,
    StatsCommand,
)
from laneloop.orchestrator.recovery import InstanceLockError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LaneloopCliController()

_LANES = ["user", "autonomy"]
_STATUSES = ["pending", "in-progress", "completed", "failed", "waiting"]


@click.group()
@click.version_option(version=__version__, prog_name="laneloop")
def laneloop() -> None:
    """Two-lane action orchestrator."""


@laneloop.command("push")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--lane",
    type=click.Choice(_LANES, case_sensitive=False),
    default="user",
    show_default=True,
    help="Lane the action runs on.",
)
@click.option(
    "--priority",
    type=int,
    default=None,
    help="Higher runs sooner. Defaults to LANELOOP_DEFAULT_PRIORITY.",
)
@click.option("--source", default=None, help="Origin channel, for example telegram.")
@click.option("--source-id", default=None, help="Origin conversation id within the channel.")
@click.option("--session-id", default=None, help="Optional session id carried in the payload.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Retry cap for transient failures.",
)
@click.argument("description")
def push(  # noqa: PLR0913
    db_path: Path | None,
    lane: str,
    priority: int | None,
    source: str | None,
    source_id: str | None,
    session_id: str | None,
    max_attempts: int | None,
    description: str,
) -> None:
    """Queue one action."""

    try:
        lines = CONTROLLER.push(
            PushCommand(
                db_path=db_path,
                description=description,
                lane=lane,
                priority=priority,
                source=source,
                source_id=source_id,
                session_id=session_id,
                max_attempts=max_attempts,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@laneloop.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--lane",
    type=click.Choice(_LANES, case_sensitive=False),
    default=None,
    help="Optional lane filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max actions to print.",
)
def list_actions(
    db_path: Path | None,
    status: str | None,
    lane: str | None,
    limit: int,
) -> None:
    """List actions, newest first."""

    _emit_lines(
        CONTROLLER.list_actions(
            ListActionsCommand(db_path=db_path, status=status, lane=lane, limit=limit),
        ),
    )


@laneloop.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--trace/--no-trace",
    "show_trace",
    default=True,
    show_default=True,
    help="Include the execution trace.",
)
@click.argument("action_id")
def inspect_action(db_path: Path | None, show_trace: bool, action_id: str) -> None:
    """Inspect one action with event history and trace."""

    _emit_lines(
        CONTROLLER.inspect_action(
            InspectActionCommand(db_path=db_path, action_id=action_id, show_trace=show_trace),
        ),
    )


@laneloop.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("action_id")
def cancel(db_path: Path | None, action_id: str) -> None:
    """Cancel a queued or waiting action, or request a running one to stop."""

    _emit_lines(CONTROLLER.cancel_action(CancelActionCommand(db_path=db_path, action_id=action_id)))


@laneloop.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--lane",
    type=click.Choice(_LANES, case_sensitive=False),
    default=None,
    help="Only clear one lane.",
)
@click.option("--reason", default="queue_cleared", show_default=True, help="Failure reason.")
def clear(db_path: Path | None, lane: str | None, reason: str) -> None:
    """Cancel every queued, waiting and running action."""

    _emit_lines(CONTROLLER.clear_queue(ClearQueueCommand(db_path=db_path, lane=lane, reason=reason)))


@laneloop.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show queue health and failure metrics."""

    _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@laneloop.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def recover(db_path: Path | None) -> None:
    """Run one watchdog, stale and waiting-timeout sweep."""

    _emit_lines(CONTROLLER.recover(MaintenanceCommand(db_path=db_path)))


@laneloop.command("retry-sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def retry_sweep(db_path: Path | None) -> None:
    """Re-queue failed actions whose retry time has passed."""

    _emit_lines(CONTROLLER.retry_sweep(MaintenanceCommand(db_path=db_path)))


@laneloop.group()
def schedule() -> None:
    """Heartbeat schedules feeding the autonomy lane."""


@schedule.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Schedule name.")
@click.option(
    "--interval-seconds",
    type=click.IntRange(min=1),
    required=True,
    help="Base interval between fires.",
)
@click.option(
    "--priority",
    type=int,
    default=None,
    help="Action priority. Defaults to LANELOOP_SCHEDULER_DEFAULT_PRIORITY.",
)
@click.option(
    "--first-delay-seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Delay before the first fire.",
)
@click.argument("description")
def schedule_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    interval_seconds: int,
    priority: int | None,
    first_delay_seconds: int,
    description: str,
) -> None:
    """Register a heartbeat schedule."""

    _emit_lines(
        CONTROLLER.add_schedule(
            ScheduleAddCommand(
                db_path=db_path,
                name=name,
                description=description,
                interval_seconds=interval_seconds,
                priority=priority,
                first_delay_seconds=first_delay_seconds,
            ),
        ),
    )


@schedule.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def schedule_list(db_path: Path | None) -> None:
    """List heartbeat schedules."""

    _emit_lines(CONTROLLER.list_schedules(ScheduleListCommand(db_path=db_path)))


@schedule.command("remove")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("schedule_id")
def schedule_remove(db_path: Path | None, schedule_id: str) -> None:
    """Remove a heartbeat schedule."""

    _emit_lines(
        CONTROLLER.remove_schedule(ScheduleRemoveCommand(db_path=db_path, schedule_id=schedule_id)),
    )


@laneloop.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Drain both lanes once and exit, or serve until SIGINT/SIGTERM.",
)
@click.option(
    "--duration-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop serving after this many seconds.",
)
@click.option(
    "--max-actions",
    type=click.IntRange(min=1),
    default=None,
    help="Cap for processed actions with --until-idle.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    envvar="LANELOOP_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Logging level (env LANELOOP_LOG_LEVEL).",
)
def serve(
    db_path: Path | None,
    until_idle: bool,
    duration_seconds: float | None,
    max_actions: int | None,
    log_level: str,
) -> None:
    """Run the user and autonomy lanes with recovery, retries and heartbeats."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        lines = CONTROLLER.serve(
            ServeCommand(
                db_path=db_path,
                until_idle=until_idle,
                duration_seconds=duration_seconds,
                max_actions=max_actions,
            ),
        )
    except (InstanceLockError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    laneloop()
