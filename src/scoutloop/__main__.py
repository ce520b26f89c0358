import asyncio
import json
import logging
import signal
import sys

import click

from scoutloop.channels import load_transports
from scoutloop.config import Settings, settings
from scoutloop.db import DbConnection, init_db
from scoutloop.errors import ConfigError
from scoutloop.executors import create_executor
from scoutloop.models import ChatMessage, Schedule, ScheduleState, ScheduleStep
from scoutloop.orchestrator import Orchestrator
from scoutloop.scheduling import is_auto_disabled, validate_cron
from scoutloop.stores import (
    ActivityRecorder,
    HistoryLog,
    ScheduleStore,
    SessionKeyStore,
    utcnow,
)

log = logging.getLogger(__name__)


def _setup_logging(config: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


def _build_orchestrator(db: DbConnection) -> Orchestrator:
    return Orchestrator(
        create_executor(settings),
        keys=SessionKeyStore(
            db, tz=settings.tzinfo, default_mode=settings.default_approval_mode
        ),
        history=HistoryLog(db, limit=settings.history_limit),
        schedules=ScheduleStore(db),
        activity=ActivityRecorder(db),
        settings=settings,
    )


def _parse_step(raw: str) -> ScheduleStep:
    skill, sep, args = raw.partition("=")
    if not sep:
        return ScheduleStep(skill=skill)
    try:
        return ScheduleStep(skill=skill, args=json.loads(args))
    except ValueError as exc:
        raise click.BadParameter(f"{raw!r}: {exc}", param_hint="--step") from exc


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """scoutloop: scheduled and chat-driven agent sessions"""
    _setup_logging(settings)
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
def run() -> None:
    """Run the orchestrator daemon (schedules and chat channels)."""
    db = _get_db()
    orchestrator = _build_orchestrator(db)
    for transport in load_transports(settings, orchestrator):
        orchestrator.add_transport(transport)
        log.info("Channel %s %s", transport.name, "enabled" if transport.enabled else "disabled")

    async def _main() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.stop)
        await orchestrator.run()

    asyncio.run(_main())


@main.command("run-now")
@click.argument("name")
def run_now(name: str) -> None:
    """Fire schedule NAME immediately and wait for it to finish."""
    db = _get_db()
    orchestrator = _build_orchestrator(db)
    try:
        ok = asyncio.run(orchestrator.run_now(name))
    except ConfigError as exc:
        available = ", ".join(s.name for s in ScheduleStore(db).list()) or "(none)"
        click.echo(f"{exc}. Available: {available}", err=True)
        sys.exit(1)
    click.echo(f"{name}: {'ok' if ok else 'error'}")
    if not ok:
        sys.exit(1)


@main.group()
def schedules() -> None:
    """Manage schedule definitions."""


@schedules.command("list")
def schedules_list() -> None:
    """List schedules with their run state."""
    all_schedules = ScheduleStore(_get_db()).list()
    if not all_schedules:
        click.echo("No schedules.")
        return
    click.echo(f"{'Name':<20} {'Cron':<16} {'Enabled':<8} {'Errors':<7} {'Last Run'}")
    click.echo("-" * 80)
    for s in all_schedules:
        enabled = "auto-off" if is_auto_disabled(s.state) else ("yes" if s.enabled else "no")
        click.echo(
            f"{s.name:<20} {s.cron:<16} {enabled:<8} {s.state.consecutive_errors:<7}"
            f" {s.state.last_run_at or '-'} {s.state.last_status or ''}"
        )


@schedules.command("add")
@click.argument("name")
@click.option("--cron", required=True, help="Five-field cron expression.")
@click.option(
    "--step",
    "steps",
    multiple=True,
    required=True,
    help='Skill to run, optionally with JSON args: skill or skill={"k": "v"}.',
)
@click.option("--output", default=None, help="Skill that delivers the combined output.")
@click.option("--prompt", default=None, help="Extra instruction after the steps.")
@click.option("--disabled", is_flag=True, help="Create the schedule disabled.")
def schedules_add(
    name: str,
    cron: str,
    steps: tuple[str, ...],
    output: str | None,
    prompt: str | None,
    disabled: bool,
) -> None:
    """Add schedule NAME."""
    try:
        validate_cron(cron)
    except ConfigError as exc:
        raise click.BadParameter(str(exc), param_hint="--cron") from exc
    store = ScheduleStore(_get_db())
    if store.get(name) is not None:
        raise click.ClickException(f"Schedule {name!r} already exists")
    store.add(
        Schedule(
            name=name,
            cron=cron,
            steps=[_parse_step(s) for s in steps],
            output=output,
            prompt=prompt,
            enabled=not disabled,
            state=ScheduleState(max_consecutive_errors=settings.max_consecutive_errors),
        )
    )
    click.echo(f"Added schedule {name}")


def _update_schedule(name: str, action, message: str) -> None:
    if not action(ScheduleStore(_get_db()), name):
        raise click.ClickException(f"Schedule {name!r} not found")
    click.echo(message)


@schedules.command("remove")
@click.argument("name")
def schedules_remove(name: str) -> None:
    """Delete schedule NAME."""
    _update_schedule(name, ScheduleStore.remove, f"Removed schedule {name}")


@schedules.command("enable")
@click.argument("name")
def schedules_enable(name: str) -> None:
    """Enable schedule NAME."""
    _update_schedule(
        name, lambda store, n: store.set_enabled(n, True), f"Enabled schedule {name}"
    )


@schedules.command("disable")
@click.argument("name")
def schedules_disable(name: str) -> None:
    """Disable schedule NAME."""
    _update_schedule(
        name, lambda store, n: store.set_enabled(n, False), f"Disabled schedule {name}"
    )


@schedules.command("reset")
@click.argument("name")
def schedules_reset(name: str) -> None:
    """Clear the error streak of NAME, re-enabling an auto-disabled schedule."""
    _update_schedule(name, ScheduleStore.reset_errors, f"Reset errors for {name}")


@main.command()
def sessions() -> None:
    """List conversation keys and their sessions."""
    entries = SessionKeyStore(_get_db(), tz=settings.tzinfo).list()
    if not entries:
        click.echo("No sessions.")
        return
    for entry in entries:
        click.echo(
            f"{entry.key} | {entry.session_id or '-'} | {entry.started_date}"
            f" | {entry.approval_mode}"
        )


@main.command()
@click.option("-n", "limit", default=20, show_default=True, help="Number of records.")
def activity(limit: int) -> None:
    """Show the most recent activity records."""
    records = ActivityRecorder(_get_db()).recent(limit)
    if not records:
        click.echo("No activity.")
        return
    for r in records:
        click.echo(
            f"{r.ts} {r.trigger:<8} {r.source:<20} {r.status:<6} {r.duration_ms}ms"
            f" {r.detail or ''}".rstrip()
        )


@main.command()
@click.option("--to", "key", required=True, help="Conversation key, e.g. telegram-12345.")
@click.option("--message", required=True, help="Text to send.")
def send(key: str, message: str) -> None:
    """Send a reply into a chat conversation and record it in history."""
    transport_name, sep, chat_id = key.partition("-")
    if not sep or not chat_id:
        raise click.BadParameter(f"{key!r} is not a conversation key", param_hint="--to")
    transport = next(
        (t for t in load_transports(settings, None) if t.name == transport_name), None
    )
    if transport is None:
        raise click.ClickException(f"No configured channel named {transport_name!r}")

    asyncio.run(transport.send_reply(chat_id, message))
    HistoryLog(_get_db()).append(
        ChatMessage(
            ts=utcnow().isoformat(),
            role="assistant",
            key=key,
            name=settings.assistant_name,
            text=message,
        )
    )
    click.echo(f"Sent to {key}")


if __name__ == "__main__":
    main()
