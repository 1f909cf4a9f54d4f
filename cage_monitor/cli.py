"""Click-based CLI entry point for cage-monitor.

This module provides the ``cage`` Click group:

- ``serve``: run the collector in the foreground (what ``start`` spawns).
- ``start`` / ``stop`` / ``status``: manage the detached collector.
- ``hook``: the per-event forwarder the agent invokes.
- ``hooks setup`` / ``hooks status``: register the forwarder with the agent.
- ``events`` / ``stats``: inspect stored events without a running server.
- ``events tail`` / ``events stream``: recent and live events from the collector.

Usage examples::

    # Wire the agent's hooks to the forwarder, then start the collector
    cage hooks setup
    cage start

    # Forward one event (the agent pipes the payload on stdin)
    echo '{"tool_name": "Read"}' | cage hook PreToolUse

    # Inspect what was captured
    cage events --type PreToolUse --limit 20
    cage events stream --type PostToolUse
    cage stats --from 2024-06-01

    # Stop it again
    cage stop

The ``hook`` path runs once per agent event, so the server stack is only
imported by the commands that need it.
"""

from __future__ import annotations

import json
import logging
import shutil
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Tuple

import click

from cage_monitor import __version__
from cage_monitor.agent_settings import (
    DEFAULT_EXECUTABLE,
    AgentSettingsError,
    install_hooks,
    installed_hooks,
)
from cage_monitor.client import CollectorClient, CollectorError
from cage_monitor.config import CageConfig, CagePaths, load_config
from cage_monitor.forwarder import EXIT_OK, run_hook
from cage_monitor.models import EventQuery, HookType, parse_timestamp
from cage_monitor.query import QueryEngine
from cage_monitor.store import EventStore, utc_today

if TYPE_CHECKING:
    from cage_monitor.lifecycle import ServerManager

logger = logging.getLogger(__name__)

_TYPE_COLORS = {
    "PreToolUse":       "cyan",
    "PostToolUse":      "blue",
    "UserPromptSubmit": "green",
    "SessionStart":     "magenta",
    "SessionEnd":       "magenta",
    "Notification":     "yellow",
    "PreCompact":       "white",
    "Stop":             "red",
    "SubagentStop":     "red",
}


# ---------------------------------------------------------------------------
# Logging setup helper
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> None:
    """Configure root logging level and format.

    Args:
        verbose: If ``True``, set level to DEBUG; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt=datefmt,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # Quieten noisy third-party loggers unless in verbose mode
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("uvicorn").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.error").setLevel(logging.INFO)
        logging.getLogger("fastapi").setLevel(logging.WARNING)


class _Context:
    """Settings shared by every subcommand."""

    def __init__(self, project_dir: Optional[str], verbose: bool) -> None:
        self.verbose = verbose
        root = Path(project_dir) if project_dir else None
        search = [root, root.parent, root.parent.parent, Path.home()] if root else None
        self.config: CageConfig = load_config(search)
        self.paths = CagePaths(root=root, config=self.config)

    def manager(self, port: Optional[int], host: Optional[str]) -> ServerManager:
        from cage_monitor.lifecycle import ServerManager

        return ServerManager(
            self.paths,
            port=port or self.config.port,
            host=host or self.config.host,
        )


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _query_or_fail(**params: Any) -> EventQuery:
    try:
        return EventQuery.model_validate({k: v for k, v in params.items() if v})
    except ValueError as exc:
        _fail(f"Invalid query: {exc}")




def _echo_event(record: dict[str, Any]) -> None:
    """Print one stored event record as a single coloured line."""
    try:
        ts = parse_timestamp(record.get("timestamp")).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        ts = str(record.get("timestamp", ""))
    event_type = str(record.get("eventType", "?"))
    badge = click.style(f"[{event_type:<16}]", fg=_TYPE_COLORS.get(event_type, "white"))
    primary = record.get("toolName") or ""
    if not primary:
        text = record.get("prompt") or record.get("message") or record.get("reason") or ""
        primary = str(text)[:80]
    session = click.style(f" ({record.get('sessionId', '')})", fg="bright_black")
    click.echo(f"  {click.style(ts, fg='bright_black')} {badge} {primary}{session}")


def _invokes_hook(argv: list[str]) -> bool:
    """Whether ``argv`` runs the ``hook`` subcommand."""
    args = iter(argv)
    for arg in args:
        if arg == "--project-dir":
            next(args, None)
        elif not arg.startswith("-"):
            return arg == "hook"
    return False


class _CageGroup(click.Group):
    """Click group whose ``hook`` subcommand never fails the agent.

    Click reports usage errors with exit code 2, which the agent reads as
    a block. When ``hook`` is invoked those errors are printed to stderr
    and the process exits 0 instead.
    """

    def main(self, args=None, prog_name=None, complete_var=None, standalone_mode=True, **extra):
        argv = list(sys.argv[1:] if args is None else args)
        if not _invokes_hook(argv):
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)
        try:
            super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except click.ClickException as exc:
            exc.show()
        except click.Abort:
            pass
        except Exception:  # noqa: BLE001
            logger.debug("Hook invocation failed", exc_info=True)
        sys.exit(EXIT_OK)


# ---------------------------------------------------------------------------
# Click CLI definition
# ---------------------------------------------------------------------------


@click.group(cls=_CageGroup)
@click.version_option(version=__version__, prog_name="cage")
@click.option(
    "--project-dir",
    default=None,
    type=click.Path(file_okay=False, dir_okay=True),
    envvar="CAGE_PROJECT_DIR",
    help="Project root holding the .cage directory (default: current directory).",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose/debug logging.",
)
@click.pass_context
def main(ctx: click.Context, project_dir: Optional[str], verbose: bool) -> None:
    """cage: capture and observe coding-agent lifecycle events.

    Hooks forward every agent event to a local collector, which stores them
    as daily JSONL files under .cage/events. Nothing leaves the machine.
    """
    _configure_logging(verbose)
    ctx.obj = _Context(project_dir, verbose)


# ---------------------------------------------------------------------------
# Collector process
# ---------------------------------------------------------------------------


@main.command()
@click.option("--port", default=None, type=click.IntRange(1, 65535), help="Port to listen on.")
@click.option("--host", default=None, help="Host to bind the server to.")
@click.pass_obj
def serve(obj: _Context, port: Optional[int], host: Optional[str]) -> None:
    """Run the collector in the foreground until interrupted."""
    import uvicorn

    from cage_monitor.main import create_app

    port = port or obj.config.port
    host = host or obj.config.host
    store = EventStore(obj.paths.events_dir)
    app = create_app(store=store, config=obj.config)
    uv_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="debug" if obj.verbose else obj.config.log_level,
        access_log=obj.verbose,
        lifespan="on",
    )
    server = uvicorn.Server(config=uv_config)

    def _handle_shutdown_signal(signum: int, frame: object) -> None:
        """Handle SIGINT/SIGTERM by asking uvicorn to exit."""
        logger.info("Received signal %d; shutting down", signum)
        server.should_exit = True

    # Register signal handlers (only in the main thread)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handle_shutdown_signal)
        signal.signal(signal.SIGTERM, _handle_shutdown_signal)

    logger.info("Collector listening on http://%s:%d", host, port)
    try:
        server.run()
    except KeyboardInterrupt:
        click.echo(click.style("\n  Interrupted.", fg="yellow"), err=True)
    except Exception as exc:
        logger.exception("Unexpected error during server run")
        _fail(f"Fatal error: {exc}")


@main.command()
@click.option("--port", default=None, type=click.IntRange(1, 65535), help="Port to listen on.")
@click.option("--host", default=None, help="Host to bind the server to.")
@click.pass_obj
def start(obj: _Context, port: Optional[int], host: Optional[str]) -> None:
    """Start the collector as a background process."""
    from cage_monitor.lifecycle import LifecycleError

    manager = obj.manager(port, host)
    try:
        record = manager.start()
    except LifecycleError as exc:
        _fail(str(exc))
    url = f"http://{manager.host}:{manager.port}"
    click.echo(
        click.style("Server started", fg="green")
        + f" (PID {record.pid}) on "
        + click.style(url, fg="cyan", underline=True)
    )


@main.command()
@click.option("--force", is_flag=True, default=False, help="Kill the server instead of asking it to exit.")
@click.option(
    "--timeout",
    default=5.0,
    show_default=True,
    type=click.FloatRange(min=0.1),
    help="Seconds to wait for the server to exit.",
)
@click.pass_obj
def stop(obj: _Context, force: bool, timeout: float) -> None:
    """Stop the background collector."""
    from cage_monitor.lifecycle import LifecycleError

    try:
        message = obj.manager(None, None).stop(force=force, timeout=timeout)
    except LifecycleError as exc:
        _fail(str(exc))
    click.echo(message)




def _count_lines(path: Path) -> int:
    try:
        with path.open("rb") as fh:
            return sum(1 for line in fh if line.strip())
    except FileNotFoundError:
        return 0


def _latest_offline_error(path: Path) -> Optional[str]:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return None
    for line in reversed(lines):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict) and entry.get("error"):
            return str(entry["error"])
    return None


def _status_report(obj: _Context) -> dict[str, Any]:
    status = obj.manager(None, None).status()
    store = EventStore(obj.paths.events_dir)
    days = store.list_partition_dates()
    total = sum(_count_lines(store.partition_path(d)) for d in days)
    today = _count_lines(store.partition_path(utc_today()))
    return {
        "server": {
            "state": status.state.value,
            "pid": status.record.pid if status.record else None,
            "uptime": round(status.uptime, 1) if status.uptime is not None else None,
            "port": obj.config.port,
        },
        "events": {
            "dir": str(store.events_dir),
            "today": today,
            "total": total,
            "partitions": len(days),
        },
        "offline": {
            "path": str(obj.paths.offline_log),
            "count": _count_lines(obj.paths.offline_log),
            "latestError": _latest_offline_error(obj.paths.offline_log),
        },
    }


@main.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable JSON.")
@click.pass_obj
def status(obj: _Context, as_json: bool) -> None:
    """Show collector state, stored event counts and offline failures."""
    from cage_monitor.lifecycle import ServerState

    report = _status_report(obj)
    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    server = report["server"]
    state = server["state"]
    color = {
        ServerState.RUNNING.value: "green",
        ServerState.STARTING.value: "yellow",
        ServerState.STALE_RECORD.value: "red",
    }.get(state, "bright_black")

    click.echo()
    click.echo(f"  {'Server:':<22}" + click.style(state, fg=color, bold=True))
    if server["pid"]:
        click.echo(f"  {'PID:':<22}{server['pid']}")
    if server["uptime"] is not None:
        click.echo(f"  {'Uptime:':<22}{server['uptime']}s")
    if state == ServerState.STALE_RECORD.value:
        click.echo(click.style("  Stale process record; run 'cage stop' to clean up.", fg="yellow"))

    events = report["events"]
    click.echo(f"  {'Events today:':<22}{events['today']}")
    click.echo(f"  {'Events total:':<22}{events['total']}")

    offline = report["offline"]
    label = click.style(str(offline["count"]), fg="yellow" if offline["count"] else "white")
    click.echo(f"  {'Offline failures:':<22}" + label)
    if offline["latestError"]:
        click.echo(f"  {'Latest error:':<22}" + click.style(offline["latestError"], fg="red"))
    click.echo()




# ---------------------------------------------------------------------------
# Hook forwarder
# ---------------------------------------------------------------------------


@main.command(name="hook")
@click.argument("hook_type", metavar="HOOK_TYPE")
@click.pass_obj
def hook(obj: _Context, hook_type: str) -> None:
    """Forward one agent event read from stdin to the collector.

    HOOK_TYPE is the hook name (``PreToolUse``) or its slug
    (``pre-tool-use``). Exits 2 only when the collector blocks the
    operation; every failure, including a malformed invocation, exits 0.
    """
    code = run_hook(hook_type, config=obj.config, paths=obj.paths)
    sys.exit(code)


@main.group(name="hooks")
def hooks_group() -> None:
    """Register the forwarder in the agent's project settings."""


@hooks_group.command(name="setup")
@click.option(
    "--executable",
    default=DEFAULT_EXECUTABLE,
    show_default=True,
    help="Command the agent runs to reach the CLI (a full path if cage is not on PATH).",
)
@click.pass_obj
def hooks_setup(obj: _Context, executable: str) -> None:
    """Install a ``cage hook`` command for every hook type."""
    settings_file = obj.paths.agent_settings_file
    try:
        installed = install_hooks(settings_file, executable=executable)
    except AgentSettingsError as exc:
        _fail(str(exc))

    click.echo(click.style("Hooks configured", fg="green") + f" in {settings_file}")
    for hook_type in installed:
        click.echo(f"  - {hook_type.value}")
    if shutil.which(executable) is None:
        click.echo(
            click.style(
                f"  '{executable}' is not on PATH; re-run with --executable /full/path/to/cage.",
                fg="yellow",
            )
        )
    click.echo(click.style("Restart the agent for the changes to take effect.", fg="yellow"))


@hooks_group.command(name="status")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable JSON.")
@click.pass_obj
def hooks_status(obj: _Context, as_json: bool) -> None:
    """Show which hook types invoke the forwarder."""
    settings_file = obj.paths.agent_settings_file
    try:
        installed = installed_hooks(settings_file)
    except AgentSettingsError as exc:
        _fail(str(exc))
    missing = [t for t in HookType if t not in installed]

    if as_json:
        report = {
            "settingsFile": str(settings_file),
            "port": obj.config.port,
            "installed": {t.value: command for t, command in installed.items()},
            "missing": [t.value for t in missing],
        }
        click.echo(json.dumps(report, indent=2))
        return

    click.echo()
    click.echo(f"  {'Settings file:':<22}{settings_file}")
    click.echo(f"  {'Collector port:':<22}{obj.config.port}")
    click.echo()
    click.echo(f"  Installed hooks ({len(installed)}/{len(HookType)}):")
    for hook_type, command in installed.items():
        click.echo(click.style(f"    ✔ {hook_type.value:<18}", fg="green") + click.style(command, fg="bright_black"))
    for hook_type in missing:
        click.echo(click.style(f"    ✖ {hook_type.value}", fg="yellow"))
    if missing:
        click.echo()
        click.echo(click.style("  Run 'cage hooks setup' to install the missing hooks.", fg="yellow"))
    click.echo()


# ---------------------------------------------------------------------------
# Stored event inspection
# ---------------------------------------------------------------------------


@main.group(name="events", invoke_without_command=True)
@click.option("--from", "from_", default=None, help="First day (YYYY-MM-DD), inclusive.")
@click.option("--to", default=None, help="Last day (YYYY-MM-DD), inclusive.")
@click.option(
    "--type",
    "-t",
    "types",
    multiple=True,
    type=click.Choice([t.value for t in HookType], case_sensitive=False),
    help="Filter by hook type (repeatable).",
)
@click.option("--session", "-s", "sessions", multiple=True, help="Filter by session id (repeatable).")
@click.option(
    "--limit",
    "-n",
    default=50,
    show_default=True,
    type=click.IntRange(1, 10000),
    help="Maximum number of events to display.",
)
@click.option("--offset", default=0, type=click.IntRange(min=0), help="Events to skip.")
@click.option(
    "--order",
    default="desc",
    show_default=True,
    type=click.Choice(["asc", "desc"]),
    help="Sort order by timestamp.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print events as JSON lines.")
@click.pass_context
def events_group(
    ctx: click.Context,
    from_: Optional[str],
    to: Optional[str],
    types: Tuple[str, ...],
    sessions: Tuple[str, ...],
    limit: int,
    offset: int,
    order: str,
    as_json: bool,
) -> None:
    """Query and display stored events.

    Reads the JSONL store directly; the server does not need to run.
    The ``tail`` and ``stream`` subcommands ask the running collector.

    \b
    Examples:
        cage events
        cage events --type PreToolUse --limit 20
        cage events --session abc123 --order asc
        cage events tail -n 5
    """
    if ctx.invoked_subcommand is not None:
        return

    obj: _Context = ctx.obj
    q = _query_or_fail(
        **{
            "from": from_,
            "to": to,
            "types": list(types),
            "sessionIds": list(sessions),
            "limit": limit,
            "offset": offset,
            "sortOrder": order,
        }
    )
    result = QueryEngine(EventStore(obj.paths.events_dir)).query(q)

    if as_json:
        for evt in result.events:
            click.echo(json.dumps(evt.to_record()))
        return

    if not result.events:
        click.echo(click.style("No events found.", fg="yellow"))
        return

    click.echo()
    click.echo(
        click.style(f"  Showing {len(result.events)} of {result.total} matching events", fg="bright_black")
    )
    click.echo()
    for evt in result.events:
        _echo_event(evt.to_record())
    click.echo()


@events_group.command(name="tail")
@click.option(
    "--count",
    "-n",
    default=10,
    show_default=True,
    type=click.IntRange(1, 1000),
    help="Number of recent events.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print events as JSON lines.")
@click.pass_obj
def events_tail(obj: _Context, count: int, as_json: bool) -> None:
    """Show the most recent events recorded by the running collector."""
    client = CollectorClient.from_config(obj.config)
    try:
        records = client.tail(count)
    except CollectorError as exc:
        _fail(f"{exc}. Is the collector running? Try 'cage start'.")

    if as_json:
        for record in records:
            click.echo(json.dumps(record))
        return
    if not records:
        click.echo(click.style("No events found.", fg="yellow"))
        return
    click.echo()
    click.echo(click.style(f"  Last {len(records)} events", fg="bright_black"))
    click.echo()
    for record in records:
        _echo_event(record)
    click.echo()


@events_group.command(name="stream")
@click.option(
    "--type",
    "-t",
    "types",
    multiple=True,
    type=click.Choice([t.value for t in HookType], case_sensitive=False),
    help="Only show these hook types (repeatable).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print events as JSON lines.")
@click.pass_obj
def events_stream(obj: _Context, types: Tuple[str, ...], as_json: bool) -> None:
    """Print events live as the collector ingests them (Ctrl+C to stop)."""
    client = CollectorClient.from_config(obj.config)
    click.echo(click.style(f"  Streaming events from {client.base_url}", fg="cyan"), err=True)
    try:
        for record in client.stream(types):
            if as_json:
                click.echo(json.dumps(record))
            else:
                _echo_event(record)
    except CollectorError as exc:
        _fail(f"{exc}. Is the collector running? Try 'cage start'.")
    except KeyboardInterrupt:
        click.echo(click.style("\n  Stopped.", fg="yellow"), err=True)
        return
    click.echo(click.style("  Collector closed the stream.", fg="bright_black"), err=True)


@main.command(name="stats")
@click.option("--from", "from_", default=None, help="First day (YYYY-MM-DD), inclusive.")
@click.option("--to", default=None, help="Last day (YYYY-MM-DD), inclusive.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print statistics as JSON.")
@click.pass_obj
def show_stats(obj: _Context, from_: Optional[str], to: Optional[str], as_json: bool) -> None:
    """Display aggregate statistics about stored events.

    \b
    Examples:
        cage stats
        cage stats --from 2024-06-01 --to 2024-06-07
    """
    q = _query_or_fail(**{"from": from_, "to": to})
    stats = QueryEngine(EventStore(obj.paths.events_dir)).stats(q)

    if as_json:
        click.echo(json.dumps(stats.to_body(), indent=2))
        return

    click.echo()
    click.echo(click.style("  Cage Event Statistics", fg="cyan", bold=True))
    click.echo(click.style(f"  Events: {obj.paths.events_dir}", fg="bright_black"))
    click.echo()
    click.echo(f"  {'Total events:':<24}" + click.style(str(stats.total_events), fg="white", bold=True))
    click.echo(f"  {'Sessions:':<24}{stats.sessions.unique_sessions}")
    click.echo(f"  {'Error rate:':<24}{stats.performance.error_rate:.1%}")
    if stats.performance.average_execution_time:
        click.echo(f"  {'Avg execution time:':<24}{stats.performance.average_execution_time:g} ms")
    click.echo()

    for hook_type in HookType:
        count = stats.events_by_type.get(hook_type.value, 0)
        color = _TYPE_COLORS.get(hook_type.value, "white")
        bar = click.style("█" * min(count, 40), fg=color) if count > 0 else ""
        label = click.style(f"{hook_type.value:<18}", fg=color)
        click.echo(f"  {label} {str(count):>6}  {bar}")

    if stats.tool_usage:
        click.echo()
        click.echo(click.style("  Top tools", fg="cyan"))
        top = sorted(stats.tool_usage.items(), key=lambda kv: kv[1], reverse=True)[:10]
        for name, count in top:
            click.echo(f"  {name:<18} {count:>6}")

    click.echo()


# ---------------------------------------------------------------------------
# Entry point guard
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
