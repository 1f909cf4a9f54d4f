"""Start, stop and inspect the detached collector process.

The collector runs as a background process whose identity is kept in a
small JSON record (``.cage/server.pid``)::

    {"pid": 4242, "startTime": 1718000000000}

The record is re-read on every operation; nothing is cached between calls,
so several ``cage`` invocations can manage the same server. A record whose
process is gone (crash, reboot, ``kill -9``) is *stale* and is cleaned up
by the next ``start`` or ``stop``.

Liveness is probed with :mod:`psutil`. A zombie counts as dead, and a live
process created well after the record was written is treated as an
unrelated process that reused the PID.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import os
import socket
import subprocess
import sys
import time
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional, Sequence

import psutil

from cage_monitor.config import DEFAULT_PORT, CagePaths

logger = logging.getLogger(__name__)

DEFAULT_STABILITY_WINDOW = 2.0
DEFAULT_STOP_TIMEOUT = 5.0

# Seconds a process may predate or follow its record before the PID is
# considered reused by another program.
_CREATE_TIME_TOLERANCE = 5.0


class LifecycleError(RuntimeError):
    """A lifecycle operation failed; the message says how to fix it."""


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STALE_RECORD = "stale_record"


class ProcessRecord(NamedTuple):
    """Identity of a spawned collector.

    ``start_time`` is milliseconds since the epoch, or ``None`` for a
    legacy record that only held the PID.
    """

    pid: int
    start_time: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps({"pid": self.pid, "startTime": self.start_time})


class ServerStatus(NamedTuple):
    state: ServerState
    record: Optional[ProcessRecord] = None
    uptime: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.state in (ServerState.RUNNING, ServerState.STARTING)


# ---------------------------------------------------------------------------
# Process record and probes
# ---------------------------------------------------------------------------


def read_record(path: Path) -> Optional[ProcessRecord]:
    """Read a process record.

    Accepts the JSON form and a legacy file holding only an integer PID.

    Returns:
        The record, or ``None`` if the file is missing or unreadable.
    """
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Could not read process record %s: %s", path, exc)
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Process record %s is not JSON", path)
        return None

    if isinstance(data, int) and not isinstance(data, bool) and data > 0:
        return ProcessRecord(pid=data)
    if isinstance(data, dict) and isinstance(data.get("pid"), int) and data["pid"] > 0:
        start = data.get("startTime")
        return ProcessRecord(pid=data["pid"], start_time=int(start) if start else None)
    logger.debug("Process record %s has unexpected content", path)
    return None


def write_record(path: Path, record: ProcessRecord) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(record.to_json(), encoding="utf-8")


def remove_record(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def is_process_alive(pid: int) -> bool:
    """Return ``True`` if ``pid`` names a live, non-zombie process."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else.
        return True


def record_is_alive(record: ProcessRecord) -> bool:
    """Return ``True`` if the process behind ``record`` is still the one we spawned."""
    if not is_process_alive(record.pid):
        return False
    if record.start_time is None:
        return True
    try:
        created = psutil.Process(record.pid).create_time()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return created <= record.start_time / 1000 + _CREATE_TIME_TOLERANCE


def port_in_use(host: str, port: int, timeout: float = 0.5) -> bool:
    """Return ``True`` if something already accepts connections on ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def _last_error_line(path: Path, offset: int) -> Optional[str]:
    try:
        with path.open("rb") as fh:
            fh.seek(offset)
            text = fh.read().decode("utf-8", errors="replace")
    except OSError:
        return None
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ServerManager:
    """Manages the detached collector process for one project.

    Args:
        paths: Project paths; the record and server logs live in ``paths.cage_dir``.
        port: Port the collector should listen on.
        host: Interface the collector should bind to.
        command: Command line to spawn. Defaults to ``cage serve`` run with
            the current interpreter.
        stability_window: Seconds the new process must survive before the
            start counts as successful.
        poll_interval: Seconds between liveness polls while starting.
    """

    def __init__(
        self,
        paths: CagePaths,
        port: int = DEFAULT_PORT,
        host: str = "127.0.0.1",
        command: Optional[Sequence[str]] = None,
        stability_window: float = DEFAULT_STABILITY_WINDOW,
        poll_interval: float = 0.1,
    ) -> None:
        self.paths = paths
        self.port = port
        self.host = host
        self._command = list(command) if command is not None else None
        self.stability_window = stability_window
        self.poll_interval = poll_interval

    @property
    def command(self) -> list[str]:
        if self._command is not None:
            return self._command
        return [
            sys.executable, "-m", "cage_monitor.cli", "serve",
            "--port", str(self.port), "--host", self.host,
        ]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> ServerStatus:
        """Inspect the process record and the process behind it.

        A live process younger than the stability window is reported as
        ``STARTING``.
        """
        pid_file = self.paths.pid_file
        record = read_record(pid_file)
        if record is None:
            if pid_file.exists():
                return ServerStatus(ServerState.STALE_RECORD)
            return ServerStatus(ServerState.STOPPED)

        if not record_is_alive(record):
            return ServerStatus(ServerState.STALE_RECORD, record)

        uptime = None
        if record.start_time is not None:
            uptime = max(0.0, time.time() - record.start_time / 1000)
            if uptime < self.stability_window:
                return ServerStatus(ServerState.STARTING, record, uptime)
        return ServerStatus(ServerState.RUNNING, record, uptime)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _check_preconditions(self) -> None:
        if not self.paths.root.is_dir():
            raise LifecycleError(
                f"Project directory {self.paths.root} does not exist. "
                "Run cage from your project directory or set CAGE_PROJECT_DIR."
            )
        if self._command is None and importlib.util.find_spec("uvicorn") is None:
            raise LifecycleError(
                "The collector dependencies are not installed. "
                "Reinstall with: pip install cage-monitor"
            )

    def start(self) -> ProcessRecord:
        """Spawn the collector and wait for it to stay up.

        Returns:
            The record of the running process.

        Raises:
            LifecycleError: If a precondition fails, a server is already
                running, or the new process exits within the stability window.
        """
        self._check_preconditions()

        current = self.status()
        if current.is_running:
            raise LifecycleError(
                f"Server is already running (PID {current.record.pid}). "
                "Use 'cage stop' first."
            )
        if current.state is ServerState.STALE_RECORD:
            logger.info("Removing stale process record %s", self.paths.pid_file)
            remove_record(self.paths.pid_file)

        if port_in_use(self.host, self.port):
            raise LifecycleError(
                f"Port {self.port} is already in use. Stop the process using it "
                "or choose another port with --port."
            )

        cage_dir = self.paths.cage_dir
        cage_dir.mkdir(parents=True, exist_ok=True)
        error_log = self.paths.server_error_log
        error_offset = error_log.stat().st_size if error_log.exists() else 0

        env = dict(os.environ)
        env["CAGE_PROJECT_DIR"] = str(self.paths.root)

        out = self.paths.server_log.open("ab")
        err = error_log.open("ab")
        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                cwd=str(self.paths.root),
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise LifecycleError(f"Server failed to start: {exc}") from exc
        finally:
            out.close()
            err.close()

        record = ProcessRecord(pid=proc.pid, start_time=int(time.time() * 1000))
        write_record(self.paths.pid_file, record)
        logger.info("Spawned collector PID %d; waiting %.1fs", proc.pid, self.stability_window)

        deadline = time.monotonic() + self.stability_window
        while True:
            code = proc.poll()
            if code is not None:
                remove_record(self.paths.pid_file)
                raise LifecycleError(self._failure_reason(code, error_log, error_offset))
            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)

        logger.info("Collector PID %d is running on %s:%d", proc.pid, self.host, self.port)
        return record

    def _failure_reason(self, code: int, error_log: Path, offset: int) -> str:
        detail = _last_error_line(error_log, offset)
        if detail and "address already in use" in detail.lower():
            return (
                f"Server failed to start: port {self.port} is already in use. "
                "Choose another port with --port."
            )
        message = f"Server failed to start (exit code {code})"
        if detail:
            message += f": {detail}"
        return message + f". See {error_log} for details."

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self, force: bool = False, timeout: float = DEFAULT_STOP_TIMEOUT) -> str:
        """Stop the collector and remove its record.

        Args:
            force: Send SIGKILL instead of SIGTERM.
            timeout: Seconds to wait for the process to exit.

        Returns:
            A human-readable description of what happened.

        Raises:
            LifecycleError: If the process survives the timeout or cannot
                be signalled.
        """
        pid_file = self.paths.pid_file
        record = read_record(pid_file)
        if record is None:
            if pid_file.exists():
                remove_record(pid_file)
                return "Removed unreadable process record"
            return "Server is not running"

        if not record_is_alive(record):
            remove_record(pid_file)
            return f"Server was not running (stale PID {record.pid}); cleaned up process record"

        try:
            proc = psutil.Process(record.pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
            proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            if is_process_alive(record.pid):
                if force:
                    raise LifecycleError(
                        f"Server (PID {record.pid}) could not be killed."
                    )
                raise LifecycleError(
                    f"Server (PID {record.pid}) did not stop within {timeout:g}s. "
                    "Use 'cage stop --force' to kill it."
                )
        except psutil.AccessDenied as exc:
            raise LifecycleError(
                f"Permission denied when stopping PID {record.pid}: {exc}"
            ) from exc

        remove_record(pid_file)
        logger.info("Collector PID %d stopped", record.pid)
        return f"Server stopped (PID {record.pid})"
