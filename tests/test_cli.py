"""Tests for the ``cage`` command line interface.

Uses click's ``CliRunner`` against a temporary project directory.

Covers:
- ``hook``: forwarding to an unreachable collector, exit code relay, and
  exit 0 for malformed invocations.
- ``start`` / ``stop``: success and failure reporting.
- ``status``: text and JSON reports, offline failure summary.
- ``events`` / ``stats``: reading the store directly.
- ``hooks setup`` / ``hooks status``: agent settings registration.
- ``events tail`` / ``events stream``: querying a running collector.
"""

from __future__ import annotations

import json
import socket
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from cage_monitor import __version__
from cage_monitor import cli as cli_module
from cage_monitor.cli import main
from cage_monitor.client import CollectorClient
from cage_monitor.lifecycle import LifecycleError, ProcessRecord, ServerManager
from cage_monitor.models import HookEvent, HookType
from cage_monitor.store import EventStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    monkeypatch.delenv("CAGE_PROJECT_DIR", raising=False)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A project whose config points the collector at a closed port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    (tmp_path / "cage.config.json").write_text(json.dumps({"port": port}))
    return tmp_path


@pytest.fixture()
def store(project: Path) -> EventStore:
    return EventStore(project / ".cage" / "events")


def invoke(runner: CliRunner, project: Path, *args: str, **kwargs):
    return runner.invoke(main, ["--project-dir", str(project), *args], **kwargs)


def seed(store: EventStore) -> None:
    store.append(
        HookEvent(
            event_type=HookType.PRE_TOOL_USE,
            session_id="abc",
            tool_name="Read",
            timestamp=datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc),
        )
    )
    store.append(
        HookEvent(
            event_type=HookType.USER_PROMPT_SUBMIT,
            session_id="abc",
            prompt="please fix the tests",
            timestamp=datetime(2024, 6, 1, 10, 5, tzinfo=timezone.utc),
        )
    )


class TestGroup:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        for command in ("serve", "start", "stop", "status", "hook", "events", "stats"):
            assert command in result.output


# ---------------------------------------------------------------------------
# hook
# ---------------------------------------------------------------------------


class TestHook:
    """Tests for ``cage hook``."""

    def test_unreachable_collector_exits_zero(self, runner: CliRunner, project: Path) -> None:
        payload = json.dumps({"session_id": "abc", "tool_name": "Read", "tool_input": {}})
        result = invoke(runner, project, "hook", "PreToolUse", input=payload)
        assert result.exit_code == 0
        lines = (project / ".cage" / "hooks-offline.log").read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["hookType"] == "PreToolUse"
        assert entry["payload"]["toolName"] == "Read"

    def test_unknown_hook_type_exits_zero(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hook", "NotAHook", input="{}")
        assert result.exit_code == 0
        assert (project / ".cage" / "hooks-offline.log").exists()

    def test_block_exit_code_is_relayed(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(cli_module, "run_hook", lambda *args, **kwargs: 2)
        result = invoke(runner, project, "hook", "PreToolUse", input="{}")
        assert result.exit_code == 2

    def test_missing_hook_type_does_not_block(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hook", input="{}")
        assert result.exit_code == 0
        assert "HOOK_TYPE" in result.output

    def test_unknown_option_does_not_block(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hook", "--bogus", "Stop", input="{}")
        assert result.exit_code == 0

    def test_bad_project_dir_does_not_block(self, runner: CliRunner, tmp_path: Path) -> None:
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        result = runner.invoke(main, ["--project-dir", str(not_a_dir), "hook", "Stop"], input="{}")
        assert result.exit_code == 0

    def test_unexpected_error_does_not_block(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(cli_module, "_Context", explode)
        result = invoke(runner, project, "hook", "Stop", input="{}")
        assert result.exit_code == 0

    def test_other_commands_keep_usage_exit_code(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "stop", "--bogus")
        assert result.exit_code == 2

    def test_hook_path_skips_server_stack(self) -> None:
        code = (
            "import sys, cage_monitor.cli; "
            "print(sorted(m for m in ('fastapi', 'uvicorn', 'psutil') if m in sys.modules))"
        )
        out = subprocess.run(
            [sys.executable, "-c", code], capture_output=True, text=True, check=True
        ).stdout
        assert out.strip() == "[]"


# ---------------------------------------------------------------------------
# start / stop / status
# ---------------------------------------------------------------------------


class TestServerCommands:
    """Tests for ``cage start``, ``cage stop`` and ``cage status``."""

    def test_start_success(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(ServerManager, "start", lambda self: ProcessRecord(4242, 0))
        result = invoke(runner, project, "start")
        assert result.exit_code == 0
        assert "Server started" in result.output
        assert "PID 4242" in result.output

    def test_start_failure_exits_one(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail(self):
            raise LifecycleError("Port 3790 is already in use.")

        monkeypatch.setattr(ServerManager, "start", fail)
        result = invoke(runner, project, "start")
        assert result.exit_code == 1
        assert "Port 3790 is already in use." in result.output

    def test_start_uses_configured_port(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ports: list[int] = []

        def fake_start(self):
            ports.append(self.port)
            return ProcessRecord(1, 0)

        monkeypatch.setattr(ServerManager, "start", fake_start)
        invoke(runner, project, "start")
        invoke(runner, project, "start", "--port", "4555")
        configured = json.loads((project / "cage.config.json").read_text())["port"]
        assert ports == [configured, 4555]

    def test_stop_when_not_running(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "stop")
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_stop_failure_exits_one(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail(self, force=False, timeout=5.0):
            raise LifecycleError("Use 'cage stop --force' to kill it.")

        monkeypatch.setattr(ServerManager, "stop", fail)
        result = invoke(runner, project, "stop")
        assert result.exit_code == 1
        assert "--force" in result.output

    def test_status_json(self, runner: CliRunner, project: Path, store: EventStore) -> None:
        seed(store)
        offline = project / ".cage" / "hooks-offline.log"
        offline.write_text(
            json.dumps({"hookType": "Stop", "error": "Backend returned 500"}) + "\n"
            + json.dumps({"hookType": "Stop", "error": "Request timed out after 5s"}) + "\n"
        )
        result = invoke(runner, project, "status", "--json")
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["server"]["state"] == "stopped"
        assert report["events"]["today"] == 2
        assert report["events"]["total"] == 2
        assert report["offline"]["count"] == 2
        assert report["offline"]["latestError"] == "Request timed out after 5s"

    def test_status_text(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "status")
        assert result.exit_code == 0
        assert "stopped" in result.output
        assert "Offline failures" in result.output


# ---------------------------------------------------------------------------
# events / stats
# ---------------------------------------------------------------------------


class TestEventsCommand:
    """Tests for ``cage events``."""

    def test_empty(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "events")
        assert result.exit_code == 0
        assert "No events found." in result.output

    def test_lists_events(self, runner: CliRunner, project: Path, store: EventStore) -> None:
        seed(store)
        result = invoke(runner, project, "events")
        assert result.exit_code == 0
        assert "Showing 2 of 2" in result.output
        assert "Read" in result.output
        assert "please fix the tests" in result.output

    def test_type_filter_json(self, runner: CliRunner, project: Path, store: EventStore) -> None:
        seed(store)
        result = invoke(runner, project, "events", "--type", "PreToolUse", "--json")
        assert result.exit_code == 0
        records = [json.loads(line) for line in result.output.splitlines()]
        assert [r["eventType"] for r in records] == ["PreToolUse"]

    def test_invalid_range_exits_one(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "events", "--from", "2024-06-02", "--to", "2024-06-01")
        assert result.exit_code == 1
        assert "Invalid query" in result.output


class TestStatsCommand:
    def test_text(self, runner: CliRunner, project: Path, store: EventStore) -> None:
        seed(store)
        result = invoke(runner, project, "stats")
        assert result.exit_code == 0
        assert "Total events:" in result.output
        assert "PreToolUse" in result.output

    def test_json(self, runner: CliRunner, project: Path, store: EventStore) -> None:
        seed(store)
        result = invoke(runner, project, "stats", "--json")
        assert result.exit_code == 0
        body = json.loads(result.output)
        assert body["totalEvents"] == 2
        assert body["toolUsage"] == {"Read": 1}


# ---------------------------------------------------------------------------
# hooks setup / status
# ---------------------------------------------------------------------------


class TestHooksCommands:
    """Tests for ``cage hooks setup`` and ``cage hooks status``."""

    def test_setup_writes_agent_settings(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hooks", "setup")
        assert result.exit_code == 0
        assert "Hooks configured" in result.output
        settings = json.loads((project / ".claude" / "settings.json").read_text())
        command = settings["hooks"]["PostToolUse"][0]["hooks"][0]["command"]
        assert command == "cage hook PostToolUse"

    def test_setup_custom_executable(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hooks", "setup", "--executable", "/nowhere/cage")
        assert result.exit_code == 0
        assert "not on PATH" in result.output
        settings = json.loads((project / ".claude" / "settings.json").read_text())
        assert settings["hooks"]["Stop"][0]["hooks"][0]["command"] == "/nowhere/cage hook Stop"

    def test_setup_refuses_broken_settings(self, runner: CliRunner, project: Path) -> None:
        settings_file = project / ".claude" / "settings.json"
        settings_file.parent.mkdir()
        settings_file.write_text("{broken")
        result = invoke(runner, project, "hooks", "setup")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output
        assert settings_file.read_text() == "{broken"

    def test_status_before_and_after_setup(self, runner: CliRunner, project: Path) -> None:
        before = json.loads(invoke(runner, project, "hooks", "status", "--json").output)
        assert before["installed"] == {}
        assert len(before["missing"]) == len(HookType)

        invoke(runner, project, "hooks", "setup")
        after = json.loads(invoke(runner, project, "hooks", "status", "--json").output)
        assert after["missing"] == []
        assert after["installed"]["Notification"] == "cage hook Notification"

    def test_status_text_suggests_setup(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "hooks", "status")
        assert result.exit_code == 0
        assert "Installed hooks (0/" in result.output
        assert "cage hooks setup" in result.output


# ---------------------------------------------------------------------------
# events tail / stream
# ---------------------------------------------------------------------------


RECORDS = [
    {
        "id": "2",
        "timestamp": "2024-06-01T10:05:00+00:00",
        "eventType": "PostToolUse",
        "sessionId": "abc",
        "toolName": "Bash",
    },
    {
        "id": "1",
        "timestamp": "2024-06-01T10:00:00+00:00",
        "eventType": "UserPromptSubmit",
        "sessionId": "abc",
        "prompt": "run the build",
    },
]


class TestLiveEventCommands:
    """Tests for ``cage events tail`` and ``cage events stream``."""

    def test_tail(self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        counts: list[int] = []

        def fake_tail(self, count=10):
            counts.append(count)
            return RECORDS

        monkeypatch.setattr(CollectorClient, "tail", fake_tail)
        result = invoke(runner, project, "events", "tail", "-n", "2")
        assert result.exit_code == 0
        assert counts == [2]
        assert "Bash" in result.output
        assert "run the build" in result.output

    def test_tail_json(self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(CollectorClient, "tail", lambda self, count=10: RECORDS)
        result = invoke(runner, project, "events", "tail", "--json")
        assert [json.loads(line)["id"] for line in result.output.splitlines()] == ["2", "1"]

    def test_tail_without_collector(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "events", "tail")
        assert result.exit_code == 1
        assert "cage start" in result.output

    def test_stream(self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        requested: list = []

        def fake_stream(self, types=None):
            requested.append(list(types or ()))
            yield from RECORDS

        monkeypatch.setattr(CollectorClient, "stream", fake_stream)
        result = invoke(runner, project, "events", "stream", "--type", "PostToolUse")
        assert result.exit_code == 0
        assert requested == [["PostToolUse"]]
        assert "Bash" in result.output
        assert "closed the stream" in result.output

    def test_stream_without_collector(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "events", "stream")
        assert result.exit_code == 1
        assert "cage start" in result.output

    def test_listing_still_default(self, runner: CliRunner, project: Path) -> None:
        result = invoke(runner, project, "events", "--limit", "5")
        assert result.exit_code == 0
        assert "No events found." in result.output
