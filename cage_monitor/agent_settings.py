"""Registration of ``cage hook`` commands in the agent's project settings.

The agent reads its hooks from ``.claude/settings.json`` in the project::

    {
      "hooks": {
        "PreToolUse": [
          {"matcher": "*", "hooks": [{"type": "command", "command": "cage hook PreToolUse"}]}
        ],
        "Stop": [
          {"hooks": [{"type": "command", "command": "cage hook Stop"}]}
        ]
      }
    }

:func:`install_hooks` adds one forwarder command per hook type and leaves
every other setting and every foreign hook untouched. Running it again
replaces the previous forwarder entries instead of duplicating them.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from cage_monitor.models import HookType

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "cage"

_FORWARDER_COMMAND = re.compile(r"(?:^|[\s/\\])cage(?:\.exe)?\s+hook\s+(\S+)")


class AgentSettingsError(ValueError):
    """The settings file exists but cannot be used."""


def hook_command(hook_type: HookType, executable: str = DEFAULT_EXECUTABLE) -> str:
    """Return the shell command the agent runs for ``hook_type``."""
    return f"{executable} hook {hook_type.value}"


def is_forwarder_command(command: Any) -> bool:
    return isinstance(command, str) and _FORWARDER_COMMAND.search(command) is not None


def load_settings(path: Path) -> dict[str, Any]:
    """Read the settings file; a missing file is an empty object.

    Raises:
        AgentSettingsError: If the file is not a JSON object.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise AgentSettingsError(f"Cannot read {path}: {exc}") from exc
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AgentSettingsError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AgentSettingsError(f"{path} must contain a JSON object")
    return data


def save_settings(path: Path, settings: dict[str, Any]) -> None:
    """Write ``settings`` through a temporary file so readers never see half of it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def _hooks_section(settings: dict[str, Any], path: Path) -> dict[str, Any]:
    hooks = settings.get("hooks")
    if hooks is None:
        return {}
    if not isinstance(hooks, dict):
        raise AgentSettingsError(f"'hooks' in {path} must be an object")
    return hooks


def _without_forwarder(entries: Any) -> list[Any]:
    """Drop forwarder commands from one hook's matcher entries."""
    if not isinstance(entries, list):
        return []
    kept = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("hooks"), list):
            kept.append(entry)
            continue
        commands = [
            h
            for h in entry["hooks"]
            if not (isinstance(h, dict) and is_forwarder_command(h.get("command")))
        ]
        if commands:
            kept.append({**entry, "hooks": commands})
    return kept


def install_hooks(
    path: Path,
    executable: str = DEFAULT_EXECUTABLE,
    hook_types: Optional[list[HookType]] = None,
) -> list[HookType]:
    """Register the forwarder for every hook type in the settings at ``path``.

    Args:
        path: The agent settings file; created when missing.
        executable: Command used to invoke the CLI (``cage`` or a full path).
        hook_types: Restrict installation to these types.

    Returns:
        The hook types now wired to the forwarder.

    Raises:
        AgentSettingsError: If the existing file cannot be merged safely.
    """
    settings = load_settings(path)
    hooks = dict(_hooks_section(settings, path))
    targets = list(hook_types) if hook_types else list(HookType)

    for hook_type in targets:
        entry: dict[str, Any] = {
            "hooks": [{"type": "command", "command": hook_command(hook_type, executable)}]
        }
        if hook_type.is_tool_event:
            entry = {"matcher": "*", **entry}
        hooks[hook_type.value] = _without_forwarder(hooks.get(hook_type.value)) + [entry]

    settings["hooks"] = hooks
    save_settings(path, settings)
    logger.info("Registered %d hook commands in %s", len(targets), path)
    return targets


def installed_hooks(path: Path) -> dict[HookType, str]:
    """Map each hook type that invokes the forwarder to its command.

    Raises:
        AgentSettingsError: If the settings file is unreadable.
    """
    hooks = _hooks_section(load_settings(path), path)
    found: dict[HookType, str] = {}
    for hook_type in HookType:
        entries = hooks.get(hook_type.value)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            commands = entry.get("hooks") if isinstance(entry, dict) else None
            for item in commands if isinstance(commands, list) else ():
                command = item.get("command") if isinstance(item, dict) else None
                if is_forwarder_command(command):
                    found.setdefault(hook_type, command)
    return found
