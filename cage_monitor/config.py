"""Configuration and path resolution for cage-monitor.

Settings come from the first ``cage.config.json`` found in the current
directory, its two parents, or the home directory. Every key is optional;
anything missing falls back to the defaults on :class:`CageConfig`.

All on-disk locations hang off the project's ``.cage`` directory and are
resolved through :class:`CagePaths`, so the server, the forwarder and the
lifecycle manager agree on where things live.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "cage.config.json"
DEFAULT_PORT = 3790
CAGE_DIR_NAME = ".cage"


class CageConfig(BaseModel):
    """User-facing settings.

    Attributes:
        port: Port the collector listens on.
        host: Interface the collector binds to and the forwarder targets.
        log_level: Default logging level name for the server.
        events_dir: Override for the partition root (relative to the project).
        offline_log_path: Override for the forwarder's offline log.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    host: str = "127.0.0.1"
    log_level: str = "info"
    events_dir: Optional[str] = None
    offline_log_path: Optional[str] = None


def _candidate_dirs(start: Optional[Path] = None) -> list[Path]:
    base = Path(start) if start is not None else Path.cwd()
    return [base, base.parent, base.parent.parent, Path.home()]


def load_config(
    search_dirs: Optional[Iterable[Path]] = None,
) -> CageConfig:
    """Load the first valid ``cage.config.json`` from ``search_dirs``.

    Unreadable or invalid files are skipped with a debug log entry.

    Args:
        search_dirs: Directories to probe in order. Defaults to the current
            directory, its parent, its grandparent and the home directory.

    Returns:
        The parsed :class:`CageConfig`, or the defaults when none is found.
    """
    dirs = list(search_dirs) if search_dirs is not None else _candidate_dirs()
    for directory in dirs:
        path = Path(directory) / CONFIG_FILE_NAME
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CageConfig.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.debug("Ignoring invalid config file %s: %s", path, exc)
    return CageConfig()


def project_root() -> Path:
    """Return the project root.

    ``CAGE_PROJECT_DIR`` wins, then ``CLAUDE_PROJECT_DIR`` (set by the agent
    when it runs hooks), then the current working directory.
    """
    for var in ("CAGE_PROJECT_DIR", "CLAUDE_PROJECT_DIR"):
        value = os.environ.get(var)
        if value:
            return Path(value)
    return Path.cwd()


class CagePaths:
    """Resolves every file location under a project's ``.cage`` directory.

    Args:
        root: Project root directory. Defaults to :func:`project_root`.
        config: Optional config whose path overrides are honored.
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        config: Optional[CageConfig] = None,
    ) -> None:
        self.root = Path(root) if root is not None else project_root()
        self._config = config or CageConfig()

    def __repr__(self) -> str:
        return f"CagePaths(root={str(self.root)!r})"

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.root / path

    @property
    def cage_dir(self) -> Path:
        return self.root / CAGE_DIR_NAME

    @property
    def events_dir(self) -> Path:
        if self._config.events_dir:
            return self._resolve(self._config.events_dir)
        return self.cage_dir / "events"

    @property
    def offline_log(self) -> Path:
        if self._config.offline_log_path:
            return self._resolve(self._config.offline_log_path)
        return self.cage_dir / "hooks-offline.log"

    @property
    def pid_file(self) -> Path:
        return self.cage_dir / "server.pid"

    @property
    def server_log(self) -> Path:
        return self.cage_dir / "server.log"

    @property
    def agent_settings_file(self) -> Path:
        """The agent's project settings, where hook commands are registered."""
        return self.root / ".claude" / "settings.json"

    @property
    def server_error_log(self) -> Path:
        return self.cage_dir / "server.error.log"
