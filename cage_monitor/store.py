"""Append-only, date-partitioned JSONL event store.

Events live in one file per UTC ingestion day::

    <events_dir>/<YYYY-MM-DD>/events.jsonl

Each line is one self-contained JSON object. Lines are only ever appended,
never rewritten. The store supports:

- Appending an event to a day's partition (created on first use).
- Listing the partition dates, optionally within an inclusive range.
- Lazily reading the raw lines of a partition.

Every append is a single ``os.write`` on an ``O_APPEND`` descriptor, so
concurrent appends from request handlers cannot interleave partial lines
and no lock is needed. Readers may race a writer; a trailing line without
its newline is treated as in-flight and skipped.

Example usage::

    store = EventStore(events_dir=".cage/events")
    store.append(event)

    for day in store.list_partition_dates():
        for line in store.read_partition(day):
            ...
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

from cage_monitor.models import HookEvent

logger = logging.getLogger(__name__)

PARTITION_FILE_NAME = "events.jsonl"

_PARTITION_DIR_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_today() -> date:
    """Return the current UTC calendar date."""
    return datetime.now(timezone.utc).date()


class EventStore:
    """File-backed store of day-partitioned, newline-delimited JSON events.

    Args:
        events_dir: Root directory holding one sub-directory per day.
    """

    def __init__(self, events_dir: Union[str, Path]) -> None:
        self._events_dir = Path(events_dir)

    @property
    def events_dir(self) -> Path:
        return self._events_dir

    def partition_path(self, day: date) -> Path:
        """Return the JSONL file for ``day`` (whether or not it exists)."""
        return self._events_dir / day.isoformat() / PARTITION_FILE_NAME

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def append(
        self,
        event: Union[HookEvent, Mapping[str, Any]],
        ingestion_date: Optional[date] = None,
    ) -> Path:
        """Append one event as a single JSON line.

        Args:
            event: A :class:`~cage_monitor.models.HookEvent` or an already
                serialized record.
            ingestion_date: Partition to write to. Defaults to today (UTC).

        Returns:
            The partition file the event was written to.

        Raises:
            OSError: If the directory or file cannot be created, or the write
                is incomplete (for example when the disk is full).
        """
        record = event.to_record() if isinstance(event, HookEvent) else dict(event)
        # json.dumps escapes control characters, so the line has no raw newline.
        data = (json.dumps(record, separators=(",", ":"), default=str) + "\n").encode("utf-8")

        path = self.partition_path(ingestion_date or utc_today())
        path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            written = os.write(fd, data)
            if written != len(data):
                # Remove the partial line.
                end = os.lseek(fd, 0, os.SEEK_CUR)
                if os.fstat(fd).st_size == end:
                    os.ftruncate(fd, end - written)
                raise OSError(
                    f"Short write to {path}: {written} of {len(data)} bytes"
                )
        finally:
            os.close(fd)
        logger.debug("Appended event %s to %s", record.get("id"), path)
        return path

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def list_partition_dates(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[date]:
        """List the days that have a partition file, oldest first.

        Args:
            start: Inclusive lower bound, or ``None`` for no bound.
            end: Inclusive upper bound, or ``None`` for no bound.

        Returns:
            Sorted partition dates. Directories that are not named
            ``YYYY-MM-DD`` or hold no partition file are ignored.
        """
        if not self._events_dir.is_dir():
            return []

        days: list[date] = []
        for entry in self._events_dir.iterdir():
            if not _PARTITION_DIR_RE.match(entry.name):
                continue
            try:
                day = date.fromisoformat(entry.name)
            except ValueError:
                continue
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
            if (entry / PARTITION_FILE_NAME).is_file():
                days.append(day)
        return sorted(days)

    def read_partition(self, day: date) -> Iterator[str]:
        """Lazily yield the raw JSON lines of one partition.

        Blank lines are skipped. A final line without a terminating newline
        is an append still in flight and is discarded. A missing partition
        yields nothing.
        """
        path = self.partition_path(day)
        try:
            fh = path.open("rb")
        except FileNotFoundError:
            return
        with fh:
            for raw in fh:
                if not raw.endswith(b"\n"):
                    logger.debug("Skipping partial trailing line in %s", path)
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    yield line

    def is_writable(self) -> bool:
        """Return ``True`` if new partitions can be created under the root.

        When the root does not exist yet, the closest existing ancestor is
        checked instead.
        """
        probe = self._events_dir
        while not probe.exists():
            if probe.parent == probe:
                return False
            probe = probe.parent
        return probe.is_dir() and os.access(probe, os.W_OK | os.X_OK)
