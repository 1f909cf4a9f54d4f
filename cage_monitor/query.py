"""Query and statistics engine over the JSONL event store.

The engine has no index of its own: every call scans the partitions that
overlap the requested date range, parses their lines and applies filters,
sorting and pagination in memory. Lines that are not valid events are
logged and skipped, so one corrupt line never fails a query.

Example usage::

    engine = QueryEngine(EventStore(".cage/events"))
    result = engine.query(EventQuery(session_ids=["abc"], limit=50))
    print(result.total, [e.id for e in result.events])

    stats = engine.stats(EventQuery())
    print(stats.total_events, stats.events_by_type)
"""

from __future__ import annotations

import json
import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timezone
from typing import Iterator, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from cage_monitor.models import EventQuery, HookEvent
from cage_monitor.store import EventStore

logger = logging.getLogger(__name__)

# Number of most recent days reported in ``dailyActivity``.
RECENT_DAYS_LIMIT = 7


class QueryResult(NamedTuple):
    """One page of matching events plus the pre-pagination match count."""

    events: list[HookEvent]
    total: int


# ---------------------------------------------------------------------------
# Statistics schema
# ---------------------------------------------------------------------------


class _StatsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolTiming(_StatsModel):
    name: str
    avg_time: float


class PerformanceStats(_StatsModel):
    average_execution_time: float = 0.0
    fastest_tool: Optional[ToolTiming] = None
    slowest_tool: Optional[ToolTiming] = None
    error_rate: float = 0.0


class HourCount(_StatsModel):
    hour: str = "00"
    count: int = 0


class DayCount(_StatsModel):
    date: str = ""
    count: int = 0


class PeakActivity(_StatsModel):
    most_active_hour: HourCount = HourCount()
    most_active_day: Optional[DayCount] = None


class SessionStats(_StatsModel):
    unique_sessions: int = 0
    average_events_per_session: float = 0.0


class DailyActivity(_StatsModel):
    date: str
    events: int


class DateRange(_StatsModel):
    start: datetime
    end: datetime


class EventStats(_StatsModel):
    """Aggregate statistics over a set of events.

    Attributes:
        total_events: Number of events considered.
        events_by_type: Count per hook type value.
        hourly_distribution: Count per UTC hour, keys ``"00"`` to ``"23"``.
        daily_activity: Count per UTC day for the most recent days.
        tool_usage: Count per tool name.
        performance: Execution time and error figures.
        peak_activity: Busiest hour and day.
        sessions: Session counts.
        date_range: Earliest and latest event timestamp, if any.
    """

    total_events: int = 0
    events_by_type: dict[str, int] = {}
    hourly_distribution: dict[str, int] = {}
    daily_activity: list[DailyActivity] = []
    tool_usage: dict[str, int] = {}
    performance: PerformanceStats = PerformanceStats()
    peak_activity: PeakActivity = PeakActivity()
    sessions: SessionStats = SessionStats()
    date_range: Optional[DateRange] = None

    def to_body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _parse_line(line: str, day: date) -> Optional[HookEvent]:
    try:
        return HookEvent.model_validate(json.loads(line))
    except (json.JSONDecodeError, ValidationError, TypeError) as exc:
        logger.warning("Skipping invalid event line in partition %s: %s", day, exc)
        return None


def _sort_key(sort_by: str):
    if sort_by == "eventType":
        return lambda e: e.event_type
    if sort_by == "sessionId":
        return lambda e: e.session_id
    return lambda e: e.timestamp


class QueryEngine:
    """Reads, filters and aggregates events from an :class:`EventStore`.

    Args:
        store: The store to read from.
    """

    def __init__(self, store: EventStore) -> None:
        self._store = store

    def iter_events(self, q: Optional[EventQuery] = None) -> Iterator[HookEvent]:
        """Yield events matching ``q``'s date range and filters.

        Events come out in partition order (oldest day first) and, within a
        day, in append order. Pagination and sorting are not applied.
        """
        q = q or EventQuery()
        types = {t.value for t in q.types}
        sessions = set(q.session_ids)
        for day in self._store.list_partition_dates(q.from_, q.to):
            for line in self._store.read_partition(day):
                event = _parse_line(line, day)
                if event is None:
                    continue
                if types and event.event_type not in types:
                    continue
                if sessions and event.session_id not in sessions:
                    continue
                yield event

    def query(self, q: EventQuery) -> QueryResult:
        """Return one sorted page of matching events and the match count."""
        events = list(self.iter_events(q))
        events.sort(key=_sort_key(q.sort_by), reverse=q.sort_order == "desc")
        page = events[q.offset:q.offset + q.limit]
        logger.debug(
            "Query matched %d events; returning %d (offset=%d)",
            len(events), len(page), q.offset,
        )
        return QueryResult(events=page, total=len(events))

    def tail(self, count: int = 10) -> list[HookEvent]:
        """Return the ``count`` most recently appended events, newest first."""
        if count <= 0:
            return []
        collected: list[HookEvent] = []
        for day in reversed(self._store.list_partition_dates()):
            day_events = [
                e for e in (_parse_line(line, day) for line in self._store.read_partition(day))
                if e is not None
            ]
            collected.extend(reversed(day_events))
            if len(collected) >= count:
                break
        return collected[:count]

    def stats(self, q: Optional[EventQuery] = None) -> EventStats:
        """Compute :class:`EventStats` over every event matching ``q``.

        Pagination fields of ``q`` are ignored.
        """
        return compute_stats(list(self.iter_events(q)))


def compute_stats(events: list[HookEvent]) -> EventStats:
    """Aggregate a list of events into :class:`EventStats`."""
    total = len(events)
    if total == 0:
        return EventStats(hourly_distribution={f"{h:02d}": 0 for h in range(24)})

    by_type: Counter[str] = Counter()
    hourly: dict[str, int] = {f"{h:02d}": 0 for h in range(24)}
    daily: Counter[str] = Counter()
    tools: Counter[str] = Counter()
    tool_times: dict[str, list[float]] = defaultdict(list)
    all_times: list[float] = []
    errors = 0
    sessions: set[str] = set()

    for event in events:
        ts = event.timestamp.astimezone(timezone.utc)
        by_type[event.event_type] += 1
        hourly[f"{ts.hour:02d}"] += 1
        daily[ts.date().isoformat()] += 1
        sessions.add(event.session_id)
        if event.error:
            errors += 1
        if event.tool_name:
            tools[event.tool_name] += 1
        # Only positive timings count; 0 means "not measured".
        if event.execution_time and event.execution_time > 0:
            all_times.append(event.execution_time)
            if event.tool_name:
                tool_times[event.tool_name].append(event.execution_time)

    averages = [
        ToolTiming(name=name, avg_time=round(sum(times) / len(times), 2))
        for name, times in sorted(tool_times.items())
    ]

    performance = PerformanceStats(
        average_execution_time=round(sum(all_times) / len(all_times), 2) if all_times else 0.0,
        fastest_tool=min(averages, key=lambda t: t.avg_time) if averages else None,
        slowest_tool=max(averages, key=lambda t: t.avg_time) if averages else None,
        error_rate=round(errors / total, 4),
    )

    busiest_hour = max(hourly.items(), key=lambda kv: (kv[1], -int(kv[0])))
    busiest_day = max(sorted(daily.items()), key=lambda kv: kv[1])
    recent_days = sorted(daily.items())[-RECENT_DAYS_LIMIT:]

    timestamps = [e.timestamp for e in events]
    return EventStats(
        total_events=total,
        events_by_type=dict(by_type),
        hourly_distribution=hourly,
        daily_activity=[DailyActivity(date=d, events=n) for d, n in recent_days],
        tool_usage=dict(tools),
        performance=performance,
        peak_activity=PeakActivity(
            most_active_hour=HourCount(hour=busiest_hour[0], count=busiest_hour[1]),
            most_active_day=DayCount(date=busiest_day[0], count=busiest_day[1]),
        ),
        sessions=SessionStats(
            unique_sessions=len(sessions),
            average_events_per_session=round(total / len(sessions), 1),
        ),
        date_range=DateRange(start=min(timestamps), end=max(timestamps)),
    )
