"""Pydantic models for Cage hook events and query schemas.

This module defines the core data structures used throughout cage-monitor:

- ``HookType``: The closed set of agent lifecycle hooks.
- ``HookEvent``: The canonical event persisted one-per-line in the store.
- ``HookPayload`` and its subclasses: per-hook ingestion schemas.
- ``HookResponse``: The uniform response returned to the forwarder.
- ``EventQuery``: The filter, sort and pagination schema for queries.
"""

from __future__ import annotations

import re
import time
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def generate_session_id() -> str:
    """Return a placeholder session identifier (``session-<epoch ms>``)."""
    return f"session-{int(time.time() * 1000)}"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime.

    Raises:
        ValueError: If ``value`` is not a recognizable timestamp.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unrecognized timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class HookType(str, Enum):
    """Enumeration of the agent lifecycle hooks cage-monitor records.

    Values are the PascalCase names the agent uses; :attr:`slug` gives the
    kebab-cased form used in ingestion URLs.
    """

    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    NOTIFICATION = "Notification"
    PRE_COMPACT = "PreCompact"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"

    @property
    def slug(self) -> str:
        """Kebab-cased name, e.g. ``PreToolUse`` -> ``pre-tool-use``."""
        return re.sub(r"(?<!^)(?=[A-Z])", "-", self.value).lower()

    @property
    def is_tool_event(self) -> bool:
        return self in (HookType.PRE_TOOL_USE, HookType.POST_TOOL_USE)

    @classmethod
    def parse(cls, text: str) -> "HookType":
        """Resolve a hook type from its value, slug or enum name.

        Matching is case-insensitive.

        Raises:
            ValueError: If ``text`` names no known hook type.
        """
        needle = (text or "").strip().lower()
        for member in cls:
            if needle in (member.value.lower(), member.slug, member.name.lower()):
                return member
        raise ValueError(
            f"Unknown hook type '{text}'. Valid values: {[m.value for m in cls]}"
        )


class HookEvent(BaseModel):
    """A single recorded agent lifecycle event.

    Attributes are snake_case in Python and camelCase on the wire and on
    disk. Keys outside the declared fields (``prompt``, ``message``,
    ``transcriptPath``, ...) are kept verbatim.

    Attributes:
        id: Unique identifier assigned at ingestion (UUID4).
        timestamp: When the event occurred (UTC).
        event_type: The hook that produced the event.
        session_id: The originating agent session; never empty.
        tool_name: Tool being invoked (tool events only).
        arguments: Tool argument bag.
        result: Tool result (PostToolUse).
        error: Error text reported by the tool, if any.
        execution_time: Tool execution time in milliseconds.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        use_enum_values=True,
    )

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier (UUID4)",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp when the event occurred",
    )
    event_type: HookType = Field(
        ...,
        description="The hook that produced the event",
    )
    session_id: str = Field(
        default_factory=generate_session_id,
        min_length=1,
        description="Originating agent session identifier",
    )
    tool_name: Optional[str] = None
    arguments: Optional[dict[str, Any]] = None
    result: Any = None
    error: Optional[str] = None
    execution_time: Optional[float] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_utc(cls, v: Any) -> datetime:
        """Ensure the timestamp is timezone-aware (UTC when naive)."""
        return parse_timestamp(v)

    def to_record(self) -> dict[str, Any]:
        """Serialize to the JSON-ready dictionary stored on disk."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Ingestion payload schemas
# ---------------------------------------------------------------------------


class HookPayload(BaseModel):
    """Fields common to every hook payload.

    Only structurally required fields are enforced; everything optional
    defaults. Unknown keys are preserved.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    session_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    tool_name: Optional[str] = None
    arguments: Optional[dict[str, Any]] = None
    result: Any = None
    error: Optional[str] = None
    execution_time: Optional[float] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_utc(cls, v: Any) -> Optional[datetime]:
        if v is None or v == "":
            return None
        return parse_timestamp(v)


class PreToolUsePayload(HookPayload):
    tool_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class PostToolUsePayload(PreToolUsePayload):
    result: Any = None
    execution_time: Optional[float] = Field(default=None, ge=0)
    error: Optional[str] = None


class UserPromptSubmitPayload(HookPayload):
    prompt: str = ""
    context: Optional[dict[str, Any]] = None


class NotificationPayload(HookPayload):
    message: str = ""
    level: Optional[str] = None


class StopPayload(HookPayload):
    reason: Optional[str] = None
    stop_hook_active: Optional[bool] = None


class SubagentStopPayload(StopPayload):
    subagent_id: Optional[str] = None
    parent_session_id: Optional[str] = None


class SessionStartPayload(HookPayload):
    source: Optional[str] = None
    project_path: Optional[str] = None


class SessionEndPayload(HookPayload):
    reason: Optional[str] = None
    duration: Optional[float] = Field(default=None, ge=0)
    summary: Optional[dict[str, Any]] = None


class PreCompactPayload(HookPayload):
    trigger: Optional[str] = None
    reason: Optional[str] = None
    custom_instructions: Optional[str] = None
    current_token_count: Optional[int] = Field(default=None, ge=0)
    max_token_count: Optional[int] = Field(default=None, ge=0)


PAYLOAD_MODELS: dict[HookType, type[HookPayload]] = {
    HookType.PRE_TOOL_USE: PreToolUsePayload,
    HookType.POST_TOOL_USE: PostToolUsePayload,
    HookType.USER_PROMPT_SUBMIT: UserPromptSubmitPayload,
    HookType.SESSION_START: SessionStartPayload,
    HookType.SESSION_END: SessionEndPayload,
    HookType.NOTIFICATION: NotificationPayload,
    HookType.PRE_COMPACT: PreCompactPayload,
    HookType.STOP: StopPayload,
    HookType.SUBAGENT_STOP: SubagentStopPayload,
}


# Names and wire aliases of the canonical event fields. Unknown payload keys
# that collide with one of these are dropped instead of overriding the field.
_EVENT_KEYS = frozenset(
    key for name in HookEvent.model_fields for key in (name, to_camel(name))
)


def build_event(hook_type: HookType, payload: HookPayload) -> HookEvent:
    """Turn a validated payload into a new ``HookEvent`` with a fresh id.

    A missing timestamp or session id is filled in here so that every
    persisted event carries both. Declared payload fields are copied by
    their wire name; passthrough keys are kept unless they shadow an event
    field such as ``event_type`` or ``id``.
    """
    extra = payload.model_extra or {}
    data = {
        key: value
        for key, value in payload.model_dump(by_alias=True, exclude_none=True).items()
        if key not in extra
    }
    for reserved in ("id", "eventType", "timestamp", "sessionId"):
        data.pop(reserved, None)
    for key, value in extra.items():
        if value is not None and key not in _EVENT_KEYS and key not in data:
            data[key] = value
    return HookEvent(
        event_type=hook_type,
        timestamp=payload.timestamp or datetime.now(timezone.utc),
        session_id=payload.session_id or generate_session_id(),
        **data,
    )


class HookResponse(BaseModel):
    """Response body of the ingestion endpoints.

    ``block``, ``message``, ``output`` and ``warning`` are the signals the
    forwarder relays back to the agent; the collector leaves them unset
    unless a policy asks otherwise.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    timestamp: str = Field(default_factory=utc_now_iso)
    error: Optional[str] = None
    block: Optional[bool] = None
    message: Optional[str] = None
    output: Optional[str] = None
    warning: Optional[str] = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Query schema
# ---------------------------------------------------------------------------

SortField = Literal["timestamp", "eventType", "sessionId"]
SortOrder = Literal["asc", "desc"]


class EventQuery(BaseModel):
    """Filter, sort and pagination schema for searching stored events.

    All filters are optional; omitting one means no filtering on that axis.
    Date bounds select partitions at day granularity and are inclusive.

    Attributes:
        from_: First ingestion day to read (``from`` on the wire).
        to: Last ingestion day to read.
        types: Only return events of these hook types.
        session_ids: Only return events from these sessions.
        limit: Maximum number of events to return (default 1000, max 10000).
        offset: Number of events to skip for pagination.
        sort_by: Field to sort on.
        sort_order: ``desc`` (newest first, the default) or ``asc``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    from_: Optional[date] = Field(default=None, alias="from")
    to: Optional[date] = None
    types: list[HookType] = Field(default_factory=list)
    session_ids: list[str] = Field(default_factory=list)
    limit: int = Field(default=1000, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)
    sort_by: SortField = "timestamp"
    sort_order: SortOrder = "desc"

    @field_validator("from_", "to", mode="before")
    @classmethod
    def coerce_day(cls, v: Any) -> Any:
        """Accept ``YYYY-MM-DD`` dates as well as full ISO timestamps."""
        if v is None or v == "":
            return None
        if isinstance(v, datetime):
            return v.astimezone(timezone.utc).date()
        if isinstance(v, str) and "T" in v:
            return parse_timestamp(v).astimezone(timezone.utc).date()
        return v

    @field_validator("types", mode="before")
    @classmethod
    def parse_types(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, HookType)):
            v = [v]
        return [t if isinstance(t, HookType) else HookType.parse(t) for t in v]

    @model_validator(mode="after")
    def check_range(self) -> "EventQuery":
        if self.from_ is not None and self.to is not None and self.from_ > self.to:
            raise ValueError("'from' must not be later than 'to'")
        return self
