"""Unit tests for the Pydantic models in cage_monitor.models.

Covers:
- HookType values, slugs and lenient parsing.
- HookEvent construction, validation and on-disk serialization.
- Per-hook payload schemas and build_event().
- HookResponse body shape.
- EventQuery defaults, bounds and date handling.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from cage_monitor.models import (
    PAYLOAD_MODELS,
    EventQuery,
    HookEvent,
    HookResponse,
    HookType,
    PostToolUsePayload,
    PreToolUsePayload,
    UserPromptSubmitPayload,
    build_event,
    parse_timestamp,
)


# ---------------------------------------------------------------------------
# HookType tests
# ---------------------------------------------------------------------------


class TestHookType:
    """Tests for the HookType enumeration."""

    def test_closed_set_of_nine(self) -> None:
        assert len(list(HookType)) == 9

    def test_values_are_pascal_case(self) -> None:
        assert HookType.PRE_TOOL_USE.value == "PreToolUse"
        assert HookType.SUBAGENT_STOP.value == "SubagentStop"

    @pytest.mark.parametrize(
        "hook_type,slug",
        [
            (HookType.PRE_TOOL_USE, "pre-tool-use"),
            (HookType.POST_TOOL_USE, "post-tool-use"),
            (HookType.USER_PROMPT_SUBMIT, "user-prompt-submit"),
            (HookType.SESSION_START, "session-start"),
            (HookType.SESSION_END, "session-end"),
            (HookType.NOTIFICATION, "notification"),
            (HookType.PRE_COMPACT, "pre-compact"),
            (HookType.STOP, "stop"),
            (HookType.SUBAGENT_STOP, "subagent-stop"),
        ],
    )
    def test_slug(self, hook_type: HookType, slug: str) -> None:
        assert hook_type.slug == slug

    def test_parse_accepts_value_slug_and_name(self) -> None:
        assert HookType.parse("PreToolUse") is HookType.PRE_TOOL_USE
        assert HookType.parse("pre-tool-use") is HookType.PRE_TOOL_USE
        assert HookType.parse("PRE_TOOL_USE") is HookType.PRE_TOOL_USE
        assert HookType.parse("  posttooluse ") is HookType.POST_TOOL_USE

    def test_parse_unknown_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown hook type"):
            HookType.parse("file_create")

    def test_tool_events(self) -> None:
        assert HookType.PRE_TOOL_USE.is_tool_event
        assert HookType.POST_TOOL_USE.is_tool_event
        assert not HookType.STOP.is_tool_event


# ---------------------------------------------------------------------------
# HookEvent tests
# ---------------------------------------------------------------------------


class TestHookEvent:
    """Tests for the canonical HookEvent model."""

    def test_minimal_event_gets_defaults(self) -> None:
        event = HookEvent(event_type=HookType.STOP)
        uuid.UUID(event.id)
        assert event.timestamp.tzinfo is not None
        assert event.session_id.startswith("session-")
        assert event.event_type == "Stop"

    def test_ids_are_unique(self) -> None:
        ids = {HookEvent(event_type=HookType.STOP).id for _ in range(50)}
        assert len(ids) == 50

    def test_naive_timestamp_becomes_utc(self) -> None:
        event = HookEvent(event_type=HookType.STOP, timestamp=datetime(2024, 6, 1, 12, 0))
        assert event.timestamp.tzinfo == timezone.utc

    def test_z_suffix_timestamp(self) -> None:
        event = HookEvent(event_type=HookType.STOP, timestamp="2024-06-01T12:30:00Z")
        assert event.timestamp == datetime(2024, 6, 1, 12, 30, tzinfo=timezone.utc)

    def test_unknown_event_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HookEvent.model_validate({"eventType": "FileCreate"})

    def test_empty_session_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HookEvent(event_type=HookType.STOP, session_id="")

    def test_record_uses_camel_case(self) -> None:
        event = HookEvent(
            event_type=HookType.POST_TOOL_USE,
            session_id="s1",
            tool_name="Read",
            execution_time=12.5,
        )
        record = event.to_record()
        assert record["eventType"] == "PostToolUse"
        assert record["sessionId"] == "s1"
        assert record["toolName"] == "Read"
        assert record["executionTime"] == 12.5
        assert isinstance(record["timestamp"], str)

    def test_extra_fields_are_preserved(self) -> None:
        event = HookEvent(event_type=HookType.USER_PROMPT_SUBMIT, prompt="hello")
        assert event.to_record()["prompt"] == "hello"

    def test_record_round_trips(self) -> None:
        event = HookEvent(event_type=HookType.NOTIFICATION, message="hi", session_id="s")
        restored = HookEvent.model_validate(event.to_record())
        assert restored.id == event.id
        assert restored.timestamp == event.timestamp
        assert restored.model_extra["message"] == "hi"


class TestParseTimestamp:
    def test_invalid_value_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_timestamp(12345)

    def test_offset_preserved(self) -> None:
        dt = parse_timestamp("2024-06-01T12:00:00+02:00")
        assert dt.utcoffset().total_seconds() == 7200


# ---------------------------------------------------------------------------
# Payload tests
# ---------------------------------------------------------------------------


class TestPayloads:
    """Tests for the per-hook ingestion schemas."""

    def test_every_hook_type_has_a_schema(self) -> None:
        assert set(PAYLOAD_MODELS) == set(HookType)

    def test_pre_tool_use_requires_tool_name(self) -> None:
        with pytest.raises(ValidationError):
            PreToolUsePayload.model_validate({"sessionId": "s1"})

    def test_pre_tool_use_rejects_empty_tool_name(self) -> None:
        with pytest.raises(ValidationError):
            PreToolUsePayload.model_validate({"toolName": ""})

    def test_arguments_must_be_object(self) -> None:
        with pytest.raises(ValidationError):
            PreToolUsePayload.model_validate({"toolName": "Read", "arguments": "x"})

    def test_execution_time_must_be_number(self) -> None:
        with pytest.raises(ValidationError):
            PostToolUsePayload.model_validate({"toolName": "Read", "executionTime": "fast"})

    def test_optional_fields_default(self) -> None:
        payload = UserPromptSubmitPayload.model_validate({})
        assert payload.prompt == ""
        assert payload.session_id is None

    def test_unknown_keys_are_kept(self) -> None:
        payload = UserPromptSubmitPayload.model_validate({"prompt": "p", "projectDir": "/x"})
        assert payload.model_extra == {"projectDir": "/x"}


class TestBuildEvent:
    """Tests for build_event()."""

    def test_carries_payload_fields(self) -> None:
        payload = PreToolUsePayload.model_validate(
            {
                "toolName": "Read",
                "sessionId": "s1",
                "arguments": {"file_path": "a.py"},
                "hookType": "PreToolUse",
            }
        )
        event = build_event(HookType.PRE_TOOL_USE, payload)
        assert event.event_type == "PreToolUse"
        assert event.tool_name == "Read"
        assert event.session_id == "s1"
        assert event.arguments == {"file_path": "a.py"}
        assert event.model_extra["hookType"] == "PreToolUse"

    def test_defaults_session_and_timestamp(self) -> None:
        event = build_event(HookType.STOP, PAYLOAD_MODELS[HookType.STOP].model_validate({}))
        assert event.session_id.startswith("session-")
        assert event.timestamp.tzinfo is not None

    def test_keeps_supplied_timestamp(self) -> None:
        payload = PAYLOAD_MODELS[HookType.STOP].model_validate(
            {"timestamp": "2024-01-02T03:04:05Z"}
        )
        event = build_event(HookType.STOP, payload)
        assert event.timestamp == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_client_supplied_id_is_replaced(self) -> None:
        payload = PAYLOAD_MODELS[HookType.STOP].model_validate({"id": "mine"})
        assert build_event(HookType.STOP, payload).id != "mine"

    def test_passthrough_cannot_override_event_fields(self) -> None:
        payload = PAYLOAD_MODELS[HookType.STOP].model_validate(
            {"event_type": "PreToolUse", "session_id": "s1", "reason": "done"}
        )
        event = build_event(HookType.STOP, payload)
        assert event.event_type == "Stop"
        assert event.session_id == "s1"
        assert "event_type" not in (event.model_extra or {})
        assert event.model_extra["reason"] == "done"

    def test_event_fields_are_typed_on_every_hook(self) -> None:
        with pytest.raises(ValidationError):
            PAYLOAD_MODELS[HookType.NOTIFICATION].model_validate({"error": {"code": 1}})


class TestHookResponse:
    def test_success_body_omits_unset_fields(self) -> None:
        body = HookResponse(success=True).to_body()
        assert set(body) == {"success", "timestamp"}

    def test_failure_body_has_error(self) -> None:
        body = HookResponse(success=False, error="bad").to_body()
        assert body["success"] is False
        assert body["error"] == "bad"


# ---------------------------------------------------------------------------
# EventQuery tests
# ---------------------------------------------------------------------------


class TestEventQuery:
    """Tests for the EventQuery schema."""

    def test_defaults(self) -> None:
        q = EventQuery()
        assert q.limit == 1000
        assert q.offset == 0
        assert q.sort_by == "timestamp"
        assert q.sort_order == "desc"
        assert q.types == []
        assert q.from_ is None

    def test_from_alias(self) -> None:
        q = EventQuery.model_validate({"from": "2024-06-01", "to": "2024-06-03"})
        assert q.from_ == date(2024, 6, 1)
        assert q.to == date(2024, 6, 3)

    def test_datetime_bounds_become_days(self) -> None:
        q = EventQuery.model_validate({"from": "2024-06-01T23:00:00Z"})
        assert q.from_ == date(2024, 6, 1)

    def test_from_after_to_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventQuery.model_validate({"from": "2024-06-02", "to": "2024-06-01"})

    @pytest.mark.parametrize("limit", [0, 10001])
    def test_limit_bounds(self, limit: int) -> None:
        with pytest.raises(ValidationError):
            EventQuery(limit=limit)

    def test_negative_offset_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventQuery(offset=-1)

    def test_types_parsed_leniently(self) -> None:
        q = EventQuery.model_validate({"types": ["pre-tool-use", "Stop"]})
        assert q.types == [HookType.PRE_TOOL_USE, HookType.STOP]

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventQuery.model_validate({"types": ["nope"]})

    def test_invalid_sort_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EventQuery.model_validate({"sortBy": "toolName"})
