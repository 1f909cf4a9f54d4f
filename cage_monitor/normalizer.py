"""Declarative mapping from agent hook payloads to canonical event records.

The agent sends snake_case payloads whose shape differs per hook type
(``tool_name``/``tool_input``/``tool_response`` for tool hooks, ``prompt``
for prompt submission, ...). :data:`NORMALIZATION_RULES` describes, per
:class:`~cage_monitor.models.HookType`, which upstream key feeds which
canonical camelCase key and what the default is when the key is missing.

Normalization never raises: missing fields take their defaults, and input
that is not a JSON object is wrapped as ``{"raw": <text>}``.

Example::

    raw = parse_payload('{"session_id": "s1", "tool_name": "Read"}')
    record = normalize(raw, HookType.PRE_TOOL_USE)
    # {"sessionId": "s1", "toolName": "Read", "arguments": {}, ...}
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Callable, Mapping, NamedTuple, Union

from cage_monitor.models import HookType, generate_session_id, utc_now_iso

logger = logging.getLogger(__name__)

# Upstream keys that are never copied into the canonical record.
_DROPPED_KEYS = frozenset({"hook_event_name"})


class FieldRule(NamedTuple):
    """Copy the first present key of ``sources`` into ``target``.

    ``default`` may be a zero-argument callable, which is invoked on every
    miss so that mutable defaults and generated values are never shared.
    """

    target: str
    sources: tuple[str, ...]
    default: Union[Any, Callable[[], Any]] = None


class NormalizationRule(NamedTuple):
    """Field rules for one hook type.

    When ``passthrough`` is set, upstream keys not consumed by any rule are
    copied verbatim so that nothing the agent sent is lost.
    """

    fields: tuple[FieldRule, ...]
    passthrough: bool = False


_COMMON_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("sessionId", ("session_id", "sessionId"), generate_session_id),
    FieldRule("timestamp", ("timestamp",), utc_now_iso),
    FieldRule("transcriptPath", ("transcript_path", "transcriptPath")),
    FieldRule("cwd", ("cwd",)),
)

_TOOL_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("toolName", ("tool_name", "toolName"), "unknown"),
    FieldRule("arguments", ("tool_input", "arguments"), dict),
)

_STOP_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("stopHookActive", ("stop_hook_active", "stopHookActive")),
)

NORMALIZATION_RULES: dict[HookType, NormalizationRule] = {
    HookType.PRE_TOOL_USE: NormalizationRule(_TOOL_FIELDS),
    HookType.POST_TOOL_USE: NormalizationRule(
        _TOOL_FIELDS
        + (
            FieldRule("result", ("tool_response", "result")),
            FieldRule("executionTime", ("execution_time", "executionTime"), 0),
            FieldRule("error", ("error",)),
        )
    ),
    HookType.USER_PROMPT_SUBMIT: NormalizationRule(
        (FieldRule("prompt", ("prompt", "additionalContext"), ""),),
        passthrough=True,
    ),
    HookType.NOTIFICATION: NormalizationRule(
        (
            FieldRule("message", ("message",), ""),
            FieldRule("level", ("level",)),
        ),
        passthrough=True,
    ),
    HookType.STOP: NormalizationRule(_STOP_FIELDS, passthrough=True),
    HookType.SUBAGENT_STOP: NormalizationRule(_STOP_FIELDS, passthrough=True),
    HookType.SESSION_START: NormalizationRule(
        (FieldRule("source", ("source",)),),
        passthrough=True,
    ),
    HookType.SESSION_END: NormalizationRule(
        (FieldRule("reason", ("reason",)),),
        passthrough=True,
    ),
    HookType.PRE_COMPACT: NormalizationRule(
        (
            FieldRule("trigger", ("trigger",)),
            FieldRule("customInstructions", ("custom_instructions", "customInstructions")),
        ),
        passthrough=True,
    ),
}


def parse_payload(text: str) -> dict[str, Any]:
    """Parse raw hook input into a mapping.

    Empty input, invalid JSON and JSON values that are not objects are all
    wrapped as ``{"raw": text}``.
    """
    if not text or not text.strip():
        return {"raw": text or ""}
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Hook input is not JSON; keeping it as raw text")
        return {"raw": text}
    if not isinstance(data, dict):
        return {"raw": text}
    return data


def _resolve_default(default: Any) -> Any:
    if callable(default):
        return default()
    return copy.deepcopy(default)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def normalize(raw: Any, hook_type: HookType) -> dict[str, Any]:
    """Map an upstream payload to the canonical record for ``hook_type``.

    Args:
        raw: The parsed hook payload. Anything other than a mapping is
            treated as raw text.
        hook_type: The hook type named by the caller.

    Returns:
        A new dictionary keyed by canonical (camelCase) field names.
    """
    if isinstance(raw, str):
        raw = parse_payload(raw)
    elif not isinstance(raw, Mapping):
        raw = {"raw": str(raw)}

    rule = NORMALIZATION_RULES[hook_type]
    record: dict[str, Any] = {}
    consumed: set[str] = set()

    for field in _COMMON_FIELDS + rule.fields:
        value = None
        for source in field.sources:
            if source in raw:
                consumed.add(source)
                if value is None and not _is_missing(raw[source]):
                    value = raw[source]
        record[field.target] = value if value is not None else _resolve_default(field.default)

    if rule.passthrough:
        for key, value in raw.items():
            if key in consumed or key in _DROPPED_KEYS or key in record:
                continue
            record[key] = value
    elif "raw" in raw:
        # Degraded input keeps its text for every hook type.
        record["raw"] = raw["raw"]

    return record
