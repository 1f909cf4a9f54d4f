"""Short-lived hook forwarder: one agent event in, one delivery attempt out.

The agent runs ``cage hook <HookType>`` once per lifecycle event and pipes
the event payload on stdin. The forwarder:

1. reads stdin to completion and normalizes the payload
   (:mod:`cage_monitor.normalizer`);
2. attaches project context (``hookType``, ``projectDir``, ``cwd``);
3. makes exactly one ``POST`` to the collector with a 5 second timeout;
4. relays the collector's ``block`` / ``output`` / ``warning`` signals.

Any delivery failure (connection refused, timeout, non-2xx) is appended to
the offline log and the forwarder still exits ``0``: the agent is never
held up by the collector. The only non-zero exit is :data:`EXIT_BLOCK`,
returned when the collector explicitly asks to block the operation.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, NamedTuple, Optional, TextIO

import httpx

from cage_monitor.config import CageConfig, CagePaths, load_config
from cage_monitor.models import HookType, utc_now_iso
from cage_monitor.normalizer import normalize, parse_payload

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BLOCK = 2

DELIVERY_TIMEOUT = 5.0
HOOKS_PATH = "/api/claude/hooks"
WARNING_PREFIX = "[CAGE WARNING] "
DEFAULT_BLOCK_MESSAGE = "Operation blocked by Cage"


class ForwardOutcome(NamedTuple):
    """What the forwarder tells its caller.

    Attributes:
        exit_code: :data:`EXIT_OK` or :data:`EXIT_BLOCK`.
        stdout: Lines for the agent's standard output (context injection).
        stderr: Lines for the agent's error channel (block message).
        delivered: Whether the collector accepted the event.
    """

    exit_code: int
    stdout: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()
    delivered: bool = False


def hook_url(config: CageConfig, hook_type: HookType) -> str:
    """Return the collector endpoint for ``hook_type``."""
    return f"http://{config.host}:{config.port}{HOOKS_PATH}/{hook_type.slug}"


def enrich(record: dict[str, Any], hook_type: HookType, paths: CagePaths) -> dict[str, Any]:
    """Attach the hook type and project context to a normalized record."""
    enriched = dict(record)
    enriched["hookType"] = hook_type.value
    enriched["projectDir"] = os.environ.get("CLAUDE_PROJECT_DIR") or str(paths.root)
    if not enriched.get("cwd"):
        enriched["cwd"] = os.getcwd()
    if not enriched.get("timestamp"):
        enriched["timestamp"] = utc_now_iso()
    return enriched


def record_offline(
    path: Path,
    *,
    hook_type: str,
    endpoint: str,
    payload: Any,
    error: str,
) -> bool:
    """Append one failed delivery to the offline log.

    Failures to write are swallowed; the forwarder must never crash.

    Returns:
        ``True`` if the line was written.
    """
    entry = {
        "timestamp": utc_now_iso(),
        "hookType": hook_type,
        "endpoint": endpoint,
        "error": error,
        "payload": payload,
    }
    try:
        line = json.dumps(entry, default=str) + "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line)
        return True
    except (OSError, TypeError, ValueError) as exc:
        logger.debug("Could not write offline record to %s: %s", path, exc)
        return False


def interpret_response(response: httpx.Response) -> ForwardOutcome:
    """Translate a 2xx collector response into a :class:`ForwardOutcome`.

    A body that is not a JSON object counts as "accepted, no side effect".
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return ForwardOutcome(EXIT_OK, delivered=True)

    if body.get("block"):
        message = body.get("message") or DEFAULT_BLOCK_MESSAGE
        return ForwardOutcome(EXIT_BLOCK, stderr=(str(message),), delivered=True)

    stdout: list[str] = []
    if body.get("output"):
        stdout.append(str(body["output"]))
    if body.get("warning"):
        stdout.append(f"{WARNING_PREFIX}{body['warning']}")
    return ForwardOutcome(EXIT_OK, stdout=tuple(stdout), delivered=True)


def _describe_failure(exc: httpx.HTTPError, timeout: float) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return f"Request timed out after {timeout:g}s"
    return str(exc) or exc.__class__.__name__


def forward(
    hook_type: str,
    raw_input: str,
    *,
    config: Optional[CageConfig] = None,
    paths: Optional[CagePaths] = None,
    transport: Optional[httpx.BaseTransport] = None,
    timeout: float = DELIVERY_TIMEOUT,
) -> ForwardOutcome:
    """Normalize one hook payload and make a single delivery attempt.

    Args:
        hook_type: Hook name as passed by the agent (``PreToolUse`` or
            ``pre-tool-use``).
        raw_input: The complete stdin payload.
        config: Collector settings; loaded from ``cage.config.json`` if omitted.
        paths: Location of the offline log; derived from ``config`` if omitted.
        transport: Optional httpx transport (used by tests).
        timeout: Upper bound for the whole attempt, in seconds.

    Returns:
        The :class:`ForwardOutcome` for the caller.
    """
    config = config or load_config()
    paths = paths or CagePaths(config=config)

    try:
        resolved = HookType.parse(hook_type)
    except ValueError as exc:
        record_offline(
            paths.offline_log,
            hook_type=hook_type,
            endpoint=hook_type,
            payload=parse_payload(raw_input),
            error=str(exc),
        )
        return ForwardOutcome(EXIT_OK)

    payload = enrich(normalize(parse_payload(raw_input), resolved), resolved, paths)
    url = hook_url(config, resolved)
    logger.debug("Forwarding %s to %s", resolved.value, url)

    try:
        with httpx.Client(timeout=timeout, transport=transport, trust_env=False) as client:
            response = client.post(url, json=payload)
    except httpx.HTTPError as exc:
        error = _describe_failure(exc, timeout)
    else:
        if response.is_success:
            return interpret_response(response)
        error = f"Backend returned {response.status_code}"

    logger.debug("Delivery of %s failed: %s", resolved.value, error)
    record_offline(
        paths.offline_log,
        hook_type=resolved.value,
        endpoint=resolved.slug,
        payload=payload,
        error=error,
    )
    return ForwardOutcome(EXIT_OK)


def run_hook(
    hook_type: str,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    **kwargs: Any,
) -> int:
    """Process-level entry point: read stdin, forward, write the outcome.

    Never raises. Unexpected errors are logged at debug level and reported
    as :data:`EXIT_OK` so the agent carries on.

    Returns:
        The exit code for the hook process.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    try:
        raw_input = stdin.read()
        outcome = forward(hook_type, raw_input, **kwargs)
        for line in outcome.stdout:
            print(line, file=stdout)
        for line in outcome.stderr:
            print(line, file=stderr)
        return outcome.exit_code
    except Exception:  # noqa: BLE001
        logger.debug("Hook forwarder failed unexpectedly", exc_info=True)
        return EXIT_OK
