"""HTTP client for a running collector.

Used by ``cage events tail`` and ``cage events stream``. Every request goes
to ``http://<host>:<port>`` from :class:`~cage_monitor.config.CageConfig`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Iterator, Optional

import httpx

from cage_monitor.config import CageConfig

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0


class CollectorError(RuntimeError):
    """The collector could not be reached or answered with an error."""


def iter_sse_events(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Decode the collector's SSE frames into event records.

    Comment lines (``: connected``, ``: keepalive``) are skipped and an
    ``event: close`` frame ends the iteration.
    """
    event_name = None
    for line in lines:
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_name = value
        elif field == "data":
            if event_name == "close":
                return
            event_name = None
            try:
                record = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed stream frame: %.80s", value)
                continue
            if isinstance(record, dict):
                yield record


class CollectorClient:
    """Thin synchronous client for the collector's query API.

    Args:
        base_url: Collector root, e.g. ``http://127.0.0.1:3790``.
        timeout: Connect/read timeout for ordinary requests.
        transport: Optional httpx transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: CageConfig, **kwargs: Any) -> "CollectorClient":
        return cls(f"http://{config.host}:{config.port}", **kwargs)

    def _client(self, timeout: httpx.Timeout | float) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
            trust_env=False,
        )

    def tail(self, count: int = 10) -> list[dict[str, Any]]:
        """Return the ``count`` most recent events, newest first.

        Raises:
            CollectorError: If the request fails.
        """
        try:
            with self._client(self.timeout) as client:
                response = client.get("/api/events/tail", params={"count": count})
                response.raise_for_status()
                return list(response.json().get("events", []))
        except httpx.HTTPError as exc:
            raise CollectorError(f"Failed to fetch events from {self.base_url}: {exc}") from exc

    def stream(self, types: Optional[Iterable[str]] = None) -> Iterator[dict[str, Any]]:
        """Yield events live until the collector closes the stream.

        The read timeout is disabled; the collector sends keepalive comments
        while idle.

        Raises:
            CollectorError: If the connection fails or is refused.
        """
        params = [("type", t) for t in types or ()]
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            with self._client(timeout) as client:
                with client.stream("GET", "/api/events/stream", params=params) as response:
                    response.raise_for_status()
                    yield from iter_sse_events(response.iter_lines())
        except httpx.HTTPError as exc:
            raise CollectorError(f"Event stream from {self.base_url} failed: {exc}") from exc
