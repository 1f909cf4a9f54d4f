"""Async in-process broadcaster for newly ingested hook events.

This module provides an ``EventBus`` that fans out ``HookEvent`` instances
to any number of async subscribers (e.g., SSE connections). Persistence is
not its concern: the ingestion endpoint writes to the ``EventStore`` first
and then publishes the stored event here.

Each subscriber gets its own bounded ``asyncio.Queue``. Delivery into a
subscriber queue never blocks; when one subscriber falls behind and its
queue fills up, events are dropped for that subscriber only.

Example usage (async context)::

    bus = EventBus()
    await bus.start()

    # In a request handler:
    await bus.publish_async(event)

    # In an async SSE handler:
    async with bus.subscribe() as queue:
        event = await queue.get()

    await bus.stop()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Optional

from cage_monitor.models import HookEvent, HookType

logger = logging.getLogger(__name__)

# Maximum number of events buffered per subscriber queue before dropping.
_SUBSCRIBER_QUEUE_SIZE = 512


class EventBus:
    """Fan-out async event bus that distributes ``HookEvent`` objects.

    Publishers call :meth:`publish_async` from the event loop or
    :meth:`publish` from any thread. Consumers subscribe via
    :meth:`subscribe` and receive events from a per-subscriber queue.
    Subscribers only see events published after they subscribed.

    Args:
        loop: The event loop to use for scheduling coroutines from threads.
            If ``None``, the running loop is captured at :meth:`start` time.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = loop
        # queue -> accepted event types (None means all)
        self._subscribers: dict[
            asyncio.Queue[Optional[HookEvent]], Optional[frozenset[str]]
        ] = {}
        self._subscribers_lock = threading.Lock()
        self._running = False
        # Internal async queue bridging publish -> async dispatch
        self._inbound: Optional[asyncio.Queue[Optional[HookEvent]]] = None
        self._dispatcher_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatcher.

        Must be called from within a running asyncio event loop. Subsequent
        calls are no-ops if the bus is already running.
        """
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._inbound = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE * 4)
        self._running = True
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="event_bus_dispatcher"
        )
        logger.info("EventBus started")

    async def stop(self) -> None:
        """Gracefully stop the bus.

        Lets the dispatcher drain queued events, then sends every subscriber
        a ``None`` sentinel so it can close its stream. Subsequent calls are
        no-ops.
        """
        if not self._running:
            return
        self._running = False
        if self._inbound is not None:
            await self._inbound.put(None)
        if self._dispatcher_task is not None:
            try:
                await asyncio.wait_for(self._dispatcher_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("EventBus dispatcher did not stop in time; cancelling")
                self._dispatcher_task.cancel()
        with self._subscribers_lock:
            for q in self._subscribers:
                try:
                    q.put_nowait(None)
                except asyncio.QueueFull:
                    logger.warning("Subscriber queue full when sending stop sentinel")
        logger.info("EventBus stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, event: HookEvent) -> None:
        """Publish an event from any thread.

        Thread-safe and non-blocking. If the bus is not running the event
        is dropped with a debug log entry.
        """
        if not self._running or self._loop is None or self._inbound is None:
            logger.debug("EventBus not running; dropping event %s", event.event_type)
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError as exc:
            logger.warning("Failed to schedule event publish: %s", exc)

    async def publish_async(self, event: HookEvent) -> None:
        """Publish an event from within the event loop without blocking."""
        if not self._running or self._inbound is None:
            logger.debug("EventBus not running; dropping async event %s", event.event_type)
            return
        self._enqueue(event)

    def _enqueue(self, event: HookEvent) -> None:
        """Place an event onto the inbound queue, dropping it if full."""
        if self._inbound is None:
            return
        try:
            self._inbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("EventBus inbound queue full; dropping event %s", event.event_type)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def subscribe(
        self,
        types: Optional[Iterable[HookType | str]] = None,
    ) -> AsyncGenerator[asyncio.Queue[Optional[HookEvent]], None]:
        """Context manager that yields a per-subscriber async queue.

        Queue items are ``HookEvent`` instances, or ``None`` once the bus
        has stopped. The subscriber is removed when the context exits.

        Args:
            types: Optional hook types to receive; all types when omitted.

        Example::

            async with bus.subscribe(types=[HookType.PRE_TOOL_USE]) as q:
                while (event := await q.get()) is not None:
                    process(event)
        """
        accepted: Optional[frozenset[str]] = None
        if types:
            accepted = frozenset(
                t.value if isinstance(t, HookType) else HookType.parse(t).value
                for t in types
            )

        queue: asyncio.Queue[Optional[HookEvent]] = asyncio.Queue(
            maxsize=_SUBSCRIBER_QUEUE_SIZE
        )
        with self._subscribers_lock:
            self._subscribers[queue] = accepted
            total = len(self._subscribers)
        logger.debug("New stream subscriber added; total=%d", total)
        try:
            yield queue
        finally:
            with self._subscribers_lock:
                self._subscribers.pop(queue, None)
                total = len(self._subscribers)
            logger.debug("Stream subscriber removed; total=%d", total)

    @property
    def subscriber_count(self) -> int:
        """Return the number of currently active subscribers."""
        with self._subscribers_lock:
            return len(self._subscribers)

    @property
    def queue_size(self) -> int:
        """Return the number of events waiting to be dispatched."""
        return self._inbound.qsize() if self._inbound is not None else 0

    # ------------------------------------------------------------------
    # Internal dispatch loop
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        """Consume events from the inbound queue and fan them out.

        Runs until a ``None`` sentinel is received.
        """
        assert self._inbound is not None  # noqa: S101
        while True:
            try:
                event = await self._inbound.get()
            except asyncio.CancelledError:
                logger.debug("EventBus dispatcher cancelled")
                break

            if event is None:
                logger.debug("EventBus dispatcher received stop sentinel")
                break

            with self._subscribers_lock:
                subscribers = list(self._subscribers.items())

            for q, accepted in subscribers:
                if accepted is not None and event.event_type not in accepted:
                    continue
                try:
                    q.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(
                        "Subscriber queue full; dropping event %s for one subscriber",
                        event.event_type,
                    )

        logger.debug("EventBus dispatch loop exited")
