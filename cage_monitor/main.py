"""FastAPI application factory for the cage-monitor collector.

This module provides:

- ``create_app``: Factory that builds the FastAPI application with all
  routes and middleware, wired to a shared ``EventStore`` and ``EventBus``.
- ``/api/claude/hooks/<slug>`` (POST): one ingestion endpoint per hook type.
- ``/api/claude/hooks`` (POST): generic ingestion; the body names the type.
- ``/api/events`` (GET): filtered, sorted and paginated event listing.
- ``/api/events/stats`` (GET): aggregate statistics.
- ``/api/events/tail`` (GET): the most recent events.
- ``/api/events/stream`` (GET): Server-Sent Events for live events.
- ``/api/health`` (GET): service, filesystem and broadcaster health.

Ingestion always writes to the store first and only publishes events that
were stored successfully.

Example usage::

    from cage_monitor.main import create_app
    from cage_monitor.store import EventStore

    app = create_app(store=EventStore(".cage/events"))
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterable, Optional

import psutil
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from cage_monitor import __version__
from cage_monitor.config import CageConfig, CagePaths, load_config
from cage_monitor.event_bus import EventBus
from cage_monitor.models import (
    PAYLOAD_MODELS,
    EventQuery,
    HookResponse,
    HookType,
    build_event,
    utc_now_iso,
)
from cage_monitor.query import QueryEngine
from cage_monitor.store import EventStore

logger = logging.getLogger(__name__)

HOOKS_PATH = "/api/claude/hooks"

# Seconds of stream inactivity before a keepalive comment is sent.
KEEPALIVE_INTERVAL = 15.0

# Process memory share (percent) above which health reports a warning.
_MEMORY_WARNING_PERCENT = 80.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _failure(message: str, status_code: int = 400) -> JSONResponse:
    body = HookResponse(success=False, error=message).to_body()
    return JSONResponse(content=body, status_code=status_code)


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{location}: {err.get('msg')}")
    return "Validation failed: " + "; ".join(parts)


def _split_types(values: Optional[Iterable[str]]) -> list[str]:
    """Flatten repeated and comma-separated ``type`` parameters."""
    result: list[str] = []
    for value in values or ():
        result.extend(part.strip() for part in value.split(",") if part.strip())
    return result


def _build_query(**params: Any) -> EventQuery:
    """Validate query-string parameters into an :class:`EventQuery`.

    Raises:
        HTTPException: 400 if any parameter is invalid.
    """
    try:
        return EventQuery.model_validate(
            {k: v for k, v in params.items() if v is not None}
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def ingest_hook(
    request: Request,
    hook_type: HookType,
    body: Any,
) -> JSONResponse:
    """Validate, persist and broadcast one hook payload."""
    if not isinstance(body, dict):
        return _failure("Request body must be a JSON object")

    try:
        payload = PAYLOAD_MODELS[hook_type].model_validate(body)
    except ValidationError as exc:
        logger.info("Rejected %s payload: %s", hook_type.value, exc.error_count())
        return _failure(_describe_validation_error(exc))

    try:
        event = build_event(hook_type, payload)
    except ValidationError as exc:
        logger.info("Rejected %s event: %s", hook_type.value, exc.error_count())
        return _failure(_describe_validation_error(exc))

    store: EventStore = request.app.state.store
    try:
        store.append(event)
    except OSError as exc:
        logger.error("Failed to store %s event %s: %s", hook_type.value, event.id, exc)
        return JSONResponse(
            content=HookResponse(success=True, error=f"Failed to store event: {exc}").to_body()
        )

    bus: EventBus = request.app.state.bus
    await bus.publish_async(event)
    logger.debug("Ingested %s event %s", hook_type.value, event.id)
    return JSONResponse(content=HookResponse(success=True).to_body())


async def _read_json(request: Request) -> tuple[Any, Optional[JSONResponse]]:
    try:
        return await request.json(), None
    except ValueError:
        return None, _failure("Request body must be valid JSON")


def _make_hook_handler(
    hook_type: HookType,
) -> Callable[[Request], Awaitable[JSONResponse]]:
    async def handle_hook(request: Request) -> JSONResponse:
        body, error = await _read_json(request)
        if error is not None:
            return error
        return await ingest_hook(request, hook_type, body)

    handle_hook.__doc__ = f"Ingest one {hook_type.value} event."
    return handle_hook


async def sse_event_stream(
    bus: EventBus,
    types: Optional[Iterable[HookType]] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    keepalive_interval: float = KEEPALIVE_INTERVAL,
) -> AsyncGenerator[str, None]:
    """Generate SSE frames for events published on ``bus``.

    The subscription is registered before the ``: connected`` comment is
    yielded, so every event published after the first frame is delivered.

    Args:
        bus: The broadcaster to subscribe to.
        types: Optional hook types to receive.
        is_disconnected: Awaitable predicate polled between frames; the
            stream ends once it returns ``True``.
        keepalive_interval: Idle seconds between keepalive comments.
    """
    async with bus.subscribe(types) as queue:
        yield ": connected\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.debug("SSE client disconnected")
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            if event is None:
                yield "event: close\ndata: {}\n\n"
                break

            try:
                yield f"data: {json.dumps(event.to_record())}\n\n"
            except (TypeError, ValueError) as exc:
                logger.error("Failed to serialize SSE event %s: %s", event.id, exc)


def health_report(
    store: EventStore,
    bus: EventBus,
    started_at: float,
) -> dict[str, Any]:
    """Build the ``/api/health`` body.

    ``status`` is ``unhealthy`` when any error is reported, ``degraded``
    when only warnings are, and ``healthy`` otherwise.
    """
    warnings: list[str] = []
    errors: list[str] = []

    proc = psutil.Process(os.getpid())
    mem = proc.memory_info()
    try:
        mem_percent = proc.memory_percent()
    except psutil.Error:
        mem_percent = 0.0
    if mem_percent > _MEMORY_WARNING_PERCENT:
        warnings.append(f"High memory usage: {mem_percent:.1f}% of system memory")

    events_dir = store.events_dir
    exists = events_dir.is_dir()
    writable = store.is_writable()
    partitions = 0
    try:
        partitions = len(store.list_partition_dates())
    except OSError as exc:
        errors.append(f"File system check failed: {exc}")
    if not exists:
        warnings.append("Events directory does not exist yet")
    if not writable:
        errors.append("Events directory is not writable")
    if not bus.is_running:
        warnings.append("Event broadcaster is not running")

    if errors:
        status = "unhealthy"
    elif warnings:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "timestamp": utc_now_iso(),
        "uptime": round(time.monotonic() - started_at, 3),
        "pid": os.getpid(),
        "version": __version__,
        "memory": {
            "rss": mem.rss,
            "vms": mem.vms,
            "percent": round(mem_percent, 2),
        },
        "fileSystem": {
            "eventsDir": str(events_dir),
            "exists": exists,
            "writable": writable,
            "partitions": partitions,
        },
        "dependencies": {
            "queueSize": bus.queue_size,
            "subscribers": bus.subscriber_count,
        },
        "warnings": warnings,
        "errors": errors,
    }


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    store: Optional[EventStore] = None,
    bus: Optional[EventBus] = None,
    config: Optional[CageConfig] = None,
) -> FastAPI:
    """Create and configure the cage-monitor FastAPI application.

    Args:
        store: The event store to write to and query. Defaults to the
            project's ``.cage/events`` directory.
        bus: The broadcaster for live events. A new one is created if
            ``None``; it is started and stopped with the app lifespan.
        config: Settings used to resolve the default store location.

    Returns:
        A fully configured :class:`fastapi.FastAPI` application instance.
    """
    if store is None:
        config = config or load_config()
        store = EventStore(CagePaths(config=config).events_dir)

    if bus is None:
        bus = EventBus()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Tie the EventBus lifecycle to the app lifespan."""
        await bus.start()
        logger.info("cage-monitor collector started; events in %s", store.events_dir)
        yield
        await bus.stop()
        logger.info("cage-monitor collector shutdown")

    app = FastAPI(
        title="cage-monitor",
        description="Collector for coding-agent lifecycle hook events",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.store = store
    app.state.bus = bus
    app.state.engine = QueryEngine(store)
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------------------------------------------------------------------
    # Ingestion routes
    # ---------------------------------------------------------------------------

    for hook_type in HookType:
        app.add_api_route(
            f"{HOOKS_PATH}/{hook_type.slug}",
            _make_hook_handler(hook_type),
            methods=["POST"],
            name=f"hook_{hook_type.slug.replace('-', '_')}",
        )

    @app.post(HOOKS_PATH)
    async def ingest_generic(request: Request) -> JSONResponse:
        """Ingest an event whose hook type is named in the body.

        The type is read from ``hookType``, falling back to ``eventType``.
        """
        body, error = await _read_json(request)
        if error is not None:
            return error
        if not isinstance(body, dict):
            return _failure("Request body must be a JSON object")
        name = body.get("hookType") or body.get("eventType")
        if not name:
            return _failure("Missing hookType in request body")
        try:
            hook_type = HookType.parse(str(name))
        except ValueError as exc:
            return _failure(str(exc))
        return await ingest_hook(request, hook_type, body)

    # ---------------------------------------------------------------------------
    # Query routes
    # ---------------------------------------------------------------------------

    @app.get("/api/events/stream", response_class=StreamingResponse)
    async def stream_events(
        request: Request,
        type: Optional[list[str]] = Query(default=None, description="Hook types to receive"),
    ) -> StreamingResponse:
        """Server-Sent Events stream of newly ingested events.

        Raises:
            HTTPException: 400 if a ``type`` is not a known hook type.
        """
        try:
            types = [HookType.parse(t) for t in _split_types(type)]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        return StreamingResponse(
            sse_event_stream(
                request.app.state.bus,
                types=types or None,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "Connection": "keep-alive",
            },
        )

    @app.get("/api/events/stats")
    async def get_stats(
        request: Request,
        from_: Optional[str] = Query(default=None, alias="from"),
        to: Optional[str] = Query(default=None),
        type: Optional[list[str]] = Query(default=None),
        session_id: Optional[list[str]] = Query(default=None, alias="sessionId"),
    ) -> JSONResponse:
        """Aggregate statistics over the matching events."""
        q = _build_query(
            **{"from": from_, "to": to, "types": _split_types(type), "sessionIds": session_id}
        )
        engine: QueryEngine = request.app.state.engine
        return JSONResponse(content=engine.stats(q).to_body())

    @app.get("/api/events/tail")
    async def tail_events(
        request: Request,
        count: int = Query(default=10, ge=1, le=1000, description="Number of events"),
    ) -> JSONResponse:
        """Return the most recently stored events, newest first."""
        engine: QueryEngine = request.app.state.engine
        events = engine.tail(count)
        return JSONResponse(content={"events": [e.to_record() for e in events]})

    @app.get("/api/events")
    async def list_events(
        request: Request,
        from_: Optional[str] = Query(default=None, alias="from", description="First day (inclusive)"),
        to: Optional[str] = Query(default=None, description="Last day (inclusive)"),
        type: Optional[list[str]] = Query(default=None, description="Hook type filter"),
        session_id: Optional[list[str]] = Query(default=None, alias="sessionId"),
        limit: int = Query(default=1000, description="Max events to return"),
        offset: int = Query(default=0, description="Pagination offset"),
        sort_by: str = Query(default="timestamp", alias="sortBy"),
        sort_order: str = Query(default="desc", alias="sortOrder"),
    ) -> JSONResponse:
        """List stored events with optional filtering, sorting and pagination.

        Returns:
            A JSON object with ``events``, ``total``, ``limit`` and ``offset``.

        Raises:
            HTTPException: 400 if any parameter is invalid.
        """
        q = _build_query(
            **{
                "from": from_,
                "to": to,
                "types": _split_types(type),
                "sessionIds": session_id,
                "limit": limit,
                "offset": offset,
                "sortBy": sort_by,
                "sortOrder": sort_order,
            }
        )
        engine: QueryEngine = request.app.state.engine
        result = engine.query(q)
        return JSONResponse(
            content={
                "events": [e.to_record() for e in result.events],
                "total": result.total,
                "limit": q.limit,
                "offset": q.offset,
            }
        )

    @app.get("/api/health")
    async def health_check(request: Request) -> JSONResponse:
        """Service health: process, filesystem and broadcaster checks."""
        return JSONResponse(
            content=health_report(
                request.app.state.store,
                request.app.state.bus,
                request.app.state.started_at,
            )
        )

    return app
