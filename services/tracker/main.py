"""Tracker service - live farming session tracking from the game log."""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional
import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from .config import TrackerSettings
from .errors import NoActiveSessionError, PersistenceError, SessionConflictError
from .models import (
    AddDropRequested,
    FlushRequested,
    Session,
    StartRequested,
    StopRequested,
    TrackerSnapshot,
)
from .storage import HttpSessionSink, JsonlSessionStore, SessionSink
from .tracker import Tracker

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)

logger = structlog.get_logger()

COMMAND_TIMEOUT = 5.0


def build_sink(settings: TrackerSettings) -> SessionSink:
    """Forward to a collector when one is configured, else keep the local JSONL file."""
    if settings.session_sink_url:
        return HttpSessionSink(settings.session_sink_url)
    return JsonlSessionStore(settings.sessions_path)


async def stream_events(tracker: Tracker):
    """SSE events: the current snapshot, then every published update."""
    subscription = tracker.broadcaster.subscribe()
    try:
        yield {
            "event": "snapshot",
            "data": tracker.current().model_dump_json()
        }
        async for snapshot in subscription:
            yield {
                "event": "log_reset" if snapshot.log_reset else "update",
                "data": snapshot.model_dump_json()
            }
    finally:
        subscription.close()


def create_app(settings: Optional[TrackerSettings] = None, tracker: Optional[Tracker] = None) -> FastAPI:
    settings = settings or TrackerSettings.from_env()
    if tracker is None:
        tracker = Tracker(settings, sink=build_sink(settings))
    store = tracker.sink if isinstance(tracker.sink, JsonlSessionStore) else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(tracker.run())
        logger.info("tracker_service_started", log_path=str(settings.log_path))
        try:
            yield
        finally:
            tracker.stop()
            await task
            tracker.broadcaster.close()
            if isinstance(tracker.sink, HttpSessionSink):
                await tracker.sink.close()
            logger.info("tracker_service_stopped")

    app = FastAPI(
        title="TLI Tracker - Tracker Service",
        description="Live farming session tracking from the game client log",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.tracker = tracker
    app.state.store = store

    async def run_command(command):
        try:
            return await tracker.request(command, timeout=COMMAND_TIMEOUT)
        except SessionConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NoActiveSessionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except PersistenceError as e:
            # Session is closed in memory; it waits in pending_sessions for a retry
            logger.error("stop_persist_failed", session_id=e.session_id, error=e.reason)
            raise HTTPException(status_code=502, detail=str(e))
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="Tracker loop did not respond")

    @app.get("/tracker/current", response_model=TrackerSnapshot)
    async def get_current():
        """Current session (if any) and inventory."""
        return tracker.current()

    @app.post("/tracker/start", response_model=Session)
    async def start_session(request: StartRequested):
        """Start a session, closing any active one first."""
        return await run_command(request)

    @app.post("/tracker/stop", response_model=Optional[Session])
    async def stop_session(request: Optional[StopRequested] = None):
        """End the active session."""
        return await run_command(request or StopRequested())

    @app.post("/tracker/drop", response_model=Session)
    async def add_drop(request: AddDropRequested):
        """Record a drop by hand on the active session."""
        return await run_command(request)

    @app.post("/tracker/flush")
    async def flush_pending():
        """Retry persisting sessions whose handoff failed."""
        saved = await run_command(FlushRequested())
        return {"saved": saved, "pending": len(tracker.pending_sessions)}

    @app.get("/tracker/sessions", response_model=list[Session])
    def list_sessions():
        """Closed sessions from the local store."""
        if store is None:
            detail = "No local session store"
            if settings.session_sink_url:
                detail += f"; sessions are forwarded to {settings.session_sink_url}"
            raise HTTPException(status_code=404, detail=detail)
        try:
            return store.load_sessions()
        except Exception as e:
            logger.error("list_sessions_failed", error=str(e))
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/tracker/stream")
    async def stream_updates():
        """Server-Sent Events endpoint for live updates."""
        return EventSourceResponse(stream_events(tracker))

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        try:
            position = tracker.tailer.position
            return {
                "status": "healthy" if tracker.running else "starting",
                "service": "tracker",
                "log_path": str(tracker.tailer.path),
                "offset": position.offset,
                "lines_processed": tracker.lines_processed,
                "session_state": tracker.sessions.state.value,
                "pending_sessions": len(tracker.pending_sessions),
                "subscribers": tracker.broadcaster.subscriber_count
            }
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "error": str(e)}
            )

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
