from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from gold_advisor.engine import GoldEngine, StateStream
from gold_advisor.errors import ValidationError

LOGGER = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


def _sse_frame(state: Dict[str, Any]) -> str:
    return f"data: {json.dumps(state, separators=(',', ':'))}\n\n"


async def event_frames(
    engine: GoldEngine,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float = KEEPALIVE_SECONDS,
    max_frames: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield one SSE frame per published state; the first is the current state."""
    stream = StateStream()
    unsubscribe = engine.subscribe(stream.push)
    sent = 0
    try:
        while max_frames is None or sent < max_frames:
            if await is_disconnected():
                break
            try:
                state = await asyncio.wait_for(stream.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield _sse_frame(state)
            sent += 1
    finally:
        unsubscribe()
        if stream.dropped:
            LOGGER.debug("event stream dropped %d stale frame(s)", stream.dropped)


def build_router(engine: GoldEngine) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["engine"])

    @router.get("/health")
    async def health():
        return {"ok": True, "status": engine.status}

    @router.get("/state")
    async def state():
        return engine.get_state()

    @router.get("/profile")
    async def get_profile():
        return engine.get_profile().to_dict()

    @router.put("/profile")
    async def put_profile(patch: Dict[str, Any] = Body(...)):
        profile = await engine.update_profile(patch)
        return profile.to_dict()

    @router.get("/settings")
    async def get_settings():
        return engine.get_settings().to_dict()

    @router.put("/settings")
    async def put_settings(patch: Dict[str, Any] = Body(...)):
        settings = await engine.update_settings(patch)
        return settings.to_dict()

    @router.post("/actions/fetch")
    async def force_fetch():
        ran = await engine.force_tick()
        return {"ran": ran, "state": engine.get_state()}

    @router.get("/events")
    async def events(request: Request):
        return StreamingResponse(
            event_frames(engine, request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return router


def create_app(engine: GoldEngine, manage_lifecycle: bool = True) -> FastAPI:
    """FastAPI app around ``engine``.

    With ``manage_lifecycle`` the engine is started and closed with the
    app lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await engine.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await engine.close()

    app = FastAPI(title="Gold Advisor", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(build_router(engine))

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    return app
