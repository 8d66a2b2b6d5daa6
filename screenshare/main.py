"""FastAPI application hosting the screen-share signaling relay."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .core.config import settings
from .routers import signaling as signaling_router
from .services.rooms import RoomRegistry
from .services.signaling import SignalingRelay

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the room expiry sweep for as long as the app is up."""

    relay: SignalingRelay = app.state.relay
    sweeper = asyncio.create_task(
        relay.run_sweeper(settings.room_sweep_interval_seconds, settings.room_max_age_seconds)
    )
    logger.info(
        "Room sweep every %ss, max age %ss",
        settings.room_sweep_interval_seconds,
        settings.room_max_age_seconds,
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await relay.drain()


def create_app(relay: SignalingRelay | None = None) -> FastAPI:
    """Build the app around ``relay`` (a fresh one by default)."""

    application = FastAPI(title="Screen Share Signaling", version="0.1.0", lifespan=lifespan)
    application.state.relay = relay or SignalingRelay(RoomRegistry())

    if settings.cors_allow_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    application.include_router(signaling_router.router)

    @application.get("/api/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Simple liveness probe."""

        return {"status": "ok"}

    @application.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    return application


app = create_app()
