"""FastAPI application for the two-party call signaling relay."""
from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import Settings, settings as default_settings
from .core.logging_config import configure_logging
from .routers import rooms as rooms_router
from .routers import rtc as rtc_router
from .routers import signaling as signaling_router
from .services.signaling import SignalingHub

logger = logging.getLogger(__name__)


def create_app(config: Settings | None = None) -> FastAPI:
    """Build an application with its own, empty room table."""

    config = config or default_settings
    application = FastAPI(title="Call Relay API", version="0.1.0")
    application.state.hub = SignalingHub()

    if config.cors_allow_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    application.include_router(signaling_router.router, tags=["signaling"])
    application.include_router(rooms_router.router, prefix="/api/rooms", tags=["rooms"])
    application.include_router(rtc_router.router, prefix="/api/rtc", tags=["rtc"])

    @application.get("/api/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Simple liveness probe."""

        return {"status": "ok"}

    @application.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    @application.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
    async def robots() -> PlainTextResponse:
        """Serve a minimal robots.txt to avoid 404 noise."""

        return PlainTextResponse("User-agent: *\nDisallow:")

    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the relay with uvicorn."""

    configure_logging(default_settings.log_level)
    logger.info("Starting call relay on %s:%d", default_settings.host, default_settings.port)
    uvicorn.run(app, host=default_settings.host, port=default_settings.port, log_config=None)


if __name__ == "__main__":
    run()
