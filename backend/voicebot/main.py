"""
Voicebot service - FastAPI application.

Serves the voice WebSocket (/ws/voice), text turns, usage logs and the
stored reply audio.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from voicebot.api import logs, messages, voice
from voicebot.config import settings
from voicebot.dependencies import Services, build_services
from voicebot.errors import VoicebotError

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services (tests); production services are built
            on startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        current: Services = app.state.services

        logger.info(f"🚀 Voicebot starting ({settings.environment})")
        async with current.ledger_writer:
            current.voice_manager.start_idle_sweep()
            try:
                yield
            finally:
                logger.info("Voicebot shutting down")
                await current.voice_manager.shutdown()
        await current.aclose()

    app = FastAPI(
        title="Voicebot",
        description="Voice-enabled document chatbot: speech in, grounded answer out as speech.",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VoicebotError)
    async def voicebot_error_handler(request: Request, exc: VoicebotError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_connections": app.state.services.voice_manager.get_connection_count(),
        }

    @app.websocket("/ws/voice")
    async def voice_socket(websocket: WebSocket):
        await app.state.services.voice_manager.serve(websocket)

    app.include_router(messages.router)
    app.include_router(logs.router)
    app.include_router(voice.router)
    app.mount("/storage", StaticFiles(directory=settings.storage_dir, check_dir=False), name="storage")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voicebot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
