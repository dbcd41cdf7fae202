"""Application factory for the roleplay voice service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat_client import ChatCompletionsClient
from .config import get_settings
from .routers.roleplay import router as roleplay_router
from .services.dialogue_engine import DialogueEngine
from .services.stt_service import DeepgramTranscriber
from .services.tts import OpenAISpeechSynthesizer
from .services.voice_session import SessionRegistry


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("roleplay").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # httpx logs every streamed request at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app() -> FastAPI:
    _configure_logging()

    settings = get_settings()

    chat_client = ChatCompletionsClient(settings)
    synthesizer = OpenAISpeechSynthesizer(settings)
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if len(registry):
                logging.info("Shutting down with %d active sessions", len(registry))
            try:
                await chat_client.aclose()
            except Exception as exc:
                logging.warning("Error closing chat client: %s", exc)
            try:
                await synthesizer.aclose()
            except Exception as exc:
                logging.warning("Error closing speech client: %s", exc)

    app = FastAPI(
        title="Sales Roleplay Voice Backend",
        version="0.1.0",
        description="Real-time voice roleplay with a simulated buyer and coaching feedback.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_registry = registry
    app.state.dialogue_engine = DialogueEngine(chat_client, synthesizer)
    app.state.transcriber = DeepgramTranscriber(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(roleplay_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | int]:
        return {
            "status": "ok",
            "active_sessions": len(registry),
        }

    return app


__all__ = ["create_app"]
