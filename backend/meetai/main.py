from __future__ import annotations

from typing import Callable, Optional
import threading

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
import logging
from logging.handlers import RotatingFileHandler

from meetai.config import Settings
from meetai.errors import (
    ChatNotAvailableError,
    InvariantViolationError,
    LLMProviderError,
    NotFoundError,
    SignatureVerificationError,
    TransitionNotAllowedError,
)
from meetai.models import base as db
from meetai.api.agents import router as agents_router
from meetai.api.dashboard import router as dashboard_router
from meetai.api.meetings import router as meetings_router
from meetai.api.stream import router as stream_router
from meetai.api.webhooks import router as webhooks_router
from meetai.services.llm.base import LLMProvider
from meetai.services.llm.factory import build_llm_provider
from meetai.services.meeting_jobs import MeetingJobs
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.transcription_service import fetch_transcript_from_url


def _setup_logging(settings: Settings) -> None:
    try:
        settings.ensure_dirs()
        log_file = settings.logs_dir / "backend.log"
        handler = RotatingFileHandler(str(log_file), maxBytes=5_000_000, backupCount=2)
        formatter = logging.Formatter(
            fmt='%(asctime)s %(levelname)s %(name)s %(message)s'
        )
        handler.setFormatter(formatter)
        root = logging.getLogger()
        if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
            root.addHandler(handler)
        root.setLevel(logging.INFO)
    except OSError:
        logging.getLogger("meetai").warning("File logging unavailable; using default handlers")


def _lazy_llm_factory(settings: Settings) -> Callable[[], LLMProvider]:
    # Built on first use so the API starts without LLM credentials
    lock = threading.Lock()
    cache: dict[str, LLMProvider] = {}

    def factory() -> LLMProvider:
        with lock:
            if "llm" not in cache:
                cache["llm"] = build_llm_provider(settings)
            return cache["llm"]

    return factory


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    llm_factory: Optional[Callable[[], LLMProvider]] = None,
    fetcher: Optional[Callable[..., dict]] = None,
) -> FastAPI:
    settings = settings or Settings()
    engine = engine or db.make_engine(settings.resolved_database_url())
    llm_factory = llm_factory or _lazy_llm_factory(settings)

    app = FastAPI(title="Meet.ai Backend", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orchestrator = PipelineOrchestrator(engine, settings)
    MeetingJobs(engine, settings, llm_factory, fetcher or fetch_transcript_from_url).register(orchestrator)

    app.state.settings = settings
    app.state.engine = engine
    app.state.llm_factory = llm_factory
    app.state.orchestrator = orchestrator

    @app.on_event("startup")
    def _startup() -> None:
        _setup_logging(settings)
        db.init_db(engine)
        orchestrator.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        orchestrator.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(agents_router)
    app.include_router(meetings_router)
    app.include_router(dashboard_router)
    app.include_router(stream_router)
    app.include_router(webhooks_router)

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):  # type: ignore[override]
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(TransitionNotAllowedError)
    async def _transition_handler(request: Request, exc: TransitionNotAllowedError):  # type: ignore[override]
        return JSONResponse(
            status_code=409,
            content={"error": str(exc), "status": exc.current, "target": exc.target},
        )

    @app.exception_handler(InvariantViolationError)
    async def _invariant_handler(request: Request, exc: InvariantViolationError):  # type: ignore[override]
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(ChatNotAvailableError)
    async def _chat_unavailable_handler(request: Request, exc: ChatNotAvailableError):  # type: ignore[override]
        return JSONResponse(status_code=400, content={"error": str(exc), "status": exc.status})

    @app.exception_handler(SignatureVerificationError)
    async def _signature_handler(request: Request, exc: SignatureVerificationError):  # type: ignore[override]
        logging.getLogger("meetai.webhooks").warning("Rejected webhook: %s", exc)
        return JSONResponse(status_code=401, content={"error": str(exc)})

    @app.exception_handler(LLMProviderError)
    async def _llm_handler(request: Request, exc: LLMProviderError):  # type: ignore[override]
        logging.getLogger("meetai.api").error("LLM provider failed: %s", exc)
        return JSONResponse(status_code=502, content={"error": "Failed to process chat message"})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logging.getLogger("meetai").exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    return app


app = create_app()


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Meet.ai Backend Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    args = parser.parse_args()

    uvicorn.run(
        "meetai.main:app" if args.reload else app,
        host=args.host,
        port=args.port,
        reload=args.reload
    )
