"""FastAPI application entrypoint. No business logic; only wiring, lifespan and middleware."""

from dotenv import load_dotenv

load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1 import router as v1_router
from app.core.config import settings
from app.core.database import SessionLocal
from app.pipeline.engine import PipelineEngine
from app.services.analysis import OllamaAnalysisService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(pipeline_engine: PipelineEngine | None = None) -> FastAPI:
    """Build the app. Tests pass their own engine (stub analysis, in-memory store)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = pipeline_engine or PipelineEngine(
            SessionLocal, OllamaAnalysisService(settings), settings
        )
        app.state.engine = engine
        if engine.settings.PIPELINE_RESUME_ON_STARTUP:
            await engine.resume_unfinished()
        logger.info("Review pipeline started", extra={"model": settings.OLLAMA_MODEL})
        try:
            yield
        finally:
            await engine.shutdown()
            app.state.engine = None
            logger.info("Review pipeline stopped")

    application = FastAPI(
        title="SecPipe API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.APP_ENV == "dev" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(v1_router, prefix=settings.API_V1_PREFIX)

    @application.get("/")
    def root() -> dict[str, str]:
        """Root route; minimal payload for discovery."""
        return {"message": "SecPipe API"}

    return application


app = create_app()
