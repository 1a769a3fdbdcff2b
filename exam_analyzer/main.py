"""
FastAPI application entry point for the Exam Analyzer API.

This is the main application file that configures and runs the FastAPI server.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import close_db, get_session_factory, init_db
from .api.v0 import exam_papers as exam_papers_v0
from .services.analysis_provider import ExternalAnalysisProvider
from .services.record_store import InMemoryRecordStore, RecordStore, SqlRecordStore
from .utils.rate_limiter import build_ai_rate_limiter

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

APP_NAME = "Exam Analyzer API"
APP_VERSION = "0.1.0"


def setup_tracing():
    """Configure LangSmith tracing based on settings."""
    if (settings.langchain_tracing_v2 or "").lower() == "true":
        logger.info("Enabling LangSmith tracing...")
        os.environ["LANGCHAIN_TRACING_V2"] = "true"
        os.environ["LANGCHAIN_ENDPOINT"] = settings.langchain_endpoint
        if settings.langchain_api_key:
            os.environ["LANGCHAIN_API_KEY"] = settings.langchain_api_key
        if settings.langchain_project:
            os.environ["LANGCHAIN_PROJECT"] = settings.langchain_project
        logger.info(f"LangSmith project: {os.environ.get('LANGCHAIN_PROJECT')}")
    else:
        logger.info("LangSmith tracing is disabled")


def build_record_store() -> RecordStore:
    """Record store backend selected by settings.record_store."""
    if settings.record_store.lower() == "database":
        return SqlRecordStore(get_session_factory())
    return InMemoryRecordStore()


def create_app(
    store: Optional[RecordStore] = None,
    provider: Optional[ExternalAnalysisProvider] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        store: Record store to use; defaults to the configured backend
        provider: Analysis provider; resolved from settings on first AI call when None
    """
    use_database = store is None and settings.record_store.lower() == "database"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.
        Handles startup and shutdown events.
        """
        logger.info(f"Starting {APP_NAME}...")
        setup_tracing()

        if use_database:
            await init_db()

        yield

        logger.info(f"Shutting down {APP_NAME}...")
        await app.state.record_store.close()
        if use_database:
            await close_db()

    app = FastAPI(
        title=APP_NAME,
        description="""
        Exam paper grading API using OCR and LLM analysis.

        ## Features

        * **Upload**: Store exam-paper photos or PDFs
        * **Question Count**: Fast estimate of the number of questions
        * **Analysis**: OCR and per-question grading with feedback
        * **Mistake Notebook**: Wrong questions, flat or classified

        ## Endpoints

        All endpoints are under `/api/v0/`
        """,
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.record_store = store or build_record_store()
    app.state.analysis_provider = provider
    app.state.ai_rate_limiter = build_ai_rate_limiter()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routers
    app.include_router(exam_papers_v0.router)

    @app.get("/", tags=["health"])
    async def root():
        """Root endpoint - API information."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("exam_analyzer.main:app", host=settings.api_host, port=settings.api_port)
