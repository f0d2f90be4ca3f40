"""
Narrative Engine - long-form novel generation with narrative continuity
Main FastAPI Application
"""
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from narrative_engine.api.v1 import api_router
from narrative_engine.core.config import settings
from narrative_engine.db.base import Base
from narrative_engine.db.session import AsyncSessionLocal, engine
from narrative_engine.domains.writing.infrastructure.repositories import NovelRepository
from narrative_engine.infrastructure.observability import (
    METRICS_CONTENT_TYPE,
    ObservabilityMiddleware,
    configure_structlog,
    render_metrics,
)
from narrative_engine.services.generation_pipeline import ChapterGenerationPipeline
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.retrieval_service import RetrievalContextProvider, VectorIndex
from narrative_engine.services.world_evolution import WorldEvolutionTracker
from narrative_engine.shared_kernel.exceptions import (
    DomainException,
    EntityNotFoundError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    force=True,
)
logger = logging.getLogger(__name__)
app_logger = logging.getLogger("narrative_engine")
app_logger.setLevel(settings.LOG_LEVEL)
app_logger.propagate = True

if settings.STRUCTURED_LOGGING_ENABLED:
    configure_structlog()


def build_pipeline() -> ChapterGenerationPipeline:
    """Wire the pipeline against the configured database, vector index and model."""
    repository = NovelRepository(AsyncSessionLocal)
    llm_client = DeepSeekClient()
    vector_index = VectorIndex(llm_client=llm_client)
    retriever = RetrievalContextProvider(vector_index)
    return ChapterGenerationPipeline(
        repository,
        llm_client=llm_client,
        retriever=retriever,
        world_tracker=WorldEvolutionTracker(repository, vector_index, llm_client=llm_client),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources."""
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")
    logger.info(f"Environment: {settings.APP_ENV}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    if settings.DEBUG:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline()

    yield

    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.wait_for_background(timeout=settings.BACKGROUND_DRAIN_TIMEOUT)
    await engine.dispose()
    logger.info(f"Shutting down {settings.PROJECT_NAME}")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Long-form novel generation with narrative continuity",
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
    openapi_url="/api/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.METRICS_ENABLED:
    app.add_middleware(ObservabilityMiddleware)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException):
    """Map domain errors to JSON responses"""
    status_code = 422
    if isinstance(exc, EntityNotFoundError):
        status_code = 404
    elif not isinstance(exc, ValidationError):
        status_code = 502
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code, "details": exc.details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}",
        exc_info=True,
        extra={
            "method": request.method,
            "url": str(request.url),
            "client_host": request.client.host if request.client else None,
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred",
            "error": str(exc) if settings.DEBUG else None,
            "type": type(exc).__name__ if settings.DEBUG else None
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "environment": settings.APP_ENV
    }


if settings.METRICS_ENABLED:
    @app.get(settings.METRICS_PATH, tags=["Metrics"])
    async def metrics():
        return Response(content=render_metrics(), media_type=METRICS_CONTENT_TYPE)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint"""
    return {
        "message": "Narrative Engine API",
        "version": settings.VERSION,
        "docs": "/api/docs" if settings.DEBUG else None
    }


# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "narrative_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
