# main.py
"""Main application with background task cleanup"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.endpoints import router
from config import settings
from core.exceptions import EmbeddingUnavailable, RAGError, ValidationError
from database.session import create_tables
from services.factory import get_job_store, get_task_runner
from services.ingestion import sweep_jobs_periodically
from services.logger_config import setup_logging

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting application...")

    await create_tables()
    logger.info("Database initialized")

    sweeper = asyncio.create_task(sweep_jobs_periodically(get_job_store()), name="job-sweeper")
    logger.info("Services initialized")
    yield

    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass

    # Let in-flight ingestion jobs and detached chat turns finish
    logger.info("Shutting down background tasks...")
    await get_task_runner().shutdown()

    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_TITLE,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.message})


@app.exception_handler(EmbeddingUnavailable)
async def embedding_unavailable_handler(request: Request, exc: EmbeddingUnavailable) -> JSONResponse:
    logger.error(f"[API] {request.url.path}: {exc.message}")
    return JSONResponse(status_code=503, content={"detail": "Embedding service unavailable"})


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    logger.error(f"[API] {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
