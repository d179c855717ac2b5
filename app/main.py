# =============================================================================
# FastAPI Application — Audit Document Pipeline
# =============================================================================
#
# Wires the routers, logging and the PipelineError → HTTP mapping.
#
#   uvicorn app.main:app --reload
#
# Every service failure is a PipelineError subclass carrying its HTTP
# status and a machine-readable code; one exception handler turns it into
# an ErrorResponse body. Route handlers never build error responses.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api import analysis, ask, documents, reports
from app.config import settings
from app.db.engine import async_engine
from app.db.models import CORE_TABLES, Base
from app.errors import PipelineError
from app.models.responses import ErrorResponse

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)

    # Create tables if they don't exist (dev convenience)
    if settings.debug:
        use_pgvector = settings.index_backend == "pgvector"
        tables = None if use_pgvector else CORE_TABLES
        try:
            async with async_engine.begin() as conn:
                if use_pgvector:
                    await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                await conn.run_sync(Base.metadata.create_all, tables=tables)
            logger.info("Database tables ensured")
        except Exception as exc:
            logger.warning("Could not create tables: %s", exc)

    yield

    await async_engine.dispose()
    logger.info("Shut down complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Ingests audit documents into projects, analyzes them with "
        "extraction and LLM summarization, and answers questions over them."
    ),
    lifespan=lifespan,
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    body = ErrorResponse(error=exc.code, message=exc.message, stage=exc.stage)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


app.include_router(reports.router)
app.include_router(documents.router)
app.include_router(analysis.router)
app.include_router(ask.router)
