"""
main.py — Company Brain FastAPI application entry point.

Start with: uvicorn brain.main:app --reload --port 8000
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from brain.config import PipelineConfig, settings
from brain.errors import BrainError, UpstreamError

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (when RUN_MIGRATIONS=true)
      2. Database engine + session factory
      3. Redis answer cache (when REDIS_ENABLED=true)
      4. Embedding model + per-agent retriever
      5. Reranker registry, provider factory, credential cache
      6. LangGraph pipeline + ChatService
    Shutdown:
      1. Close Redis pool
      2. Dispose the engine
    """
    # --- 1. Database: run Alembic migrations ---
    if settings.run_migrations:
        package_dir = os.path.dirname(os.path.abspath(__file__))
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            capture_output=True,
            text=True,
            cwd=package_dir,
        )
        if result.returncode != 0:
            logger.error("Alembic migration failed:\n%s", result.stderr)
            raise RuntimeError(f"Alembic migration failed: {result.stderr}")
        msg = result.stdout.strip() or "No pending migrations"
        logger.info("Alembic: %s", msg)

    # --- 2. Engine + session factory ---
    from brain.database import build_engine, build_session_factory

    engine = build_engine(settings.database_url, echo=settings.debug)
    app.state.session_factory = build_session_factory(engine)

    # --- 3. Redis ---
    app.state.redis = None
    if settings.redis_enabled:
        from brain.cache import create_redis_pool

        app.state.redis = await create_redis_pool(settings.redis_url)

    # --- 4. Retriever; embedding model loaded once (slow: BGE-M3) ---
    from sentence_transformers import SentenceTransformer
    from brain.retrieval.retriever import VectorRetriever

    logger.info("Loading embedding model: %s", settings.embed_model)
    embedder = SentenceTransformer(settings.embed_model)
    app.state.retriever = VectorRetriever(Path(settings.index_dir), embedder)

    # --- 5. Shared pipeline collaborators ---
    from brain.chat.generator import ProviderFactory
    from brain.directory import AgentDirectory, CredentialCache
    from brain.retrieval.reranker import RerankerRegistry

    app.state.directory = AgentDirectory()
    app.state.credentials = CredentialCache(
        settings.encryption_secret,
        fallback_keys={"mistral": settings.mistral_api_key, "openai": settings.openai_api_key},
    )
    app.state.pipeline_config = PipelineConfig.from_settings(settings)

    # --- 6. LangGraph pipeline + ChatService ---
    from brain.chat.pipeline import ChatService
    from brain.graph.graph import build_graph
    from brain.graph.nodes import PipelineResources

    resources = PipelineResources(
        retriever=app.state.retriever,
        rerankers=RerankerRegistry(),
        providers=ProviderFactory(),
        credentials=app.state.credentials,
        redis=app.state.redis,
    )
    app.state.chat_service = ChatService(
        build_graph(resources), app.state.directory, app.state.pipeline_config
    )
    logger.info("Company Brain v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    await engine.dispose()
    logger.info("Company Brain shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Company Brain API",
    version=settings.app_version,
    description=(
        "Retrieval-augmented chat over per-agent knowledge bases: strategy routing, "
        "hybrid retrieval, reranking, evidence gating and grounded answers."
    ),
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Converts routing HTTPExceptions (unknown path 404, wrong method 405) to standard error format."""
    code_map = {
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(BrainError)
async def brain_error_handler(request: Request, exc: BrainError) -> JSONResponse:
    """
    Domain errors → their own status: 400 / 401 / 404, and 502 / 504 for
    upstream failures after retries.
    """
    if isinstance(exc, UpstreamError):
        logger.error(
            "Upstream failure on %s %s code=%s status=%d",
            request.method, request.url.path, exc.code, exc.status_code,
        )
    return _make_error_response(
        code=exc.code,
        message=exc.message,
        details=exc.details,
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from brain.chat.routes import router as chat_router
from brain.retrieval.routes import router as vectors_router

app.include_router(chat_router)
app.include_router(vectors_router)
