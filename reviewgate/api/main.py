"""
HTTP surface for the review engine.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .reviews import router as reviews_router
from .schemas import HealthResponse
from ..core import heartbeat
from ..core.config import VERSION, debug_enabled, is_scheduler_enabled
from ..core.db import health_check
from ..core.engine import get_engine
from ..core.errors import (
    DependencyUnavailable,
    IllegalTransition,
    InvalidRequest,
    NotFound,
    ReviewGateError,
    StaleStep,
)
from ..util.logging import logger

ERROR_STATUS = {
    InvalidRequest: 422,
    NotFound: 404,
    IllegalTransition: 409,
    StaleStep: 409,
    DependencyUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    if is_scheduler_enabled():
        engine.start_scheduler(background=True)
    yield
    heartbeat.stop()


# Initialize the FastAPI application
app = FastAPI(
    title="ReviewGate API",
    version=VERSION,
    description="Human review and approval workflow for AI-generated SQL",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

# Reviewer UI runs on a separate dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reviews_router)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check database and scheduler health."""
    db_health = health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        scheduler=heartbeat.get_status(),
    )


@app.exception_handler(ReviewGateError)
async def review_error_handler(request, exc: ReviewGateError):
    """Map engine errors to HTTP status codes."""
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content)
