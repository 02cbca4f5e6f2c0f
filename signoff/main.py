from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from signoff.config import settings
from signoff.database import init_db, close_db, get_db
from signoff.dependencies import approval_cache, broadcast_hub, notifications
from signoff.exceptions import InfrastructureError, WorkflowError
from signoff.logging_config import setup_logging
from signoff.middleware.correlation import CorrelationIdMiddleware
from signoff.schemas.common import error_content
from signoff.services.cache import close_cache_client
from signoff.services.email_service import close_http_client

# Import models so they are registered with Base.metadata
import signoff.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_signoff", env=settings.ENVIRONMENT, cache=settings.CACHE_BACKEND)
    await init_db()
    yield
    # let queued notification deliveries finish before the clients go away
    await notifications.drain()
    await close_http_client()
    await close_cache_client()
    await close_db()
    logger.info("stopped_signoff")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Exception handlers. Every error leaves as
# {"error": {"code": "...", "message": "...", "details": ...}}
# ---------------------------------------------------------------------------

@app.exception_handler(WorkflowError)
async def workflow_exception_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log("workflow_error", code=exc.code, status_code=exc.status_code, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_content(exc.code, exc.message, exc.details or None),
    )


@app.exception_handler(DBAPIError)
async def store_exception_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    logger.error("store_unavailable", error=str(exc.orig or exc))
    wrapped = InfrastructureError("The approval store is unavailable")
    return JSONResponse(
        status_code=wrapped.status_code,
        content=error_content(wrapped.code, wrapped.message),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content = detail
    elif isinstance(detail, dict):
        content = {"error": detail}
    else:
        content = error_content("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_content(
            "VALIDATION_ERROR", "Request validation failed", jsonable_encoder(exc.errors())
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_content("INTERNAL_ERROR", "Unexpected server error"),
    )


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    checks = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        checks["db"] = "error"

    try:
        sentinel = "approvals-health:check"
        await approval_cache.backend.set(sentinel, "1", 5)
        await approval_cache.backend.get(sentinel)
        checks["cache"] = "ok"
    except Exception as e:
        logger.error("health_check_cache_failed", error=str(e))
        checks["cache"] = "error"

    healthy = all(v == "ok" for v in checks.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": settings.APP_VERSION,
        "checks": checks,
        "websocket_listeners": broadcast_hub.listener_count(),
    }


# --- Routers ---
from signoff.routes.approvals import router as approvals_router  # noqa: E402
from signoff.routes.realtime import router as realtime_router  # noqa: E402
from signoff.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(approvals_router, prefix="/api/v1/approvals", tags=["Approvals"])
app.include_router(realtime_router, tags=["Realtime"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
