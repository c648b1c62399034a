import logging
import time
from contextlib import asynccontextmanager

try:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import callbacks, enrichment, health, research
from app.config import settings
from app.core.database import close_database, init_database
from app.observability.metrics import metrics
from app.services.research.errors import ResearchError, status_for_code
from app.services.research.runtime import shutdown_research_runtime

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    if sentry_sdk is None or not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            FastApiIntegration(auto_enabling_instrumentations=False),
            LoggingIntegration(level=logging.INFO),
        ],
        traces_sample_rate=0.1,
        environment=settings.environment,
    )
    logger.info("Sentry initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start optional integrations; close the research runtime and database on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    _init_sentry()
    await init_database()
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    await shutdown_research_runtime()
    await close_database()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Two-stage company and prospect research orchestration",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request with its status and latency."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": elapsed_ms,
        },
    )
    metrics.timing("http.latency_ms", elapsed_ms, tags={"status": response.status_code})
    return response


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


@app.exception_handler(ResearchError)
async def research_error_handler(request: Request, exc: ResearchError) -> JSONResponse:
    status_code = status_for_code(exc.code)
    log = logger.error if status_code >= 500 else logger.warning
    log("research.api_error", extra={"path": request.url.path, "code": exc.code})
    return _error_response(status_code, exc.code, str(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return _error_response(400, "400_INVALID_PAYLOAD", message or "Invalid request.")


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(callbacks.router, prefix="/functions", tags=["callbacks"])
app.include_router(research.router, prefix="/api/research", tags=["research"])
app.include_router(enrichment.router, tags=["enrichment"])
