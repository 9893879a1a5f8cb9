import hmac
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes import router
from app.config import settings
from app.errors import (
    AlertNotFoundError,
    DuplicateRuleError,
    PipelineStoppedError,
    RuleNotFoundError,
    TransitionError,
    ValidationError,
)
from app.modules.pipeline import build_pipeline
from app.schemas.error import ErrorResponse

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the pipeline; drain it on shutdown."""
    pipeline = getattr(app.state, "pipeline", None) or build_pipeline(settings)
    app.state.pipeline = pipeline
    await pipeline.start()
    try:
        yield
    finally:
        await pipeline.stop()


app = FastAPI(
    title="Tidewatch",
    description="Streaming vessel telemetry anomaly detection and alerting.",
    version=VERSION,
    lifespan=lifespan,
)

# CORS: origins from settings (supports comma-separated env var)
cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Simple API key check. If TIDEWATCH_API_KEY is unset, all requests pass."""

    async def dispatch(self, request: Request, call_next):
        if settings.TIDEWATCH_API_KEY is not None:
            # Allow health check and OpenAPI docs without auth
            if request.url.path not in ("/health", "/docs", "/openapi.json", "/redoc"):
                api_key = request.headers.get("X-API-Key")
                if not hmac.compare_digest(api_key or "", settings.TIDEWATCH_API_KEY):
                    return JSONResponse(
                        status_code=401,
                        content={"detail": "Invalid or missing API key"},
                    )
        return await call_next(request)


app.add_middleware(APIKeyMiddleware)

# Rate limiting: 60/min default for routes decorated with @limiter.limit
limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(router, prefix="/api/v1")


# ── Structured error handlers ─────────────────────────────────────────────────

def _error(status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(AlertNotFoundError)
@app.exception_handler(RuleNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(404, "Not found", str(exc))


@app.exception_handler(TransitionError)
async def transition_error_handler(request: Request, exc: TransitionError):
    return _error(409, "Invalid transition", str(exc), current_status=exc.current_status)


@app.exception_handler(DuplicateRuleError)
async def duplicate_rule_handler(request: Request, exc: DuplicateRuleError):
    return _error(409, "Conflict", str(exc))


@app.exception_handler(ValidationError)
async def telemetry_validation_handler(request: Request, exc: ValidationError):
    return _error(422, "Invalid telemetry", str(exc), violations=exc.violations)


@app.exception_handler(PipelineStoppedError)
async def stopped_handler(request: Request, exc: PipelineStoppedError):
    return _error(503, "Unavailable", str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(422, "Validation error", str(exc))


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s:\n%s", request.method, request.url.path, traceback.format_exc())
    return _error(500, "Internal server error", "An unexpected error occurred.")


@app.get("/health")
def health(request: Request) -> dict:
    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "ok" if pipeline is not None and pipeline.running else "starting",
        "version": VERSION,
        "queue_depth": pipeline.queue_depth() if pipeline is not None else 0,
    }
