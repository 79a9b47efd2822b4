"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from prometheus_fastapi_instrumentator import Instrumentator

from examprep.core.config import settings
from examprep.core.database import init_db, close_db
from examprep.core.errors import ExamError
from examprep.api.auth import router as auth_router
from examprep.api.exam import router as exam_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Sentry if configured
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    logger.info(f"Starting {settings.APP_NAME}...")
    if settings.AUTO_CREATE_TABLES:
        init_db()
    yield
    logger.info(f"Shutting down {settings.APP_NAME}...")
    close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

if settings.PROMETHEUS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


def _error(status_code: int, message, error_type: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "status_code": status_code, **extra}}
    )


@app.exception_handler(ExamError)
async def exam_error_handler(request: Request, exc: ExamError):
    """Handle domain errors raised by the exam services."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type} on {request.method} {request.url.path}: {exc.message}")
    return _error(exc.status_code, exc.message, exc.error_type)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return _error(exc.status_code, exc.detail, "http_error")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and non-integer ids are client errors."""
    return _error(status.HTTP_400_BAD_REQUEST, "Validation error", "validation_error",
                  details=jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    if settings.is_production():
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal error occurred", "internal_error")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), "internal_error")


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "version": settings.APP_VERSION, "environment": settings.ENVIRONMENT}


app.include_router(auth_router, prefix=f"{settings.API_PREFIX}/auth", tags=["auth"])
app.include_router(exam_router, prefix=f"{settings.API_PREFIX}/exam", tags=["exam"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("examprep.main:app", host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
