"""ledgermatch - Reconciliation API

FastAPI application wiring:
- reconciliation router under /api/v1/reconciliation
- metrics, health and readiness endpoints
- request ID middleware and CORS
- exception handlers translating the matching errors to HTTP statuses

Run with:
    uvicorn ledgermatch.main:app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .matching.ports import ConflictError, MatcherError, NotFoundError, ValidationError
from .matching.router import router as reconciliation_router
from .observability.logging_config import configure_logging
from .observability.middleware import RequestIDMiddleware
from .observability.router import router as observability_router

settings = get_settings()
configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
_public_docs = settings.ENVIRONMENT != "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"ledgermatch API {API_VERSION} started ({settings.ENVIRONMENT})")
    yield
    logger.info("ledgermatch API stopped")


app = FastAPI(
    title="ledgermatch API",
    description="Bank transaction reconciliation with pattern learning",
    version=API_VERSION,
    docs_url="/docs" if _public_docs else None,
    redoc_url="/redoc" if _public_docs else None,
    openapi_url="/openapi.json" if _public_docs else None,
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in (settings.CORS_ORIGINS or "").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})


def _where(request: Request) -> str:
    return f"{request.method} {request.url.path}"


# Matching errors. Learning errors are absorbed by the match service and
# never reach these handlers.

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


@app.exception_handler(ValidationError)
async def matching_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", str(exc))


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    """Another operation holds the active match; the client should re-fetch."""
    logger.info(f"Match conflict on {_where(request)}: {exc}")
    return _error(status.HTTP_409_CONFLICT, "conflict", str(exc))


@app.exception_handler(MatcherError)
async def matcher_error_handler(request: Request, exc: MatcherError) -> JSONResponse:
    logger.error(f"Matching failed on {_where(request)}", exc_info=exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "matching_error", "Matching failed")


# Framework and storage errors

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Rejected request body on {_where(request)}")
    return _error(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_error",
        "Request validation failed",
        details=exc.errors(),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error on {_where(request)}", exc_info=exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "database_error", "A database error occurred")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception on {_where(request)}", exc_info=exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An unexpected error occurred")


app.include_router(observability_router)
app.include_router(reconciliation_router)


@app.get("/", include_in_schema=False)
def root():
    return {"name": "ledgermatch", "version": API_VERSION}
