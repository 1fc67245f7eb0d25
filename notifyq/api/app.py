"""FastAPI server for NotifyQ smart notifications"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from notifyq.api.routes.health import router as health_router
from notifyq.api.routes.notifications import router as notifications_router
from notifyq.config import ALLOWED_ORIGINS, API_HOST, API_PORT, APP_VERSION, is_development
from notifyq.infrastructure.analysis_budget import AnalysisBudget
from notifyq.infrastructure.database import init_database, reset_pool, validate_schema
from notifyq.notifications.cache import DecisionCache
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Initialize and validate the schema (idempotent) before serving."""
    try:
        logger.info("Initializing database schema...")
        init_database()
        validate_schema()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e
    except ValueError as e:
        logger.critical("Database schema invalid: %s", e)
        raise RuntimeError(f"Database validation failed: {e}") from e

    # Expired cache rows and old usage buckets are dead weight after a restart
    DecisionCache().purge_expired()
    AnalysisBudget.purge_old_usage()

    yield

    reset_pool()


app = FastAPI(title="NotifyQ API", version=APP_VERSION, lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Sanitized validation errors: field names only, never the validation rules.

    Side Effects:
        - Logs detailed validation errors for debugging
        - Increments api.validation_errors
    """
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


origins = list(ALLOWED_ORIGINS)
if is_development():
    origins.extend(["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

app.include_router(health_router)
app.include_router(notifications_router)


def main() -> None:
    import uvicorn

    uvicorn.run("notifyq.api.app:app", host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
