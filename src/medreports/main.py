"""
MedReports FastAPI Application Entry Point.

Builds the reporting API: report store, schedules, templates and exports
under the versioned prefix, with one error envelope for every failure.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medreports.api.v1 import router as v1_router
from medreports.core.config import settings
from medreports.core.exceptions import ReportingError
from medreports.core.logging import get_logger, setup_logging
from medreports.db.session import close_db, get_db_context, init_db
from medreports.services.report_generation import ReportGenerator

logger = get_logger(__name__)


async def prepare_storage() -> None:
    """Create output directories and fail generations a crashed worker left behind."""
    for directory in (
        settings.report_output_dir,
        settings.export_output_dir,
        settings.report_export_dir,
    ):
        Path(directory).mkdir(parents=True, exist_ok=True)

    async with get_db_context() as db:
        swept = await ReportGenerator().fail_stale_generations(db)
    if swept:
        logger.warning(f"Marked {swept} stale generation(s) as failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect the database and storage on startup; release them on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")

    try:
        await init_db()
        await prepare_storage()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down...")
    await close_db()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging(
        log_level=settings.log_level,
        json_logs=settings.environment == "production",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Report generation, scheduling, templates and data exports",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        # Downloads name their file in this header
        expose_headers=["Content-Disposition"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(v1_router, prefix=settings.api_v1_prefix)
    return app


def _field_path(loc: tuple[Any, ...]) -> str:
    """Dotted path of a request error, relative to the body or query."""
    parts = [str(p) for p in loc]
    if parts and parts[0] in {"body", "query", "path", "header"}:
        parts = parts[1:]
    return ".".join(parts) or "body"


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers."""

    @app.exception_handler(ReportingError)
    async def reporting_exception_handler(
        request: Request,
        exc: ReportingError,
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
                extra={"details": exc.details},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Malformed requests are rejected with every offending field listed."""
        errors = [
            {
                "field": _field_path(error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": {"errors": errors},
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")

        if settings.environment == "production":
            message = "An unexpected error occurred"
        else:
            message = str(exc)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_ERROR", "message": message}},
        )


app = create_app()
