"""
SIHA Backend — FastAPI Application Factory
============================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() assembles middleware, exception handlers and routers.
Who:   uvicorn (uvicorn siha.main:app) and the test client.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware: Request ID → Logging → GZip → CORS          │
    │                                                          │
    │  Routes:                                                 │
    │   POST /api/ai/analyze-image        GET /health          │
    │   POST /api/ai/analyze-video                             │
    │   POST /api/ai/analyze-video/base64                      │
    │   POST /api/ai/analyze-video-file                        │
    │                                                          │
    │  Exception Handlers:                                     │
    │   Validation→400  FrameEncode→422  PayloadTooLarge→413   │
    │   AIService/CircuitOpen→503  Database→500                │
    └──────────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from siha import __version__
from siha.config import settings
from siha.database import dispose_engine
from siha.exceptions import (
    AIServiceError,
    CircuitBreakerOpenError,
    DatabaseError,
    FrameEncodeError,
    PayloadTooLargeError,
    SihaError,
    ValidationError,
)
from siha.middleware.logging import RequestLoggingMiddleware
from siha.middleware.request_id import RequestIDMiddleware, request_id_var
from siha.routes import analysis, health

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Format: 2024-01-15T12:00:00 [INFO] siha.services.payload_compressor: ...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Per-request chatter from these libraries drowns out the compressor logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("SIHA vitals backend starting up...")

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: /health reports the broken dependency
        logger.error("Configuration error: %s", e)

    logger.info(
        "Frame payload limits: max %d frames, compress above %.0f MB, "
        "target %.0f MB, hard limit %.0f MB",
        settings.max_frames,
        settings.compression_threshold_mb,
        settings.target_payload_mb,
        settings.max_payload_mb,
    )
    logger.info("Vitals service: %s", settings.ai_service_url)
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("SIHA vitals backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int, error: str, exc: SihaError, headers=None, details=True
) -> JSONResponse:
    content = {
        "error": error,
        "message": exc.message,
        "request_id": request_id_var.get(""),
    }
    if details:
        content["details"] = exc.context
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the SihaError hierarchy to HTTP responses.

        ValidationError / EmptyInputError → 400
        PayloadTooLargeError              → 413
        FrameEncodeError                  → 422
        CircuitBreakerOpenError           → 503 (Retry-After)
        AIServiceError                    → 503
        DatabaseError                     → 500 (generic message)
        SihaError / Exception             → 500

    Responses never include stack traces; those are logged server-side.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "validation_error", exc)

    @app.exception_handler(PayloadTooLargeError)
    async def handle_payload_too_large(request: Request, exc: PayloadTooLargeError):
        logger.warning("[%s] %s", request_id_var.get(""), exc.message)
        return _error_response(413, "payload_too_large", exc)

    @app.exception_handler(FrameEncodeError)
    async def handle_frame_encode_error(request: Request, exc: FrameEncodeError):
        logger.warning(
            "[%s] Frame %d could not be re-encoded: %s",
            request_id_var.get(""),
            exc.frame_index,
            exc.context.get("failures"),
        )
        return JSONResponse(
            status_code=422,
            content={
                "error": "frame_encode_error",
                "message": exc.message,
                "details": {"frame_index": exc.frame_index},
                "request_id": request_id_var.get(""),
            },
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc,
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(AIServiceError)
    async def handle_ai_service_error(request: Request, exc: AIServiceError):
        logger.error("[%s] AI service error: %s", request_id_var.get(""), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(503, "ai_service_error", exc, headers=headers)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        rid = request_id_var.get("")
        logger.error("[%s] Database error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "message": "An internal error occurred. Please try again later.",
                "request_id": rid,
            },
        )

    @app.exception_handler(SihaError)
    async def handle_siha_error(request: Request, exc: SihaError):
        logger.error("[%s] %s: %s", request_id_var.get(""), type(exc).__name__, exc.message)
        return _error_response(500, "server_error", exc, details=False)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="SIHA Vitals API",
        description=(
            "Estimates heart rate, SpO2, stress and respiratory rate from face "
            "images and frame sequences. Frame payloads are compressed to stay "
            "under the vitals service's request size limit."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(analysis.router)
    app.include_router(health.router)

    return app


app = create_app()
