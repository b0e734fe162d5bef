"""
SIHA Backend — Health Check Route
===================================

What:  Health endpoint for container probes and load balancers.
How:   Runs SELECT 1 against the database, reports the vitals-service
       circuit breaker state and pings the service when the breaker is not open.

Status levels:
    - healthy:   database and vitals service reachable
    - degraded:  vitals service unreachable or circuit open
    - unhealthy: database unreachable
"""

import logging
import time

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from siha import __version__
from siha.database import engine
from siha.schemas.analysis import HealthResponse
from siha.services.vitals_service import BreakerState, vitals_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check() -> HealthResponse:
    db_status = "connected"
    ai_status = "available"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", e)

    # ── Check Vitals Service ──────────────────────────────────────────────
    breaker = vitals_service.circuit_breaker
    if breaker.state == BreakerState.OPEN:
        ai_status = "circuit_open"
    elif not await vitals_service.health_check():
        ai_status = "unavailable"

    if ai_status != "available" and overall != "unhealthy":
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        ai_service=ai_status,
        circuit_breaker=breaker.state.value,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
