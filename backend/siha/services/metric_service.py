"""
SIHA Backend — Metric Persistence Service
===========================================

What:  Turns a vitals-service result into MetricRecord rows.
Why:   Clients can ask for an analysis to be saved to the user's health
       history (save=true) instead of making a second request.
How:   One record per vital present in the result, added in a single flush.
Who:   Called by AnalysisService after a successful analysis.

Vital → metric mapping:
    heartRate        → heart_rate         bpm
    stressLevel      → stress_level       score
    oxygenSaturation → oxygen_saturation  %
    respiratoryRate  → respiratory_rate   breaths/min
    temperature      → temperature        °C
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from siha.exceptions import AIServiceError, DatabaseError
from siha.models.metric_record import MetricRecord
from siha.schemas.analysis import FaceAnalysisResult, VitalSigns

logger = logging.getLogger(__name__)

METRIC_SOURCE = "ai_face_analysis"

# (attribute on VitalSigns, metric_type, unit)
VITAL_METRICS = (
    ("heart_rate", "heart_rate", "bpm"),
    ("stress_level", "stress_level", "score"),
    ("oxygen_saturation", "oxygen_saturation", "%"),
    ("respiratory_rate", "respiratory_rate", "breaths/min"),
    ("temperature", "temperature", "°C"),
)


def _as_decimal(value: float, places: str = "0.01") -> Decimal:
    return Decimal(str(value)).quantize(Decimal(places))


def _start_time(vitals: VitalSigns) -> datetime:
    if vitals.timestamp is None:
        return datetime.now(timezone.utc)
    if vitals.timestamp.tzinfo is None:
        return vitals.timestamp.replace(tzinfo=timezone.utc)
    return vitals.timestamp


class MetricService:
    """Builds and stores metric records for analysis results."""

    def build_records(
        self,
        user_id: UUID,
        result: Dict[str, Any],
        device_id: Optional[UUID] = None,
    ) -> List[MetricRecord]:
        """
        Metric records for every vital in `result`.

        Returns an empty list when no face was detected or no vitals came back.

        Raises:
            AIServiceError: the result does not have the expected shape
        """
        try:
            analysis = FaceAnalysisResult.model_validate(result)
        except PydanticValidationError as e:
            logger.error("Unexpected analysis result shape: %s", e)
            raise AIServiceError(
                message="Vitals analysis returned an unexpected result",
                context={"errors": e.error_count()},
            )

        if not analysis.face_detected or analysis.vitals is None:
            logger.info("No face detected or no vitals in result; nothing to save")
            return []

        vitals = analysis.vitals
        start_time = _start_time(vitals)
        confidence = (
            _as_decimal(vitals.confidence) if vitals.confidence is not None else None
        )

        records = []
        for attribute, metric_type, unit in VITAL_METRICS:
            value = getattr(vitals, attribute)
            if value is None:
                continue
            records.append(
                MetricRecord(
                    user_id=user_id,
                    device_id=device_id,
                    metric_type=metric_type,
                    value=_as_decimal(value),
                    unit=unit,
                    start_time=start_time,
                    source=METRIC_SOURCE,
                    confidence=confidence,
                )
            )
        return records

    async def save_vitals(
        self,
        db: AsyncSession,
        user_id: UUID,
        result: Dict[str, Any],
        device_id: Optional[UUID] = None,
    ) -> int:
        """
        Persist the vitals in `result` for `user_id`.

        The rows are flushed, not committed; get_db_session commits when the
        request finishes.

        Returns:
            Number of records written.

        Raises:
            DatabaseError: the flush failed
        """
        records = self.build_records(user_id, result, device_id)
        if not records:
            return 0

        try:
            db.add_all(records)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to save %d metric records: %s", len(records), e)
            raise DatabaseError(
                message="Could not save the analysis results. Please try again.",
                context={"error_type": type(e).__name__, "user_id": str(user_id)},
            )

        logger.info(
            "Saved %d metric records for user %s (%s)",
            len(records),
            user_id,
            ", ".join(r.metric_type for r in records),
        )
        return len(records)


metric_service = MetricService()
