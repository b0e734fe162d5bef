"""
SIHA Backend — Analysis Service (Business Logic Orchestrator)
===============================================================

What:  Coordinates compress → forward → (optionally) persist for every
       analysis endpoint.
Why:   Keeps the workflow independent of HTTP so it can be tested without
       a server and reused by every route.
How:   Composes PayloadCompressor, a VitalsEstimator and MetricService.
Who:   Called by the analysis route handlers.

Orchestration Flow (frame sequence):
    ┌──────────┐    ┌──────────────┐    ┌──────────────┐    ┌──────────┐
    │  Frames  │───▶│  Compress    │───▶│  Vitals      │───▶│  Save    │
    │  (Route) │    │  (bounded)   │    │  service     │    │  (opt.)  │
    └──────────┘    └──────────────┘    └──────────────┘    └──────────┘

    PayloadTooLargeError is raised before any outbound call is made.
    The single-image path skips compression entirely.
"""

import logging
from typing import Any, Dict, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from siha.exceptions import ValidationError
from siha.schemas.analysis import AnalysisResponse, CompressionSummary
from siha.services.metric_service import MetricService, metric_service
from siha.services.payload_compressor import (
    CompressionResult,
    PayloadCompressor,
    build_payload,
    serialize_payload,
)
from siha.services.vitals_base import VitalsEstimator
from siha.services.vitals_service import vitals_service

logger = logging.getLogger(__name__)


def _summary(compression: CompressionResult) -> CompressionSummary:
    return CompressionSummary(
        original_frame_count=compression.original_frame_count,
        frame_count=len(compression.frames),
        payload_size_mb=round(compression.payload_size_mb, 2),
        attempts=compression.attempts,
        compressed=compression.compressed,
    )


class AnalysisService:
    """
    Stateless orchestrator; collaborators are injectable for tests.

    Args:
        estimator:  Vitals backend (defaults to the shared VitalsService).
        compressor: Frame payload compressor (defaults to the configured policy).
        metrics:    Metric persistence (defaults to the shared MetricService).
    """

    def __init__(
        self,
        estimator: Optional[VitalsEstimator] = None,
        compressor: Optional[PayloadCompressor] = None,
        metrics: Optional[MetricService] = None,
    ):
        self.estimator = estimator or vitals_service
        self.compressor = compressor or PayloadCompressor()
        self.metrics = metrics or metric_service

    async def analyze_image(
        self,
        db: AsyncSession,
        image: bytes,
        sensor_data: Optional[Dict[str, Any]] = None,
        save: bool = False,
        user_id: Optional[UUID] = None,
    ) -> AnalysisResponse:
        """Forward one still image as-is (no compression) and optionally save."""
        self._require_user_for_save(save, user_id)

        logger.info("Analyzing single image: %.2f KB", len(image) / 1024)
        result = await self.estimator.analyze_image(image, sensor_data)

        saved = await self._save_if_requested(db, save, user_id, result)
        return AnalysisResponse(result=result, saved_metrics=saved)

    async def analyze_video_frames(
        self,
        db: AsyncSession,
        frames: Sequence[bytes],
        sensor_data: Optional[Dict[str, Any]] = None,
        user_profile: Optional[Dict[str, Any]] = None,
        save: bool = False,
        user_id: Optional[UUID] = None,
    ) -> AnalysisResponse:
        """
        Compress a frame sequence to a bounded payload, then analyze it.

        Raises:
            EmptyInputError:         no frames
            FrameEncodeError:        a frame could not be re-encoded
            PayloadTooLargeError:    payload still too large; nothing was sent
            AIServiceError / CircuitBreakerOpenError: outbound call failed
            ValidationError:         save requested without user_id
        """
        self._require_user_for_save(save, user_id)

        compression = await self.compressor.compress(frames, sensor_data, user_profile)
        body = serialize_payload(build_payload(compression.frames, sensor_data, user_profile))

        logger.info(
            "Sending %d frames (%.2f MB) for video analysis",
            len(compression.frames),
            len(body) / (1024 * 1024),
        )
        result = await self.estimator.analyze_frames(body)

        saved = await self._save_if_requested(db, save, user_id, result)
        return AnalysisResponse(
            result=result,
            saved_metrics=saved,
            compression=_summary(compression),
        )

    async def analyze_video_file(
        self,
        db: AsyncSession,
        video: bytes,
        mime_type: str,
        sensor_data: Optional[Dict[str, Any]] = None,
        user_profile: Optional[Dict[str, Any]] = None,
        save: bool = False,
        user_id: Optional[UUID] = None,
    ) -> AnalysisResponse:
        self._require_user_for_save(save, user_id)

        result = await self.estimator.analyze_video_file(
            video, mime_type, sensor_data, user_profile
        )

        saved = await self._save_if_requested(db, save, user_id, result)
        return AnalysisResponse(result=result, saved_metrics=saved)

    @staticmethod
    def _require_user_for_save(save: bool, user_id: Optional[UUID]) -> None:
        # Checked up front so a doomed save never costs an analysis call
        if save and user_id is None:
            raise ValidationError(
                message="user_id is required when save=true",
                field="user_id",
            )

    async def _save_if_requested(
        self,
        db: AsyncSession,
        save: bool,
        user_id: Optional[UUID],
        result: Dict[str, Any],
    ) -> int:
        if not save or user_id is None:
            return 0
        return await self.metrics.save_vitals(db, user_id, result)


# ── Singleton Instance ────────────────────────────────────────────────────
analysis_service = AnalysisService()
