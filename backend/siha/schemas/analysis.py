"""
SIHA Backend — Pydantic Request/Response Schemas
==================================================

What:  API contract for the vitals-analysis endpoints.
Why:   FastAPI validates request bodies and serializes responses from these
       models, and generates the OpenAPI docs from them.
How:   The vitals service speaks camelCase; models accept both camelCase and
       snake_case on input (populate_by_name) and keep unknown fields.
Who:   Routes and AnalysisService.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


# ══════════════════════════════════════════════════════════════════════════
# Vitals Service Result Models
# ══════════════════════════════════════════════════════════════════════════


class VitalSigns(BaseModel):
    """
    Vital-sign estimates returned by the vitals service.

    Every measurement is optional: the estimator only reports what it could
    extract from the frames it was given.
    """
    heart_rate: Optional[float] = Field(default=None, description="Beats per minute")
    stress_level: Optional[float] = Field(default=None, description="Stress score")
    oxygen_saturation: Optional[float] = Field(default=None, description="SpO2 in %")
    respiratory_rate: Optional[float] = Field(default=None, description="Breaths per minute")
    temperature: Optional[float] = Field(default=None, description="Degrees Celsius")
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    timestamp: Optional[datetime] = None

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }


class FaceAnalysisResult(BaseModel):
    """The `result` object of a vitals-service response."""
    face_detected: bool = False
    vitals: Optional[VitalSigns] = None

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class AnalyzeFramesRequest(BaseModel):
    """
    JSON body for POST /api/ai/analyze-video/base64.

    Frames are base64 strings, optionally prefixed with a data URL header
    (data:image/jpeg;base64,...).
    """
    frames: List[str] = Field(min_length=1, description="Base64-encoded frames in capture order")
    sensor_data: Optional[Dict[str, Any]] = Field(default=None, description="Device sensor hints")
    user_profile: Optional[Dict[str, Any]] = Field(default=None, description="Age, sex, ...")
    save: bool = Field(default=False, description="Persist the vitals as metric records")
    user_id: Optional[uuid.UUID] = Field(default=None, description="Owner of saved records")

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class CompressionSummary(BaseModel):
    """How the frame payload was shaped before it was sent."""
    original_frame_count: int = Field(description="Frames kept after the frame limit")
    frame_count: int = Field(description="Frames actually sent")
    payload_size_mb: float = Field(description="Exact size of the outbound body")
    attempts: int = Field(description="Re-encode passes performed")
    compressed: bool = Field(description="False when the payload was already small enough")


class AnalysisResponse(BaseModel):
    """
    Response of every analysis endpoint.

    `result` is passed through from the vitals service untouched, so fields
    this backend does not know about still reach the client.
    """
    success: bool = True
    result: Dict[str, Any] = Field(description="Vitals-service analysis result")
    saved_metrics: int = Field(default=0, description="Metric records written")
    compression: Optional[CompressionSummary] = None


class ErrorResponse(BaseModel):
    """
    Error body produced by the global exception handlers.

    Example:
        {
            "error": "payload_too_large",
            "message": "Payload too large (23.10 MB) after compression. ...",
            "details": {"size_mb": 23.1, "max_mb": 20.0},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    ai_service: str = Field(description="Vitals service: available, unavailable, circuit_open")
    circuit_breaker: str = Field(description="Circuit breaker state: closed, open, half_open")
    uptime_seconds: float = Field(description="Seconds since service started")
