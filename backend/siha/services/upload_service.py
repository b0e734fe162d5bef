"""
SIHA Backend — Upload Validation Service
==========================================

What:  Validates uploaded images, frame batches and video files, and decodes
       base64-encoded frames and form-encoded JSON fields.
Why:   Keeps request parsing rules in one place so every route applies the
       same limits before anything is compressed or forwarded.
How:   Content-type prefix checks, size limits from settings, base64 decoding
       with data-URL prefix stripping.
Who:   Called by the analysis routes before handing bytes to AnalysisService.

Validation order (cheapest first):
    1. Content type   (header only)
    2. Emptiness      (length only)
    3. Size limit     (length only)

Content is not sniffed here. Damaged frames are expected from phone captures
and are handled by the frame encoder's fallback strategies instead.
"""

import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from siha.config import settings
from siha.exceptions import ValidationError

logger = logging.getLogger(__name__)

_MB = 1024 * 1024

# data:image/jpeg;base64,... prefix sent by browser canvas captures
DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")


class UploadService:
    """Request-level input validation for the analysis endpoints."""

    def validate_image(
        self, filename: Optional[str], content_type: Optional[str], content: bytes
    ) -> bytes:
        """
        Validate one uploaded image (a still or a single video frame).

        Returns:
            The content unchanged, so calls can be chained in list comprehensions.

        Raises:
            ValidationError: not an image, empty, or over MAX_UPLOAD_SIZE
        """
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError(
                message="Only image files are allowed",
                field="image",
                context={"filename": filename, "content_type": content_type},
            )

        if not content:
            raise ValidationError(
                message=f"Uploaded image '{filename or 'unnamed'}' is empty",
                field="image",
            )

        if len(content) > settings.max_upload_size:
            max_mb = settings.max_upload_size / _MB
            raise ValidationError(
                message=(
                    f"Image size ({len(content) / _MB:.1f}MB) exceeds maximum "
                    f"of {max_mb:.0f}MB."
                ),
                field="image",
                context={"max_size_mb": max_mb, "actual_size": len(content)},
            )

        return content

    def validate_frame_count(self, count: int) -> None:
        """Reject empty batches and batches above MAX_UPLOAD_FRAMES."""
        if count == 0:
            raise ValidationError(message="No frames provided", field="frames")
        if count > settings.max_upload_frames:
            raise ValidationError(
                message=(
                    f"Too many frames ({count}). "
                    f"Maximum allowed per request: {settings.max_upload_frames}"
                ),
                field="frames",
                context={"count": count, "max": settings.max_upload_frames},
            )

    def validate_video(
        self, filename: Optional[str], content_type: Optional[str], content: bytes
    ) -> bytes:
        if not content_type or not content_type.startswith("video/"):
            raise ValidationError(
                message="Only video files are allowed",
                field="video",
                context={"filename": filename, "content_type": content_type},
            )

        if not content:
            raise ValidationError(message="Uploaded video is empty", field="video")

        if len(content) > settings.max_video_size:
            max_mb = settings.max_video_size / _MB
            raise ValidationError(
                message=(
                    f"Video size ({len(content) / _MB:.1f}MB) exceeds maximum "
                    f"of {max_mb:.0f}MB."
                ),
                field="video",
                context={"max_size_mb": max_mb, "actual_size": len(content)},
            )

        return content

    def decode_base64_frame(self, data: str, index: int = 0) -> bytes:
        """
        Decode one base64 frame, stripping an optional data-URL prefix.

        Raises:
            ValidationError: the string is not valid base64 or decodes to nothing
        """
        stripped = DATA_URL_PREFIX.sub("", data.strip(), count=1)
        try:
            decoded = base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(
                message=f"Frame {index + 1} is not valid base64",
                field="frames",
                context={"frame_index": index},
            )

        if not decoded:
            raise ValidationError(
                message=f"Frame {index + 1} is empty",
                field="frames",
                context={"frame_index": index},
            )
        return decoded

    def decode_base64_frames(self, frames: Sequence[str]) -> List[bytes]:
        self.validate_frame_count(len(frames))
        decoded = [self.decode_base64_frame(frame, i) for i, frame in enumerate(frames)]
        for i, frame in enumerate(decoded):
            if len(frame) > settings.max_upload_size:
                raise ValidationError(
                    message=(
                        f"Frame {i + 1} ({len(frame) / _MB:.1f}MB) exceeds maximum "
                        f"of {settings.max_upload_size / _MB:.0f}MB."
                    ),
                    field="frames",
                    context={"frame_index": i},
                )
        return decoded

    def parse_json_field(self, raw: Any, field: str) -> Optional[Dict[str, Any]]:
        """
        Leniently parse a form-encoded JSON object (sensor_data, user_profile).

        Malformed JSON is logged and treated as absent; sensor hints are
        optional and must not fail an otherwise valid analysis.
        """
        if raw is None or raw == "":
            return None
        if isinstance(raw, dict):
            return raw
        if not isinstance(raw, str):
            logger.warning("Ignoring %s of unexpected type %s", field, type(raw).__name__)
            return None

        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning("Failed to parse %s JSON: %s", field, e)
            return None

        if not isinstance(parsed, dict):
            logger.warning("Ignoring %s: expected a JSON object", field)
            return None
        return parsed


# ── Singleton Instance ────────────────────────────────────────────────────
upload_service = UploadService()
