"""
SIHA Backend — Adaptive Frame Payload Compressor
==================================================

What:  Shrinks a batch of captured video frames into a JSON payload that fits
       under a hard size ceiling before it is sent to the vitals service.
Why:   The vitals service takes the whole frame sequence in one request body.
       Raw phone captures routinely exceed what that endpoint will accept.
How:   A feedback loop over three knobs: JPEG quality, resolution and frame
       count. Each attempt re-encodes every frame against one rung of a
       compression ladder, then re-measures the exact payload size.
Who:   Called by AnalysisService before forwarding frames.

Control flow:
    Measure
      ├── size <= threshold ───────────────────────────▶ Done (untouched)
      ▼
    Compress (attempt 1..N)
      │   attempt 1 rung = picked from the initial size band
      │   attempt k rung = attempt 1 rung + (k - 1), clamped to the ladder
      ▼
    Measure after attempt
      ├── size <= target ──────────────────────────────▶ Done
      ├── ratio < low-effectiveness, attempt >= 2 ─────▶ cut tail to min_frames
      └── attempts left ───────────────────────────────▶ Compress
      ▼
    Escalate
      ├── size > max: cut tail to a size-dependent frame count, re-measure
      ├── target < size <= max ────────────────────────▶ Done (warning)
      └── still > max ─────────────────────────────────▶ PayloadTooLargeError

Frame order is never changed. Frames are only ever removed from the tail,
because the earliest frames anchor the temporal signal.
"""

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from siha.config import CompressionProfile, Settings, SizeBand, settings
from siha.exceptions import EmptyInputError, PayloadTooLargeError
from siha.services.frame_encoder import FrameEncoder

logger = logging.getLogger(__name__)

MB = 1024 * 1024


# ══════════════════════════════════════════════════════════════════════════
# Frame Count Limiter & Payload Size Estimator
# ══════════════════════════════════════════════════════════════════════════

def limit_frames(
    frames: Sequence[bytes],
    max_frames: int,
    log: Optional[logging.Logger] = None,
) -> List[bytes]:
    """Keep the first `max_frames` frames in capture order; drop the rest."""
    log = log or logger
    if len(frames) > max_frames:
        log.warning(
            "Frame count (%d) exceeds maximum (%d). Using first %d frames.",
            len(frames),
            max_frames,
            max_frames,
        )
    return list(frames[:max_frames])


def build_payload(
    frames: Sequence[bytes],
    sensor_data: Optional[Dict[str, Any]] = None,
    user_profile: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """The request body for the vitals service's analyze-video endpoint."""
    payload: Dict[str, Any] = {
        "frames": [base64.b64encode(frame).decode("ascii") for frame in frames],
    }
    if sensor_data is not None:
        payload["sensorData"] = sensor_data
    if user_profile is not None:
        payload["userProfile"] = user_profile
    return payload


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    """Compact JSON encoding; the exact bytes sent over the wire."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def estimate_payload_size(
    frames: Sequence[bytes],
    sensor_data: Optional[Dict[str, Any]] = None,
    user_profile: Optional[Dict[str, Any]] = None,
) -> int:
    """Byte size the outbound request body would have for these frames."""
    return len(serialize_payload(build_payload(frames, sensor_data, user_profile)))


PayloadEstimator = Callable[
    [Sequence[bytes], Optional[Dict[str, Any]], Optional[Dict[str, Any]]], int
]


# ══════════════════════════════════════════════════════════════════════════
# Policy & Result
# ══════════════════════════════════════════════════════════════════════════

def _band_value(bands: Sequence[SizeBand], size_mb: float, default: int) -> int:
    for band in sorted(bands, key=lambda b: b.above_mb, reverse=True):
        if size_mb > band.above_mb:
            return band.value
    return default


@dataclass(frozen=True)
class CompressionPolicy:
    """
    All tunables of the compression loop.

    Built from Settings in production (`CompressionPolicy.from_settings()`);
    tests construct it directly with small limits.
    """

    profiles: Tuple[CompressionProfile, ...]
    start_bands: Tuple[SizeBand, ...] = ()
    escalation_bands: Tuple[SizeBand, ...] = ()
    max_frames: int = 12
    min_frames: int = 6
    max_payload_mb: float = 20.0
    compression_threshold_mb: float = 10.0
    target_payload_mb: float = 10.0
    max_attempts: int = 4
    low_effectiveness_ratio: float = 0.10

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "CompressionPolicy":
        return cls(
            profiles=tuple(config.compression_profiles),
            start_bands=tuple(config.compression_start_bands),
            escalation_bands=tuple(config.escalation_frame_bands),
            max_frames=config.max_frames,
            min_frames=config.min_frames,
            max_payload_mb=config.max_payload_mb,
            compression_threshold_mb=config.compression_threshold_mb,
            target_payload_mb=config.target_payload_mb,
            max_attempts=config.max_compression_attempts,
            low_effectiveness_ratio=config.low_effectiveness_ratio,
        )

    @property
    def max_bytes(self) -> int:
        return int(self.max_payload_mb * MB)

    @property
    def threshold_bytes(self) -> int:
        return int(self.compression_threshold_mb * MB)

    @property
    def target_bytes(self) -> int:
        return int(self.target_payload_mb * MB)

    def start_rung(self, initial_size_mb: float) -> int:
        """Ladder index for attempt 1; bigger payloads start further down."""
        rung = _band_value(self.start_bands, initial_size_mb, default=0)
        return min(rung, len(self.profiles) - 1)

    def profile_for_attempt(self, start_rung: int, attempt: int) -> CompressionProfile:
        """Profile for a 1-based attempt: one rung more aggressive per attempt."""
        rung = min(start_rung + attempt - 1, len(self.profiles) - 1)
        return self.profiles[rung]

    def escalation_frame_count(self, size_mb: float) -> int:
        """Frames to keep when the payload is still over the maximum."""
        return _band_value(self.escalation_bands, size_mb, default=self.min_frames)


@dataclass
class CompressionResult:
    """Frames ready to send, plus the measured size of their payload."""

    frames: List[bytes]
    payload_size_bytes: int
    original_frame_count: int
    attempts: int = 0
    compressed: bool = False

    @property
    def payload_size_mb(self) -> float:
        return self.payload_size_bytes / MB


def _total_bytes(frames: Sequence[bytes]) -> int:
    return sum(len(frame) for frame in frames)


# ══════════════════════════════════════════════════════════════════════════
# Compression Controller
# ══════════════════════════════════════════════════════════════════════════

class PayloadCompressor:
    """
    Iterative compression controller.

    Args:
        policy:    Limits, ladder and bands (defaults to the configured policy).
        encoder:   Batch re-encoder; anything with an async
                   `encode_batch(frames, profile)` works.
        estimator: Payload size oracle, called after every change to the batch.
        log:       Logger to report through.

    Stateless between calls: every compress() works on its own copy of the
    frame list, so one instance can serve concurrent requests.
    """

    def __init__(
        self,
        policy: Optional[CompressionPolicy] = None,
        encoder: Optional[FrameEncoder] = None,
        estimator: PayloadEstimator = estimate_payload_size,
        log: Optional[logging.Logger] = None,
    ):
        self.log = log or logger
        self.policy = policy or CompressionPolicy.from_settings()
        self.encoder = encoder or FrameEncoder(log=self.log)
        self.estimator = estimator

    async def compress(
        self,
        frames: Sequence[bytes],
        sensor_data: Optional[Dict[str, Any]] = None,
        user_profile: Optional[Dict[str, Any]] = None,
    ) -> CompressionResult:
        """
        Bring the frame payload under the configured limits.

        Returns:
            CompressionResult with the (possibly re-encoded and truncated)
            frames in original order and their exact payload size.

        Raises:
            EmptyInputError:      no frames were supplied
            FrameEncodeError:     a frame failed every re-encode strategy
            PayloadTooLargeError: still above max_payload_mb after escalation
        """
        if not frames:
            raise EmptyInputError()

        policy = self.policy
        batch = limit_frames(frames, policy.max_frames, self.log)
        original_count = len(batch)

        def measure() -> int:
            return self.estimator(batch, sensor_data, user_profile)

        size = measure()
        initial_mb = size / MB
        self.log.info(
            "Initial payload size: %.2f MB for %d frames", initial_mb, len(batch)
        )

        if size <= policy.threshold_bytes:
            self.log.info(
                "Payload size acceptable (%.2f MB), no compression needed", initial_mb
            )
            return CompressionResult(
                frames=batch,
                payload_size_bytes=size,
                original_frame_count=original_count,
            )

        self.log.info(
            "Payload size (%.2f MB) exceeds threshold (%.2f MB), compressing frames",
            initial_mb,
            policy.compression_threshold_mb,
        )

        start_rung = policy.start_rung(initial_mb)
        attempts = 0

        while size > policy.target_bytes and attempts < policy.max_attempts:
            attempts += 1
            profile = policy.profile_for_attempt(start_rung, attempts)
            self.log.info(
                "Compression attempt %d: resizing to %dx%d, quality %d%%",
                attempts,
                profile.width,
                profile.height,
                profile.quality,
            )

            bytes_before = _total_bytes(batch)
            batch = await self.encoder.encode_batch(batch, profile)
            bytes_after = _total_bytes(batch)
            ratio = (bytes_before - bytes_after) / bytes_before if bytes_before else 0.0
            self.log.info(
                "Compression ratio: %.1f%% (%.2f MB -> %.2f MB)",
                ratio * 100,
                bytes_before / MB,
                bytes_after / MB,
            )

            size = measure()
            self.log.info(
                "After compression attempt %d: %.2f MB (reduced from %.2f MB)",
                attempts,
                size / MB,
                initial_mb,
            )
            if size <= policy.target_bytes:
                break

            if (
                ratio < policy.low_effectiveness_ratio
                and attempts >= 2
                and len(batch) > policy.min_frames
            ):
                self.log.warning(
                    "Compression ineffective (%.1f%% reduction), reducing frame count from %d to %d",
                    ratio * 100,
                    len(batch),
                    policy.min_frames,
                )
                batch = batch[: policy.min_frames]
                size = measure()

        # ── Escalate ──────────────────────────────────────────────────────
        if size > policy.max_bytes:
            keep = policy.escalation_frame_count(size / MB)
            if len(batch) > keep:
                self.log.warning(
                    "Payload (%.2f MB) still too large after compression. "
                    "Reducing frame count from %d to %d frames.",
                    size / MB,
                    len(batch),
                    keep,
                )
                batch = batch[:keep]
                size = measure()
                self.log.info(
                    "After reducing frame count: %.2f MB for %d frames",
                    size / MB,
                    len(batch),
                )

        if size > policy.max_bytes:
            self.log.error(
                "Payload too large (%.2f MB) after compression. Maximum allowed: %.2f MB.",
                size / MB,
                policy.max_payload_mb,
            )
            raise PayloadTooLargeError(
                size_bytes=size,
                max_bytes=policy.max_bytes,
                context={"frames": len(batch), "attempts": attempts},
            )

        if size > policy.target_bytes:
            self.log.warning(
                "Payload (%.2f MB) still above target (%.2f MB) after compression, but within limit.",
                size / MB,
                policy.target_payload_mb,
            )
        else:
            self.log.info(
                "Compression successful: reduced from %.2f MB to %.2f MB",
                initial_mb,
                size / MB,
            )

        return CompressionResult(
            frames=batch,
            payload_size_bytes=size,
            original_frame_count=original_count,
            attempts=attempts,
            compressed=True,
        )
