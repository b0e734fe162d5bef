"""
SIHA Backend — Frame Re-encoder
=================================

What:  Shrinks a single captured camera frame to fit a compression profile.
Why:   Frame batches from phones are multi-megabyte JPEGs; the vitals service
       needs them small enough to fit one bounded request body.
How:   Each frame goes through an ordered list of encode strategies until one
       succeeds. The strategies get progressively more tolerant of broken input
       and more aggressive in the size they produce.
Who:   Used by PayloadCompressor once per compression attempt.

Strategy ladder (first success wins):
    1. direct               strict decode → resize → JPEG
    2. lossless intermediate tolerant decode → PNG → resize → JPEG
    3. forced small          lossless intermediate, capped at 480x360, lower quality
    4. minimal               tolerant decode → fit 320x240 → JPEG at fixed quality

If every strategy fails the frame is NOT dropped. FrameEncodeError is raised
with the frame index and the whole batch fails, because the vitals service
reads the frames as a temporal signal.

Resizing never enlarges: the scale ratio is clamped to 1.0.

Full decodes are serialised by one lock because Pillow keeps truncated-image
tolerance in a process-wide flag. Resizing and JPEG encoding run in parallel.
"""

import asyncio
import io
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple

from PIL import Image, ImageFile

from siha.config import CompressionProfile, settings
from siha.exceptions import FrameEncodeError

logger = logging.getLogger(__name__)

# Errors Pillow raises for undecodable or unencodable data.
# UnidentifiedImageError and "image file is truncated" are both OSError.
ENCODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)

# Pillow only exposes truncated-image tolerance as a module-level flag, so every
# full decode sets it explicitly for its own mode while holding this lock.
_decode_lock = threading.Lock()


@contextmanager
def decoding(tolerant: bool) -> Iterator[None]:
    """Hold the decode lock with truncated-image tolerance set to `tolerant`."""
    with _decode_lock:
        previous = ImageFile.LOAD_TRUNCATED_IMAGES
        ImageFile.LOAD_TRUNCATED_IMAGES = tolerant
        try:
            yield
        finally:
            ImageFile.LOAD_TRUNCATED_IMAGES = previous


def decode_frame(
    frame: bytes, tolerant: bool, box: Optional[Tuple[int, int]] = None
) -> Image.Image:
    """
    Fully decode a frame under the decode lock.

    A strict decode raises OSError on truncated data no matter what any other
    thread is doing. With `box`, the JPEG decoder may downscale by a power of
    two while decoding. Resizing and encoding run after the lock is released.
    """
    with decoding(tolerant):
        image = Image.open(io.BytesIO(frame))
        if box is not None:
            target = fit_within(*image.size, *box)
            if target != image.size:
                image.draft("RGB", target)
        image.load()
    return image


def fit_within(
    width: int, height: int, max_width: int, max_height: int
) -> Tuple[int, int]:
    """
    Scale (width, height) uniformly to fit inside max_width x max_height.

    The ratio is clamped to 1.0 so images are never enlarged. Unknown
    (non-positive) dimensions are returned unchanged.
    """
    if width <= 0 or height <= 0:
        return width, height
    ratio = min(max_width / width, max_height / height, 1.0)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def read_dimensions(frame: bytes) -> Optional[Tuple[int, int]]:
    """Pixel size from the image header, or None when the header is unreadable."""
    try:
        with Image.open(io.BytesIO(frame)) as image:
            width, height = image.size
    except ENCODE_ERRORS:
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height


def _to_jpeg_mode(image: Image.Image) -> Image.Image:
    # JPEG has no alpha channel or palette
    if image.mode in ("RGB", "L"):
        return image
    return image.convert("RGB")


def _resize(image: Image.Image, size: Tuple[int, int]) -> Image.Image:
    if size == image.size or size[0] <= 0 or size[1] <= 0:
        return image
    return image.resize(size, Image.Resampling.LANCZOS)


def _save_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    # Baseline, non-optimized JPEG: the most widely decodable output
    image.save(buffer, format="JPEG", quality=quality, optimize=False, progressive=False)
    return buffer.getvalue()


def _png_roundtrip(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


# ══════════════════════════════════════════════════════════════════════════
# Encode Strategies
# ══════════════════════════════════════════════════════════════════════════

class EncodeStrategy(ABC):
    """One way of turning a frame into a smaller JPEG. Raises on failure."""

    name: str = "strategy"

    @abstractmethod
    def encode(self, frame: bytes, profile: CompressionProfile) -> bytes:
        ...


class DirectEncode(EncodeStrategy):
    """Strict decode, resize to the profile box, re-encode."""

    name = "direct"

    def encode(self, frame: bytes, profile: CompressionProfile) -> bytes:
        image = decode_frame(frame, tolerant=False, box=(profile.width, profile.height))
        target = fit_within(*image.size, profile.width, profile.height)
        return _save_jpeg(_resize(_to_jpeg_mode(image), target), profile.quality)


class LosslessIntermediateEncode(EncodeStrategy):
    """
    Tolerant decode, normalise through PNG, then resize and re-encode.

    The PNG round trip drops whatever odd segments, color modes or partial
    scans the source JPEG carried, leaving plain pixels for the encoder.
    """

    name = "lossless intermediate"

    def encode(self, frame: bytes, profile: CompressionProfile) -> bytes:
        return self._encode_box(frame, profile.width, profile.height, profile.quality)

    def _encode_box(self, frame: bytes, max_width: int, max_height: int, quality: int) -> bytes:
        image = decode_frame(frame, tolerant=True)
        intermediate = _png_roundtrip(_to_jpeg_mode(image))

        with Image.open(io.BytesIO(intermediate)) as clean:
            target = fit_within(*clean.size, max_width, max_height)
            return _save_jpeg(_resize(clean, target), quality)


class ForcedSmallEncode(LosslessIntermediateEncode):
    """Lossless intermediate path capped at a small box with reduced quality."""

    name = "forced small"

    def __init__(self, max_width: int, max_height: int, quality_drop: int, min_quality: int):
        self.max_width = max_width
        self.max_height = max_height
        self.quality_drop = quality_drop
        self.min_quality = min_quality

    def encode(self, frame: bytes, profile: CompressionProfile) -> bytes:
        quality = max(profile.quality - self.quality_drop, self.min_quality)
        return self._encode_box(
            frame,
            min(profile.width, self.max_width),
            min(profile.height, self.max_height),
            quality,
        )


class MinimalEncode(EncodeStrategy):
    """Last attempt: fixed tiny box and fixed quality, ignoring the profile."""

    name = "minimal"

    def __init__(self, width: int, height: int, quality: int):
        self.width = width
        self.height = height
        self.quality = quality

    def encode(self, frame: bytes, profile: CompressionProfile) -> bytes:
        small = _to_jpeg_mode(decode_frame(frame, tolerant=True))
        small.thumbnail((self.width, self.height), Image.Resampling.LANCZOS)
        return _save_jpeg(small, self.quality)


def default_strategies() -> List[EncodeStrategy]:
    """The configured fallback ladder, mildest first."""
    return [
        DirectEncode(),
        LosslessIntermediateEncode(),
        ForcedSmallEncode(
            max_width=settings.fallback_max_width,
            max_height=settings.fallback_max_height,
            quality_drop=settings.fallback_quality_drop,
            min_quality=settings.fallback_min_quality,
        ),
        MinimalEncode(
            width=settings.minimal_width,
            height=settings.minimal_height,
            quality=settings.minimal_quality,
        ),
    ]


# ══════════════════════════════════════════════════════════════════════════
# Frame Encoder
# ══════════════════════════════════════════════════════════════════════════

class FrameEncoder:
    """
    Re-encodes frames against a CompressionProfile using the strategy ladder.

    Args:
        strategies: Ordered strategies to try (defaults to default_strategies()).
        log:        Logger to report through (defaults to this module's logger).
    """

    def __init__(
        self,
        strategies: Optional[Sequence[EncodeStrategy]] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.log = log or logger

    def encode(self, frame: bytes, profile: CompressionProfile, index: int = 0) -> bytes:
        """
        Re-encode one frame.

        Args:
            frame:   Raw image bytes.
            profile: Target box and JPEG quality.
            index:   Zero-based position in the batch (for logs and errors).

        Raises:
            FrameEncodeError: every strategy failed.
        """
        self._log_plan(frame, profile, index)

        failures: List[str] = []
        for position, strategy in enumerate(self.strategies):
            try:
                encoded = strategy.encode(frame, profile)
            except ENCODE_ERRORS as e:
                failures.append(f"{strategy.name}: {e}")
                self.log.warning(
                    "Frame %d: %s re-encode failed (%s)", index + 1, strategy.name, e
                )
                continue

            if position > 0:
                self.log.info(
                    "Frame %d: recovered using %s re-encode", index + 1, strategy.name
                )
            return encoded

        self.log.error(
            "Frame %d: could not re-encode frame at all. Original size: %.2f KB",
            index + 1,
            len(frame) / 1024,
        )
        raise FrameEncodeError(
            frame_index=index,
            reason=failures[-1] if failures else "no encode strategies configured",
            context={"failures": failures, "original_bytes": len(frame)},
        )

    async def encode_batch(
        self, frames: Sequence[bytes], profile: CompressionProfile
    ) -> List[bytes]:
        """
        Re-encode every frame concurrently, returning results in input order.

        Resizing and encoding release the GIL, so worker threads give real
        parallelism; only the decode step is serialised. asyncio.gather keeps
        results positional; the first FrameEncodeError propagates to the caller.
        """
        self.log.info(
            "Compressing %d frames (max: %dx%d, quality: %d%%)",
            len(frames),
            profile.width,
            profile.height,
            profile.quality,
        )
        encoded = await asyncio.gather(
            *(
                asyncio.to_thread(self.encode, frame, profile, index)
                for index, frame in enumerate(frames)
            )
        )
        return list(encoded)

    def _log_plan(self, frame: bytes, profile: CompressionProfile, index: int) -> None:
        dimensions = read_dimensions(frame)
        if dimensions is None:
            self.log.warning(
                "Frame %d: could not read dimensions, recompressing only", index + 1
            )
            return

        target = fit_within(*dimensions, profile.width, profile.height)
        if target != dimensions:
            self.log.info(
                "Frame %d: Resizing from %dx%d to %dx%d",
                index + 1, dimensions[0], dimensions[1], target[0], target[1],
            )
        else:
            self.log.info(
                "Frame %d: Keeping dimensions %dx%d, reducing quality to %d%%",
                index + 1, dimensions[0], dimensions[1], profile.quality,
            )
