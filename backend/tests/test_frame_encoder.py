"""
SIHA Backend — Frame Encoder Unit Tests
=========================================

What:  Tests the per-frame re-encoder and its fallback strategies.
How:   Real JPEG/PNG bytes generated with Pillow; no mocks for decoding.

What we test:
    ✅ Resizing keeps aspect ratio and never enlarges
    ✅ Damaged JPEGs are recovered by a later strategy
    ✅ Undecodable input raises FrameEncodeError with the frame index
    ✅ Batch encoding preserves frame order
    ✅ The strict attempt stays strict while other threads decode tolerantly
"""

import io
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image, ImageFile

from siha.config import CompressionProfile
from siha.exceptions import FrameEncodeError
from siha.services.frame_encoder import (
    DirectEncode,
    EncodeStrategy,
    ForcedSmallEncode,
    FrameEncoder,
    LosslessIntermediateEncode,
    MinimalEncode,
    decoding,
    fit_within,
    read_dimensions,
)

LOGGER = "siha.services.frame_encoder"

HD = CompressionProfile(width=1280, height=720, quality=80)
SMALL = CompressionProfile(width=640, height=360, quality=70)


def _size(data: bytes):
    with Image.open(io.BytesIO(data)) as image:
        return image.format, image.mode, image.size


class TestFitWithin:

    def test_never_enlarges(self):
        assert fit_within(200, 100, 1280, 720) == (200, 100)

    def test_scales_by_the_tighter_side(self):
        # 4:3 into 16:9 box: height is the binding constraint
        assert fit_within(1600, 1200, 640, 360) == (480, 360)

    def test_landscape_into_landscape(self):
        assert fit_within(1920, 1080, 1280, 720) == (1280, 720)

    def test_unknown_dimensions_unchanged(self):
        assert fit_within(0, 0, 640, 360) == (0, 0)


class TestStrategies:

    def test_direct_keeps_small_frames_at_original_size(self, make_jpeg):
        encoded = DirectEncode().encode(make_jpeg(200, 100), HD)
        assert _size(encoded) == ("JPEG", "RGB", (200, 100))

    def test_direct_resizes_into_profile_box(self, make_jpeg):
        frame = make_jpeg(1600, 1200, noise=True)
        encoded = DirectEncode().encode(frame, SMALL)
        assert _size(encoded)[2] == (480, 360)

    def test_direct_rejects_truncated_jpeg(self, make_jpeg):
        frame = make_jpeg(320, 240, noise=True)
        with pytest.raises(OSError):
            DirectEncode().encode(frame[: int(len(frame) * 0.6)], HD)

    def test_lossless_intermediate_decodes_truncated_jpeg(self, make_jpeg):
        frame = make_jpeg(320, 240, noise=True)
        encoded = LosslessIntermediateEncode().encode(frame[: int(len(frame) * 0.6)], HD)
        assert _size(encoded) == ("JPEG", "RGB", (320, 240))

    def test_forced_small_caps_dimensions(self, make_jpeg):
        strategy = ForcedSmallEncode(max_width=480, max_height=360, quality_drop=15, min_quality=60)
        encoded = strategy.encode(make_jpeg(1280, 720, noise=True), HD)
        assert _size(encoded)[2] == (480, 270)

    def test_minimal_ignores_profile(self, make_jpeg):
        encoded = MinimalEncode(width=320, height=240, quality=60).encode(
            make_jpeg(1000, 800, noise=True), HD
        )
        assert _size(encoded)[2] == (300, 240)

    def test_rgba_png_is_converted(self, make_jpeg):
        frame = make_jpeg(64, 64, mode="RGBA", fmt="PNG")
        encoded = DirectEncode().encode(frame, HD)
        assert _size(encoded) == ("JPEG", "RGB", (64, 64))

    def test_grayscale_stays_grayscale(self, make_jpeg):
        encoded = DirectEncode().encode(make_jpeg(64, 48, mode="L"), HD)
        assert _size(encoded) == ("JPEG", "L", (64, 48))


class _Failing(EncodeStrategy):
    name = "failing"

    def encode(self, frame, profile):
        raise ValueError("boom")


class _Fixed(EncodeStrategy):
    name = "fixed"

    def encode(self, frame, profile):
        return b"encoded:" + frame[:4]


class TestFrameEncoder:

    def test_first_successful_strategy_wins(self):
        encoder = FrameEncoder(strategies=[_Fixed(), _Failing()])
        assert encoder.encode(b"abcdef", HD) == b"encoded:abcd"

    def test_falls_through_to_next_strategy(self, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        encoder = FrameEncoder(strategies=[_Failing(), _Fixed()])

        assert encoder.encode(b"abcdef", HD, index=2) == b"encoded:abcd"
        assert "Frame 3: failing re-encode failed" in caplog.text
        assert "Frame 3: recovered using fixed re-encode" in caplog.text

    def test_truncated_frame_recovered_with_default_ladder(self, make_jpeg, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        frame = make_jpeg(320, 240, noise=True)

        encoded = FrameEncoder().encode(frame[: int(len(frame) * 0.6)], SMALL)

        assert _size(encoded)[0] == "JPEG"
        assert "recovered using lossless intermediate re-encode" in caplog.text

    def test_garbage_raises_with_frame_index(self):
        with pytest.raises(FrameEncodeError) as exc_info:
            FrameEncoder().encode(b"definitely not an image" * 10, SMALL, index=3)

        err = exc_info.value
        assert err.frame_index == 3
        assert "frame 4" in err.message
        assert len(err.context["failures"]) == 4

    def test_no_strategies_raises(self):
        with pytest.raises(FrameEncodeError):
            FrameEncoder(strategies=[]).encode(b"x", SMALL)

    def test_logs_resize_plan(self, make_jpeg, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        encoder = FrameEncoder()

        encoder.encode(make_jpeg(800, 600), SMALL, index=0)
        encoder.encode(make_jpeg(200, 100), SMALL, index=1)

        assert "Frame 1: Resizing from 800x600 to 480x360" in caplog.text
        assert "Frame 2: Keeping dimensions 200x100, reducing quality to 70%" in caplog.text

    def test_unreadable_header_logged(self, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        encoder = FrameEncoder(strategies=[_Fixed()])

        encoder.encode(b"????", SMALL)

        assert "could not read dimensions" in caplog.text

    def test_injected_logger_is_used(self, caplog):
        custom = logging.getLogger("tests.encoder")
        caplog.set_level(logging.INFO, logger="tests.encoder")

        FrameEncoder(strategies=[_Failing(), _Fixed()], log=custom).encode(b"abcd", HD)

        assert any(r.name == "tests.encoder" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, make_jpeg):
        frames = [make_jpeg(w, 90) for w in (100, 200, 300, 120)]

        encoded = await FrameEncoder().encode_batch(frames, HD)

        assert [read_dimensions(f) for f in encoded] == [(100, 90), (200, 90), (300, 90), (120, 90)]

    @pytest.mark.asyncio
    async def test_batch_fails_on_one_bad_frame(self, make_jpeg):
        frames = [make_jpeg(64, 64), b"garbage" * 20, make_jpeg(64, 64)]

        with pytest.raises(FrameEncodeError) as exc_info:
            await FrameEncoder().encode_batch(frames, HD)

        assert exc_info.value.frame_index == 1


class TestDecodeIsolation:
    """Truncated-image tolerance is a process-wide Pillow flag shared by threads."""

    def _truncated(self, make_jpeg):
        frame = make_jpeg(320, 240, noise=True)
        return frame[: int(len(frame) * 0.6)]

    def test_strict_decode_ignores_global_flag(self, make_jpeg, monkeypatch):
        monkeypatch.setattr(ImageFile, "LOAD_TRUNCATED_IMAGES", True)

        with pytest.raises(OSError):
            DirectEncode().encode(self._truncated(make_jpeg), HD)

        assert ImageFile.LOAD_TRUNCATED_IMAGES is True

    def test_strict_decode_while_another_thread_is_tolerant(self, make_jpeg):
        truncated = self._truncated(make_jpeg)
        entered = threading.Event()
        release = threading.Event()

        def hold_tolerant():
            with decoding(tolerant=True):
                entered.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold_tolerant)
        holder.start()
        try:
            assert entered.wait(timeout=5)
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(DirectEncode().encode, truncated, HD)
                time.sleep(0.1)
                # Waits for the tolerant decode to finish instead of sharing its flag
                assert not future.done()

                release.set()
                with pytest.raises(OSError):
                    future.result(timeout=5)
        finally:
            release.set()
            holder.join(timeout=5)

        assert ImageFile.LOAD_TRUNCATED_IMAGES is False

    @pytest.mark.asyncio
    async def test_every_truncated_frame_in_batch_uses_fallback(self, make_jpeg, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        truncated = self._truncated(make_jpeg)
        frames = [truncated if i % 2 == 0 else make_jpeg(320, 240, noise=True) for i in range(8)]

        encoded = await FrameEncoder().encode_batch(frames, SMALL)

        assert len(encoded) == 8
        recovered = [
            r.getMessage() for r in caplog.records
            if "recovered using lossless intermediate re-encode" in r.getMessage()
        ]
        assert sorted(recovered) == sorted(
            f"Frame {i + 1}: recovered using lossless intermediate re-encode"
            for i in range(0, 8, 2)
        )
