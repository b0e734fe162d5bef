"""
SIHA Backend — API Route Tests
================================

What:  Exercises the HTTP layer: request parsing, status codes and the error
       body format produced by the global handlers.
How:   httpx AsyncClient over ASGITransport; AnalysisService is patched where
       the test is about HTTP behaviour rather than orchestration.
"""

import base64
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from siha.exceptions import (
    AIServiceError,
    CircuitBreakerOpenError,
    FrameEncodeError,
    PayloadTooLargeError,
)
from siha.schemas.analysis import AnalysisResponse, CompressionSummary
from siha.services.payload_compressor import MB

ANALYSIS = "siha.routes.analysis.analysis_service"


def jpeg_part(name, data, index=0):
    return (name, (f"frame{index}.jpg", data, "image/jpeg"))


@pytest.fixture
def ok_response(face_result):
    return AnalysisResponse(
        result=face_result,
        compression=CompressionSummary(
            original_frame_count=2, frame_count=2, payload_size_mb=0.01, attempts=0, compressed=False
        ),
    )


class TestAnalyzeVideo:

    @pytest.mark.asyncio
    async def test_multipart_frames(self, test_client, make_frames, ok_response):
        frames = make_frames(3)
        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(return_value=ok_response)) as mock:
            response = await test_client.post(
                "/api/ai/analyze-video",
                files=[jpeg_part("frames", f, i) for i, f in enumerate(frames)],
                data={"sensor_data": '{"lux": 40}', "save": "false"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["result"]["faceDetected"] is True
        assert body["compression"]["frame_count"] == 2
        args, kwargs = mock.await_args
        assert args[1] == frames
        assert kwargs["sensor_data"] == {"lux": 40}
        assert kwargs["save"] is False
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_no_frames(self, test_client):
        response = await test_client.post("/api/ai/analyze-video", data={"save": "false"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["message"] == "No frames provided"
        assert body["request_id"]

    @pytest.mark.asyncio
    async def test_non_image_frame_rejected(self, test_client):
        response = await test_client.post(
            "/api/ai/analyze-video",
            files=[("frames", ("notes.txt", b"hello", "text/plain"))],
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Only image files are allowed"

    @pytest.mark.asyncio
    async def test_payload_too_large_is_413(self, test_client, make_frames):
        error = PayloadTooLargeError(size_bytes=int(23.1 * MB), max_bytes=20 * MB)
        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/ai/analyze-video", files=[jpeg_part("frames", make_frames(1)[0])]
            )

        assert response.status_code == 413
        body = response.json()
        assert body["error"] == "payload_too_large"
        assert "Payload too large (23.10 MB)" in body["message"]
        assert body["details"]["max_mb"] == 20.0

    @pytest.mark.asyncio
    async def test_frame_encode_error_is_422(self, test_client, make_frames):
        error = FrameEncodeError(frame_index=4, reason="cannot identify image file")
        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/ai/analyze-video", files=[jpeg_part("frames", make_frames(1)[0])]
            )

        assert response.status_code == 422
        assert response.json()["details"] == {"frame_index": 4}

    @pytest.mark.asyncio
    async def test_ai_service_error_is_503(self, test_client, make_frames):
        error = AIServiceError("Video analysis timed out. The payload may be too large.")
        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/ai/analyze-video", files=[jpeg_part("frames", make_frames(1)[0])]
            )

        assert response.status_code == 503
        assert response.json()["error"] == "ai_service_error"

    @pytest.mark.asyncio
    async def test_circuit_open_sets_retry_after(self, test_client, make_frames):
        error = CircuitBreakerOpenError(recovery_time=42)
        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/ai/analyze-video", files=[jpeg_part("frames", make_frames(1)[0])]
            )

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "42"

    @pytest.mark.asyncio
    async def test_save_without_user_id(self, test_client, make_frames):
        response = await test_client.post(
            "/api/ai/analyze-video",
            files=[jpeg_part("frames", make_frames(1)[0])],
            data={"save": "true"},
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "user_id"


class TestBase64AndImage:

    @pytest.mark.asyncio
    async def test_base64_frames_decoded_in_order(self, test_client, ok_response):
        user_id = uuid4()
        frames = [b"\xff\xd8one", b"\xff\xd8two"]
        encoded = ["data:image/jpeg;base64," + base64.b64encode(f).decode() for f in frames]

        with patch(f"{ANALYSIS}.analyze_video_frames", AsyncMock(return_value=ok_response)) as mock:
            response = await test_client.post(
                "/api/ai/analyze-video/base64",
                json={"frames": encoded, "sensorData": {"lux": 9}, "save": True, "userId": str(user_id)},
            )

        assert response.status_code == 200
        args, kwargs = mock.await_args
        assert args[1] == frames
        assert kwargs["sensor_data"] == {"lux": 9}
        assert kwargs["save"] is True
        assert kwargs["user_id"] == user_id

    @pytest.mark.asyncio
    async def test_base64_invalid_frame(self, test_client):
        response = await test_client.post(
            "/api/ai/analyze-video/base64", json={"frames": ["%%%"]}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Frame 1 is not valid base64"

    @pytest.mark.asyncio
    async def test_analyze_image(self, test_client, make_jpeg, face_result):
        image = make_jpeg(64, 64)
        mocked = AsyncMock(return_value=AnalysisResponse(result=face_result))
        with patch(f"{ANALYSIS}.analyze_image", mocked):
            response = await test_client.post(
                "/api/ai/analyze-image",
                files=[("image", ("face.jpg", image, "image/jpeg"))],
                data={"sensor_data": "not json"},
            )

        assert response.status_code == 200
        args, kwargs = mocked.await_args
        assert args[1] == image
        assert kwargs["sensor_data"] is None

    @pytest.mark.asyncio
    async def test_analyze_image_missing_file(self, test_client):
        response = await test_client.post("/api/ai/analyze-image", data={"save": "false"})

        assert response.status_code == 400
        assert response.json()["message"] == "No image file provided"

    @pytest.mark.asyncio
    async def test_analyze_video_file_requires_video(self, test_client, make_jpeg):
        response = await test_client.post(
            "/api/ai/analyze-video-file",
            files=[("video", ("face.jpg", make_jpeg(32, 32), "image/jpeg"))],
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Only video files are allowed"


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_small_batch_forwarded_untouched(self, test_client, make_frames, face_result):
        """Frames under the compression threshold reach the vitals service as uploaded."""
        frames = make_frames(2)
        analyze_frames = AsyncMock(return_value=face_result)

        with patch("siha.services.analysis_service.vitals_service.analyze_frames", analyze_frames):
            response = await test_client.post(
                "/api/ai/analyze-video",
                files=[jpeg_part("frames", f, i) for i, f in enumerate(frames)],
            )

        assert response.status_code == 200
        body = response.json()
        assert body["compression"]["compressed"] is False
        assert body["compression"]["frame_count"] == 2
        sent = analyze_frames.await_args.args[0]
        assert base64.b64encode(frames[0]) in sent


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_dependencies(self, test_client):
        with patch(
            "siha.routes.health.vitals_service.health_check", AsyncMock(return_value=True)
        ):
            response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "connected"
        assert body["ai_service"] == "available"
        assert body["circuit_breaker"] == "closed"
        assert body["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_degraded_when_service_down(self, test_client):
        with patch(
            "siha.routes.health.vitals_service.health_check", AsyncMock(return_value=False)
        ):
            response = await test_client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["ai_service"] == "unavailable"
