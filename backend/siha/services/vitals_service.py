"""
SIHA Backend — Vitals-Estimation Service Client
=================================================

What:  HTTP client for the external Python vitals-estimation service.
Why:   Heart rate, SpO2, stress and respiratory estimates are computed by a
       separate inference service; this backend only forwards camera input.
How:   httpx.AsyncClient POSTs JSON bodies to /ai/* endpoints, wrapped in a
       tenacity retry for transient failures and a circuit breaker.
Who:   Instantiated once at import; called by AnalysisService.

Endpoints (relative to AI_SERVICE_URL):
    POST ai/analyze-image       {image, sensorData?}
    POST ai/analyze-video       {frames[], sensorData?, userProfile?}
    POST ai/analyze-video-file  {video, mimeType, sensorData?, userProfile?}
    GET  health

Resilience Strategy:
    1. Retry (exponential backoff + jitter) on connection failures and
       502/503/504 responses only. Timeouts are NOT retried: a frame batch
       that timed out once will time out again.
    2. Circuit breaker: after N consecutive transport failures or 5xx answers,
       calls are rejected immediately until the recovery timeout has passed.
       A 4xx answer counts as healthy.
    3. Upstream error bodies ({"error": ...} / {"message": ...}) are surfaced
       in the AIServiceError message.
"""

import base64
import logging
import math
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from siha.config import settings
from siha.exceptions import AIServiceError, CircuitBreakerOpenError, ValidationError
from siha.middleware.request_id import request_id_var
from siha.services.payload_compressor import serialize_payload
from siha.services.vitals_base import VitalsEstimator

logger = logging.getLogger(__name__)

# Gateway-style statuses that usually clear up on their own
RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Tracks whether the vitals service is worth calling.

    Only outcomes that say something about the service's health are counted.
    Transport failures and 5xx answers are failures; any answer below 500 is
    proof the service is up, including a 400 such as "No face detected".

    State Machine:
        CLOSED    → failure_threshold consecutive failures → OPEN
        OPEN      → calls raise CircuitBreakerOpenError until recovery_timeout
                    seconds have passed since opening → HALF_OPEN
        HALF_OPEN → the next outcome decides: healthy → CLOSED, failure → OPEN

    One breaker per worker process. Its state only changes on the event loop
    thread, so it needs no lock.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_reason: Optional[str] = None
        self._clock = clock
        self._opened_at: Optional[float] = None

    def seconds_until_retry(self) -> int:
        """Whole seconds left before an OPEN breaker lets a trial call through."""
        if self.state != BreakerState.OPEN or self._opened_at is None:
            return 0
        remaining = self.recovery_timeout - (self._clock() - self._opened_at)
        return max(0, math.ceil(remaining))

    def before_call(self) -> None:
        """
        Gate an outbound call.

        Raises:
            CircuitBreakerOpenError: OPEN and the recovery timeout has not
            yet elapsed.
        """
        if self.state != BreakerState.OPEN:
            return

        remaining = self.seconds_until_retry()
        if remaining > 0:
            raise CircuitBreakerOpenError(
                recovery_time=remaining,
                context={"last_failure": self.last_failure_reason},
            )
        logger.info("Circuit breaker HALF_OPEN: sending a trial request to the vitals service")
        self.state = BreakerState.HALF_OPEN

    def record_response(self, status_code: int) -> None:
        """Count an HTTP answer: 5xx is a failure, anything else a success."""
        if status_code >= 500:
            self.record_failure(f"HTTP {status_code}")
        else:
            self.record_success()

    def record_success(self) -> None:
        if self.state != BreakerState.CLOSED:
            logger.info("Circuit breaker CLOSED: vitals service recovered")
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_reason = None
        self._opened_at = None

    def record_failure(self, reason: str = "unknown") -> None:
        self.failure_count += 1
        self.last_failure_reason = reason

        if self.state == BreakerState.HALF_OPEN:
            logger.warning("Circuit breaker OPEN again: trial request failed (%s)", reason)
            self._open()
        elif self.state == BreakerState.OPEN:
            # A call started before opening finished late
            self._opened_at = self._clock()
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPEN after %d consecutive failures (last: %s)",
                self.failure_count,
                reason,
            )
            self._open()

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self._opened_at = self._clock()


class TransientUpstreamError(Exception):
    """A retryable gateway status from the vitals service (internal to this module)."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.status_code = response.status_code
        super().__init__(f"AI service returned HTTP {response.status_code}")


def _upstream_detail(response: httpx.Response) -> Optional[str]:
    """The `error` or `message` field of an upstream JSON error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("error") or body.get("message")
        if detail:
            return str(detail)
    return None


def _extract_result(body: Any, operation: str) -> Dict[str, Any]:
    if not isinstance(body, dict) or not isinstance(body.get("result"), dict):
        raise AIServiceError(
            message=f"{operation} failed: unexpected response from AI service",
        )
    return body["result"]


# ══════════════════════════════════════════════════════════════════════════
# Vitals Service
# ══════════════════════════════════════════════════════════════════════════

class VitalsService(VitalsEstimator):
    """
    httpx-based client for the vitals-estimation service.

    Args:
        base_url:  Overrides settings.ai_service_url.
        transport: Custom httpx transport (tests pass httpx.MockTransport).

    A fresh AsyncClient is opened per call: frame requests are rare, large
    and slow, so connection reuse buys nothing.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.ai_service_url
        self._transport = transport
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )
        logger.info(
            "VitalsService initialized with base_url=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            self.base_url,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    async def analyze_image(
        self, image: bytes, sensor_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Single-image analysis. The raw bytes are base64-encoded and forwarded
        as-is; no compression applies on this path.
        """
        if not image:
            raise ValidationError(message="Image buffer is required", field="image")

        payload: Dict[str, Any] = {"image": base64.b64encode(image).decode("ascii")}
        if sensor_data is not None:
            payload["sensorData"] = sensor_data

        body = await self._request(
            "ai/analyze-image",
            serialize_payload(payload),
            timeout=settings.ai_image_timeout,
            operation="Image analysis",
            timeout_message="Image analysis timed out. Please try again.",
        )
        return _extract_result(body, "Image analysis")

    async def analyze_frames(self, payload: bytes) -> Dict[str, Any]:
        """Forward an already-compressed frame payload."""
        body = await self._request(
            "ai/analyze-video",
            payload,
            timeout=settings.ai_frames_timeout,
            operation="Video analysis",
            timeout_message=(
                "Video analysis timed out. The payload may be too large. "
                "Try reducing the number of frames."
            ),
        )
        return _extract_result(body, "Video analysis")

    async def analyze_video_file(
        self,
        video: bytes,
        mime_type: str,
        sensor_data: Optional[Dict[str, Any]] = None,
        user_profile: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Forward a recorded video file for server-side frame extraction.

        The service reports failures in-band with {"success": false, "error": ...},
        so the success flag is checked in addition to the HTTP status.
        """
        if not video:
            raise ValidationError(message="Video buffer is required", field="video")

        logger.info("Analyzing video file: %d bytes, type: %s", len(video), mime_type)

        payload: Dict[str, Any] = {
            "video": base64.b64encode(video).decode("ascii"),
            "mimeType": mime_type,
        }
        if sensor_data is not None:
            payload["sensorData"] = sensor_data
        if user_profile is not None:
            payload["userProfile"] = user_profile

        body = await self._request(
            "ai/analyze-video-file",
            serialize_payload(payload),
            timeout=settings.ai_video_file_timeout,
            operation="Video analysis",
            timeout_message=(
                "Video analysis timed out. The video file may be too large "
                "or processing took too long."
            ),
        )
        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise AIServiceError(message=f"Video analysis failed: {error or 'unknown error'}")
        return _extract_result(body, "Video analysis")

    async def _request(
        self,
        path: str,
        content: bytes,
        timeout: float,
        operation: str,
        timeout_message: str,
    ) -> Any:
        """
        POST a JSON body through the breaker and retry policy; return parsed JSON.

        Raises:
            CircuitBreakerOpenError: breaker is open
            AIServiceError:          any transport or upstream failure
        """
        request_id = request_id_var.get("") or str(uuid.uuid4())[:8]

        self.circuit_breaker.before_call()

        logger.info(
            "[%s] %s: sending %.2f MB to %s",
            request_id,
            operation,
            len(content) / (1024 * 1024),
            path,
        )

        try:
            response = await self._post_with_retry(path, content, timeout, request_id)
        except TransientUpstreamError as e:
            self.circuit_breaker.record_response(e.status_code)
            detail = _upstream_detail(e.response) or f"HTTP {e.status_code}"
            logger.error("[%s] All AI service retries exhausted: %s", request_id, detail)
            raise AIServiceError(
                message=f"{operation} failed after multiple attempts: {detail}",
                retry_after=self.circuit_breaker.seconds_until_retry() or None,
                context={"request_id": request_id, "attempts": settings.retry_max_attempts},
            )
        except httpx.TimeoutException as e:
            self.circuit_breaker.record_failure("timeout")
            logger.error("[%s] AI service timed out: %s", request_id, e)
            raise AIServiceError(
                message=timeout_message,
                retry_after=self.circuit_breaker.seconds_until_retry() or None,
                context={"request_id": request_id},
            )
        except (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError) as e:
            self.circuit_breaker.record_failure("connection reset")
            logger.error("[%s] AI service connection reset: %s", request_id, e)
            raise AIServiceError(
                message=(
                    "Connection to AI service was reset. The payload may be too large "
                    "or the service may have crashed. Try reducing the number of frames."
                ),
                retry_after=self.circuit_breaker.seconds_until_retry() or None,
                context={"request_id": request_id},
            )
        except httpx.HTTPError as e:
            self.circuit_breaker.record_failure(type(e).__name__)
            logger.error("[%s] AI service request failed: %s", request_id, e)
            raise AIServiceError(
                message=f"{operation} failed: {e}",
                retry_after=self.circuit_breaker.seconds_until_retry() or None,
                context={"request_id": request_id, "error_type": type(e).__name__},
            )

        self.circuit_breaker.record_response(response.status_code)

        if response.status_code >= 400:
            detail = _upstream_detail(response)
            logger.error(
                "[%s] AI service returned HTTP %d: %s",
                request_id,
                response.status_code,
                detail or response.text[:500],
            )
            message = f"{operation} failed: {detail}" if detail else f"{operation} failed"
            raise AIServiceError(
                message=message,
                context={"request_id": request_id, "upstream_status": response.status_code},
            )

        try:
            return response.json()
        except ValueError:
            raise AIServiceError(
                message=f"{operation} failed: invalid response from AI service",
                context={"request_id": request_id},
            )

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, TransientUpstreamError)),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post_with_retry(
        self, path: str, content: bytes, timeout: float, request_id: str
    ) -> httpx.Response:
        """
        One POST attempt. Kept separate from _request so the retry decorator
        wraps only the network call, not the breaker bookkeeping.
        """
        start_time = time.time()
        async with httpx.AsyncClient(
            base_url=self.base_url,
            transport=self._transport,
            timeout=httpx.Timeout(timeout, connect=settings.ai_connect_timeout),
        ) as client:
            response = await client.post(
                path,
                content=content,
                headers={"Content-Type": "application/json", "X-Request-ID": request_id},
            )

        duration_ms = (time.time() - start_time) * 1000
        if response.status_code in RETRYABLE_STATUS_CODES:
            logger.warning(
                "[%s] AI service returned HTTP %d after %.0fms",
                request_id,
                response.status_code,
                duration_ms,
            )
            raise TransientUpstreamError(response)

        logger.info(
            "[%s] AI service responded HTTP %d in %.0fms",
            request_id,
            response.status_code,
            duration_ms,
        )
        return response

    async def health_check(self) -> bool:
        """GET {AI_SERVICE_URL}/health; any non-5xx answer counts as reachable."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                timeout=httpx.Timeout(5.0),
            ) as client:
                response = await client.get("health")
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning("AI service health check failed: %s", e)
            return False


# Shared instance: the circuit breaker state must be shared across requests
vitals_service = VitalsService()
