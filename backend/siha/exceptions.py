"""
SIHA Backend — Custom Exception Hierarchy
===========================================

What:  Application-specific exceptions for the vitals-analysis workflow.
Why:   Each failure mode maps to its own HTTP status and message, and the
       compression core can fail loudly without knowing anything about HTTP.
How:   Every exception carries a user-safe message and an optional context
       dict. Global handlers in main.py render them as JSON.
Who:   Raised by services; caught by the handlers registered in main.py.

Exception Hierarchy:
    SihaError (base)
    ├── ValidationError          → 400 Bad Request
    │   └── EmptyInputError      → 400 Bad Request (no frames supplied)
    ├── FrameEncodeError         → 422 Unprocessable Entity
    ├── PayloadTooLargeError     → 413 Payload Too Large
    ├── AIServiceError           → 503 Service Unavailable
    ├── CircuitBreakerOpenError  → 503 Service Unavailable
    └── DatabaseError            → 500 Internal Server Error
"""

from typing import Any, Dict, Optional


_MB = 1024 * 1024


class SihaError(Exception):
    """
    Base exception for all SIHA application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, and returned only where the
                  handler for the subclass chooses to)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(SihaError):
    """
    Raised when client input fails validation.

    When:    Wrong content type, oversized upload, too many files, bad base64,
             missing user_id when saving.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class EmptyInputError(ValidationError):
    """
    Raised when a frame batch is empty.

    Fatal and reported immediately; there is nothing to retry.
    """

    def __init__(
        self,
        message: str = "No frames provided for analysis",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, field="frames", context=context)


class FrameEncodeError(SihaError):
    """
    Raised when one frame cannot be re-encoded by any fallback strategy.

    What:    Carries the zero-based index of the offending frame.
    HTTP:    422 Unprocessable Entity

    The whole batch fails: frames form a temporal signal, so skipping one
    in the middle would hand the vitals service a corrupted sequence.
    """

    def __init__(
        self,
        frame_index: int,
        reason: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"Failed to compress frame {frame_index + 1}"
        if reason:
            message = f"{message}: {reason}"
        ctx = context or {}
        ctx["frame_index"] = frame_index
        super().__init__(message=message, context=ctx)
        self.frame_index = frame_index


class PayloadTooLargeError(SihaError):
    """
    Raised when compression and frame truncation could not bring the payload
    under the hard maximum.

    HTTP:    413 Payload Too Large
    The caller must not attempt the outbound call; the client should retry
    with fewer or smaller frames.
    """

    def __init__(
        self,
        size_bytes: int,
        max_bytes: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        self.size_mb = size_bytes / _MB
        self.max_mb = max_bytes / _MB
        message = (
            f"Payload too large ({self.size_mb:.2f} MB) after compression. "
            f"Maximum allowed: {self.max_mb:.0f} MB. "
            "Try again with fewer or smaller frames."
        )
        ctx = context or {}
        ctx["size_mb"] = round(self.size_mb, 2)
        ctx["max_mb"] = round(self.max_mb, 2)
        super().__init__(message=message, context=ctx)


class AIServiceError(SihaError):
    """
    Raised when the vitals-estimation service fails or returns an error.

    When:    After retries are exhausted, on timeouts, resets, or when the
             service reports a failure in its response body.
    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "The vitals analysis service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(SihaError):
    """
    Raised when the circuit breaker guarding the AI service is OPEN.

    HTTP:    503 Service Unavailable
    Requests fail immediately instead of piling up behind a service that is
    known to be down.
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Vitals analysis is temporarily unavailable due to repeated failures. "
            f"Please retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class DatabaseError(SihaError):
    """
    Raised when persisting metric records fails.

    HTTP:    500 Internal Server Error
    The response message is always generic; details are logged server-side.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
