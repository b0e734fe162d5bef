"""
SIHA Backend — Abstract Vitals Estimator Interface
====================================================

What:  Contract for services that estimate vital signs from camera input.
Why:   AnalysisService depends on this interface, not on the HTTP client,
       so tests (and alternative backends) can plug in their own estimator.
How:   Concrete implementations inherit from VitalsEstimator.
Who:   Implemented by VitalsService; consumed by AnalysisService.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class VitalsEstimator(ABC):
    """
    Abstract interface to a vitals-estimation backend.

    Contract:
        - Methods return the backend's analysis result as a plain dict
          (heart rate, SpO2, face detection flag, ...)
        - Implementations handle their own retries and translate transport
          failures into AIServiceError / CircuitBreakerOpenError
        - Frame payloads arrive already serialized and size-bounded; the
          estimator forwards them as-is
    """

    @abstractmethod
    async def analyze_image(
        self, image: bytes, sensor_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Analyze a single still image."""
        ...

    @abstractmethod
    async def analyze_frames(self, payload: bytes) -> Dict[str, Any]:
        """
        Analyze a frame sequence.

        Args:
            payload: Serialized JSON body ({frames, sensorData?, userProfile?})
                     produced by the payload compressor.
        """
        ...

    @abstractmethod
    async def analyze_video_file(
        self,
        video: bytes,
        mime_type: str,
        sensor_data: Optional[Dict[str, Any]] = None,
        user_profile: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Analyze a recorded video file."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the backend is reachable."""
        ...
