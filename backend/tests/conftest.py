"""
SIHA Backend — Test Configuration (conftest.py)
=================================================

What:  Shared pytest fixtures for the test suite.
How:   Environment overrides are applied before any siha module is imported,
       so the settings singleton never sees production values.

Fixtures:
    ├── mock_db_session: AsyncMock standing in for AsyncSession
    ├── make_jpeg:       Factory for real JPEG bytes (Pillow)
    ├── make_frames:     Factory for a batch of distinct JPEG frames
    ├── face_result:     A typical vitals-service `result` object
    └── test_client:     httpx AsyncClient over ASGITransport
"""

import io
import os
import random
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

# ══════════════════════════════════════════════════════════════════════════
# Environment Setup (before any siha import)
# ══════════════════════════════════════════════════════════════════════════

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AI_SERVICE_URL"] = "http://vitals.test/api"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from PIL import Image  # noqa: E402


def _noise_image(width: int, height: int, seed: int) -> Image.Image:
    """Random pixels: compresses badly, like sensor noise in real captures."""
    rng = random.Random(seed)
    return Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))


def _gradient_image(width: int, height: int, seed: int) -> Image.Image:
    image = Image.new("RGB", (width, height))
    offset = seed * 37
    image.putdata(
        [
            ((x + offset) % 256, (y + offset) % 256, (x + y) % 256)
            for y in range(height)
            for x in range(width)
        ]
    )
    return image


@pytest.fixture
def make_jpeg():
    """
    Build JPEG bytes with Pillow.

    Usage:
        frame = make_jpeg(640, 480)                 # gradient, quality 95
        noisy = make_jpeg(800, 600, noise=True)     # random pixels
    """

    def _make(
        width: int = 320,
        height: int = 240,
        quality: int = 95,
        noise: bool = False,
        seed: int = 0,
        mode: str = "RGB",
        fmt: str = "JPEG",
    ) -> bytes:
        image = _noise_image(width, height, seed) if noise else _gradient_image(width, height, seed)
        if mode != "RGB":
            image = image.convert(mode)
        buffer = io.BytesIO()
        if fmt == "JPEG":
            image.save(buffer, format="JPEG", quality=quality)
        else:
            image.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


@pytest.fixture
def make_frames(make_jpeg):
    """A list of `count` distinct JPEG frames (distinct seeds keep them apart)."""

    def _make(count: int, width: int = 160, height: int = 120, **kwargs) -> list:
        return [make_jpeg(width, height, seed=i, **kwargs) for i in range(count)]

    return _make


@pytest.fixture
def face_result() -> Dict[str, Any]:
    return {
        "faceDetected": True,
        "vitals": {
            "heartRate": 72,
            "stressLevel": 3.5,
            "oxygenSaturation": 98,
            "respiratoryRate": 16,
            "confidence": 0.87,
            "timestamp": "2026-10-18T09:30:00Z",
        },
        "quality": "good",
    }


@pytest.fixture
def mock_db_session():
    """AsyncMock standing in for an AsyncSession."""
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


@pytest_asyncio.fixture
async def test_client(mock_db_session):
    """
    HTTP client bound to the FastAPI app, with the DB session dependency
    replaced by mock_db_session.
    """
    from siha.database import get_db_session
    from siha.main import app

    async def _override_session():
        yield mock_db_session

    app.dependency_overrides[get_db_session] = _override_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
