"""Central Pytest Fixtures for Quantum Snap.

Fixtures included:
- Images: tiny PIL-generated data URLs and bytes
- Fakes: FakeGenerativeService standing in for Gemini
- Storage: in-memory store and persistence
- Session: a StudioSession wired with fakes and a seeded RNG
- Config: an AppConfig rooted in a temporary directory

No test makes a network call.
"""

from __future__ import annotations

import asyncio
import base64
import io
import random
from collections.abc import Sequence
from typing import Any

import pytest
from PIL import Image

from qsnap.ai.client import AIServerError
from qsnap.config import AppConfig, PathsConfig, reset_config
from qsnap.core.models import ReferenceAsset
from qsnap.session import StudioSession
from qsnap.storage.persistence import SessionPersistence
from qsnap.storage.store import MemoryStore

# =============================================================================
# Helper Functions
# =============================================================================


def image_bytes(color: str = "red", size: tuple[int, int] = (64, 48), fmt: str = "PNG") -> bytes:
    """Encode a solid-colour image."""
    img = Image.new("RGB", size, color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def data_url(color: str = "red", size: tuple[int, int] = (64, 48), fmt: str = "PNG") -> str:
    """A real, decodable image as a data URL."""
    mime = "image/png" if fmt == "PNG" else "image/jpeg"
    payload = base64.b64encode(image_bytes(color, size, fmt)).decode("ascii")
    return f"data:{mime};base64,{payload}"


def make_asset(asset_id: str, primary: bool = False, color: str = "red") -> ReferenceAsset:
    url = data_url(color)
    return ReferenceAsset(id=asset_id, original_image=url, cropped_image=url, is_primary=primary)


PROFILE_PAYLOAD: dict[str, Any] = {
    "description": "Oval face, sharp jawline, brown eyes, short curly hair",
    "outfit": "Oversized grey hoodie, silver chain",
    "environment": "Urban rooftop at dusk",
    "photographicStyle": "High angle selfie, slight tilt",
    "detectedGender": "Male",
    "keyFeatures": ["left dimple", "raised eyebrow", "half smile"],
    "vibeAnalysis": "Cool and stoic",
    "consistencyNotes": "Dimple and eyebrow visible in every photo",
}


# =============================================================================
# Fakes
# =============================================================================


class FakeGenerativeService:
    """In-memory stand-in for GeminiClient.

    Attributes:
        profile: Payload returned by analyze_identity.
        analysis_error: Raised by analyze_identity when set.
        fail_calls: 1-based indices of generate_image calls that fail.
        credentials: What has_credentials reports.
        delay: Seconds each call waits before answering.
        analysis_calls: (images, prompt) per analysis call.
        generation_calls: (reference_images, prompt) per generation call.
    """

    def __init__(
        self,
        profile: dict[str, Any] | None = None,
        analysis_error: Exception | None = None,
        fail_calls: Sequence[int] = (),
        credentials: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.profile = dict(PROFILE_PAYLOAD) if profile is None else profile
        self.analysis_error = analysis_error
        self.fail_calls = set(fail_calls)
        self.credentials = credentials
        self.delay = delay
        self.analysis_calls: list[tuple[list[str], str]] = []
        self.generation_calls: list[tuple[list[str], str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def has_credentials(self) -> bool:
        return self.credentials

    async def analyze_identity(
        self, images: Sequence[str], prompt: str, system_instruction: str | None = None
    ) -> dict[str, Any]:
        self.analysis_calls.append((list(images), prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.analysis_error is not None:
            raise self.analysis_error
        return self.profile

    async def generate_image(
        self, reference_images: Sequence[str], prompt: str
    ) -> tuple[bytes, str]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.generation_calls.append((list(reference_images), prompt))
            if self.delay:
                await asyncio.sleep(self.delay)
            if len(self.generation_calls) in self.fail_calls:
                raise AIServerError(status_code=503)
            return image_bytes("blue"), "image/png"
        finally:
            self.in_flight -= 1


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch):
    """Keep real keys and cached config out of tests."""
    for name in ("GEMINI_API_KEY", "API_KEY"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """Configuration rooted in a temporary directory."""
    return AppConfig(
        paths=PathsConfig(config_dir=tmp_path / "qsnap", export_dir=tmp_path / "album"),
    )


@pytest.fixture
def service() -> FakeGenerativeService:
    return FakeGenerativeService()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def persistence(memory_store: MemoryStore) -> SessionPersistence:
    return SessionPersistence(memory_store)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def session(
    service: FakeGenerativeService,
    persistence: SessionPersistence,
    app_config: AppConfig,
    rng: random.Random,
) -> StudioSession:
    """A fresh session wired to fakes."""
    return StudioSession(service, persistence, app_config, rng=rng)


@pytest.fixture
def red_url() -> str:
    return data_url("red")


@pytest.fixture
def green_url() -> str:
    return data_url("green")
