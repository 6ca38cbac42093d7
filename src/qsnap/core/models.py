"""Core data models for the album engine.

Models follow the lifecycle of one album:
1. RAW UPLOADS (CropQueueItem)
2. CONFIRMED REFERENCES (ReferenceAsset)
3. AI-DERIVED PROFILE (AnalysisProfile)
4. OUTPUT (GeneratedImage, AlbumSession)

Every model serialises with camelCase aliases so persisted blobs keep the key names
the browser build wrote (``croppedImage``, ``isPrimary``, ``analysisSummary``...).
Population by the Python field name is accepted too.
"""

from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_BASE36 = string.digits + string.ascii_lowercase


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _random_base36(length: int) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def new_asset_id() -> str:
    """Time-ordered asset id: millisecond timestamp plus a short random suffix."""
    return f"{int(time.time() * 1000)}-{_random_base36(5)}"


def new_album_id() -> str:
    """Album ids are millisecond timestamps."""
    return str(int(time.time() * 1000))


def new_image_id() -> str:
    return _random_base36(9)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Dump with persisted (camelCase) key names."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Enums
# =============================================================================


class AppState(str, Enum):
    """States of the album workflow. See ``qsnap.core.state`` for the transitions."""

    IDLE = "IDLE"
    CROPPING = "CROPPING"
    ANALYZING = "ANALYZING"
    READY_TO_GENERATE = "READY_TO_GENERATE"
    GENERATING = "GENERATING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class AnalysisMode(str, Enum):
    """Prompt shape used for identity analysis.

    Attributes:
        SINGLE: Describe one image precisely.
        COMPOSITE: Reconcile several images, report only cross-image-consistent traits.
    """

    SINGLE = "single"
    COMPOSITE = "composite"


# =============================================================================
# References
# =============================================================================


class CropQueueItem(_CamelModel):
    """A raw upload waiting for crop confirmation."""

    raw_image: str


class ReferenceAsset(_CamelModel):
    """One confirmed reference photo: the full upload plus its face-focused crop.

    Attributes:
        id: Unique, time-ordered id.
        original_image: Full uploaded image (data URL), used as generation anchor.
        cropped_image: Face crop (data URL), used for identity analysis.
        created_at: When the crop was confirmed.
        is_primary: Whether this is the anchor asset. Exactly one per non-empty store.
    """

    id: str = Field(default_factory=new_asset_id)
    original_image: str
    cropped_image: str
    created_at: datetime = Field(default_factory=utc_now)
    is_primary: bool = False


# =============================================================================
# Analysis
# =============================================================================


class AnalysisProfile(_CamelModel):
    """Identity and style description derived from the reference assets.

    A profile restored from the archive is degraded: only ``outfit`` (the album
    summary) is guaranteed, the structured fields are empty.
    """

    description: str = ""
    outfit: str = ""
    environment: str = ""
    photographic_style: str = ""
    detected_gender: str = ""
    key_features: list[str] = Field(default_factory=list)
    vibe_summary: str | None = Field(
        default=None,
        alias="vibeSummary",
        validation_alias=AliasChoices("vibeSummary", "vibeAnalysis", "vibe_summary"),
    )
    consistency_notes: str | None = None
    composite_confidence: float | None = None
    is_degraded: bool = False

    @field_validator("key_features", mode="before")
    @classmethod
    def coerce_key_features(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("composite_confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> Any:
        # Models sometimes answer in percent. Anything else outside 0..1 is dropped.
        if isinstance(v, str):
            try:
                v = float(v.strip().rstrip("%"))
            except ValueError:
                return None
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return v
        if 1.0 < v <= 100.0:
            v = v / 100.0
        return float(v) if 0.0 <= v <= 1.0 else None

    def summary(self) -> str:
        """Short label used as the archive summary of an album."""
        return self.outfit or "Unknown Session"

    @classmethod
    def degraded(cls, summary: str) -> "AnalysisProfile":
        return cls(outfit=summary, is_degraded=True)


# =============================================================================
# Output
# =============================================================================


class Pose(BaseModel):
    """A candid-photo scenario from the pose catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    prompt: str


class GeneratedImage(_CamelModel):
    """One synthesized photo.

    Attributes:
        id: Random short id, also used in export file names.
        image_data: Encoded image (data URL).
        prompt: Pose instruction used for this image.
        scenario_id: Id of the pose in the catalog.
        created_at: When the image arrived.
    """

    id: str = Field(default_factory=new_image_id)
    image_data: str
    prompt: str
    scenario_id: str
    created_at: datetime = Field(default_factory=utc_now)


class AlbumSession(_CamelModel):
    """Immutable archive snapshot of one generation run.

    The image and asset lists are tuples so an archived album cannot be edited in place.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_album_id)
    created_at: datetime = Field(default_factory=utc_now)
    images: tuple[GeneratedImage, ...] = ()
    reference_assets: tuple[ReferenceAsset, ...] = ()
    analysis_summary: str = "Unknown Session"

    @property
    def thumbnail(self) -> str | None:
        """Crop of the first reference, used as the history thumbnail."""
        if self.reference_assets:
            return self.reference_assets[0].cropped_image
        return None


class GenerationProgress(BaseModel):
    """Progress information delivered after each pose resolves."""

    completed: int = 0
    failed: int = 0
    total: int = 0
    pose_id: str | None = None
    message: str = ""

    @property
    def resolved(self) -> int:
        return self.completed + self.failed

    def to_status_line(self) -> str:
        """Format as a status line for display."""
        line = f"[{self.resolved}/{self.total}] {self.message}"
        if self.failed:
            line += f" ({self.failed} failed)"
        return line
