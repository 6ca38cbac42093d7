"""Persisted record shapes and their normalisation.

Albums written by older builds come in three shapes:

- ``current``: ``referenceAssets`` with an explicit ``isPrimary`` flag.
- ``deck``: an ordered ``referenceDeck`` of ``{crop, original}`` entries, first one primary.
- ``stub``: only a ``sourceImageStub`` thumbnail from the single-reference era.

The shapes are modelled as a tagged union and converted into the in-memory
``AlbumSession`` right here, so nothing past the persistence boundary ever
branches on which shape a record had. Older field spellings
(``originalBase64``, ``url``, ``timestamp``...) are accepted the same way.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

from qsnap.core.assets import normalize_primary
from qsnap.core.models import (
    AlbumSession,
    AnalysisProfile,
    GeneratedImage,
    ReferenceAsset,
    new_album_id,
    new_asset_id,
    new_image_id,
    utc_now,
)

logger = logging.getLogger(__name__)

AlbumShape = Literal["current", "deck", "stub"]


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


# =============================================================================
# Leaf records
# =============================================================================


class AssetRecord(_Record):
    id: str = Field(default_factory=new_asset_id)
    original_image: str = Field(
        validation_alias=AliasChoices("originalImage", "originalBase64", "original_image")
    )
    cropped_image: str = Field(
        validation_alias=AliasChoices("croppedImage", "croppedBase64", "cropped_image")
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "timestamp", "created_at"),
    )
    is_primary: bool = Field(default=False, validation_alias=AliasChoices("isPrimary", "is_primary"))

    def to_asset(self) -> ReferenceAsset:
        return ReferenceAsset(
            id=self.id,
            original_image=self.original_image,
            cropped_image=self.cropped_image,
            created_at=self.created_at,
            is_primary=self.is_primary,
        )


class DeckCardRecord(_Record):
    id: str = Field(default_factory=new_asset_id)
    crop: str
    original: str | None = None
    created_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "timestamp", "created_at"),
    )

    def to_asset(self, primary: bool) -> ReferenceAsset:
        return ReferenceAsset(
            id=self.id,
            original_image=self.original or self.crop,
            cropped_image=self.crop,
            created_at=self.created_at,
            is_primary=primary,
        )


class ImageRecord(_Record):
    id: str = Field(default_factory=new_image_id)
    image_data: str = Field(validation_alias=AliasChoices("imageData", "url", "image_data"))
    prompt: str = ""
    scenario_id: str = Field(
        default="unknown", validation_alias=AliasChoices("scenarioId", "scenario", "scenario_id")
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "timestamp", "created_at"),
    )

    def to_image(self) -> GeneratedImage:
        return GeneratedImage(
            id=self.id,
            image_data=self.image_data,
            prompt=self.prompt,
            scenario_id=self.scenario_id,
            created_at=self.created_at,
        )


# =============================================================================
# Album records (tagged union)
# =============================================================================


class _AlbumRecordBase(_Record):
    id: str = Field(default_factory=new_album_id)
    created_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "timestamp", "created_at"),
    )
    images: list[ImageRecord] = Field(default_factory=list)
    analysis_summary: str = Field(
        default="Unknown Session",
        validation_alias=AliasChoices("analysisSummary", "analysis_summary"),
    )

    def _assets(self) -> list[ReferenceAsset]:
        raise NotImplementedError

    def to_album(self) -> AlbumSession:
        return AlbumSession(
            id=str(self.id),
            created_at=self.created_at,
            images=tuple(record.to_image() for record in self.images),
            reference_assets=tuple(normalize_primary(self._assets())),
            analysis_summary=self.analysis_summary or "Unknown Session",
        )


class CurrentAlbumRecord(_AlbumRecordBase):
    reference_assets: list[AssetRecord] = Field(
        default_factory=list,
        validation_alias=AliasChoices("referenceAssets", "reference_assets"),
    )

    def _assets(self) -> list[ReferenceAsset]:
        return [record.to_asset() for record in self.reference_assets]


class DeckAlbumRecord(_AlbumRecordBase):
    reference_deck: list[DeckCardRecord] = Field(
        default_factory=list, validation_alias=AliasChoices("referenceDeck", "reference_deck")
    )

    def _assets(self) -> list[ReferenceAsset]:
        return [card.to_asset(primary=i == 0) for i, card in enumerate(self.reference_deck)]


class StubAlbumRecord(_AlbumRecordBase):
    source_image_stub: str = Field(
        validation_alias=AliasChoices("sourceImageStub", "source_image_stub")
    )

    def _assets(self) -> list[ReferenceAsset]:
        return [
            ReferenceAsset(
                original_image=self.source_image_stub,
                cropped_image=self.source_image_stub,
                created_at=self.created_at,
                is_primary=True,
            )
        ]


def album_shape(value: Any) -> AlbumShape:
    """Classify a raw persisted album by which reference field it carries."""
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True)
    if not isinstance(value, dict):
        return "current"

    def _present(*keys: str) -> bool:
        return any(value.get(k) for k in keys)

    if _present("referenceAssets", "reference_assets"):
        return "current"
    if _present("referenceDeck", "reference_deck"):
        return "deck"
    if _present("sourceImageStub", "source_image_stub"):
        return "stub"
    return "current"


PersistedAlbum = Annotated[
    Union[
        Annotated[CurrentAlbumRecord, Tag("current")],
        Annotated[DeckAlbumRecord, Tag("deck")],
        Annotated[StubAlbumRecord, Tag("stub")],
    ],
    Discriminator(album_shape),
]

_album_adapter: TypeAdapter[Any] = TypeAdapter(PersistedAlbum)


# =============================================================================
# Public parsing helpers
# =============================================================================


def parse_album(raw: Any) -> AlbumSession:
    """Normalise one persisted album of any shape.

    Raises:
        pydantic.ValidationError: If the record is unusable.
    """
    record = _album_adapter.validate_python(raw)
    return record.to_album()


def parse_history(raw: Any) -> list[AlbumSession]:
    """Normalise a persisted history list, dropping entries that cannot be read."""
    if not isinstance(raw, list):
        logger.warning(f"History blob is {type(raw).__name__}, expected list; ignoring")
        return []

    albums: list[AlbumSession] = []
    for index, entry in enumerate(raw):
        try:
            albums.append(parse_album(entry))
        except ValidationError as e:
            logger.warning(f"Dropping unreadable history entry #{index}: {e.error_count()} errors")
    return albums


def parse_assets(raw: Any) -> list[ReferenceAsset]:
    """Normalise a persisted asset list, re-establishing the single primary."""
    if not isinstance(raw, list):
        return []
    assets: list[ReferenceAsset] = []
    for entry in raw:
        try:
            assets.append(AssetRecord.model_validate(entry).to_asset())
        except ValidationError:
            logger.warning("Dropping unreadable reference asset")
    return normalize_primary(assets)


def parse_gallery(raw: Any) -> list[GeneratedImage]:
    if not isinstance(raw, list):
        return []
    images: list[GeneratedImage] = []
    for entry in raw:
        try:
            images.append(ImageRecord.model_validate(entry).to_image())
        except ValidationError:
            logger.warning("Dropping unreadable gallery image")
    return images


def parse_profile(raw: Any) -> AnalysisProfile | None:
    if not isinstance(raw, dict):
        return None
    try:
        return AnalysisProfile.model_validate(raw)
    except ValidationError:
        logger.warning("Stored analysis profile is unreadable; ignoring")
        return None
