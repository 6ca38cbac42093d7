"""Album history: snapshots of past generation runs.

An album is archived whenever a non-empty active gallery is about to be
replaced (new analysis, new generation run, restore) or on reset. History is
most-recent-first. Archived albums are frozen copies with no link back to
live session state; they can only be deleted as a whole.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, Sequence

from qsnap.core.assets import normalize_primary
from qsnap.core.errors import AlbumNotFoundError
from qsnap.core.models import (
    AlbumSession,
    AnalysisProfile,
    GeneratedImage,
    ReferenceAsset,
    new_album_id,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoredAlbum:
    """Live state rebuilt from an archived album.

    Attributes:
        album_id: Id of the album that was restored.
        gallery: Fresh copies of the album images.
        assets: Fresh copies of the album references, primary re-established.
        profile: Degraded profile, only the summary survives archiving.
        archived: The album created from the previous gallery, if any.
    """

    album_id: str
    gallery: list[GeneratedImage]
    assets: list[ReferenceAsset]
    profile: AnalysisProfile
    archived: AlbumSession | None


class SessionArchive:
    """Ordered history of archived albums.

    Example:
        >>> archive = SessionArchive()
        >>> archive.archive_current([], [], "Denim jacket") is None
        True
    """

    def __init__(
        self,
        albums: Iterable[AlbumSession] = (),
        id_factory: Callable[[], str] = new_album_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._albums: list[AlbumSession] = list(albums)
        self._id_factory = id_factory
        self._clock = clock

    @property
    def history(self) -> tuple[AlbumSession, ...]:
        return tuple(self._albums)

    def __len__(self) -> int:
        return len(self._albums)

    def __iter__(self) -> Iterator[AlbumSession]:
        return iter(tuple(self._albums))

    def get(self, album_id: str) -> AlbumSession:
        """Look up an album.

        Raises:
            AlbumNotFoundError: If no album has that id.
        """
        for album in self._albums:
            if album.id == album_id:
                return album
        raise AlbumNotFoundError(album_id)

    def archive_current(
        self,
        gallery: Sequence[GeneratedImage],
        assets: Sequence[ReferenceAsset],
        profile_summary: str | None,
    ) -> AlbumSession | None:
        """Snapshot the active gallery into history.

        No-op on an empty gallery. A gallery that is an unchanged restore of
        an album still in history is not archived a second time.

        Returns:
            The new album, or None if nothing was archived.
        """
        if not gallery:
            return None

        image_ids = [image.id for image in gallery]
        for album in self._albums:
            if [image.id for image in album.images] == image_ids:
                logger.debug(f"Gallery already archived as album {album.id}")
                return None

        album = AlbumSession(
            id=self._unique_id(),
            created_at=self._clock(),
            images=tuple(image.model_copy(deep=True) for image in gallery),
            reference_assets=tuple(a.model_copy(deep=True) for a in assets),
            analysis_summary=profile_summary or "Unknown Session",
        )
        self._albums.insert(0, album)
        logger.info(f"Archived album {album.id} ({len(album.images)} images)")
        return album

    def restore(
        self,
        album_id: str,
        gallery: Sequence[GeneratedImage],
        assets: Sequence[ReferenceAsset],
        profile_summary: str | None,
    ) -> RestoredAlbum:
        """Archive the current gallery, then rebuild live state from an album.

        The album is looked up before anything is archived, so an unknown id
        leaves history untouched.

        Raises:
            AlbumNotFoundError: If no album has that id.
        """
        album = self.get(album_id)
        archived = self.archive_current(gallery, assets, profile_summary)

        return RestoredAlbum(
            album_id=album.id,
            gallery=[image.model_copy(deep=True) for image in album.images],
            assets=normalize_primary(album.reference_assets),
            profile=AnalysisProfile.degraded(album.analysis_summary),
            archived=archived,
        )

    def delete(self, album_id: str) -> AlbumSession:
        """Remove an album permanently.

        Raises:
            AlbumNotFoundError: If no album has that id.
        """
        album = self.get(album_id)
        self._albums = [a for a in self._albums if a.id != album_id]
        logger.info(f"Deleted album {album_id}")
        return album

    def clear(self) -> int:
        count = len(self._albums)
        self._albums = []
        return count

    def _unique_id(self) -> str:
        # Millisecond ids collide when two albums are archived in the same tick.
        candidate = self._id_factory()
        existing = {a.id for a in self._albums}
        suffix = 1
        unique = candidate
        while unique in existing:
            unique = f"{candidate}-{suffix}"
            suffix += 1
        return unique
