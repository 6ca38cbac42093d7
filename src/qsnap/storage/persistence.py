"""Best-effort snapshots of session state.

Each logical key (active gallery, profile, assets, history) is written
independently after every committed mutation. A failed write is logged as a
``PersistenceWriteFailure`` and swallowed; the in-memory session is the
source of truth. Because writes are not transactional, ``load()`` reads each
key on its own and treats anything unreadable as absent.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from qsnap.core.errors import PersistenceWriteFailure
from qsnap.core.models import AlbumSession, AnalysisProfile, GeneratedImage, ReferenceAsset
from qsnap.storage.schema import parse_assets, parse_gallery, parse_history, parse_profile
from qsnap.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "album": "qs_album_v2",
    "analysis": "qs_analysis_v2",
    "assets": "qs_assets_v2",
    "history": "qs_history_v2",
}


@dataclass
class PersistedState:
    """Whatever could be read back from the store."""

    gallery: list[GeneratedImage] = field(default_factory=list)
    profile: AnalysisProfile | None = None
    assets: list[ReferenceAsset] = field(default_factory=list)
    history: list[AlbumSession] = field(default_factory=list)


class SessionPersistence:
    """Serialises session state into a ``KeyValueStore``.

    Attributes:
        store: The injected key/value store.
        last_failures: Write failures from the most recent snapshot.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self.last_failures: list[PersistenceWriteFailure] = []
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def snapshot(
        self,
        gallery: Sequence[GeneratedImage],
        profile: AnalysisProfile | None,
        assets: Sequence[ReferenceAsset],
        history: Sequence[AlbumSession],
    ) -> list[PersistenceWriteFailure]:
        """Write every key. Never raises.

        Returns:
            The failures encountered (empty on full success).
        """
        failures: list[PersistenceWriteFailure] = []

        self._write_or_remove(
            STORAGE_KEYS["album"], [image.to_json_dict() for image in gallery], failures
        )
        self._write_or_remove(
            STORAGE_KEYS["analysis"], profile.to_json_dict() if profile else None, failures
        )
        self._write_or_remove(
            STORAGE_KEYS["assets"], [asset.to_json_dict() for asset in assets], failures
        )
        self._write(
            STORAGE_KEYS["history"], [album.to_json_dict() for album in history], failures
        )

        self.last_failures = failures
        return failures

    def load(self) -> PersistedState:
        """Read back every key independently. Never raises."""
        state = PersistedState()
        state.gallery = parse_gallery(self._read(STORAGE_KEYS["album"]))
        state.profile = parse_profile(self._read(STORAGE_KEYS["analysis"]))
        state.assets = parse_assets(self._read(STORAGE_KEYS["assets"]))
        history_raw = self._read(STORAGE_KEYS["history"])
        state.history = parse_history(history_raw) if history_raw is not None else []

        self._logger.debug(
            f"Loaded {len(state.assets)} assets, {len(state.gallery)} images, "
            f"{len(state.history)} albums"
        )
        return state

    def clear(self, include_history: bool = False) -> None:
        """Remove the live-session keys, and history too if asked."""
        for name, key in STORAGE_KEYS.items():
            if name == "history" and not include_history:
                continue
            try:
                self.store.remove(key)
            except Exception as e:
                self._logger.warning(str(PersistenceWriteFailure(key, e)))

    def _write_or_remove(
        self, key: str, payload: Any, failures: list[PersistenceWriteFailure]
    ) -> None:
        if not payload:
            try:
                self.store.remove(key)
            except Exception as e:
                failure = PersistenceWriteFailure(key, e)
                self._logger.warning(str(failure))
                failures.append(failure)
            return
        self._write(key, payload, failures)

    def _write(self, key: str, payload: Any, failures: list[PersistenceWriteFailure]) -> None:
        try:
            self.store.set(key, json.dumps(payload))
        except Exception as e:
            failure = PersistenceWriteFailure(key, e)
            self._logger.warning(str(failure))
            failures.append(failure)

    def _read(self, key: str) -> Any:
        try:
            blob = self.store.get(key)
        except Exception as e:
            self._logger.warning(f"Could not read '{key}': {type(e).__name__}")
            return None
        if blob is None:
            return None
        try:
            return json.loads(blob)
        except json.JSONDecodeError as e:
            self._logger.warning(f"Stored '{key}' is corrupt ({e.msg}); ignoring")
            return None
