"""Reference asset store and the crop queue that feeds it.

Uploads enter the ``CropQueue`` as raw images and are offered to the crop
collaborator one at a time, strictly FIFO. Each confirmation produces a
``ReferenceAsset`` that the session adds to the ``AssetStore``.

The store keeps exactly one primary (anchor) asset whenever it is non-empty.
Stored assets are never mutated in place: primary reassignment swaps in a
copy, so snapshots handed to the archive stay untouched.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator

from qsnap.core.errors import CapacityExceeded, EmptyInputError
from qsnap.core.models import CropQueueItem, ReferenceAsset, new_asset_id, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5


def normalize_primary(assets: Iterable[ReferenceAsset]) -> list[ReferenceAsset]:
    """Return copies of ``assets`` with exactly one primary.

    The first asset flagged primary keeps the flag and any later flags are
    cleared. If none is flagged, the first asset becomes primary. An empty
    input gives an empty list.
    """
    result: list[ReferenceAsset] = []
    seen_primary = False
    for asset in assets:
        keep = asset.is_primary and not seen_primary
        seen_primary = seen_primary or keep
        result.append(asset.model_copy(update={"is_primary": keep}))
    if result and not seen_primary:
        result[0] = result[0].model_copy(update={"is_primary": True})
    return result


# =============================================================================
# Asset Store
# =============================================================================


class AssetStore:
    """Ordered collection of confirmed reference assets for the active session.

    Capacity is a soft bound that keeps the payload of external calls small.
    Adding past it raises ``CapacityExceeded`` and leaves the store unchanged.

    Example:
        >>> store = AssetStore()
        >>> first = store.add(ReferenceAsset(original_image="a", cropped_image="a"))
        >>> first.is_primary
        True
    """

    def __init__(
        self,
        assets: Iterable[ReferenceAsset] | None = None,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._capacity = capacity
        self._assets: list[ReferenceAsset] = normalize_primary(assets or [])

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def assets(self) -> tuple[ReferenceAsset, ...]:
        return tuple(self._assets)

    @property
    def is_full(self) -> bool:
        return len(self._assets) >= self._capacity

    def __len__(self) -> int:
        return len(self._assets)

    def __iter__(self) -> Iterator[ReferenceAsset]:
        return iter(tuple(self._assets))

    def __bool__(self) -> bool:
        return bool(self._assets)

    def add(self, asset: ReferenceAsset) -> ReferenceAsset:
        """Append an asset. The first asset of an empty store becomes primary.

        Returns:
            The stored copy of the asset.

        Raises:
            CapacityExceeded: If the store already holds ``capacity`` assets.
        """
        if self.is_full:
            logger.warning(f"Asset store full ({self._capacity}), ignoring new reference")
            raise CapacityExceeded(self._capacity)

        stored = asset.model_copy(update={"is_primary": not self._assets})
        self._assets.append(stored)
        logger.debug(f"Added reference {stored.id} (primary={stored.is_primary})")
        return stored

    def remove(self, asset_id: str) -> ReferenceAsset | None:
        """Remove an asset by id.

        If the removed asset was primary and assets remain, the new first
        asset is promoted.

        Returns:
            The removed asset, or None if no asset has that id.
        """
        for index, asset in enumerate(self._assets):
            if asset.id == asset_id:
                del self._assets[index]
                if asset.is_primary and self._assets:
                    self._assets[0] = self._assets[0].model_copy(update={"is_primary": True})
                    logger.debug(f"Promoted {self._assets[0].id} to primary")
                return asset
        return None

    def set_primary(self, asset_id: str) -> ReferenceAsset:
        """Make the given asset the anchor.

        Raises:
            KeyError: If no asset has that id.
        """
        if not any(a.id == asset_id for a in self._assets):
            raise KeyError(asset_id)
        self._assets = [
            a.model_copy(update={"is_primary": a.id == asset_id}) for a in self._assets
        ]
        return self.get(asset_id)  # type: ignore[return-value]

    def get(self, asset_id: str) -> ReferenceAsset | None:
        return next((a for a in self._assets if a.id == asset_id), None)

    def primary(self) -> ReferenceAsset | None:
        """The anchor asset, or None for an empty store."""
        return next((a for a in self._assets if a.is_primary), None)

    def anchors(self, limit: int) -> list[ReferenceAsset]:
        """Primary first, then the remaining assets in order, at most ``limit``."""
        primary = self.primary()
        if primary is None or limit < 1:
            return []
        others = [a for a in self._assets if a.id != primary.id]
        return [primary, *others][:limit]

    def replace(self, assets: Iterable[ReferenceAsset]) -> None:
        """Swap in a new asset list (restore/load), re-establishing the primary."""
        self._assets = normalize_primary(assets)

    def snapshot(self) -> tuple[ReferenceAsset, ...]:
        """Deep copies of the current assets, safe to hand to the archive."""
        return tuple(a.model_copy(deep=True) for a in self._assets)

    def clear(self) -> None:
        self._assets = []


# =============================================================================
# Crop Queue
# =============================================================================


@dataclass(frozen=True)
class CropDecision:
    """Outcome of one confirm/cancel on the head of the queue.

    Attributes:
        asset: The new asset on confirm, None on cancel.
        drained: True when this decision emptied the queue.
        remaining: Items still waiting.
    """

    asset: ReferenceAsset | None
    drained: bool
    remaining: int


class CropQueue:
    """FIFO of raw uploads awaiting crop confirmation.

    Only the head is visible to the crop collaborator. A batch enqueued from
    one upload is processed strictly one item at a time.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] = new_asset_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._items: deque[CropQueueItem] = deque()
        self._id_factory = id_factory
        self._clock = clock

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def enqueue(self, raw_images: Iterable[str]) -> int:
        """Append raw images to the tail. Returns the new queue length."""
        for raw in raw_images:
            self._items.append(CropQueueItem(raw_image=raw))
        return len(self._items)

    def current(self) -> CropQueueItem | None:
        """The item currently offered for cropping."""
        return self._items[0] if self._items else None

    def confirm(self, cropped_image: str) -> CropDecision:
        """Accept the crop of the head item and pop it.

        Raises:
            EmptyInputError: If nothing is waiting.
        """
        head = self._pop_head()
        asset = ReferenceAsset(
            id=self._id_factory(),
            original_image=head.raw_image,
            cropped_image=cropped_image,
            created_at=self._clock(),
        )
        return CropDecision(asset=asset, drained=not self._items, remaining=len(self._items))

    def cancel(self) -> CropDecision:
        """Skip the head item without creating an asset.

        Raises:
            EmptyInputError: If nothing is waiting.
        """
        self._pop_head()
        return CropDecision(asset=None, drained=not self._items, remaining=len(self._items))

    def clear(self) -> None:
        self._items.clear()

    def _pop_head(self) -> CropQueueItem:
        if not self._items:
            raise EmptyInputError("No photo is waiting to be cropped.", "Upload a photo first.")
        return self._items.popleft()
