"""Studio session: the orchestration layer of Quantum Snap.

A ``StudioSession`` owns all mutable state of one user session and is the
only thing that mutates it:

- the ``AppStateMachine`` gating every operation
- the ``CropQueue`` of raw uploads and the ``AssetStore`` of confirmed references
- the current ``AnalysisProfile`` and the active gallery
- the ``SessionArchive`` of past albums

Persistence is an injected port. After each committed mutation the session
writes a best-effort snapshot; a failed write is logged and never interrupts
the session.

``analyze`` and ``generate`` are the only suspension points. They are awaited
by the caller and never overlap: the state machine rejects a second call while
one is in flight.

Example:
    >>> session = StudioSession(GeminiClient(), SessionPersistence(JsonFileStore(path)))
    >>> session.load()
    >>> session.upload([raw])
    >>> await session.confirm_crop(center_square_crop(raw))  # first asset: auto-analyzes
    >>> result = await session.generate(3)
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable

from qsnap.ai.analyzer import AnalysisCoordinator, progress_message
from qsnap.ai.generator import GenerationPipeline, GenerationResult, ProgressCallback
from qsnap.ai.service import GenerativeService
from qsnap.config import AppConfig, get_config
from qsnap.core.archive import RestoredAlbum, SessionArchive
from qsnap.core.assets import AssetStore, CropDecision, CropQueue
from qsnap.core.errors import (
    AnalysisFailure,
    CapacityExceeded,
    CredentialMissing,
    EmptyInputError,
    GenerationSetupError,
    IllegalTransitionError,
    QSnapError,
)
from qsnap.core.models import (
    AlbumSession,
    AnalysisProfile,
    AppState,
    CropQueueItem,
    GeneratedImage,
    ReferenceAsset,
)
from qsnap.core.state import AppStateMachine, Trigger
from qsnap.storage.persistence import PersistedState, SessionPersistence
from qsnap.storage.store import MemoryStore

logger = logging.getLogger(__name__)

CREDENTIAL_HINT = "No Gemini API key configured. Run 'qsnap config set-key' or set GEMINI_API_KEY."
GENERATION_INTERRUPTED = "Generation sequence interrupted. Check connectivity."


class StudioSession:
    """Session context passed to every operation.

    Attributes:
        config: Application configuration.
        status_message: Latest user-facing progress or error line.
        last_error: The error behind the current Error state, if any.
    """

    def __init__(
        self,
        service: GenerativeService,
        persistence: SessionPersistence | None = None,
        config: AppConfig | None = None,
        rng: random.Random | None = None,
        archive: SessionArchive | None = None,
        queue: CropQueue | None = None,
    ) -> None:
        self.config = config or get_config()
        self._service = service
        self._persistence = persistence or SessionPersistence(MemoryStore())
        self._machine = AppStateMachine()
        self._queue = queue or CropQueue()
        self._assets = AssetStore(capacity=self.config.album.max_assets)
        self._archive = archive or SessionArchive()
        self._coordinator = AnalysisCoordinator(service, self.config.ai)
        self._pipeline = GenerationPipeline(service, self.config.ai, rng=rng)
        self._gallery: list[GeneratedImage] = []
        self._profile: AnalysisProfile | None = None
        # Bumped by every reset; a run started under an older value is stale
        self._run = 0

        self.status_message = ""
        self.last_error: QSnapError | None = None

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def state(self) -> AppState:
        return self._machine.state

    @property
    def machine(self) -> AppStateMachine:
        return self._machine

    @property
    def is_busy(self) -> bool:
        return self._machine.is_busy

    @property
    def assets(self) -> tuple[ReferenceAsset, ...]:
        return self._assets.assets

    @property
    def primary(self) -> ReferenceAsset | None:
        return self._assets.primary()

    @property
    def profile(self) -> AnalysisProfile | None:
        return self._profile

    @property
    def gallery(self) -> tuple[GeneratedImage, ...]:
        return tuple(self._gallery)

    @property
    def history(self) -> tuple[AlbumSession, ...]:
        return self._archive.history

    @property
    def pending_crop(self) -> CropQueueItem | None:
        """The upload currently offered to the crop collaborator."""
        return self._queue.current()

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def get_album(self, album_id: str) -> AlbumSession:
        return self._archive.get(album_id)

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self) -> PersistedState:
        """Rehydrate from persistence.

        Saved gallery -> Complete; saved assets and profile -> ReadyToGenerate;
        otherwise Idle. Unreadable keys are treated as absent.
        """
        saved = self._persistence.load()
        self._assets.replace(saved.assets[: self._assets.capacity])
        if len(saved.assets) > self._assets.capacity:
            logger.warning(
                f"Dropped {len(saved.assets) - self._assets.capacity} saved reference(s) "
                f"over the limit of {self._assets.capacity}"
            )
        self._profile = saved.profile
        self._gallery = list(saved.gallery)
        self._archive = SessionArchive(saved.history)
        self._queue.clear()

        if self._gallery:
            initial = AppState.COMPLETE
        elif self._assets and self._profile is not None:
            initial = AppState.READY_TO_GENERATE
        else:
            initial = AppState.IDLE
        self._machine = AppStateMachine(initial)
        logger.debug(f"Session loaded in state {initial.value}")
        return saved

    def _persist(self) -> None:
        self._persistence.snapshot(
            self._gallery, self._profile, self._assets.assets, self._archive.history
        )

    # =========================================================================
    # Crop queue
    # =========================================================================

    def upload(self, raw_images: Iterable[str]) -> int:
        """Queue raw images for cropping.

        Returns:
            Number of images waiting.

        Raises:
            IllegalTransitionError: While an analysis or generation is running.
        """
        raw_images = list(raw_images)
        if not raw_images:
            return len(self._queue)
        self._machine.fire(Trigger.UPLOAD)
        waiting = self._queue.enqueue(raw_images)
        self.status_message = f"{waiting} photo(s) waiting to be cropped"
        return waiting

    async def confirm_crop(self, cropped_image: str) -> ReferenceAsset | None:
        """Confirm the crop of the head upload.

        When this drains the queue and produced the first asset of an empty
        store, analysis starts immediately. An analysis failure is reported
        through ``state``/``status_message``; the new asset is kept.

        Returns:
            The stored asset, or None if the store was full.

        Raises:
            EmptyInputError: If nothing is waiting to be cropped.
        """
        decision = self._queue.confirm(cropped_image)
        was_empty = not self._assets
        stored: ReferenceAsset | None = None
        note: str | None = None
        try:
            stored = self._assets.add(decision.asset)
        except CapacityExceeded as e:
            note = e.user_message()
        self._persist()

        if decision.drained and was_empty and stored is not None:
            self._machine.fire(Trigger.DRAINED_FIRST)
            try:
                await self._run_analysis()
            except QSnapError as e:
                logger.info(f"Initial scan did not complete: {e}")
        else:
            self._after_decision(decision, note)
        return stored

    def cancel_crop(self) -> CropDecision:
        """Skip the head upload.

        Raises:
            EmptyInputError: If nothing is waiting to be cropped.
        """
        decision = self._queue.cancel()
        self._after_decision(decision)
        return decision

    def _after_decision(self, decision: CropDecision, note: str | None = None) -> None:
        if decision.drained:
            self._machine.fire(Trigger.DRAINED)
            self.status_message = note or f"{len(self._assets)} reference photo(s) ready"
        else:
            self.status_message = note or f"{decision.remaining} photo(s) waiting to be cropped"

    # =========================================================================
    # Assets
    # =========================================================================

    def remove_asset(self, asset_id: str) -> ReferenceAsset | None:
        """Remove a reference. The profile is left as-is (it may now be stale)."""
        self._require_settled("remove")
        removed = self._assets.remove(asset_id)
        if removed is not None:
            self._persist()
        return removed

    def set_primary(self, asset_id: str) -> ReferenceAsset:
        """Make an asset the generation anchor.

        Raises:
            KeyError: If no asset has that id.
        """
        self._require_settled("set primary")
        asset = self._assets.set_primary(asset_id)
        self._persist()
        return asset

    # =========================================================================
    # Analysis
    # =========================================================================

    async def analyze(self) -> AnalysisProfile:
        """Derive a fresh profile from all current assets.

        A non-empty gallery is archived first; a new analysis starts a new album.

        Raises:
            IllegalTransitionError: If analysis is not allowed in the current state.
            EmptyInputError: No assets. State moves to Error.
            CredentialMissing: No API key. State moves to Error.
            AnalysisFailure: The call failed. State moves to Error.
        """
        if not self._machine.can(Trigger.ANALYZE):
            raise IllegalTransitionError(self.state.value, Trigger.ANALYZE.value)
        if not self._assets:
            self._fail(EmptyInputError("Nothing to analyze."))
        self._check_credentials()

        self._machine.fire(Trigger.ANALYZE)
        return await self._run_analysis()

    async def _run_analysis(self) -> AnalysisProfile:
        # Caller has already moved the machine to Analyzing
        run = self._run
        if not self._service.has_credentials():
            self._settle(Trigger.ANALYSIS_FAILED, CredentialMissing())
            raise self.last_error

        self._archive_gallery()
        assets = self._assets.assets
        self.status_message = progress_message(assets)
        self._persist()

        try:
            profile = await self._coordinator.analyze(assets)
        except QSnapError as e:
            if self._is_stale(run, "analysis"):
                raise
            self._settle(Trigger.ANALYSIS_FAILED, e)
            raise
        except Exception as e:
            if self._is_stale(run, "analysis"):
                raise
            self._settle(Trigger.ANALYSIS_FAILED, AnalysisFailure(original_error=e))
            raise

        if self._is_stale(run, "analysis"):
            return profile

        self._profile = profile
        self.last_error = None
        self._machine.fire(Trigger.ANALYSIS_OK)
        self.status_message = f"Identity locked: {profile.summary()}"
        self._persist()
        return profile

    # =========================================================================
    # Generation
    # =========================================================================

    async def generate(
        self,
        count: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_image: Callable[[GeneratedImage], None] | None = None,
    ) -> GenerationResult:
        """Generate a new album from the current profile.

        Images are appended to the gallery (and persisted) one by one as they
        arrive. Failed poses are skipped; partial success ends in Complete.

        Args:
            count: Album size. Defaults to ``ai.default_image_count``.
            on_progress: Called after each pose resolves.
            on_image: Called with each image right after it joins the gallery.

        Raises:
            IllegalTransitionError: If generation is not allowed in the current state.
            CredentialMissing: No API key. State moves to Error.
            EmptyInputError: No profile or no assets. State moves to Error.
            GenerationSetupError: The run could not start. State moves to Error.
        """
        count = self.config.ai.default_image_count if count is None else count
        if not self._machine.can(Trigger.GENERATE):
            error = IllegalTransitionError(self.state.value, Trigger.GENERATE.value)
            if self.state == AppState.IDLE and self._assets:
                error.remediation = "Run 'qsnap analyze' to refresh the profile first."
            raise error
        self._check_credentials()

        self._machine.fire(Trigger.GENERATE)
        run = self._run
        try:
            self._pipeline.check_setup(self._profile, count, self._assets.assets)
        except QSnapError as e:
            self._settle(Trigger.GENERATION_SETUP_FAILED, e)
            raise

        self._archive_gallery()
        self.status_message = "Synthesizing Friend POV..."
        self._persist()

        def _append(image: GeneratedImage) -> None:
            if self._is_stale(run, "generation"):
                return
            self._gallery.append(image)
            self._persist()
            if on_image is not None:
                on_image(image)

        try:
            result = await self._pipeline.generate(
                self._profile,
                count,
                self._assets.assets,
                on_image=_append,
                on_progress=on_progress,
                should_continue=lambda: run == self._run,
            )
        except QSnapError as e:
            if self._is_stale(run, "generation"):
                raise
            self._settle(Trigger.GENERATION_SETUP_FAILED, e, GENERATION_INTERRUPTED)
            raise
        except Exception as e:
            if self._is_stale(run, "generation"):
                raise
            self._settle(
                Trigger.GENERATION_SETUP_FAILED,
                GenerationSetupError("Generation failed unexpectedly."),
                GENERATION_INTERRUPTED,
            )
            logger.error(f"Generation aborted: {type(e).__name__}: {e}")
            raise

        if self._is_stale(run, "generation"):
            return result

        self.last_error = None
        self._machine.fire(Trigger.GENERATION_DONE)
        self.status_message = f"Album ready: {len(result.images)} of {result.requested} photos"
        if result.failures:
            self.status_message += f" ({len(result.failures)} skipped)"
        self._persist()
        return result

    # =========================================================================
    # Archive
    # =========================================================================

    def restore(self, album_id: str) -> RestoredAlbum:
        """Make an archived album the active one.

        The current gallery is archived first. The profile comes back degraded:
        only the album summary survives.

        Raises:
            IllegalTransitionError: While an analysis or generation is running.
            AlbumNotFoundError: If no album has that id.
        """
        if not self._machine.can(Trigger.RESTORE):
            raise IllegalTransitionError(self.state.value, Trigger.RESTORE.value)

        restored = self._archive.restore(
            album_id, self._gallery, self._assets.snapshot(), self._profile_summary()
        )
        self._gallery = restored.gallery
        self._assets.replace(restored.assets)
        self._profile = restored.profile
        self._queue.clear()
        self.last_error = None
        self._machine.fire(Trigger.RESTORE)
        self.status_message = f"Restored album {album_id}: {restored.profile.summary()}"
        self._persist()
        return restored

    def delete_album(self, album_id: str) -> AlbumSession:
        """Delete an archived album. Irreversible.

        Raises:
            AlbumNotFoundError: If no album has that id.
        """
        album = self._archive.delete(album_id)
        self._persist()
        return album

    # =========================================================================
    # Reset
    # =========================================================================

    def reset(self) -> AlbumSession | None:
        """Archive the gallery and start over. History is kept.

        Legal from any state. A run still waiting on the service is not
        cancelled, but its results are dropped and it makes no further calls.

        Returns:
            The album archived from the active gallery, if any.
        """
        archived = self._archive_gallery()
        self._clear_live_state()
        self._persistence.clear(include_history=False)
        self._persist()
        logger.info("Session reset")
        return archived

    def factory_reset(self) -> None:
        """Wipe everything, history included, in memory and in storage."""
        self._clear_live_state()
        removed = self._archive.clear()
        self._persistence.clear(include_history=True)
        logger.info(f"Factory reset: {removed} archived album(s) removed")

    def _clear_live_state(self) -> None:
        self._run += 1
        self._assets.clear()
        self._queue.clear()
        self._gallery = []
        self._profile = None
        self.last_error = None
        self.status_message = ""
        self._machine.fire(Trigger.RESET)

    # =========================================================================
    # Internals
    # =========================================================================

    def _profile_summary(self) -> str | None:
        return self._profile.summary() if self._profile else None

    def _archive_gallery(self) -> AlbumSession | None:
        if not self._gallery:
            return None
        album = self._archive.archive_current(
            self._gallery, self._assets.snapshot(), self._profile_summary()
        )
        self._gallery = []
        return album

    def _is_stale(self, run: int, what: str) -> bool:
        """Whether a reset happened since the run started. Stale results are dropped."""
        if run == self._run:
            return False
        logger.info(f"Discarding {what} result from before a reset")
        return True

    def _check_credentials(self) -> None:
        if not self._service.has_credentials():
            self._fail(CredentialMissing())

    def _fail(self, error: QSnapError) -> None:
        """Surface an error detected before any call and raise it."""
        if self._machine.can(Trigger.FAIL):
            self._machine.fire(Trigger.FAIL)
        self._record_error(error)
        raise error

    def _settle(
        self, trigger: Trigger, error: QSnapError, message: str | None = None
    ) -> None:
        self._machine.fire(trigger)
        self._record_error(error, message)
        self._persist()

    def _record_error(self, error: QSnapError, message: str | None = None) -> None:
        self.last_error = error
        if isinstance(error, CredentialMissing):
            self.status_message = CREDENTIAL_HINT
        else:
            self.status_message = message or error.user_message()
        logger.warning(f"Session error: {self.status_message}")

    def _require_settled(self, action: str) -> None:
        if self._machine.is_busy:
            raise IllegalTransitionError(self.state.value, action)
