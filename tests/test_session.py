"""Tests for qsnap.session - the whole workflow against fakes."""

from __future__ import annotations

import asyncio
import json
import random

import pytest

from conftest import FakeGenerativeService, data_url
from qsnap.ai.client import AIServerError
from qsnap.config import AlbumConfig, AppConfig, PathsConfig
from qsnap.core.errors import (
    AlbumNotFoundError,
    AnalysisFailure,
    CredentialMissing,
    EmptyInputError,
    IllegalTransitionError,
)
from qsnap.core.models import AppState
from qsnap.session import CREDENTIAL_HINT, StudioSession
from qsnap.storage.persistence import STORAGE_KEYS, SessionPersistence
from qsnap.storage.store import MemoryStore


async def add_references(session: StudioSession, *colors: str) -> None:
    """Upload and confirm one photo per colour."""
    session.upload([data_url(c) for c in colors])
    for color in colors:
        await session.confirm_crop(data_url(color, size=(32, 32)))


async def ready_session(session: StudioSession) -> StudioSession:
    await add_references(session, "red", "green")
    await session.analyze()
    return session


# =============================================================================
# Crop flow
# =============================================================================


class TestCropFlow:
    """Uploading and confirming reference photos."""

    async def test_single_upload_auto_analyzes(self, session, service, red_url):
        """The first asset of an empty session triggers analysis immediately."""
        session.upload([red_url])
        assert session.state == AppState.CROPPING

        asset = await session.confirm_crop(red_url)

        assert asset.is_primary
        assert len(service.analysis_calls) == 1
        assert session.state == AppState.READY_TO_GENERATE
        assert session.status_message == "Identity locked: Oversized grey hoodie, silver chain"

    async def test_batch_upload_goes_idle(self, session, service):
        """A multi-photo batch ends in Idle and waits for an explicit analyze."""
        await add_references(session, "red", "green")

        assert session.state == AppState.IDLE
        assert service.analysis_calls == []
        assert [a.is_primary for a in session.assets] == [True, False]

    async def test_crops_offered_fifo(self, session, red_url, green_url):
        """The head of the queue is always the oldest upload."""
        session.upload([red_url, green_url])
        assert session.pending_crop.raw_image == red_url
        session.cancel_crop()
        assert session.pending_crop.raw_image == green_url
        assert session.pending_count == 1

    async def test_cancel_everything(self, session, service, red_url):
        """Cancelling every crop leaves an empty Idle session."""
        session.upload([red_url])
        decision = session.cancel_crop()
        assert decision.drained
        assert session.state == AppState.IDLE
        assert session.assets == ()

    async def test_confirm_with_empty_queue(self, session, red_url):
        with pytest.raises(EmptyInputError):
            await session.confirm_crop(red_url)

    async def test_capacity_reported(self, service, persistence, tmp_path):
        """A crop past the limit is dropped with a note."""
        config = AppConfig(
            album=AlbumConfig(max_assets=2), paths=PathsConfig(config_dir=tmp_path / "cfg")
        )
        session = StudioSession(service, persistence, config)
        session.upload([data_url("red"), data_url("green"), data_url("blue")])
        await session.confirm_crop(data_url("red"))
        await session.confirm_crop(data_url("green"))

        dropped = await session.confirm_crop(data_url("blue"))

        assert dropped is None
        assert len(session.assets) == 2
        assert session.state == AppState.IDLE
        assert session.status_message.startswith("Reference limit reached (2 photos).")

    async def test_analysis_failure_keeps_asset(self, persistence, app_config, red_url):
        """A failed first scan leaves the asset in place and the session in Error."""
        service = FakeGenerativeService(analysis_error=AIServerError(status_code=500))
        session = StudioSession(service, persistence, app_config)
        session.upload([red_url])

        asset = await session.confirm_crop(red_url)

        assert asset is not None
        assert session.state == AppState.ERROR
        assert isinstance(session.last_error, AnalysisFailure)
        assert len(session.assets) == 1


# =============================================================================
# Analysis and generation
# =============================================================================


class TestAlbumRuns:
    """Analyze and generate through the session."""

    async def test_full_scenario(self, session, service, memory_store):
        """Two uploads, analyze, two albums: history grows by exactly one."""
        await add_references(session, "red", "green")
        profile = await session.analyze()

        assert "2 reference images" in service.analysis_calls[0][1]
        assert profile.outfit == "Oversized grey hoodie, silver chain"
        assert session.state == AppState.READY_TO_GENERATE

        first = await session.generate(3)
        assert session.state == AppState.COMPLETE
        assert len(session.gallery) == 3
        assert session.history == ()
        assert session.status_message == "Album ready: 3 of 3 photos"
        assert [i.id for i in session.gallery] == [i.id for i in first.images]

        await session.generate(3)
        assert len(session.history) == 1
        archived = session.history[0]
        assert [i.id for i in archived.images] == [i.id for i in first.images]
        assert archived.analysis_summary == "Oversized grey hoodie, silver chain"
        assert len(session.gallery) == 3

        persisted = json.loads(memory_store.data[STORAGE_KEYS["history"]])
        assert len(persisted) == 1

    async def test_partial_failure_completes(self, persistence, app_config, rng):
        """A skipped pose still ends in Complete."""
        service = FakeGenerativeService(fail_calls=[2])
        session = await ready_session(StudioSession(service, persistence, app_config, rng=rng))

        result = await session.generate(3)

        assert session.state == AppState.COMPLETE
        assert len(session.gallery) == 2
        assert len(result.failures) == 1
        assert session.status_message == "Album ready: 2 of 3 photos (1 skipped)"

    async def test_default_count_from_config(self, session):
        await ready_session(session)
        await session.generate()
        assert len(session.gallery) == session.config.ai.default_image_count

    async def test_images_persisted_as_they_arrive(self, session, memory_store):
        """Each image is in storage before the next one is requested."""
        await ready_session(session)
        stored_counts = []

        def on_image(image):
            stored_counts.append(len(json.loads(memory_store.data[STORAGE_KEYS["album"]])))

        await session.generate(3, on_image=on_image)
        assert stored_counts == [1, 2, 3]

    async def test_busy_session_rejects_new_work(self, session, red_url):
        """No upload, analyze or restore while a run is in flight."""
        await ready_session(session)
        attempts = []

        def on_image(image):
            assert session.is_busy
            with pytest.raises(IllegalTransitionError):
                session.upload([red_url])
            with pytest.raises(IllegalTransitionError):
                session.remove_asset(session.assets[0].id)
            attempts.append(image.id)

        await session.generate(2, on_image=on_image)
        assert len(attempts) == 2
        assert session.state == AppState.COMPLETE

    async def test_reanalysis_starts_new_album(self, session):
        """Analyzing again archives the gallery."""
        await ready_session(session)
        await session.generate(2)

        await session.analyze()

        assert session.gallery == ()
        assert len(session.history) == 1
        assert session.state == AppState.READY_TO_GENERATE

    async def test_generate_from_idle_needs_analysis(self, session):
        """A drained batch must be analyzed before generating."""
        await add_references(session, "red", "green")
        with pytest.raises(IllegalTransitionError) as exc_info:
            await session.generate(3)
        assert "analyze" in exc_info.value.remediation
        assert session.state == AppState.IDLE

    async def test_analyze_without_assets(self, session):
        """Analyzing nothing moves to Error without a call."""
        with pytest.raises(EmptyInputError):
            await session.analyze()
        assert session.state == AppState.ERROR


class TestCredentials:
    """Missing API key handling."""

    async def test_first_asset_without_key(self, persistence, app_config, red_url):
        """Auto-analysis without a key ends in Error with a hint and makes no call."""
        service = FakeGenerativeService(credentials=False)
        session = StudioSession(service, persistence, app_config)
        session.upload([red_url])

        await session.confirm_crop(red_url)

        assert session.state == AppState.ERROR
        assert session.status_message == CREDENTIAL_HINT
        assert isinstance(session.last_error, CredentialMissing)
        assert service.analysis_calls == []

    async def test_analyze_without_key(self, persistence, app_config):
        service = FakeGenerativeService(credentials=False)
        session = StudioSession(service, persistence, app_config)
        await add_references(session, "red", "green")

        with pytest.raises(CredentialMissing):
            await session.analyze()
        assert session.state == AppState.ERROR
        assert session.status_message == CREDENTIAL_HINT

    async def test_generate_without_key(self, persistence, app_config):
        service = FakeGenerativeService()
        session = await ready_session(StudioSession(service, persistence, app_config))
        service.credentials = False

        with pytest.raises(CredentialMissing):
            await session.generate(3)
        assert session.state == AppState.ERROR
        assert service.generation_calls == []

        service.credentials = True
        await session.generate(1)
        assert session.state == AppState.COMPLETE


# =============================================================================
# Assets, archive and reset
# =============================================================================


class TestAssetEditing:
    async def test_remove_primary_promotes_next(self, session):
        await add_references(session, "red", "green", "blue")
        first, second, _ = session.assets

        session.remove_asset(first.id)

        assert session.primary.id == second.id

    async def test_set_primary_changes_anchor(self, session, service):
        """The chosen anchor leads every generation call."""
        await add_references(session, "red", "green")
        chosen = session.assets[1]
        session.set_primary(chosen.id)
        await session.analyze()

        await session.generate(1)

        references, _ = service.generation_calls[0]
        assert references[0] == chosen.original_image


class TestArchive:
    """Restoring, deleting and resetting."""

    async def test_restore(self, session):
        """Restoring archives the live album and brings back a degraded profile."""
        await ready_session(session)
        first = await session.generate(2)
        await session.generate(2)
        album_id = session.history[0].id

        restored = session.restore(album_id)

        assert session.state == AppState.COMPLETE
        assert [i.id for i in session.gallery] == [i.id for i in first.images]
        assert session.profile.is_degraded
        assert len(session.history) == 2
        assert restored.archived is not None

    async def test_generate_from_restored_album(self, session, service):
        """A degraded profile is enough to generate."""
        await ready_session(session)
        await session.generate(2)
        await session.generate(2)
        session.restore(session.history[0].id)

        await session.generate(2)

        assert session.state == AppState.COMPLETE
        assert "Oversized grey hoodie" in service.generation_calls[-1][1]

    async def test_restore_unknown(self, session):
        with pytest.raises(AlbumNotFoundError):
            session.restore("missing")
        assert session.state == AppState.IDLE

    async def test_restore_twice_does_not_duplicate(self, session):
        """Restoring back and forth without generating keeps history stable."""
        await ready_session(session)
        await session.generate(1)
        await session.generate(1)
        await session.generate(1)
        older, newer = session.history[1].id, session.history[0].id

        session.restore(older)
        session.restore(newer)
        session.restore(older)

        assert len(session.history) == 3

    async def test_delete_album(self, session):
        await ready_session(session)
        await session.generate(1)
        await session.generate(1)

        session.delete_album(session.history[0].id)

        assert session.history == ()

    async def test_reset_keeps_history(self, session, memory_store):
        """Reset archives the gallery and clears the live session."""
        await ready_session(session)
        await session.generate(2)

        archived = session.reset()

        assert archived is not None
        assert session.state == AppState.IDLE
        assert session.assets == () and session.gallery == () and session.profile is None
        assert len(session.history) == 1
        assert list(memory_store.data) == [STORAGE_KEYS["history"]]

    async def test_factory_reset(self, session, memory_store):
        await ready_session(session)
        await session.generate(1)
        await session.generate(1)

        session.factory_reset()

        assert session.history == ()
        assert memory_store.data == {}
        assert session.state == AppState.IDLE

    async def test_restore_legacy_stub_album(self, session, memory_store):
        """A single-stub album from an old build restores with one primary asset."""
        stub = data_url("purple")
        legacy = [
            {
                "id": 1699999999000,
                "timestamp": 1699999999000,
                "sourceImageStub": stub,
                "analysisSummary": "Leather jacket",
                "images": [
                    {
                        "id": "k3j9x0p2q",
                        "url": data_url("blue"),
                        "prompt": "Walking past the camera",
                        "scenario": "walking_past",
                        "timestamp": 1699999999500,
                    }
                ],
            }
        ]
        memory_store.set(STORAGE_KEYS["history"], json.dumps(legacy))
        session.load()

        session.restore("1699999999000")

        assert session.state == AppState.COMPLETE
        assert len(session.assets) == 1
        assert [a.is_primary for a in session.assets] == [True]
        assert session.primary.cropped_image == stub
        assert [i.scenario_id for i in session.gallery] == ["walking_past"]
        assert session.profile.outfit == "Leather jacket"


class TestResetDuringRun:
    """Reset while a call is in flight leaves a clean Idle session."""

    async def test_reset_while_generating(self, session, service, memory_store):
        await ready_session(session)
        service.delay = 0.01
        task = asyncio.create_task(session.generate(3))
        while not session.gallery:
            await asyncio.sleep(0.002)

        session.reset()
        result = await task

        assert session.state == AppState.IDLE
        assert session.gallery == ()
        assert session.assets == () and session.profile is None
        assert len(session.history) == 1
        assert len(session.history[0].images) == 1
        # The call in flight at reset finished; no further pose was requested
        assert len(service.generation_calls) == 2
        assert len(result.images) == 2
        assert list(memory_store.data) == [STORAGE_KEYS["history"]]

    async def test_reset_while_analyzing(self, session, service, memory_store):
        await add_references(session, "red", "green")
        service.delay = 0.01
        task = asyncio.create_task(session.analyze())
        while session.state != AppState.ANALYZING:
            await asyncio.sleep(0)

        session.reset()
        await task

        assert session.state == AppState.IDLE
        assert session.profile is None
        assert list(memory_store.data) == [STORAGE_KEYS["history"]]

    async def test_failure_after_reset_is_not_recorded(self, session, service):
        await add_references(session, "red", "green")
        service.delay = 0.01
        service.analysis_error = AIServerError(status_code=500)
        task = asyncio.create_task(session.analyze())
        while session.state != AppState.ANALYZING:
            await asyncio.sleep(0)

        session.reset()
        with pytest.raises(AnalysisFailure):
            await task

        assert session.state == AppState.IDLE
        assert session.last_error is None

    async def test_session_usable_after_reset(self, session, service):
        await ready_session(session)
        service.delay = 0.01
        task = asyncio.create_task(session.generate(2))
        while not session.gallery:
            await asyncio.sleep(0.002)
        session.reset()
        await task
        service.delay = 0.0

        await ready_session(session)
        result = await session.generate(2)

        assert session.state == AppState.COMPLETE
        assert [i.id for i in session.gallery] == [i.id for i in result.images]


# =============================================================================
# Persistence
# =============================================================================


class TestRehydration:
    """Loading a session from storage."""

    async def test_complete_album_reloads_complete(self, session, memory_store, app_config):
        await ready_session(session)
        await session.generate(2)

        reloaded = StudioSession(FakeGenerativeService(), SessionPersistence(memory_store), app_config)
        reloaded.load()

        assert reloaded.state == AppState.COMPLETE
        assert [i.id for i in reloaded.gallery] == [i.id for i in session.gallery]
        assert reloaded.primary.id == session.primary.id

    async def test_profile_and_assets_reload_ready(self, session, memory_store, app_config):
        await ready_session(session)

        reloaded = StudioSession(FakeGenerativeService(), SessionPersistence(memory_store), app_config)
        reloaded.load()

        assert reloaded.state == AppState.READY_TO_GENERATE
        assert reloaded.profile == session.profile

    async def test_assets_only_reload_idle(self, session, memory_store, app_config):
        await add_references(session, "red", "green")

        reloaded = StudioSession(FakeGenerativeService(), SessionPersistence(memory_store), app_config)
        reloaded.load()

        assert reloaded.state == AppState.IDLE
        assert len(reloaded.assets) == 2

    async def test_failing_storage_never_interrupts(self, app_config):
        """A store that rejects every write does not break the workflow."""

        class FullStore(MemoryStore):
            def set(self, key, value):
                raise OSError("quota exceeded")

        persistence = SessionPersistence(FullStore())
        session = StudioSession(FakeGenerativeService(), persistence, app_config, rng=random.Random(3))
        await ready_session(session)
        await session.generate(2)

        assert session.state == AppState.COMPLETE
        assert persistence.last_failures
