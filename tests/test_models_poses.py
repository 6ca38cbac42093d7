"""Tests for core models, the pose catalog and prompt rendering."""

from __future__ import annotations

import random

import pytest
from pydantic import ValidationError

from conftest import PROFILE_PAYLOAD
from qsnap.ai.prompts import (
    PROMPT_REGISTRY,
    get_prompt,
    register_prompt,
    render_generation_prompt,
    render_identity_prompt,
)
from qsnap.core.models import (
    AlbumSession,
    AnalysisMode,
    AnalysisProfile,
    GenerationProgress,
    Pose,
    ReferenceAsset,
    new_asset_id,
)
from qsnap.core.poses import CANDID_MOMENTS, catalog_size, select_poses


# =============================================================================
# Models
# =============================================================================


class TestAnalysisProfile:
    """Profile parsing from model output."""

    def test_camel_case_payload(self):
        """The model's JSON keys map onto the snake_case fields."""
        profile = AnalysisProfile.model_validate(PROFILE_PAYLOAD)
        assert profile.photographic_style == "High angle selfie, slight tilt"
        assert profile.key_features == ["left dimple", "raised eyebrow", "half smile"]

    def test_vibe_analysis_alias(self):
        """Older payloads name the vibe field vibeAnalysis."""
        profile = AnalysisProfile.model_validate({"outfit": "x", "vibeAnalysis": "Bubbly"})
        assert profile.vibe_summary == "Bubbly"
        assert profile.to_json_dict()["vibeSummary"] == "Bubbly"

    def test_key_features_from_string(self):
        """A comma-separated string is split into a list."""
        profile = AnalysisProfile.model_validate({"keyFeatures": "freckles, gap tooth ,"})
        assert profile.key_features == ["freckles", "gap tooth"]

    def test_percent_confidence(self):
        """Confidence given in percent is normalised."""
        profile = AnalysisProfile.model_validate({"compositeConfidence": 85})
        assert profile.composite_confidence == pytest.approx(0.85)

    @pytest.mark.parametrize("raw", [250, 150, -0.2, "very high"])
    def test_unusable_confidence_dropped(self, raw):
        """A bad optional confidence does not sink the rest of the profile."""
        profile = AnalysisProfile.model_validate({"outfit": "Denim jacket", "compositeConfidence": raw})
        assert profile.composite_confidence is None
        assert profile.outfit == "Denim jacket"

    def test_confidence_as_percent_string(self):
        profile = AnalysisProfile.model_validate({"compositeConfidence": "90%"})
        assert profile.composite_confidence == pytest.approx(0.9)

    def test_summary(self):
        """The outfit doubles as the album summary."""
        assert AnalysisProfile(outfit="Denim jacket").summary() == "Denim jacket"
        assert AnalysisProfile().summary() == "Unknown Session"

    def test_degraded(self):
        profile = AnalysisProfile.degraded("Denim jacket")
        assert profile.is_degraded and profile.outfit == "Denim jacket"


class TestOtherModels:
    def test_asset_ids_are_unique(self):
        """Ids minted in a tight loop do not collide."""
        assert len({new_asset_id() for _ in range(200)}) == 200

    def test_asset_serialises_camel_case(self):
        data = ReferenceAsset(original_image="o", cropped_image="c").to_json_dict()
        assert {"originalImage", "croppedImage", "isPrimary", "createdAt"} <= set(data)

    def test_album_is_frozen(self):
        """Archived albums cannot be edited in place."""
        album = AlbumSession(analysis_summary="x")
        with pytest.raises(ValidationError):
            album.analysis_summary = "y"

    def test_progress_status_line(self):
        progress = GenerationProgress(completed=2, failed=1, total=5, message="Working")
        assert progress.resolved == 3
        assert progress.to_status_line() == "[3/5] Working (1 failed)"


# =============================================================================
# Poses
# =============================================================================


class TestSelectPoses:
    """Drawing poses from the catalog."""

    def test_catalog(self):
        """The catalog holds ten distinct poses."""
        assert catalog_size() == 10
        assert len({p.id for p in CANDID_MOMENTS}) == 10

    def test_distinct_and_capped(self):
        """Requests beyond the catalog are capped and never repeat."""
        poses = select_poses(25, random.Random(1))
        assert len(poses) == 10
        assert len({p.id for p in poses}) == 10

    def test_seeded_draw_is_reproducible(self):
        first = select_poses(4, random.Random(99))
        second = select_poses(4, random.Random(99))
        assert first == second

    def test_non_positive_count(self):
        assert select_poses(0) == []

    def test_custom_catalog(self):
        catalog = (Pose(id="only", prompt="p"),)
        assert select_poses(3, catalog=catalog) == [catalog[0]]


# =============================================================================
# Prompts
# =============================================================================


class TestPrompts:
    """Prompt template rendering."""

    def test_single_prompt(self):
        """Single mode asks about exactly one image."""
        system, prompt = render_identity_prompt(AnalysisMode.SINGLE, image_count=1)
        assert "1 reference image" in prompt
        assert "vibeSummary" in prompt
        assert "Forensic" in system

    def test_composite_prompt(self):
        """Composite mode names the image count and asks for consistency."""
        _, prompt = render_identity_prompt(AnalysisMode.COMPOSITE, image_count=3)
        assert "3 reference images of the SAME person" in prompt
        assert "compositeConfidence" in prompt
        assert "uncropped originals" not in prompt

    def test_composite_context_note(self):
        _, prompt = render_identity_prompt(AnalysisMode.COMPOSITE, image_count=2, context_originals=1)
        assert "The last 1 image(s) are uncropped originals" in prompt

    def test_generation_prompt_uses_profile(self):
        """Profile fields and the pose instruction end up in the prompt."""
        profile = AnalysisProfile.model_validate(PROFILE_PAYLOAD)
        prompt = render_generation_prompt(profile, CANDID_MOMENTS[0])
        assert "left dimple, raised eyebrow, half smile" in prompt
        assert "Oversized grey hoodie, silver chain" in prompt
        assert CANDID_MOMENTS[0].prompt in prompt

    def test_generation_prompt_degraded_profile(self):
        """A restored profile still renders with fallbacks."""
        prompt = render_generation_prompt(AnalysisProfile.degraded("Denim"), CANDID_MOMENTS[1])
        assert "Denim" in prompt
        assert "natural expression" in prompt
        assert "$" not in prompt

    def test_registry(self):
        assert get_prompt("candid_generation_v1") is PROMPT_REGISTRY["candid_generation_v1"]
        with pytest.raises(KeyError):
            get_prompt("nope")
        with pytest.raises(ValueError):
            register_prompt(PROMPT_REGISTRY["identity_single_v1"])

    def test_missing_variables(self):
        """Required variables are enforced."""
        with pytest.raises(ValueError):
            get_prompt("identity_composite_v1").render()
