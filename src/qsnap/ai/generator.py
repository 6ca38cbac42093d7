"""Sequential album generation.

One run draws poses from the catalog, then issues one image call per pose,
strictly one after another. Images are delivered in pose-selection order as
they arrive. A failed pose is logged and skipped; only a broken setup (no
profile, no assets, nothing to do) stops the run.

Example:
    >>> pipeline = GenerationPipeline(GeminiClient(), rng=random.Random(7))
    >>> result = await pipeline.generate(profile, 3, store.assets, on_image=gallery.append)
    >>> len(result.images) + len(result.failures)
    3
"""

from __future__ import annotations

import logging
import random
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from qsnap.ai.prompts import render_generation_prompt
from qsnap.ai.service import GenerativeService
from qsnap.config import AIConfig
from qsnap.core.assets import AssetStore
from qsnap.core.errors import (
    CredentialMissing,
    EmptyInputError,
    GenerationItemFailure,
    GenerationSetupError,
)
from qsnap.core.models import (
    AnalysisProfile,
    GeneratedImage,
    GenerationProgress,
    Pose,
    ReferenceAsset,
    new_image_id,
    utc_now,
)
from qsnap.core.poses import CANDID_MOMENTS, select_poses
from qsnap.imaging import encode_data_url

logger = logging.getLogger(__name__)

ImageCallback = Callable[[GeneratedImage], None]
ProgressCallback = Callable[[GenerationProgress], None]


@dataclass
class GenerationResult:
    """Outcome of one run. Partial success is a normal outcome."""

    poses: list[Pose] = field(default_factory=list)
    images: list[GeneratedImage] = field(default_factory=list)
    failures: list[GenerationItemFailure] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.poses)


def anchor_images(assets: Sequence[ReferenceAsset], limit: int) -> list[str]:
    """Originals of the primary asset and the next ones in order, at most ``limit``."""
    store = AssetStore(assets, capacity=max(len(assets), 1))
    return [asset.original_image for asset in store.anchors(limit)]


class GenerationPipeline:
    """Turns a profile into an album, one pose at a time.

    Attributes:
        service: The generative service used for each image.
        config: AI configuration (reference image cap).
        catalog: Poses to draw from.
    """

    def __init__(
        self,
        service: GenerativeService,
        config: AIConfig | None = None,
        rng: random.Random | None = None,
        catalog: Sequence[Pose] = CANDID_MOMENTS,
        id_factory: Callable[[], str] = new_image_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.service = service
        self.config = config or AIConfig()
        self.catalog = tuple(catalog)
        # Unseeded in production, seeded in tests
        self._rng = rng or random.Random()
        self._new_id = id_factory
        self._now = clock

    def plan(self, count: int) -> list[Pose]:
        return select_poses(count, rng=self._rng, catalog=self.catalog)

    def check_setup(
        self, profile: AnalysisProfile | None, count: int, assets: Sequence[ReferenceAsset]
    ) -> None:
        """Reject a run before any call is made.

        Raises:
            EmptyInputError: No profile or no assets.
            GenerationSetupError: Nothing would be generated.
        """
        if not assets:
            raise EmptyInputError("No reference photos to anchor the album.")
        if profile is None:
            raise EmptyInputError("No identity profile yet.", "Run 'qsnap analyze' first.")
        if count < 1 or not self.catalog:
            raise GenerationSetupError(f"Cannot generate {count} image(s).", "Ask for at least one.")

    async def stream(
        self,
        profile: AnalysisProfile | None,
        count: int,
        assets: Sequence[ReferenceAsset],
        result: GenerationResult | None = None,
        on_progress: ProgressCallback | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> AsyncIterator[GeneratedImage]:
        """Yield images in pose order as each call completes.

        Args:
            profile: Identity profile driving the prompts.
            count: Requested album size, capped at the catalog size.
            assets: Reference assets; the primary is the first anchor.
            result: Optional collector for poses, images and failures.
            on_progress: Called after every pose resolves.
            should_continue: Checked before each call; returning False ends the run early.

        Raises:
            EmptyInputError: No profile or no assets.
            GenerationSetupError: Nothing would be generated.
            CredentialMissing: The service has no key. Stops the run.
        """
        self.check_setup(profile, count, assets)
        result = result if result is not None else GenerationResult()
        result.poses = self.plan(count)
        anchors = anchor_images(assets, self.config.max_reference_images)
        progress = GenerationProgress(total=len(result.poses), message="Synthesizing Friend POV...")
        logger.info(f"Generating {progress.total} image(s) from {len(anchors)} anchor(s)")

        for pose in result.poses:
            if should_continue is not None and not should_continue():
                logger.info(f"Generation stopped before pose {pose.id}")
                break
            progress.pose_id = pose.id
            try:
                image = await self._render(profile, pose, anchors)
            except CredentialMissing:
                raise
            except Exception as e:
                failure = GenerationItemFailure(pose.id, f"{type(e).__name__}: {e}", e)
                logger.warning(failure.message)
                result.failures.append(failure)
                progress.failed += 1
            else:
                result.images.append(image)
                progress.completed += 1
                yield image
            finally:
                if on_progress is not None:
                    on_progress(progress.model_copy())

        logger.info(
            f"Generation finished: {progress.completed} ok, {progress.failed} failed "
            f"of {progress.total}"
        )

    async def generate(
        self,
        profile: AnalysisProfile | None,
        count: int,
        assets: Sequence[ReferenceAsset],
        on_image: ImageCallback | None = None,
        on_progress: ProgressCallback | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> GenerationResult:
        """Run the whole album and return what came out.

        ``on_image`` receives every image as soon as it arrives, before the next
        pose is requested.
        """
        result = GenerationResult()
        async for image in self.stream(
            profile, count, assets, result, on_progress, should_continue
        ):
            if on_image is not None:
                on_image(image)
        return result

    async def _render(
        self, profile: AnalysisProfile, pose: Pose, anchors: list[str]
    ) -> GeneratedImage:
        prompt = render_generation_prompt(profile, pose)
        data, mime_type = await self.service.generate_image(anchors, prompt)
        return GeneratedImage(
            id=self._new_id(),
            image_data=encode_data_url(data, mime_type),
            prompt=pose.prompt,
            scenario_id=pose.id,
            created_at=self._now(),
        )
