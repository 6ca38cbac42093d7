"""Identity analysis over the confirmed reference assets.

The coordinator owns one decision: whether to ask for a single-source profile
or a composite one. The branch is taken purely on the number of assets.

Example:
    >>> coordinator = AnalysisCoordinator(GeminiClient())
    >>> profile = await coordinator.analyze(store.assets)
    >>> profile.summary()
    'Oversized grey hoodie, silver chain'
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import ValidationError

from qsnap.ai.client import AIAuthError, AIClientError
from qsnap.ai.prompts import render_identity_prompt
from qsnap.ai.service import GenerativeService
from qsnap.config import AIConfig
from qsnap.core.errors import AnalysisFailure, EmptyInputError
from qsnap.core.models import AnalysisMode, AnalysisProfile, ReferenceAsset
from qsnap.imaging import ImageDecodeError

logger = logging.getLogger(__name__)


def select_mode(assets: Sequence[ReferenceAsset]) -> AnalysisMode:
    return AnalysisMode.COMPOSITE if len(assets) > 1 else AnalysisMode.SINGLE


def progress_message(assets: Sequence[ReferenceAsset]) -> str:
    """Status line shown while the scan is running."""
    if len(assets) > 1:
        return f"Fusing identity matrix from {len(assets)} sources..."
    return "Scanning biometrics, angles & expression habits..."


class AnalysisCoordinator:
    """Runs one identity analysis call and turns the answer into a profile.

    Attributes:
        service: The generative service used for the call.
        config: AI configuration (context original limit).
    """

    def __init__(self, service: GenerativeService, config: AIConfig | None = None) -> None:
        self.service = service
        self.config = config or AIConfig()

    def build_images(self, assets: Sequence[ReferenceAsset]) -> list[str]:
        """Crops in asset order, then up to ``max_context_originals`` full originals.

        Originals are only added for composite analysis, primary first.
        """
        images = [asset.cropped_image for asset in assets]
        limit = self.config.max_context_originals
        if limit and len(assets) > 1:
            ordered = sorted(assets, key=lambda a: not a.is_primary)
            images.extend(asset.original_image for asset in ordered[:limit])
        return images

    async def analyze(self, assets: Sequence[ReferenceAsset]) -> AnalysisProfile:
        """Derive an identity profile from the assets.

        Args:
            assets: Confirmed reference assets, in store order.

        Returns:
            The parsed profile.

        Raises:
            EmptyInputError: If ``assets`` is empty. No call is made.
            CredentialMissing: If the service has no API key.
            AnalysisFailure: If the call fails or the answer is unusable.
        """
        if not assets:
            raise EmptyInputError("Nothing to analyze.")

        mode = select_mode(assets)
        images = self.build_images(assets)
        system, prompt = render_identity_prompt(
            mode, image_count=len(assets), context_originals=len(images) - len(assets)
        )
        logger.info(f"Analyzing {len(assets)} reference(s) in {mode.value} mode")

        try:
            payload = await self.service.analyze_identity(images, prompt, system_instruction=system)
        except AIAuthError as e:
            raise AnalysisFailure(
                "API key invalid or missing.",
                remediation="Run 'qsnap config set-key' or set GEMINI_API_KEY.",
                original_error=e,
            ) from e
        except AIClientError as e:
            logger.warning(f"Identity analysis failed: {type(e).__name__}: {e}")
            raise AnalysisFailure(original_error=e) from e
        except ImageDecodeError as e:
            # Typically a restored legacy stub that is not real base64
            logger.warning(f"Reference image unreadable: {e}")
            raise AnalysisFailure(original_error=e) from e

        return self._to_profile(payload)

    def _to_profile(self, payload: object) -> AnalysisProfile:
        if not isinstance(payload, dict):
            raise AnalysisFailure("Scan returned no profile.")
        try:
            profile = AnalysisProfile.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Profile failed validation: {e.error_count()} error(s)")
            raise AnalysisFailure("Scan returned an unreadable profile.", original_error=e) from e

        if not (profile.description or profile.outfit or profile.key_features):
            raise AnalysisFailure("Scan returned an empty profile.")
        logger.debug(f"Profile ready: {len(profile.key_features)} key features")
        return profile
