"""The generative service port.

``GeminiClient`` implements it for real; tests pass in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class GenerativeService(Protocol):
    """Identity analysis plus image synthesis, both asynchronous."""

    def has_credentials(self) -> bool: ...

    async def analyze_identity(
        self,
        images: Sequence[str],
        prompt: str,
        system_instruction: str | None = None,
    ) -> dict[str, Any]: ...

    async def generate_image(
        self,
        reference_images: Sequence[str],
        prompt: str,
    ) -> tuple[bytes, str]: ...
