"""Gemini API Client for Quantum Snap.

This module is the SOLE INTERFACE to the Gemini API. No other file in the
codebase imports ``google.genai``.

The client provides:
- Async identity analysis (images + prompt -> JSON object)
- Async image synthesis (reference images + prompt -> image bytes)
- Typed exceptions mapped from SDK errors
- Security-first logging (never logs keys, prompts or image payloads)

There is deliberately no retry loop here: a failed call surfaces to the caller,
and retrying is an explicit user action.

Example:
    >>> from qsnap.ai.client import GeminiClient
    >>> client = GeminiClient()
    >>> profile = await client.analyze_identity([crop_data_url], prompt)
    >>> data, mime = await client.generate_image([anchor_data_url], pose_prompt)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Sequence
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import SecretStr

from qsnap.config import APIKeyManager, AppConfig, get_config
from qsnap.core.errors import CredentialMissing
from qsnap.imaging import decode_data_url
from qsnap.utils.logging import RedactingFilter

logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())

# Finish reasons that mean the model refused rather than failed
_BLOCKED_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}


# =============================================================================
# Exception Hierarchy
# =============================================================================


class AIClientError(Exception):
    """Base exception for all Gemini client errors.

    Attributes:
        message: Human-readable error description (safe to log).
        retriable: Whether a later manual retry may succeed.
        original_error: The underlying exception that caused this error.
    """

    def __init__(
        self,
        message: str,
        retriable: bool = False,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.original_error = original_error

    def __str__(self) -> str:
        return self.message


class AIAuthError(AIClientError):
    """API key is invalid, expired or lacks permission."""

    def __init__(
        self,
        message: str = "API key invalid or missing. Run 'qsnap config set-key'.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AIRateLimitError(AIClientError):
    """Too many requests in a short window."""

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please wait before retrying.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)


class AIQuotaExceededError(AIClientError):
    """Quota or billing limit reached."""

    def __init__(
        self,
        message: str = "API quota exceeded. Check your billing and usage limits.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AIServerError(AIClientError):
    """Server-side error (5xx)."""

    def __init__(
        self,
        message: str = "Gemini server error. The service may be temporarily unavailable.",
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)
        self.status_code = status_code


class AIBadRequestError(AIClientError):
    """The request was rejected as malformed (bad model name, bad payload...)."""

    def __init__(
        self,
        message: str = "Invalid request to Gemini.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AITimeoutError(AIClientError):
    """No answer within the configured timeout."""

    def __init__(self, timeout_seconds: float, original_error: Exception | None = None) -> None:
        super().__init__(
            f"Request timed out after {timeout_seconds} seconds",
            retriable=True,
            original_error=original_error,
        )
        self.timeout_seconds = timeout_seconds


class AIContentBlockedError(AIClientError):
    """The model refused the request on safety grounds."""

    def __init__(
        self,
        message: str = "Content blocked by safety filters.",
        blocked_reason: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)
        self.blocked_reason = blocked_reason


class AIEmptyResponseError(AIClientError):
    """The call succeeded but carried no usable text or image."""

    def __init__(self, message: str = "No response from AI.") -> None:
        super().__init__(message, retriable=True)


class AIMalformedResponseError(AIClientError):
    """The analysis answer was not a JSON object."""

    def __init__(self, message: str = "AI response was not valid JSON.") -> None:
        super().__init__(message, retriable=True)


# =============================================================================
# JSON extraction
# =============================================================================


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output.

    Tries a direct parse, then a fenced ```json block, then the outermost
    ``{...}`` span in the text.

    Raises:
        AIMalformedResponseError: If no JSON object can be recovered.
    """
    text = (text or "").strip()
    candidates = [text]

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if fenced:
        candidates.append(fenced.group(1))
    braced = re.search(r"\{[\s\S]*\}", text)
    if braced:
        candidates.append(braced.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
        # Some models wrap the single profile in a list
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]

    raise AIMalformedResponseError()


# =============================================================================
# Client
# =============================================================================


class GeminiClient:
    """Async adapter around the google-genai SDK.

    The SDK client is created lazily so that constructing a ``GeminiClient``
    never fails; a missing key is reported as ``CredentialMissing`` the first
    time a call would be made.

    Attributes:
        config: Application configuration in use.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        api_key: SecretStr | str | None = None,
        sdk_client: Any = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Application configuration. Uses the cached singleton if None.
            api_key: Explicit key. If None, resolved through ``APIKeyManager``.
            sdk_client: Pre-built ``genai.Client`` (or a fake in tests).
        """
        self.config = config or get_config()
        if isinstance(api_key, str):
            api_key = SecretStr(api_key)
        self._api_key: SecretStr | None = api_key
        self._sdk = sdk_client

    # =========================================================================
    # Credentials
    # =========================================================================

    def has_credentials(self) -> bool:
        """Check for a usable key without making an API call."""
        if self._sdk is not None or self._api_key is not None:
            return True
        self._api_key = APIKeyManager(paths_config=self.config.paths).get_key()
        return self._api_key is not None

    def _client(self) -> Any:
        if self._sdk is None:
            if not self.has_credentials():
                raise CredentialMissing()
            self._sdk = genai.Client(api_key=self._api_key.get_secret_value())
            logger.debug("Gemini client initialised")
        return self._sdk

    # =========================================================================
    # Public API
    # =========================================================================

    async def analyze_identity(
        self,
        images: Sequence[str],
        prompt: str,
        system_instruction: str | None = None,
    ) -> dict[str, Any]:
        """Run identity analysis over the given images.

        Args:
            images: Data URLs, crops first.
            prompt: Rendered analysis prompt.
            system_instruction: Optional system instruction.

        Returns:
            The parsed JSON object returned by the model.

        Raises:
            CredentialMissing: If no API key is configured.
            AIClientError: On any API or parsing failure.
        """
        cfg = self.config.ai
        generation_config = types.GenerateContentConfig(
            temperature=cfg.analysis_temperature,
            response_mime_type="application/json",
            system_instruction=system_instruction,
        )
        response = await self._call(
            cfg.analysis_model, self._build_contents(images, prompt), generation_config
        )

        self._raise_if_blocked(response)
        text = getattr(response, "text", None)
        if not text:
            raise AIEmptyResponseError()
        return extract_json_object(text)

    async def generate_image(
        self,
        reference_images: Sequence[str],
        prompt: str,
    ) -> tuple[bytes, str]:
        """Synthesize one image anchored on the reference images.

        Args:
            reference_images: Data URLs, primary anchor first.
            prompt: Full generation prompt.

        Returns:
            Tuple of (image bytes, MIME type).

        Raises:
            CredentialMissing: If no API key is configured.
            AIClientError: On any API failure or when no image came back.
        """
        generation_config = types.GenerateContentConfig(response_modalities=["IMAGE"])
        response = await self._call(
            self.config.ai.image_model,
            self._build_contents(reference_images, prompt),
            generation_config,
        )

        self._raise_if_blocked(response)
        for part in self._parts(response):
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return inline.data, inline.mime_type or "image/jpeg"
        raise AIEmptyResponseError("No image generated.")

    # =========================================================================
    # Internals
    # =========================================================================

    def _build_contents(self, images: Sequence[str], prompt: str) -> list[Any]:
        parts = []
        for data_url in images:
            mime_type, data = decode_data_url(data_url)
            parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
        parts.append(types.Part.from_text(text=prompt))
        return parts

    async def _call(self, model: str, contents: list[Any], generation_config: Any) -> Any:
        sdk = self._client()
        timeout = self.config.ai.timeout_seconds
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                sdk.aio.models.generate_content(
                    model=model, contents=contents, config=generation_config
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"{model} timed out after {timeout}s")
            raise AITimeoutError(timeout, original_error=e) from e
        except AIClientError:
            raise
        except Exception as e:
            mapped = self._map_exception(e)
            logger.warning(f"{model} call failed: {type(mapped).__name__}")
            raise mapped from e

        latency_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"{model} answered in {latency_ms:.0f}ms ({len(contents) - 1} image parts)")
        return response

    @staticmethod
    def _parts(response: Any) -> list[Any]:
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return []
        content = getattr(candidates[0], "content", None)
        return list(getattr(content, "parts", None) or [])

    @staticmethod
    def _raise_if_blocked(response: Any) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None)
        if block_reason:
            raise AIContentBlockedError(blocked_reason=str(block_reason))

        candidates = getattr(response, "candidates", None) or []
        if candidates:
            finish = getattr(candidates[0], "finish_reason", None)
            name = getattr(finish, "name", None) or (str(finish) if finish else "")
            if name in _BLOCKED_REASONS and not GeminiClient._parts(response):
                raise AIContentBlockedError(blocked_reason=name)

    def _map_exception(self, error: Exception) -> AIClientError:
        """Map SDK exceptions to our exception hierarchy.

        Args:
            error: The original exception.

        Returns:
            Mapped AIClientError subclass.
        """
        error_str = str(error).lower()

        if isinstance(error, genai_errors.APIError):
            code = getattr(error, "code", None) or 0
            if code in (401, 403) or "api key" in error_str or "api_key" in error_str:
                return AIAuthError(original_error=error)
            if code == 429:
                if "quota" in error_str or "billing" in error_str:
                    return AIQuotaExceededError(original_error=error)
                return AIRateLimitError(original_error=error)
            if code == 404:
                return AIBadRequestError(
                    "Model not found. Check the model names in configuration.",
                    original_error=error,
                )
            if code == 504:
                return AITimeoutError(self.config.ai.timeout_seconds, original_error=error)
            if code >= 500:
                return AIServerError(status_code=code, original_error=error)
            if code == 400:
                if "safety" in error_str or "blocked" in error_str:
                    return AIContentBlockedError(original_error=error)
                return AIBadRequestError(original_error=error)

        # Fallback pattern matching on error message
        if "api key" in error_str or "401" in error_str or "403" in error_str:
            return AIAuthError(original_error=error)
        if "blocked" in error_str or "safety" in error_str:
            return AIContentBlockedError(original_error=error)
        if "quota" in error_str or "billing" in error_str:
            return AIQuotaExceededError(original_error=error)
        if "429" in error_str or "rate limit" in error_str:
            return AIRateLimitError(original_error=error)
        if "timeout" in error_str or "deadline" in error_str:
            return AITimeoutError(self.config.ai.timeout_seconds, original_error=error)
        if "500" in error_str or "502" in error_str or "503" in error_str:
            return AIServerError(original_error=error)
        if "400" in error_str:
            return AIBadRequestError(original_error=error)

        return AIClientError(f"Gemini call failed: {type(error).__name__}", original_error=error)
