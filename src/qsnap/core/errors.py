"""Error taxonomy for the album engine.

Two families of failures exist:

- Surfaced failures (``AnalysisFailure``, ``CredentialMissing``, ``EmptyInputError``) move
  the visible session state and carry a ``remediation`` hint that the CLI shows verbatim.
- Absorbed failures (``GenerationItemFailure``, ``PersistenceWriteFailure``) are logged by the
  component that catches them and never reach the user as a blocking error.

Nothing in the engine retries automatically. A retry is always a fresh user action.
"""

from __future__ import annotations


class QSnapError(Exception):
    """Base exception for all album engine errors.

    Attributes:
        message: Human-readable error description (safe to log).
        remediation: What the user can do about it, if anything.
    """

    default_remediation: str | None = None

    def __init__(self, message: str, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation

    def __str__(self) -> str:
        return self.message

    def user_message(self) -> str:
        """Message plus remediation hint, for display."""
        if self.remediation:
            return f"{self.message} {self.remediation}"
        return self.message


class EmptyInputError(QSnapError):
    """Operation attempted with no assets or no profile. No external call was made."""

    default_remediation = "Add at least one reference photo first."


class AnalysisFailure(QSnapError):
    """The identity analysis call failed or returned unusable content."""

    default_remediation = "Please check your API connection and credentials."

    def __init__(
        self,
        message: str = "Scan interrupted.",
        remediation: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, remediation)
        self.original_error = original_error


class GenerationItemFailure(QSnapError):
    """One pose failed to render. Logged and skipped by the pipeline."""

    def __init__(self, pose_id: str, reason: str, original_error: Exception | None = None) -> None:
        super().__init__(f"Pose '{pose_id}' failed: {reason}")
        self.pose_id = pose_id
        self.original_error = original_error


class GenerationSetupError(QSnapError):
    """The generation run could not start (no profile, no assets, bad request)."""

    default_remediation = "Generation sequence interrupted. Check connectivity."


class PersistenceWriteFailure(QSnapError):
    """A best-effort snapshot write failed (quota, disk, permissions)."""

    def __init__(self, key: str, original_error: Exception | None = None) -> None:
        reason = type(original_error).__name__ if original_error else "unknown"
        super().__init__(f"Could not persist '{key}': {reason}")
        self.key = key
        self.original_error = original_error


class CredentialMissing(QSnapError):
    """No API key is configured. Detected before any external call is issued."""

    default_remediation = "Run 'qsnap config set-key' or set GEMINI_API_KEY."

    def __init__(self, message: str = "No Gemini API key configured.") -> None:
        super().__init__(message)


class CapacityExceeded(QSnapError):
    """The asset store is at its soft capacity. Reported, never fatal."""

    def __init__(self, capacity: int) -> None:
        super().__init__(
            f"Reference limit reached ({capacity} photos).",
            "Remove a photo before adding another.",
        )
        self.capacity = capacity


class IllegalTransitionError(QSnapError):
    """A trigger was fired from a state that does not allow it."""

    def __init__(self, state: str, trigger: str) -> None:
        super().__init__(f"Cannot '{trigger}' while {state}")
        self.state = state
        self.trigger = trigger


class AlbumNotFoundError(QSnapError):
    """No archived album with the requested id."""

    def __init__(self, album_id: str) -> None:
        super().__init__(f"No archived album with id '{album_id}'")
        self.album_id = album_id
