"""Log output for the ``qsnap`` logger tree.

Console output goes through Rich; ``--debug`` adds a plain-text file. Both
sinks scrub API keys and base64 photo payloads before anything is written.

Example:
    >>> from qsnap.utils.logging import setup_logging, LogContext
    >>> setup_logging(level="DEBUG")
    >>> with LogContext("Scanning identity"):
    ...     pass
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "qsnap"

# Libraries that log request details at INFO
THIRD_PARTY_LOGGERS = ("google", "google_genai", "httpx", "httpcore", "urllib3", "PIL", "keyring")

FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_stderr = Console(stderr=True)


# =============================================================================
# Redaction
# =============================================================================


def _secret_after(label: str) -> re.Pattern[str]:
    return re.compile(
        rf"({label}\s*[=:]\s*)[\"']?[A-Za-z0-9_\-]{{20,}}[\"']?", re.IGNORECASE
    )


class RedactingFilter(logging.Filter):
    """Rewrites records so secrets and image bytes never reach a handler.

    Example:
        >>> RedactingFilter.redact("api_key=abcdefghijklmnopqrstuvwxyz")
        'api_key=[REDACTED]'
    """

    KEY_VALUE_PATTERNS = [
        _secret_after("api_key"),
        _secret_after("key"),
        _secret_after("token"),
        re.compile(r"(bearer\s+)[A-Za-z0-9_\-]{20,}", re.IGNORECASE),
    ]
    STANDALONE_PATTERNS = [re.compile(r"\bAIza[A-Za-z0-9_\-]{30,}\b")]
    DATA_URL_PATTERN = re.compile(r"(data:[\w/+.\-]+;base64,)[A-Za-z0-9+/=]{16,}")

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.KEY_VALUE_PATTERNS:
            text = pattern.sub(r"\1[REDACTED]", text)
        for pattern in cls.STANDALONE_PATTERNS:
            text = pattern.sub("[REDACTED]", text)
        return cls.DATA_URL_PATTERN.sub(r"\1[...]", text)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if record.args:
            record.args = tuple(
                self.redact(a) if isinstance(a, str) else a for a in record.args
            )
        return True


# =============================================================================
# Setup
# =============================================================================


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Attach handlers to the ``qsnap`` logger, replacing any from an earlier call.

    Args:
        level: Level name; unknown names fall back to INFO.
        log_file: Also write plain-text records here.
        quiet_third_party: Raise SDK and HTTP loggers to WARNING.
    """
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    handlers: list[logging.Handler] = [
        RichHandler(
            console=_stderr,
            show_time=False,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(log_file, encoding="utf-8")
        to_file.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(to_file)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(threshold)
    root.propagate = False
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setLevel(threshold)
        handler.addFilter(RedactingFilter())
        root.addHandler(handler)

    if quiet_third_party:
        for name in THIRD_PARTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root.debug(f"Logging at {logging.getLevelName(threshold)}, file={log_file}")


class LogContext:
    """Logs the start and end of a step with its duration.

    Example:
        >>> with LogContext("Synthesizing album") as ctx:
        ...     pass
        >>> ctx.elapsed >= 0
        True
    """

    def __init__(
        self,
        message: str,
        level: int = logging.INFO,
        logger: logging.Logger | None = None,
    ) -> None:
        self.message = message
        self.level = level
        self.logger = logger or logging.getLogger(ROOT_LOGGER)
        self.elapsed = 0.0
        self._started = 0.0

    def __enter__(self) -> "LogContext":
        self._started = time.perf_counter()
        self.logger.log(self.level, f"{self.message}...")
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        self.elapsed = time.perf_counter() - self._started
        if exc is None:
            self.logger.log(self.level, f"{self.message} completed in {self.elapsed:.2f}s")
        else:
            self.logger.error(f"{self.message} failed after {self.elapsed:.2f}s: {exc}")
