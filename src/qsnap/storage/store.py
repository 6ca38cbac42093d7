"""Key/value stores backing session persistence.

The session never talks to the filesystem directly. It is handed a
``KeyValueStore``; ``JsonFileStore`` keeps one JSON file per key on disk and
``MemoryStore`` is the in-process fake used by tests.

Stores raise on failure. Deciding that a failed write is harmless is the
caller's job (see ``SessionPersistence``).
"""

from __future__ import annotations

import logging
import os
import re
import sys
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


@runtime_checkable
class KeyValueStore(Protocol):
    """Key-addressed storage of serialized blobs. Writes are independent per key."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryStore:
    """Dictionary-backed store."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)

    def clear(self) -> None:
        self.data.clear()


class JsonFileStore:
    """One file per key under a state directory.

    Writes go to a temp file in the same directory and are renamed into
    place, so a crash mid-write never leaves a half-written blob.

    Attributes:
        root: Directory holding the blobs.
    """

    SUFFIX = ".json"

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        if sys.platform != "win32":
            try:
                self.root.chmod(0o700)
            except OSError:
                pass  # Best effort
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        fd, temp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp", prefix=f".{key}_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            Path(temp_path).replace(path)
        except Exception:
            Path(temp_path).unlink(missing_ok=True)
            raise
        self._logger.debug(f"Wrote {key} ({len(value)} bytes)")

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def clear(self) -> None:
        for path in self.root.glob(f"*{self.SUFFIX}"):
            path.unlink(missing_ok=True)

    def size_bytes(self, key: str) -> int:
        path = self._path(key)
        return path.stat().st_size if path.exists() else 0
