"""Writing generated images to disk.

Each image becomes ``<prefix>_<id>.<ext>``. Batch export writes one file at a
time with a fixed pause between items.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

from qsnap.config import AlbumConfig
from qsnap.core.models import GeneratedImage
from qsnap.imaging import decode_data_url, extension_for

logger = logging.getLogger(__name__)


class AlbumExporter:
    """Exports gallery or archived images to a directory.

    Attributes:
        out_dir: Destination directory, created on first write.
        prefix: File name prefix.
        delay_seconds: Pause between files in a batch.
    """

    def __init__(
        self,
        out_dir: Path,
        config: AlbumConfig | None = None,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        config = config or AlbumConfig()
        self.out_dir = out_dir
        self.prefix = config.export_prefix
        self.delay_seconds = config.export_delay_seconds
        self._sleep = sleep

    def file_name(self, image: GeneratedImage, mime_type: str = "image/jpeg") -> str:
        return f"{self.prefix}_{image.id}.{extension_for(mime_type)}"

    def export_one(self, image: GeneratedImage) -> Path:
        """Write one image atomically and return its path."""
        mime_type, data = decode_data_url(image.image_data)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        target = self.out_dir / self.file_name(image, mime_type)

        fd, tmp_path = tempfile.mkstemp(dir=self.out_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Exported {target.name} ({len(data)} bytes)")
        return target

    async def export_batch(
        self,
        images: Sequence[GeneratedImage],
        on_file: Callable[[Path], None] | None = None,
    ) -> list[Path]:
        """Write images one after another, pausing between them.

        Returns:
            Paths in image order.
        """
        paths: list[Path] = []
        for index, image in enumerate(images):
            if index and self.delay_seconds:
                await self._sleep(self.delay_seconds)
            path = self.export_one(image)
            paths.append(path)
            if on_file is not None:
                on_file(path)
        logger.info(f"Exported {len(paths)} image(s) to {self.out_dir}")
        return paths
