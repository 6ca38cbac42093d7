"""Tests for image helpers, album export and log redaction."""

from __future__ import annotations

import io
import logging

import pytest
from PIL import Image

from conftest import data_url, image_bytes
from qsnap.config import AlbumConfig
from qsnap.core.models import GeneratedImage
from qsnap.export import AlbumExporter
from qsnap.imaging import (
    ImageDecodeError,
    center_square_crop,
    decode_data_url,
    encode_data_url,
    extension_for,
    load_image_file,
    normalize_for_upload,
)
from qsnap.utils.logging import LogContext, RedactingFilter


def pil(url: str) -> Image.Image:
    _, data = decode_data_url(url)
    return Image.open(io.BytesIO(data))


# =============================================================================
# Imaging
# =============================================================================


class TestDataUrls:
    def test_roundtrip(self):
        url = encode_data_url(b"\x89PNG", "image/png")
        assert url.startswith("data:image/png;base64,")
        assert decode_data_url(url) == ("image/png", b"\x89PNG")

    def test_bare_base64_is_jpeg(self):
        """Legacy anchors were stored without a header."""
        assert decode_data_url("aGVsbG8=") == ("image/jpeg", b"hello")

    def test_invalid_payload(self):
        with pytest.raises(ImageDecodeError):
            decode_data_url("data:image/png;base64,@@not-base64@@")

    @pytest.mark.parametrize(
        "mime, ext", [("image/png", "png"), ("image/JPEG", "jpg"), ("image/webp", "webp"), ("x/y", "jpg")]
    )
    def test_extension_for(self, mime, ext):
        assert extension_for(mime) == ext


class TestConversions:
    """Upload normalisation and cropping."""

    def test_normalize_bounds_long_edge(self):
        jpeg = normalize_for_upload(image_bytes(size=(400, 200)), max_edge=100)
        img = Image.open(io.BytesIO(jpeg))
        assert img.format == "JPEG"
        assert img.size == (100, 50)

    def test_load_image_file(self, tmp_path):
        path = tmp_path / "me.png"
        path.write_bytes(image_bytes(size=(40, 30)))

        url = load_image_file(path)

        assert url.startswith("data:image/jpeg;base64,")
        assert pil(url).size == (40, 30)

    def test_load_non_image(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("not a photo")
        with pytest.raises(ImageDecodeError):
            load_image_file(path)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ImageDecodeError):
            load_image_file(tmp_path / "missing.jpg")

    def test_center_square_crop(self):
        """The crop is a square of the requested size."""
        crop = center_square_crop(data_url(size=(120, 60)), size=32)
        assert pil(crop).size == (32, 32)


# =============================================================================
# Export
# =============================================================================


def gallery_image(image_id: str, fmt: str = "PNG") -> GeneratedImage:
    return GeneratedImage(id=image_id, image_data=data_url("blue", fmt=fmt), prompt="p", scenario_id="s")


class TestAlbumExporter:
    """Writing images to disk."""

    def test_file_name(self, tmp_path):
        exporter = AlbumExporter(tmp_path)
        assert exporter.file_name(gallery_image("abc"), "image/png") == "quantum_snap_abc.png"

    def test_export_one(self, tmp_path):
        exporter = AlbumExporter(tmp_path / "out")
        path = exporter.export_one(gallery_image("abc"))

        assert path == tmp_path / "out" / "quantum_snap_abc.png"
        assert path.read_bytes() == decode_data_url(gallery_image("abc").image_data)[1]
        assert [p.name for p in (tmp_path / "out").iterdir()] == ["quantum_snap_abc.png"]

    async def test_batch_pauses_between_files(self, tmp_path):
        """The fixed delay separates files but does not precede the first one."""
        pauses = []

        async def fake_sleep(seconds):
            pauses.append(seconds)

        exporter = AlbumExporter(
            tmp_path, AlbumConfig(export_delay_seconds=0.5, export_prefix="album"), sleep=fake_sleep
        )
        written = []
        paths = await exporter.export_batch(
            [gallery_image("a"), gallery_image("b", fmt="JPEG"), gallery_image("c")],
            on_file=written.append,
        )

        assert [p.name for p in paths] == ["album_a.png", "album_b.jpg", "album_c.png"]
        assert written == paths
        assert pauses == [0.5, 0.5]

    async def test_no_delay(self, tmp_path):
        pauses = []

        async def fake_sleep(seconds):
            pauses.append(seconds)

        exporter = AlbumExporter(tmp_path, AlbumConfig(export_delay_seconds=0), sleep=fake_sleep)
        await exporter.export_batch([gallery_image("a"), gallery_image("b")])
        assert pauses == []


# =============================================================================
# Logging
# =============================================================================


class TestRedactingFilter:
    """Secrets and photo payloads never reach the log."""

    def test_api_key_assignment(self):
        text = RedactingFilter.redact("api_key=abcdefghijklmnopqrstuvwxyz")
        assert text == "api_key=[REDACTED]"

    def test_standalone_gemini_key(self):
        key = "AIza" + "Q" * 35
        assert key not in RedactingFilter.redact(f"using {key} now")

    def test_data_url_payload(self):
        url = data_url()
        text = RedactingFilter.redact(f"sending {url}")
        assert text == "sending data:image/png;base64,[...]"

    def test_filter_on_record(self):
        record = logging.LogRecord(
            "qsnap", logging.INFO, __file__, 1, "key=%s", ("AIza" + "Z" * 35,), None
        )
        RedactingFilter().filter(record)
        assert "ZZZZ" not in record.getMessage()


class TestLogContext:
    def test_logs_start_and_end(self, caplog):
        logger = logging.getLogger("logcontext_test")
        with caplog.at_level(logging.INFO, logger="logcontext_test"):
            with LogContext("Exporting", logger=logger) as ctx:
                pass
        assert ctx.elapsed >= 0
        assert "Exporting..." in caplog.text
        assert "Exporting completed" in caplog.text

    def test_logs_failure(self, caplog):
        logger = logging.getLogger("logcontext_test")
        with caplog.at_level(logging.INFO, logger="logcontext_test"):
            with pytest.raises(OSError):
                with LogContext("Exporting", logger=logger):
                    raise OSError("disk full")
        assert "Exporting failed" in caplog.text
