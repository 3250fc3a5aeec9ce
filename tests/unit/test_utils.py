"""Unit tests for image utilities."""

import io
import os
from unittest.mock import patch

from PIL import Image

from geophoto.utils import clip_overlay, encode_data_uri, format_file_size, save_image_bytes, validate_api_keys


def _png(mode, size, color):
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class TestClipOverlay:
    """Test mask clipping."""

    def test_greyscale_mask(self):
        mask = Image.new("L", (4, 4), 0)
        mask.paste(255, (0, 0, 2, 4))
        buffer = io.BytesIO()
        mask.save(buffer, format="PNG")

        overlay = Image.open(io.BytesIO(clip_overlay(_png("RGB", (4, 4), (200, 10, 10)), buffer.getvalue())))

        assert overlay.mode == "RGBA"
        assert overlay.getpixel((0, 0)) == (200, 10, 10, 255)
        assert overlay.getpixel((3, 3))[3] == 0

    def test_transparent_mask_uses_alpha(self):
        mask = _png("RGBA", (2, 2), (0, 0, 0, 0))

        overlay = Image.open(io.BytesIO(clip_overlay(_png("RGB", (2, 2), (200, 10, 10)), mask)))

        assert overlay.getpixel((1, 1))[3] == 0

    def test_mask_is_scaled_to_image(self):
        overlay = Image.open(io.BytesIO(clip_overlay(_png("RGB", (16, 8), (0, 0, 255)), _png("L", (2, 2), 255))))

        assert overlay.size == (16, 8)
        assert overlay.getpixel((15, 7)) == (0, 0, 255, 255)


class TestHelpers:
    """Test small helpers."""

    def test_encode_data_uri(self):
        assert encode_data_uri(b"\x00\x00\x00") == "data:image/png;base64,AAAA"
        assert encode_data_uri(b"\x00\x00\x00", "image/jpeg").startswith("data:image/jpeg;base64,")

    def test_format_file_size(self):
        assert format_file_size(512) == "512.0 B"
        assert format_file_size(2048) == "2.0 KB"
        assert format_file_size(5 * 1024 * 1024) == "5.0 MB"

    def test_save_image_bytes(self, tmp_path):
        output = tmp_path / "nested" / "out.png"

        saved = save_image_bytes(_png("RGB", (3, 3), (1, 2, 3)), output)

        assert saved == output
        assert Image.open(output).size == (3, 3)

    def test_validate_api_keys(self):
        with patch.dict(os.environ, {'OPENAI_API_KEY': "sk-test"}, clear=True):
            keys = validate_api_keys()

        assert keys == {'openai': True, 'replicate': False, 'google': False}
