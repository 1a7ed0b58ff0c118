"""Tests for utils module."""

import io
import sys
from pathlib import Path

from PIL import Image

# Add scripts to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'scripts'))

from utils import get_image_media_type, image_part, image_size, is_valid_image


def encode(fmt, size=(64, 48)):
    buffer = io.BytesIO()
    Image.new('RGB', size, color='white').save(buffer, format=fmt)
    return buffer.getvalue()


class TestGetImageMediaType:
    """Tests for media type sniffing."""

    def test_jpeg(self):
        assert get_image_media_type(encode('JPEG')) == "image/jpeg"

    def test_png(self):
        assert get_image_media_type(encode('PNG')) == "image/png"

    def test_mpo_reported_as_jpeg(self):
        """Multi-picture camera JPEGs are sent as image/jpeg."""
        buffer = io.BytesIO()
        frames = [Image.new('RGB', (64, 48), color=c) for c in ('white', 'gray')]
        frames[0].save(buffer, format='MPO', save_all=True, append_images=frames[1:])
        data = buffer.getvalue()

        with Image.open(io.BytesIO(data)) as img:
            assert img.format == 'MPO'
        assert get_image_media_type(data) == "image/jpeg"
        assert image_part(data).inline_data.mime_type == "image/jpeg"

    def test_unknown_defaults_to_jpeg(self):
        """Unreadable bytes fall back to image/jpeg."""
        assert get_image_media_type(b"not an image") == "image/jpeg"


class TestImagePart:
    """Tests for image_part."""

    def test_inline_part(self):
        data = encode('PNG')
        part = image_part(data)

        assert part.inline_data.data == data
        assert part.inline_data.mime_type == "image/png"


class TestImageSize:
    """Tests for image_size."""

    def test_size(self):
        assert image_size(encode('JPEG', size=(120, 80))) == (120, 80)

    def test_unreadable(self):
        assert image_size(b"garbage") is None


class TestIsValidImage:
    """Tests for is_valid_image."""

    def test_valid_jpeg(self):
        assert is_valid_image(encode('JPEG'))

    def test_empty(self):
        assert not is_valid_image(b"")
        assert not is_valid_image(None)

    def test_too_small(self):
        """Tiny payloads are rejected before decoding."""
        assert not is_valid_image(b"\xff\xd8\xff" + b"\x00" * 20)

    def test_garbage(self):
        assert not is_valid_image(b"x" * 500)
