#!/usr/bin/env python3
"""
Shared image helpers for the Gemini ports.
"""

import io
from typing import Optional

from google.genai import types
from PIL import Image, UnidentifiedImageError


def get_image_media_type(image_bytes: bytes) -> str:
    """Sniff the media type of raw image bytes, defaulting to JPEG."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        return "image/jpeg"
    # Multi-picture camera JPEGs open as MPO; Gemini only accepts them as JPEG
    if not fmt or fmt == "MPO":
        return "image/jpeg"
    return Image.MIME.get(fmt, "image/jpeg")


def image_part(image_bytes: bytes) -> types.Part:
    """Wrap raw image bytes as an inline Gemini content part."""
    return types.Part.from_bytes(data=image_bytes, mime_type=get_image_media_type(image_bytes))


def image_size(image_bytes: bytes) -> Optional[tuple]:
    """Return (width, height), or None when the bytes are not a readable image."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None


def is_valid_image(image_bytes: Optional[bytes]) -> bool:
    """Check that bytes decode as an image, as the editor does before accepting output."""
    if not image_bytes or len(image_bytes) <= 100:
        return False
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.verify()
    except Exception:
        return False
    return True
