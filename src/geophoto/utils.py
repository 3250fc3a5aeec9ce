"""Utility functions for image payloads."""

import base64
import io
import os
from pathlib import Path
from typing import Dict

from PIL import Image, ImageOps


def encode_data_uri(data: bytes, mime_type: str = "image/png") -> str:
    """Wrap raw bytes as a base64 ``data:`` URI."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def clip_overlay(image_bytes: bytes, mask_bytes: bytes) -> bytes:
    """Clip a generated image by a mask, returning an RGBA PNG.

    The mask is converted to greyscale and stretched to the image size; its
    luminance becomes the overlay's alpha channel. Pixels outside the mask are
    zeroed so the PNG compresses well.
    """
    image = Image.open(io.BytesIO(image_bytes)).convert("RGBA")

    mask = Image.open(io.BytesIO(mask_bytes))
    if mask.mode in ("RGBA", "LA") or "transparency" in mask.info:
        # Transparent masks mark the painted region through alpha
        alpha = mask.convert("RGBA").getchannel("A")
    else:
        alpha = ImageOps.grayscale(mask)
    alpha = alpha.resize(image.size, Image.Resampling.BILINEAR)

    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    overlay.paste(image, (0, 0), alpha)
    overlay.putalpha(alpha)

    buffer = io.BytesIO()
    overlay.save(buffer, format="PNG")
    return buffer.getvalue()


def save_image_bytes(data: bytes, output_path: Path, format: str = "PNG") -> Path:
    """Decode image bytes with Pillow and save them to ``output_path``."""
    image = Image.open(io.BytesIO(data))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    image.save(output_path, format=format)
    return output_path


def format_file_size(bytes_size: float) -> str:
    """Format file size in human readable format."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.1f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.1f} TB"


def validate_api_keys() -> Dict[str, bool]:
    """Report which provider and store credentials are present in the environment."""
    return {
        "openai": bool(os.getenv("OPENAI_API_KEY")),
        "replicate": bool(os.getenv("REPLICATE_API_TOKEN")),
        "google": bool(os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")),
    }
