"""Reduce arbitrarily shaped generation responses to one ImageReference."""

import json
import logging
import re
from typing import Any, Iterator, Mapping, Optional
from urllib.parse import urljoin

from geophoto.error_handling import InvalidReference, NoImageFound
from geophoto.models import ImageReference
from geophoto.references import parse_data_uri


logger = logging.getLogger(__name__)


PRIMARY_FIELDS = (
    "url", "result", "output", "image_url", "image",
    "href", "link", "compositeURL", "composited_url",
)
BASE64_FIELDS = (
    "dataURL", "data_url", "base64", "b64",
    "imageBase64", "image_b64", "output_b64",
)

# Leading characters of base64-encoded image headers
BASE64_MAGIC = (
    ("/9j/", "image/jpeg"),
    ("iVBORw0", "image/png"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)
MIN_RAW_BASE64_LENGTH = 32

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


def guess_base64_mime(value: str) -> Optional[str]:
    """Return the image mime type whose base64 signature ``value`` starts with."""
    for prefix, mime in BASE64_MAGIC:
        if value.startswith(prefix):
            return mime
    return None


def _inline(value: str, mime_type: str) -> ImageReference:
    return parse_data_uri(f"data:{mime_type};base64,{value}")


def _primary_values(payload: Mapping[str, Any]) -> Iterator[tuple]:
    """Yield ``(value, mime hint)`` for each string found in the primary fields."""
    for key in PRIMARY_FIELDS:
        value = payload.get(key)
        items = value if isinstance(value, list) else [value]
        for item in items:
            if isinstance(item, str) and item:
                yield item, None
            elif isinstance(item, Mapping) and isinstance(item.get("url"), str) and item["url"]:
                yield item["url"], item.get("mime")


def _classify(value: str, mime_hint: Optional[str], base_url: Optional[str]) -> Optional[ImageReference]:
    value = value.strip()
    if _ABSOLUTE_URL.match(value):
        return ImageReference.absolute(value)
    if value.startswith("data:image/"):
        return parse_data_uri(value)
    if value.startswith(("/", "./", "../")):
        if base_url:
            return ImageReference.absolute(urljoin(base_url, value), raw=value)
        logger.debug(f"Relative image path {value!r} with no base URL to resolve against")
        return None
    if len(value) >= MIN_RAW_BASE64_LENGTH:
        magic_mime = guess_base64_mime(value)
        if magic_mime:
            return _inline(value, mime_hint or magic_mime)
    return None


def normalize_response(payload: Any, base_url: Optional[str] = None) -> ImageReference:
    """Find the image in a provider or endpoint response.

    Primary fields are scanned first for URLs, ``data:`` URIs, relative paths
    and raw base64 with a recognised signature. Base64-only fields come
    second. Raises :class:`NoImageFound` listing the keys seen when neither
    yields an image.
    """
    if not isinstance(payload, Mapping):
        raise NoImageFound([], message=f"Response is not a JSON object ({type(payload).__name__})")

    for value, mime_hint in _primary_values(payload):
        try:
            reference = _classify(value, mime_hint, base_url)
        except InvalidReference as e:
            logger.debug(f"Skipping undecodable inline image: {e}")
            continue
        if reference is not None:
            return reference

    for key in BASE64_FIELDS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        try:
            if value.startswith("data:image/"):
                return parse_data_uri(value)
            mime_type = payload.get("mime") or payload.get("contentType") or guess_base64_mime(value) or "image/jpeg"
            return _inline(value, mime_type)
        except InvalidReference as e:
            logger.debug(f"Skipping undecodable {key} field: {e}")

    raise NoImageFound(payload.keys())


def has_image_field(payload: Mapping[str, Any]) -> bool:
    """True when a streamed JSON object carries any field that can hold an image."""
    return any(payload.get(key) for key in PRIMARY_FIELDS + ("dataURL", "data_url"))


def parse_stream_line(line: str) -> Optional[dict]:
    """Parse one SSE or NDJSON line into a JSON object, or None for anything else."""
    text = re.sub(r"^data:\s*", "", line).strip()
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None

