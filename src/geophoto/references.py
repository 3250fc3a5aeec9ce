"""Reference normalization: parse loose image references into ranked candidates.

Everything here is pure string handling. The I/O that tries each candidate in
turn lives in :mod:`geophoto.storage`.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import unquote, urlsplit

from geophoto.error_handling import InvalidReference
from geophoto.models import ImageReference, ReferenceKind


LEGACY_HOST_SUFFIX = ".firebasestorage.app"
CANONICAL_HOST_SUFFIX = ".appspot.com"

DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.IGNORECASE | re.DOTALL)

# (pattern, group holding the bucket, group holding the path)
GATEWAY_PATTERNS = [
    re.compile(r"^https?://firebasestorage\.googleapis\.com/v0/b/(?P<bucket>[^/]+)/o/(?P<path>[^?#]+)", re.IGNORECASE),
    re.compile(r"^https?://(?P<bucket>[^/]+\.firebasestorage\.app)/o/(?P<path>[^?#]+)", re.IGNORECASE),
    re.compile(r"^https?://[^/]*(?:storage\.googleapis|googleusercontent)\.com/(?:download/)?storage/v1/b/(?P<bucket>[^/]+)/o/(?P<path>[^?#]+)", re.IGNORECASE),
    re.compile(r"^https?://storage\.googleapis\.com/(?!download/|storage/v1/)(?P<bucket>[^/]+)/(?P<path>[^?#]+)", re.IGNORECASE),
    re.compile(r"^gs://(?P<bucket>[^/]+)/(?P<path>.+)$", re.IGNORECASE),
]

# Fields of a stop record that may hold its image, most specific first.
STOP_REFERENCE_FIELDS = ("gsUri", "storagePath", "imageURL", "url", "image", "imageData")

_THUMBS_SEGMENT = re.compile(r"(^|/)thumbs/", re.IGNORECASE)
_THUMB_PREFIX = re.compile(r"(^|/)thumb_([^/]+)$", re.IGNORECASE)
_SIZE_SUFFIX = re.compile(r"[-_](?:thumb|small|preview|min|tiny)(\.[a-z0-9]+)$", re.IGNORECASE)
_DOUBLED_EXTENSION = re.compile(r"(\.[a-z0-9]+)\1$", re.IGNORECASE)


def normalize_bucket_host(host: str) -> str:
    """Map both domain-suffix conventions of a bucket onto the canonical one."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.endswith(LEGACY_HOST_SUFFIX):
        return host[: -len(LEGACY_HOST_SUFFIX)] + CANONICAL_HOST_SUFFIX
    return host


def bucket_host_variants(host: str) -> List[str]:
    """Return every known host name for the same logical bucket, canonical first."""
    canonical = normalize_bucket_host(host)
    if not canonical:
        return []
    variants = [canonical]
    if canonical.endswith(CANONICAL_HOST_SUFFIX):
        variants.append(canonical[: -len(CANONICAL_HOST_SUFFIX)] + LEGACY_HOST_SUFFIX)
    return variants


def parse_data_uri(value: str) -> Optional[ImageReference]:
    """Decode a ``data:<mime>;base64,<payload>`` string, or return None if it is not one."""
    match = DATA_URI_PATTERN.match(value)
    if not match:
        return None
    payload = match.group("payload").strip()
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidReference(f"Inline image payload is not valid base64: {exc}") from exc
    return ImageReference.inline(data, match.group("mime"), raw=value)


def _decode_store_path(path: str) -> str:
    return unquote(path.replace("+", " ")).lstrip("/")


def _match_gateway(value: str) -> Optional[tuple[str, str]]:
    for pattern in GATEWAY_PATTERNS:
        match = pattern.match(value)
        if match:
            path = _decode_store_path(match.group("path"))
            if path:
                return normalize_bucket_host(match.group("bucket")), path
    return None


def layout_rewrites(path: str) -> List[str]:
    """Guess original object names for a path written under a legacy layout.

    Returns distinct rewrites in decreasing confidence, never including the
    input path itself.
    """
    rewrites: List[str] = []

    def _add(candidate: str) -> None:
        if candidate and candidate != path and candidate not in rewrites:
            rewrites.append(candidate)

    without_thumbs = _THUMBS_SEGMENT.sub(r"\1", path, count=1)
    without_prefix = _THUMB_PREFIX.sub(r"\1\2", path, count=1)
    without_suffix = _SIZE_SUFFIX.sub(r"\1", path, count=1)
    combined = _SIZE_SUFFIX.sub(r"\1", _THUMB_PREFIX.sub(r"\1\2", without_thumbs, count=1), count=1)

    singles = [without_thumbs, without_prefix, without_suffix, combined]
    for candidate in singles:
        _add(candidate)
    for candidate in [path] + singles:
        _add(_DOUBLED_EXTENSION.sub(r"\1", candidate))

    return rewrites


def record_locator(record: Mapping[str, Any]) -> str:
    """Pick the image locator out of a stop record, most specific field first."""
    for key in STOP_REFERENCE_FIELDS:
        value = record.get(key)
        if not value:
            continue
        if isinstance(value, Mapping):
            if value.get("url"):
                return str(value["url"])
            if value.get("data"):
                return f"data:image/{value.get('format') or 'jpeg'};base64,{value['data']}"
            continue
        return str(value)
    raise InvalidReference(
        f"Record has none of the image fields {', '.join(STOP_REFERENCE_FIELDS)}",
        diagnostics={'keys': sorted(str(k) for k in record.keys())},
    )


def candidate_references(raw: Any, current_bucket_host: Optional[str] = None) -> List[ImageReference]:
    """Expand one loose image reference into a ranked, deduplicated candidate list."""
    if isinstance(raw, ImageReference):
        if raw.kind is not ReferenceKind.STORE_PATH:
            return [raw]
        bucket_host, path, original = raw.bucket_host, raw.path, raw.raw
    else:
        if isinstance(raw, Mapping):
            raw = record_locator(raw)
        if raw is None:
            raise InvalidReference("Image reference is empty")

        original = str(raw)
        value = original.strip()
        if not value:
            raise InvalidReference("Image reference is empty")

        if value.lower().startswith("data:"):
            inline = parse_data_uri(value)
            if inline is None:
                raise InvalidReference(f"Unsupported inline reference: {value[:40]}")
            return [inline]

        gateway = _match_gateway(value)
        if gateway is None:
            scheme = urlsplit(value).scheme.lower()
            if scheme in ("http", "https"):
                return [ImageReference.absolute(value, raw=original)]
            if scheme or "://" in value:
                raise InvalidReference(f"Unsupported reference scheme: {value[:60]}")
            if not current_bucket_host:
                raise InvalidReference(
                    f"Store-relative path {value!r} given but no bucket is configured"
                )
            bucket_host, path = normalize_bucket_host(current_bucket_host), _decode_store_path(value)
            if not path:
                raise InvalidReference("Image reference is empty")
        else:
            bucket_host, path = gateway

    candidates = [ImageReference.store(bucket_host, path, raw=original)]
    for rewrite in layout_rewrites(path):
        candidates.append(ImageReference.store(bucket_host, rewrite, raw=original))
    return dedupe_candidates(candidates)


def dedupe_candidates(candidates: Iterable[ImageReference]) -> List[ImageReference]:
    """Drop candidates whose locator was already seen, preserving order."""
    seen: Dict[str, ImageReference] = {}
    for candidate in candidates:
        seen.setdefault(candidate.to_locator(), candidate)
    return list(seen.values())


def parse_reference(raw: Any, current_bucket_host: Optional[str] = None) -> ImageReference:
    """Return the highest-confidence interpretation of ``raw``."""
    return candidate_references(raw, current_bucket_host)[0]


def mime_from_path(path: str, default: str = "image/jpeg") -> str:
    """Guess an image mime type from a file extension."""
    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "webp": "image/webp",
        "gif": "image/gif",
    }.get(extension, default)
