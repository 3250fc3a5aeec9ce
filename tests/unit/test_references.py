"""Unit tests for reference normalization and candidate generation."""

import base64

import pytest

from geophoto.error_handling import InvalidReference
from geophoto.models import ImageReference, ReferenceKind
from geophoto.references import (
    bucket_host_variants,
    candidate_references,
    layout_rewrites,
    mime_from_path,
    normalize_bucket_host,
    parse_data_uri,
    parse_reference,
)


BUCKET = "demo.appspot.com"


def _locators(candidates):
    return [c.to_locator() for c in candidates]


class TestBucketHosts:
    """Test bucket host normalization."""

    def test_legacy_suffix_maps_to_canonical(self):
        assert normalize_bucket_host("demo.firebasestorage.app") == "demo.appspot.com"
        assert normalize_bucket_host("Demo.AppSpot.com") == "demo.appspot.com"

    def test_other_hosts_unchanged(self):
        assert normalize_bucket_host("my-bucket") == "my-bucket"
        assert normalize_bucket_host("") == ""

    def test_variants_canonical_first(self):
        assert bucket_host_variants("demo.firebasestorage.app") == [
            "demo.appspot.com",
            "demo.firebasestorage.app",
        ]
        assert bucket_host_variants("plain-bucket") == ["plain-bucket"]


class TestInlineReferences:
    """Test data URI handling."""

    @pytest.mark.parametrize("payload", [b"\x89PNG\r\n\x1a\nabc", b"\xff\xd8\xff\xe0jpeg", b"x" * 100])
    def test_round_trip_is_byte_exact(self, payload):
        raw = f"data:image/png;base64,{base64.b64encode(payload).decode('ascii')}"

        candidates = candidate_references(raw)

        assert len(candidates) == 1
        ref = candidates[0]
        assert ref.kind is ReferenceKind.INLINE
        assert ref.data == payload
        assert ref.mime_type == "image/png"
        assert ref.to_locator() == raw
        assert ref.raw == raw

    @pytest.mark.parametrize("raw, data", [
        ("data:image/PNG;base64,AAAA", b"\x00\x00\x00"),
        ("data:image/jpeg;base64,AB==", b"\x00"),
        ("DATA:Image/Webp;base64,AAAA", b"\x00\x00\x00"),
    ])
    def test_round_trip_keeps_input_as_written(self, raw, data):
        ref = parse_reference(raw)

        assert ref.data == data
        assert ref.to_locator() == raw
        assert candidate_references(raw)[0].to_locator() == raw

    def test_gateway_example_payload(self):
        ref = parse_reference("data:image/png;base64,AAAA")

        assert ref.data == b"\x00\x00\x00"
        assert ref.to_locator() == "data:image/png;base64,AAAA"

    def test_malformed_base64_is_invalid(self):
        with pytest.raises(InvalidReference):
            parse_data_uri("data:image/png;base64,@@not-base64@@")

    def test_non_data_string_returns_none(self):
        assert parse_data_uri("https://example.com/a.png") is None


class TestGatewayUrls:
    """Test recognition of storage gateway URLs."""

    @pytest.mark.parametrize("url", [
        "https://firebasestorage.googleapis.com/v0/b/demo.appspot.com/o/scenarios%2Fa%2Fphoto%201.jpg?alt=media&token=abc",
        "https://firebasestorage.googleapis.com/v0/b/demo.firebasestorage.app/o/scenarios%2Fa%2Fphoto+1.jpg",
        "https://demo.firebasestorage.app/o/scenarios%2Fa%2Fphoto%201.jpg",
        "https://storage.googleapis.com/demo.appspot.com/scenarios/a/photo%201.jpg",
        "https://storage.googleapis.com/download/storage/v1/b/demo.appspot.com/o/scenarios%2Fa%2Fphoto%201.jpg?alt=media",
        "https://www.googleusercontent.com/download/storage/v1/b/demo.appspot.com/o/scenarios%2Fa%2Fphoto%201.jpg",
        "gs://demo.appspot.com/scenarios/a/photo 1.jpg",
    ])
    def test_gateway_maps_to_store_path(self, url):
        ref = parse_reference(url)

        assert ref.kind is ReferenceKind.STORE_PATH
        assert ref.bucket_host == BUCKET
        assert ref.path == "scenarios/a/photo 1.jpg"
        assert ref.raw == url

    def test_other_absolute_url_passes_through(self):
        candidates = candidate_references("https://cdn.example.com/out.png")

        assert len(candidates) == 1
        assert candidates[0].kind is ReferenceKind.ABSOLUTE_URL
        assert candidates[0].url == "https://cdn.example.com/out.png"

    def test_unsupported_scheme_is_invalid(self):
        with pytest.raises(InvalidReference):
            candidate_references("ftp://example.com/a.jpg")


class TestStorePaths:
    """Test bare store paths and layout rewrites."""

    def test_bare_path_uses_current_bucket(self):
        ref = parse_reference("/scenarios/a/b.jpg", "demo.firebasestorage.app")

        assert ref.bucket_host == BUCKET
        assert ref.path == "scenarios/a/b.jpg"

    def test_bare_path_without_bucket_is_invalid(self):
        with pytest.raises(InvalidReference):
            candidate_references("scenarios/a/b.jpg")

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_is_invalid(self, raw):
        with pytest.raises(InvalidReference):
            candidate_references(raw, BUCKET)

    def test_candidate_ordering(self):
        candidates = candidate_references("scenarios/a/thumbs/thumb_house-small.jpg.jpg", BUCKET)

        assert [c.path for c in candidates] == [
            "scenarios/a/thumbs/thumb_house-small.jpg.jpg",
            "scenarios/a/thumb_house-small.jpg.jpg",
            "scenarios/a/thumbs/house-small.jpg.jpg",
            "scenarios/a/house-small.jpg.jpg",
            "scenarios/a/thumbs/thumb_house-small.jpg",
            "scenarios/a/thumb_house-small.jpg",
            "scenarios/a/thumbs/house-small.jpg",
            "scenarios/a/house-small.jpg",
        ]
        assert all(c.raw == "scenarios/a/thumbs/thumb_house-small.jpg.jpg" for c in candidates)

    @pytest.mark.parametrize("path, expected", [
        ("a/thumbs/x.jpg", ["a/x.jpg"]),
        ("a/thumb_x.jpg", ["a/x.jpg"]),
        ("a/x_preview.png", ["a/x.png"]),
        ("a/x-tiny.webp", ["a/x.webp"]),
        ("a/x.jpg.jpg", ["a/x.jpg"]),
        ("a/x.jpg", []),
    ])
    def test_single_rewrites(self, path, expected):
        assert layout_rewrites(path) == expected

    def test_rewrites_never_repeat_input(self):
        path = "a/thumbs/thumb_x_min.jpg"

        rewrites = layout_rewrites(path)

        assert path not in rewrites
        assert len(rewrites) == len(set(rewrites))

    def test_suffix_variants_are_the_same_object(self):
        legacy = candidate_references("gs://demo.firebasestorage.app/a/thumbs/x-small.jpg")
        canonical = candidate_references("gs://demo.appspot.com/a/thumbs/x-small.jpg")

        assert _locators(legacy) == _locators(canonical)

    def test_store_reference_expands_again(self):
        ref = ImageReference.store(BUCKET, "a/thumbs/x.jpg")

        assert _locators(candidate_references(ref)) == [
            "gs://demo.appspot.com/a/thumbs/x.jpg",
            "gs://demo.appspot.com/a/x.jpg",
        ]


class TestStopRecords:
    """Test references given as stop records."""

    def test_gs_uri_preferred(self):
        record = {"imageURL": "https://cdn.example.com/a.jpg", "gsUri": "gs://demo.appspot.com/a/b.jpg"}

        assert parse_reference(record).path == "a/b.jpg"

    def test_image_data_record(self):
        record = {"imageData": {"data": "AAAA", "format": "png"}}

        ref = parse_reference(record)

        assert ref.kind is ReferenceKind.INLINE
        assert ref.mime_type == "image/png"

    def test_record_without_image_fields(self):
        with pytest.raises(InvalidReference) as exc_info:
            parse_reference({"title": "nothing"})

        assert exc_info.value.diagnostics["keys"] == ["title"]


class TestImageReference:
    """Test the reference value type."""

    def test_requires_exactly_one_variant(self):
        with pytest.raises(ValueError):
            ImageReference(kind=ReferenceKind.ABSOLUTE_URL, url="https://x", path="a")
        with pytest.raises(ValueError):
            ImageReference(kind=ReferenceKind.STORE_PATH, bucket_host=BUCKET)

    def test_equality_ignores_raw(self):
        a = ImageReference.store(BUCKET, "a.jpg", raw="/a.jpg")
        b = ImageReference.store(BUCKET, "a.jpg", raw="gs://demo.appspot.com/a.jpg")

        assert a == b

    def test_mime_from_path(self):
        assert mime_from_path("a/b.PNG") == "image/png"
        assert mime_from_path("a/b") == "image/jpeg"
