"""Unit tests for generation jobs and request models."""

import pytest
from pydantic import ValidationError

from geophoto.error_handling import ErrorCategory
from geophoto.models import (
    FolderListing,
    GenerationJob,
    GenerationRequest,
    InvalidJobTransition,
    JobStatus,
    ReturnMode,
)


class TestGenerationJob:
    """Test the job state machine."""

    def test_lifecycle(self):
        job = GenerationJob(provider="replicate")

        job.mark_submitted("p1", "starting")
        job.record_poll("processing", at=12.0, elapsed=2.0)
        job.succeed(["https://cdn/out.png"])

        assert job.status is JobStatus.SUCCEEDED
        assert job.is_terminal
        assert job.output == "https://cdn/out.png"
        assert job.poll_count == 1
        assert job.last_polled_at == 12.0
        assert job.trace == ["Create status: starting", "Poll 2s -> processing", "Succeeded"]

    def test_terminal_states_are_final(self):
        job = GenerationJob(provider="openai")
        job.fail(ErrorCategory.PROVIDER_UNAVAILABLE, "no key")

        with pytest.raises(InvalidJobTransition):
            job.succeed(["https://cdn/out.png"])
        with pytest.raises(InvalidJobTransition):
            job.cancel()

        assert job.status is JobStatus.FAILED

    def test_cannot_poll_before_submit(self):
        with pytest.raises(InvalidJobTransition):
            GenerationJob(provider="replicate").record_poll("processing", at=1.0, elapsed=0.0)

    def test_to_dict(self):
        job = GenerationJob(provider="replicate", id="job-1")
        job.mark_submitted("p1", "starting")
        job.fail(ErrorCategory.TIMEOUT, "still processing after 120s")

        data = job.to_dict()

        assert data['id'] == "job-1"
        assert data['status'] == "failed"
        assert data['failure'] == "timeout"
        assert data['trace'][-1] == "Failed (timeout): still processing after 120s"


class TestGenerationRequest:
    """Test request payload aliases."""

    def test_canonical_fields(self):
        request = GenerationRequest(base_image="gs://b/a.jpg", prompt=" smoke ", strength=0.4)

        assert request.prompt == "smoke"
        assert request.return_mode is ReturnMode.PHOTO
        assert request.style == "realistic"

    def test_legacy_aliases(self):
        request = GenerationRequest.model_validate({
            "guideURL": "https://cdn.example.com/a.jpg",
            "maskDataUrl": "data:image/png;base64,AAAA",
            "notes": "heavy smoke",
            "returnType": "Overlays",
            "overlaySummary": {"fire": 1, "smoke": 2},
            "unknown": True,
        })

        assert request.base_image == "https://cdn.example.com/a.jpg"
        assert request.mask == "data:image/png;base64,AAAA"
        assert request.prompt == "heavy smoke"
        assert request.return_mode is ReturnMode.OVERLAYS
        assert request.overlay_summary == {"fire": 1, "smoke": 2}

    def test_canonical_field_wins(self):
        request = GenerationRequest.model_validate({"base_image": "a.jpg", "image": "b.jpg"})

        assert request.base_image == "a.jpg"

    @pytest.mark.parametrize("payload", [
        {},
        {"base_image": ""},
        {"base_image": "a.jpg", "strength": 1.5},
        {"base_image": "a.jpg", "return_mode": "video"},
    ])
    def test_invalid(self, payload):
        with pytest.raises(ValidationError):
            GenerationRequest.model_validate(payload)


class TestFolderListing:
    """Test listing payload parsing."""

    def test_from_payload(self):
        listing = FolderListing.from_payload({
            "prefixes": ["s/a/", "s/b/", "/"],
            "items": [{"name": "s/1.jpg"}, {"bucket": "no-name"}],
        })

        assert listing.subfolders == ["s/a", "s/b"]
        assert listing.files == ["s/1.jpg"]
