"""Data models for image references, scans, generation jobs and API payloads."""

from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from geophoto.error_handling import ErrorCategory


class ReferenceKind(str, Enum):
    """Variants of an image reference."""
    ABSOLUTE_URL = "absolute_url"
    INLINE = "inline"
    STORE_PATH = "store_path"


@dataclass(frozen=True)
class ImageReference:
    """Where an image lives: an absolute URL, an inline payload, or a store path.

    Exactly one variant's fields are populated. ``raw`` keeps the string the
    reference was parsed from so diagnostics can always show the original input.
    """

    kind: ReferenceKind
    raw: str = field(default="", compare=False)
    url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    bucket_host: Optional[str] = None
    path: Optional[str] = None

    def __post_init__(self):
        url_set = self.url is not None
        inline_set = self.data is not None or self.mime_type is not None
        store_set = self.bucket_host is not None or self.path is not None

        expected = {
            ReferenceKind.ABSOLUTE_URL: (url_set, not inline_set and not store_set),
            ReferenceKind.INLINE: (self.data is not None and self.mime_type is not None, not url_set and not store_set),
            ReferenceKind.STORE_PATH: (bool(self.bucket_host) and bool(self.path), not url_set and not inline_set),
        }
        populated, others_empty = expected[self.kind]
        if not (populated and others_empty):
            raise ValueError(f"ImageReference of kind {self.kind.value} must populate exactly its own fields")

    @classmethod
    def absolute(cls, url: str, raw: Optional[str] = None) -> "ImageReference":
        return cls(kind=ReferenceKind.ABSOLUTE_URL, raw=raw if raw is not None else url, url=url)

    @classmethod
    def inline(cls, data: bytes, mime_type: str, raw: Optional[str] = None) -> "ImageReference":
        ref = cls(kind=ReferenceKind.INLINE, raw=raw or "", data=bytes(data), mime_type=mime_type)
        if not raw:
            object.__setattr__(ref, "raw", ref.to_locator())
        return ref

    @classmethod
    def store(cls, bucket_host: str, path: str, raw: Optional[str] = None) -> "ImageReference":
        ref = cls(kind=ReferenceKind.STORE_PATH, raw=raw or "", bucket_host=bucket_host, path=path)
        if not raw:
            object.__setattr__(ref, "raw", ref.to_locator())
        return ref

    @property
    def is_inline(self) -> bool:
        return self.kind is ReferenceKind.INLINE

    @property
    def is_store_path(self) -> bool:
        return self.kind is ReferenceKind.STORE_PATH

    def to_locator(self) -> str:
        """Render the canonical string form of this reference."""
        if self.kind is ReferenceKind.ABSOLUTE_URL:
            return self.url
        if self.kind is ReferenceKind.INLINE:
            if self.raw[:5].lower() == "data:":
                return self.raw
            encoded = base64.b64encode(self.data).decode("ascii")
            return f"data:{self.mime_type};base64,{encoded}"
        return f"gs://{self.bucket_host}/{self.path}"

    def __str__(self) -> str:
        if self.kind is ReferenceKind.INLINE:
            return f"data:{self.mime_type};base64,<{len(self.data)} bytes>"
        return self.to_locator()


@dataclass(frozen=True)
class ScanTask:
    """One folder waiting to be listed by the scanner."""
    path: str
    depth: int


@dataclass
class FolderListing:
    """Immediate children of a store folder."""
    subfolders: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FolderListing":
        """Build a listing from a ``{prefixes: [...], items: [{name}]}`` response."""
        prefixes = payload.get("prefixes") or []
        items = payload.get("items") or []
        return cls(
            subfolders=[p.rstrip("/") for p in prefixes if isinstance(p, str) and p.strip("/")],
            files=[
                item["name"] for item in items
                if isinstance(item, dict) and isinstance(item.get("name"), str)
            ],
        )

    def extend(self, other: "FolderListing") -> None:
        self.subfolders.extend(other.subfolders)
        self.files.extend(other.files)


@dataclass
class FetchedImage:
    """Bytes resolved for a reference and how they were obtained."""
    data: bytes
    content_type: str
    reference: ImageReference
    via_fallback: bool = False
    source: str = ""

    @property
    def export_allowed(self) -> bool:
        """Content that came through the store's REST fallback must not be re-exported."""
        return not self.via_fallback


@dataclass
class EndpointProbeResult:
    """Outcome of a reachability probe against one endpoint."""
    url: str
    status: int
    latency: float


class JobStatus(str, Enum):
    """Local lifecycle of a generation job."""
    CREATED = "created"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS = {
    JobStatus.CREATED: {JobStatus.SUBMITTED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.SUBMITTED: {JobStatus.POLLING, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.POLLING: {JobStatus.POLLING, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


class InvalidJobTransition(RuntimeError):
    """Raised when a job is moved out of a terminal state or skips a step."""


@dataclass
class GenerationJob:
    """State machine for one generation request against one provider."""

    provider: str
    id: str = field(default_factory=lambda: f"job-{uuid.uuid4().hex[:12]}")
    status: JobStatus = JobStatus.CREATED
    created_at: float = field(default_factory=time.time)
    last_polled_at: Optional[float] = None
    remote_id: Optional[str] = None
    remote_status: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failure: Optional[ErrorCategory] = None
    poll_count: int = 0
    trace: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def output(self) -> Optional[str]:
        return self.outputs[0] if self.outputs else None

    def _transition(self, new_status: JobStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidJobTransition(f"{self.status.value} -> {new_status.value}")
        self.status = new_status

    def mark_submitted(self, remote_id: Optional[str], remote_status: Optional[str]) -> None:
        self._transition(JobStatus.SUBMITTED)
        self.remote_id = remote_id
        self.remote_status = remote_status
        self.trace.append(f"Create status: {remote_status}")

    def record_poll(self, remote_status: Optional[str], at: float, elapsed: float) -> None:
        """Record one poll. ``at`` is wall-clock time, like ``created_at``."""
        self._transition(JobStatus.POLLING)
        self.poll_count += 1
        self.last_polled_at = at
        self.remote_status = remote_status
        self.trace.append(f"Poll {elapsed:.0f}s -> {remote_status}")

    def succeed(self, outputs: List[str]) -> None:
        self._transition(JobStatus.SUCCEEDED)
        self.outputs = list(outputs)
        self.trace.append("Succeeded")

    def fail(self, reason: ErrorCategory, message: str) -> None:
        self._transition(JobStatus.FAILED)
        self.failure = reason
        self.error = message
        self.trace.append(f"Failed ({reason.value}): {message}")

    def cancel(self, message: str = "cancelled by caller") -> None:
        self._transition(JobStatus.CANCELLED)
        self.error = message
        self.trace.append("Cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'provider': self.provider,
            'status': self.status.value,
            'remote_id': self.remote_id,
            'remote_status': self.remote_status,
            'created_at': self.created_at,
            'last_polled_at': self.last_polled_at,
            'outputs': list(self.outputs),
            'error': self.error,
            'failure': self.failure.value if self.failure else None,
            'trace': list(self.trace),
        }


class ReturnMode(str, Enum):
    """What the caller wants back from a generation."""
    PHOTO = "photo"
    OVERLAYS = "overlays"


_REQUEST_ALIASES = {
    'base_image': (
        'baseImageUrl', 'base_image_url', 'guideURL', 'guideUrl', 'imageURL',
        'image_url', 'image', 'dataUrl', 'input', 'src', 'reference',
    ),
    'mask': ('maskDataUrl', 'mask_url', 'maskUrl'),
    'prompt': ('notes',),
    'return_mode': ('returnType', 'return', 'mode'),
    'overlay_summary': ('overlaySummary',),
    'strength': ('imageStrength', 'image_strength'),
}


class GenerationRequest(BaseModel):
    """Structured generation request accepted by the orchestrator."""
    base_image: str = Field(min_length=1, description="Locator of the base image")
    mask: Optional[str] = Field(default=None, description="Locator of the mask image")
    prompt: str = Field(default="", description="Free-text notes for the generation")
    style: str = Field(default="realistic", description="Style tag (realistic, dramatic, training)")
    strength: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Strength/guidance in [0, 1]")
    return_mode: ReturnMode = Field(default=ReturnMode.PHOTO)
    overlay_summary: Optional[Dict[str, int]] = Field(default=None, description="Counts of masked regions by kind")

    model_config = {"extra": "ignore"}

    @model_validator(mode='before')
    @classmethod
    def apply_aliases(cls, data: Any) -> Any:
        """Accept the historical payload keys various front ends send."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for target, aliases in _REQUEST_ALIASES.items():
            if data.get(target) not in (None, ""):
                continue
            for alias in aliases:
                value = data.get(alias)
                if value not in (None, ""):
                    data[target] = value
                    break
        if isinstance(data.get('return_mode'), str):
            data['return_mode'] = data['return_mode'].strip().lower() or ReturnMode.PHOTO.value
        return data

    @field_validator('prompt', mode='before')
    @classmethod
    def _coerce_prompt(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class GenerationResult(BaseModel):
    """Canonical response for a completed generation."""
    ok: bool = True
    image: str = Field(description="Canonical image locator")
    model: str = Field(description="Provider that produced the image")
    overlay: Optional[str] = Field(default=None, description="Mask-clipped overlay as a data URI")
    job_id: Optional[str] = None
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
