"""Runtime configuration for the media pipeline."""

import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field


DEFAULT_AI_ENDPOINTS = [
    "/.netlify/functions/ai-image",
    "/api/ai-image",
]


class PipelineContext(BaseModel):
    """Runtime configuration for reference resolution and generation."""

    # Object store
    storage_bucket: str | None = Field(default=None, description="Bucket host used for store-relative paths")
    google_credentials: str | None = Field(default=None, description="Service account key path or JSON for the native store client")
    scenario_root: str = Field(default="scenarios", description="Store folder holding one subfolder per scenario")

    # Provider A: synchronous edit
    openai_api_key: str | None = Field(default=None, description="OpenAI API key for image edits")
    openai_image_model: str = Field(default="gpt-image-1", description="OpenAI image edit model")
    openai_image_size: str = Field(default="1024x1024", description="Requested output size")

    # Provider B: asynchronous create/poll
    replicate_api_token: str | None = Field(default=None, description="Replicate API token")
    replicate_model: str = Field(default="fofr/sdxl-inpainting", description="Replicate model identifier")
    replicate_version: str | None = Field(default=None, description="Pinned Replicate model version")

    # Polling and timeouts (seconds)
    poll_interval: float = Field(default=2.0, gt=0)
    poll_deadline: float = Field(default=120.0, gt=0, description="Absolute ceiling for one asynchronous job")
    request_timeout: float = Field(default=90.0, gt=0, description="Ceiling for a single provider request")
    fetch_timeout: float = Field(default=30.0, gt=0)
    listing_timeout: float = Field(default=15.0, gt=0)
    probe_timeout: float = Field(default=3.5, gt=0)
    stream_idle_timeout: float = Field(default=6.0, gt=0)
    stream_hard_timeout: float = Field(default=120.0, gt=0)

    # Discovery
    scan_max_depth: int = Field(default=3, ge=0)
    scan_max_files: int = Field(default=500, ge=1)
    materializer_concurrency: int = Field(default=6, ge=1)

    # Service endpoints for the remote generation client
    endpoint_base_url: str = Field(default="http://localhost:8000", description="Origin relative endpoints resolve against")
    endpoint_overrides: List[str] = Field(default_factory=list, description="Endpoints tried before the defaults")

    model_config = {"extra": "allow", "frozen": True}

    @property
    def openai_configured(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def replicate_configured(self) -> bool:
        return bool(self.replicate_api_token)


def _split_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def get_default_context() -> PipelineContext:
    """Get default context with environment variables."""
    load_dotenv()

    overrides = {
        'storage_bucket': os.getenv('GEOPHOTO_STORAGE_BUCKET') or os.getenv('FIREBASE_STORAGE_BUCKET'),
        'google_credentials': os.getenv('GOOGLE_APPLICATION_CREDENTIALS') or os.getenv('FIREBASE_SERVICE_ACCOUNT_JSON'),
        'openai_api_key': os.getenv('OPENAI_API_KEY') or os.getenv('OPENAI_API_TOKEN'),
        'replicate_api_token': os.getenv('REPLICATE_API_TOKEN'),
        'replicate_version': os.getenv('REPLICATE_VERSION') or os.getenv('REPLICATE_MODEL_VERSION'),
        'endpoint_overrides': _split_list(os.getenv('GEOPHOTO_AI_ENDPOINTS')),
    }

    replicate_model = os.getenv('REPLICATE_MODEL')
    if replicate_model:
        overrides['replicate_model'] = replicate_model
    base_url = os.getenv('GEOPHOTO_BASE_URL')
    if base_url:
        overrides['endpoint_base_url'] = base_url
    poll_deadline = os.getenv('GEOPHOTO_POLL_DEADLINE')
    if poll_deadline:
        overrides['poll_deadline'] = float(poll_deadline)

    return PipelineContext(**overrides)
