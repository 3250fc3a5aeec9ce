"""Test configuration for path setup and shared fakes.

Ensures the `src` directory is on sys.path so the `geophoto` package
can be imported without installing the project in editable mode.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from geophoto.error_handling import RetryPolicy  # noqa: E402
from geophoto.models import FolderListing  # noqa: E402
from geophoto.runtime import reset_runtime  # noqa: E402


class HTTPStatusError(Exception):
    """Stand-in for an HTTP error carrying a status code."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"HTTP {status}")
        self.status = status


class FakeStoreClient:
    """In-memory object store with the same read surface as the real clients."""

    def __init__(self, objects=None, provider_name="native", hosts=None):
        self.objects = dict(objects or {})
        self.provider_name = provider_name
        self.hosts = set(hosts) if hosts is not None else None
        self.fetch_calls = []
        self.list_calls = []
        self.token_calls = []
        self.list_failures = {}
        self.fetch_error = None
        self.tokens = {}

    def _check_host(self, bucket_host):
        if self.hosts is not None and bucket_host not in self.hosts:
            raise HTTPStatusError(404, f"no bucket {bucket_host}")

    async def fetch(self, bucket_host, path, timeout):
        self.fetch_calls.append((bucket_host, path))
        if self.fetch_error is not None:
            raise self.fetch_error
        self._check_host(bucket_host)
        if path not in self.objects:
            raise HTTPStatusError(404, f"{path} not found")
        return self.objects[path], "image/jpeg"

    async def list(self, bucket_host, path, timeout):
        self.list_calls.append((bucket_host, path))
        self._check_host(bucket_host)
        if path in self.list_failures:
            raise self.list_failures[path]
        prefix = f"{path.strip('/')}/" if path.strip("/") else ""
        subfolders, files = [], []
        for name in self.objects:
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            if "/" in rest:
                folder = prefix + rest.split("/", 1)[0]
                if folder not in subfolders:
                    subfolders.append(folder)
            else:
                files.append(name)
        return FolderListing(subfolders=subfolders, files=files)

    async def download_token(self, bucket_host, path, timeout):
        self.token_calls.append((bucket_host, path))
        self._check_host(bucket_host)
        if path not in self.objects:
            raise HTTPStatusError(404, f"{path} not found")
        return self.tokens.get(path, "tok")


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _FakePredictions:
    def __init__(self, create_result, poll_results):
        self.create_result = create_result
        self.poll_results = list(poll_results)
        self.created = []
        self.fetched = []
        self.cancelled = []

    def create(self, **kwargs):
        self.created.append(kwargs)
        if isinstance(self.create_result, Exception):
            raise self.create_result
        return self.create_result

    def get(self, prediction_id):
        self.fetched.append(prediction_id)
        result = self.poll_results.pop(0) if len(self.poll_results) > 1 else self.poll_results[0]
        if isinstance(result, Exception):
            raise result
        return result

    def cancel(self, prediction_id):
        self.cancelled.append(prediction_id)
        return {"id": prediction_id, "status": "canceled"}


class FakeReplicateClient:
    """Replicate client double returning canned prediction dicts."""

    def __init__(self, create_result, poll_results=()):
        self.predictions = _FakePredictions(create_result, poll_results or [create_result])


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture(autouse=True)
def _reset_runtime():
    reset_runtime()
    yield
    reset_runtime()
