"""Error taxonomy and retry handling for the media resolution pipeline."""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import aiohttp


logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Error category types."""
    INVALID_REFERENCE = "invalid_reference"
    RESOLUTION_EXHAUSTED = "resolution_exhausted"
    LISTING_EXHAUSTED = "listing_exhausted"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    NO_IMAGE_FOUND = "no_image_found"
    TAINTED_CONTENT = "tainted_content"
    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    PROCESSING_ERROR = "processing_error"


class MediaPipelineError(Exception):
    """Base class for every error surfaced by the pipeline."""

    category: ErrorCategory = ErrorCategory.PROCESSING_ERROR

    def __init__(self, message: str, *, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'category': self.category.value,
            'diagnostics': self.diagnostics,
        }


class InvalidReference(MediaPipelineError):
    """Raised for empty or unrecognisable image references. Never retried."""

    category = ErrorCategory.INVALID_REFERENCE


class ResolutionExhausted(MediaPipelineError):
    """Raised when every fetch strategy for a reference has failed."""

    category = ErrorCategory.RESOLUTION_EXHAUSTED

    def __init__(self, message: str, attempts: Iterable[str] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.attempts: List[str] = list(attempts)
        self.diagnostics.setdefault('attempts', self.attempts)


class ListingExhausted(MediaPipelineError):
    """Raised when every listing strategy and host variant has failed."""

    category = ErrorCategory.LISTING_EXHAUSTED

    def __init__(self, message: str, attempts: Iterable[str] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.attempts: List[str] = list(attempts)
        self.diagnostics.setdefault('attempts', self.attempts)


class ProviderUnavailable(MediaPipelineError):
    """Raised when a provider has no credentials configured."""

    category = ErrorCategory.PROVIDER_UNAVAILABLE

    def __init__(self, provider: str, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderError(MediaPipelineError):
    """Raised for a remote generation failure."""

    category = ErrorCategory.PROVIDER_ERROR

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        trace: Optional[List[str]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status_code = status_code
        self.trace = list(trace or [])
        self.diagnostics.setdefault('provider', provider)
        if status_code is not None:
            self.diagnostics.setdefault('status_code', status_code)
        if self.trace:
            self.diagnostics.setdefault('trace', self.trace)


class GenerationTimeout(ProviderError):
    """Raised when a poll ceiling or network deadline is exceeded."""

    category = ErrorCategory.TIMEOUT


class NoImageFound(MediaPipelineError):
    """Raised when a response carries no usable image locator."""

    category = ErrorCategory.NO_IMAGE_FOUND

    def __init__(self, seen_keys: Iterable[str], message: Optional[str] = None, **kwargs):
        keys = sorted(str(k) for k in seen_keys)
        super().__init__(
            message or f"Response did not contain a usable image. Received keys: {', '.join(keys) or '(no keys)'}",
            **kwargs,
        )
        self.seen_keys = keys
        self.diagnostics.setdefault('seen_keys', keys)


class TaintedContentError(MediaPipelineError):
    """Raised when re-exporting content that was fetched over the HTTP fallback."""

    category = ErrorCategory.TAINTED_CONTENT


class ErrorAnalyzer:
    """Maps arbitrary exceptions onto the pipeline's error categories."""

    ERROR_PATTERNS = {
        ErrorCategory.RATE_LIMIT: [
            'rate limit', 'too many requests', 'throttled', '429'
        ],
        ErrorCategory.TIMEOUT: [
            'timeout', 'timed out', 'deadline exceeded'
        ],
        ErrorCategory.NETWORK_ERROR: [
            'connection error', 'connection refused', 'connection reset',
            'cannot connect', 'dns', 'unreachable'
        ],
    }

    @staticmethod
    def status_of(error: BaseException) -> Optional[int]:
        """Return the HTTP status attached to an exception, if any."""
        for attr in ('status', 'status_code'):
            value = getattr(error, attr, None)
            if isinstance(value, int):
                return value
        return None

    @classmethod
    def categorize_error(cls, error: BaseException, error_message: str = None) -> ErrorCategory:
        """Categorize an error based on its type, status and message."""
        if isinstance(error, MediaPipelineError):
            return error.category

        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT
        if isinstance(error, aiohttp.ClientConnectionError):
            return ErrorCategory.NETWORK_ERROR

        status = cls.status_of(error)
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status is not None and status >= 400:
            return ErrorCategory.PROVIDER_ERROR

        error_text = (error_message or str(error)).lower()
        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text:
                    return category

        if isinstance(error, (ConnectionError, OSError)):
            return ErrorCategory.NETWORK_ERROR
        return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def is_retryable(cls, error: BaseException) -> bool:
        """Retry only on 5xx, 429, timeouts and connection failures."""
        if isinstance(error, MediaPipelineError):
            if isinstance(error, ProviderError) and error.status_code is not None:
                return error.status_code >= 500 or error.status_code == 429
            return isinstance(error, GenerationTimeout)

        status = cls.status_of(error)
        if status is not None:
            return status >= 500 or status == 429

        return cls.categorize_error(error) in (
            ErrorCategory.TIMEOUT,
            ErrorCategory.NETWORK_ERROR,
            ErrorCategory.RATE_LIMIT,
        )


@dataclass
class RetryPolicy:
    """Bounded retry settings for idempotent reads."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0

    def delay_for(self, attempt_number: int) -> float:
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt_number - 1))
        return delay + random.uniform(0, delay / 4)


async def retry_transient(
    func: Callable,
    *args,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable = asyncio.sleep,
    **kwargs,
) -> Any:
    """Await ``func`` and retry it on transient failures only."""
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as error:
            if attempt >= policy.max_attempts or not ErrorAnalyzer.is_retryable(error):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"Transient {ErrorAnalyzer.categorize_error(error).value} in "
                f"{getattr(func, '__name__', func)} (attempt {attempt}/{policy.max_attempts}); "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

    raise RuntimeError("retry loop exited without a result")  # pragma: no cover


@asynccontextmanager
async def error_monitoring_context(name: str):
    """Log duration and any error raised inside a pipeline stage."""
    start_time = time.monotonic()
    errors_caught: List[Dict[str, Any]] = []

    try:
        logger.debug(f"Starting monitored operation: {name}")
        yield errors_caught

    except Exception as e:
        errors_caught.append({
            'error': str(e),
            'type': type(e).__name__,
            'category': ErrorAnalyzer.categorize_error(e).value,
            'timestamp': time.time()
        })
        logger.error(f"Error in monitored operation {name}: {e}")
        raise

    finally:
        duration = time.monotonic() - start_time
        logger.info(
            f"Monitored operation {name} completed in {duration:.2f}s "
            f"with {len(errors_caught)} errors"
        )
