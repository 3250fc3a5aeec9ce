"""Generation endpoint discovery and submission for remote callers."""

import asyncio
import codecs
import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import aiohttp

from geophoto.context import DEFAULT_AI_ENDPOINTS
from geophoto.error_handling import ErrorAnalyzer, ErrorCategory, GenerationTimeout, ProviderError
from geophoto.models import EndpointProbeResult, GenerationResult
from geophoto.response_normalizer import has_image_field, normalize_response, parse_stream_line


logger = logging.getLogger(__name__)


PING_HEADERS = {"content-type": "application/json", "x-ai-ping": "1"}
SUBMIT_HEADERS = {
    "content-type": "application/json",
    "accept": "application/json,text/event-stream,text/plain,application/x-ndjson",
}
LINE_BREAK = re.compile(r"\r?\n")


def candidate_endpoints(base_url: str, overrides: Sequence[str] = ()) -> List[str]:
    """Overrides first, then the defaults, resolved against ``base_url`` and deduplicated."""
    seen: List[str] = []
    for endpoint in list(overrides) + DEFAULT_AI_ENDPOINTS:
        if not endpoint:
            continue
        absolute = urljoin(base_url, endpoint)
        if absolute not in seen:
            seen.append(absolute)
    return seen


class EndpointProber:
    """Find the first generation endpoint that answers at all.

    Any HTTP status counts as reachable. A ``None`` result is advisory:
    callers go on with the default endpoint order.
    """

    def __init__(self, base_url: str, overrides: Sequence[str] = (), timeout: float = 3.5):
        self.base_url = base_url
        self.overrides = list(overrides)
        self.timeout = timeout

    def candidates(self) -> List[str]:
        return candidate_endpoints(self.base_url, self.overrides)

    async def probe_one(self, url: str) -> EndpointProbeResult:
        payload = {"ping": True, "timestamp": int(time.time() * 1000)}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        started = time.monotonic()
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=PING_HEADERS) as response:
                return EndpointProbeResult(url=url, status=response.status, latency=time.monotonic() - started)

    async def probe(self) -> Optional[EndpointProbeResult]:
        for url in self.candidates():
            try:
                result = await self.probe_one(url)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.info(f"Ping {url} failed: {type(e).__name__} {e}")
                continue
            logger.info(f"Ping {url} -> {result.status} in {result.latency * 1000:.0f}ms")
            return result
        logger.warning("No generation endpoint answered the ping")
        return None


class EndpointClient:
    """POST generation requests to endpoints in order, reading JSON or line streams.

    The whole exchange with one endpoint is bounded by ``hard_timeout``.
    Streaming reads are also bounded by ``idle_timeout``, which restarts with
    every chunk received.
    """

    def __init__(
        self,
        base_url: str,
        overrides: Sequence[str] = (),
        *,
        hard_timeout: float = 120.0,
        idle_timeout: float = 6.0,
        on_status: Optional[Callable[[str], Any]] = None,
    ):
        self.base_url = base_url
        self.overrides = list(overrides)
        self.hard_timeout = hard_timeout
        self.idle_timeout = idle_timeout
        self.on_status = on_status

    def _status(self, message: str) -> None:
        logger.debug(message)
        if self.on_status is not None:
            try:
                self.on_status(message)
            except Exception as e:
                logger.warning(f"Status callback failed: {e}")

    def endpoints(self, preferred: Optional[str] = None) -> List[str]:
        candidates = candidate_endpoints(self.base_url, self.overrides)
        if preferred:
            return [preferred] + [url for url in candidates if url != preferred]
        return candidates

    def _handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        parsed = parse_stream_line(line)
        if parsed is None:
            self._status(line[:120])
            return None
        if parsed.get("status") or "progress" in parsed:
            progress = parsed.get("progress")
            suffix = f" {round(progress * 100)}%" if isinstance(progress, (int, float)) else ""
            self._status(f"{parsed.get('status') or 'working'}{suffix}")
        return parsed

    async def _read_stream(self, response) -> Dict[str, Any]:
        last_object: Optional[Dict[str, Any]] = None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            try:
                chunk = await asyncio.wait_for(response.content.readany(), timeout=self.idle_timeout)
            except asyncio.TimeoutError as e:
                raise GenerationTimeout(
                    "endpoint",
                    f"No data received for {self.idle_timeout:g}s while streaming",
                ) from e
            at_eof = not chunk
            buffer += decoder.decode(chunk, final=at_eof)
            # The last piece is a partial line until EOF
            *lines, buffer = LINE_BREAK.split(buffer)
            if at_eof:
                lines.append(buffer)
            for line in lines:
                parsed = self._handle_line(line)
                if parsed is None:
                    continue
                if has_image_field(parsed):
                    return parsed
                last_object = parsed
            if at_eof:
                break

        if last_object is not None:
            return last_object
        raise ProviderError("endpoint", "Stream ended with no JSON (empty body)")

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.hard_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=SUBMIT_HEADERS) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise ProviderError(
                        "endpoint",
                        f"{response.status} {text[:300]}".strip(),
                        status_code=response.status,
                    )
                content_type = (response.headers.get("Content-Type") or "").lower()
                if "application/json" in content_type:
                    text = await response.text()
                    try:
                        return json.loads(text) if text else {}
                    except ValueError as e:
                        raise ProviderError("endpoint", f"Invalid JSON from {url}: {e}") from e
                return await self._read_stream(response)

    async def submit(self, payload: Dict[str, Any], preferred: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        """Return ``(endpoint, response object)`` from the first endpoint that answers."""
        failures: List[Dict[str, str]] = []
        all_timeouts = True

        for url in self.endpoints(preferred):
            logger.info(f"POST {url} keys: {sorted(payload.keys())}")
            try:
                return url, await self._post(url, payload)
            except Exception as e:
                category = ErrorAnalyzer.categorize_error(e)
                all_timeouts = all_timeouts and category is ErrorCategory.TIMEOUT
                failures.append({'endpoint': url, 'error': str(e) or type(e).__name__, 'category': category.value})
                logger.warning(f"POST {url} failed ({category.value}): {e}")
                self._status("endpoint failed, trying next")

        error_cls = GenerationTimeout if failures and all_timeouts else ProviderError
        raise error_cls("endpoint", "All AI endpoints failed", diagnostics={'attempted_endpoints': failures})


class GenerationClient:
    """Probe, submit and normalize in one call."""

    def __init__(self, prober: EndpointProber, client: EndpointClient):
        self.prober = prober
        self.client = client

    @classmethod
    def from_context(cls, context, on_status: Optional[Callable[[str], Any]] = None) -> "GenerationClient":
        prober = EndpointProber(context.endpoint_base_url, context.endpoint_overrides, timeout=context.probe_timeout)
        client = EndpointClient(
            context.endpoint_base_url,
            context.endpoint_overrides,
            hard_timeout=context.stream_hard_timeout,
            idle_timeout=context.stream_idle_timeout,
            on_status=on_status,
        )
        return cls(prober, client)

    async def generate(self, payload: Dict[str, Any]) -> GenerationResult:
        probe = await self.prober.probe()
        endpoint, body = await self.client.submit(payload, probe.url if probe else None)
        reference = normalize_response(body, base_url=endpoint)
        return GenerationResult(
            image=reference.to_locator(),
            model=str(body.get("model") or "remote"),
            overlay=body.get("overlay") if isinstance(body.get("overlay"), str) else None,
            job_id=str(body["job_id"]) if body.get("job_id") else None,
            diagnostics={
                'endpoint': endpoint,
                'probe': {'url': probe.url, 'status': probe.status} if probe else None,
            },
        )
