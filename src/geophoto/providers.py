"""Image generation providers: a synchronous OpenAI edit and an asynchronous Replicate create/poll."""

import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from geophoto.error_handling import (
    ErrorAnalyzer,
    ErrorCategory,
    GenerationTimeout,
    ProviderError,
    ProviderUnavailable,
)
from geophoto.models import FetchedImage, GenerationJob, ImageReference


logger = logging.getLogger(__name__)


OPENAI_EDITS_URL = "https://api.openai.com/v1/images/edits"

ACTIVE_REMOTE_STATUSES = frozenset({"queued", "starting", "processing"})

REPLICATE_INPAINT_DEFAULTS: Dict[str, Any] = {
    "prompt_strength": 0.55,
    "guidance_scale": 5,
    "num_inference_steps": 28,
}

_BASE_PROMPT = (
    "photojournalism-grade realism of a residential structure fire,"
    " keep the original building geometry, perspective and lens,"
    " add physically plausible flames and volumetric smoke only inside the masked areas,"
    " warm light spill on nearby materials and subtle glass reflections,"
    " no new objects, no people, no vehicles"
)

_STYLE_PROMPTS = {
    "dramatic": "cinematic contrast, crisp detail, intense glow but not neon",
    "training": "daylight or overcast training drill look, neutral grading, moderate contrast",
}

_PROMPT_GUARDRAIL = "do not distort walls, windows, doors or rooflines; avoid oversaturated neon or cartoon effects"


def build_edit_prompt(style: Optional[str], notes: Optional[str], overlay_summary: Optional[Mapping[str, int]] = None) -> str:
    """Compose the edit prompt from a style tag, free-text notes and masked region counts."""
    parts = [_BASE_PROMPT, _STYLE_PROMPTS.get((style or "").lower(), "natural grading, balanced saturation")]

    if overlay_summary:
        fire = int(overlay_summary.get("fire", 0) or 0)
        smoke = int(overlay_summary.get("smoke", 0) or 0)
        if fire or smoke:
            parts.append(f"emphasize {fire} flame region(s) and {smoke} smoke region(s) as masked")

    if notes and notes.strip():
        parts.append(notes.strip())

    parts.append(_PROMPT_GUARDRAIL)
    return ", ".join(parts)


class SystemClock:
    """Monotonic time and sleeping, swappable for a fake in tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from either a client object or a plain mapping."""
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _output_locators(output: Any) -> List[str]:
    if output is None:
        return []
    if isinstance(output, str):
        return [output] if output else []
    if isinstance(output, Mapping):
        url = output.get("url") or output.get("image")
        return [url] if isinstance(url, str) and url else []
    if isinstance(output, (list, tuple)):
        locators: List[str] = []
        for item in output:
            locators.extend(_output_locators(item))
        return locators
    # FileOutput and similar wrappers expose a url attribute
    url = getattr(output, "url", None)
    return [str(url)] if url else []


def upload_locator(image: FetchedImage) -> Any:
    """Locator passed to a provider that accepts URLs or data URIs."""
    reference = image.reference
    if reference.url is not None:
        return reference.url
    encoded = base64.b64encode(image.data).decode("ascii")
    return f"data:{image.content_type or 'image/png'};base64,{encoded}"


class OpenAIEditProvider:
    """Synchronous edit contract: one multipart request, one image back."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "gpt-image-1",
        size: str = "1024x1024",
        timeout: float = 90.0,
        base_url: str = OPENAI_EDITS_URL,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.size = size
        self.timeout = timeout
        self.base_url = base_url

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _form(self, base: FetchedImage, mask: Optional[FetchedImage], prompt: str) -> aiohttp.FormData:
        extension = "png" if "png" in (base.content_type or "") else "jpg"
        form = aiohttp.FormData()
        form.add_field("model", self.model)
        form.add_field("prompt", prompt)
        form.add_field("size", self.size)
        form.add_field("image", base.data, filename=f"image.{extension}", content_type=base.content_type or "image/png")
        if mask is not None:
            form.add_field("mask", mask.data, filename="mask.png", content_type="image/png")
        return form

    async def edit(
        self,
        base: FetchedImage,
        mask: Optional[FetchedImage],
        prompt: str,
        job: Optional[GenerationJob] = None,
    ) -> GenerationJob:
        """Run one edit. The returned job holds the result locator in ``outputs``."""
        if not self.configured:
            raise ProviderUnavailable(self.name, "OPENAI_API_KEY is not configured")

        job = job or GenerationJob(provider=self.name)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.base_url, headers=headers, data=self._form(base, mask, prompt)) as response:
                    job.mark_submitted(None, str(response.status))
                    if response.status != 200:
                        text = await response.text()
                        message = _error_message(text) or f"HTTP {response.status}"
                        job.fail(ErrorCategory.PROVIDER_ERROR, message)
                        raise ProviderError(
                            self.name,
                            f"OpenAI error {response.status}: {message}",
                            status_code=response.status,
                            trace=job.trace,
                        )
                    data = await response.json()
        except asyncio.TimeoutError as e:
            if not job.is_terminal:
                job.fail(ErrorCategory.TIMEOUT, f"no response within {self.timeout:.0f}s")
            raise GenerationTimeout(self.name, f"OpenAI edit timed out after {self.timeout:.0f}s", trace=job.trace) from e
        except aiohttp.ClientError as e:
            if not job.is_terminal:
                job.fail(ErrorAnalyzer.categorize_error(e), str(e))
            raise ProviderError(self.name, f"OpenAI request failed: {e}", trace=job.trace) from e
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.cancel()
            raise

        first = (data.get("data") or [{}])[0]
        if first.get("b64_json"):
            reference = ImageReference.inline(base64.b64decode(first["b64_json"]), "image/png")
        elif first.get("url"):
            reference = ImageReference.absolute(first["url"])
        else:
            job.fail(ErrorCategory.PROVIDER_ERROR, "no image in response")
            raise ProviderError(self.name, "OpenAI returned no image", trace=job.trace)

        job.succeed([reference.to_locator()])
        logger.info(f"OpenAI edit {job.id} succeeded")
        return job


def _error_message(text: str) -> str:
    try:
        payload = json.loads(text)
    except ValueError:
        return text.strip()[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error or "")


class ReplicateInpaintProvider:
    """Asynchronous create/poll contract on Replicate.

    ``create`` submits the prediction, ``poll_once`` waits one interval on the
    injected clock and re-fetches it, and ``run_until_terminal`` loops until the
    prediction leaves the active states or the absolute deadline passes.
    """

    name = "replicate"

    def __init__(
        self,
        api_token: Optional[str],
        model: str = "fofr/sdxl-inpainting",
        version: Optional[str] = None,
        *,
        client: Any = None,
        clock: Any = None,
        poll_interval: float = 2.0,
        deadline: float = 120.0,
        max_poll_errors: int = 3,
        request_timeout: float = 30.0,
    ) -> None:
        self.api_token = api_token
        self.model = model
        self.version = version
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.deadline = deadline
        self.max_poll_errors = max_poll_errors
        self.request_timeout = request_timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_token) or self._client is not None

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_token:
                raise ProviderUnavailable(self.name, "REPLICATE_API_TOKEN is not configured")
            from replicate import Client

            self._client = Client(api_token=self.api_token)
        return self._client

    def build_input(
        self,
        prompt: str,
        image: Any,
        mask: Any = None,
        strength: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"prompt": prompt, "image": image, **REPLICATE_INPAINT_DEFAULTS}
        if mask is not None:
            payload["mask"] = mask
        if strength is not None:
            payload["prompt_strength"] = float(strength)
        return payload

    async def _call(self, func, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, lambda: func(*args, **kwargs)),
            timeout=self.request_timeout,
        )

    async def create(self, job: GenerationJob, payload: Dict[str, Any]) -> Any:
        """Submit the prediction. Never retried; failures are terminal for the job."""
        try:
            if self.version:
                prediction = await self._call(self.client.predictions.create, version=self.version, input=payload)
            else:
                prediction = await self._call(self.client.models.predictions.create, model=self.model, input=payload)
        except ProviderUnavailable:
            job.fail(ErrorCategory.PROVIDER_UNAVAILABLE, "no API token")
            raise
        except asyncio.CancelledError:
            job.cancel()
            raise
        except Exception as e:
            job.fail(ErrorAnalyzer.categorize_error(e), str(e))
            raise ProviderError(
                self.name,
                f"Replicate create failed: {e}",
                status_code=ErrorAnalyzer.status_of(e),
                trace=job.trace,
            ) from e

        job.mark_submitted(_field(prediction, "id"), _field(prediction, "status"))
        logger.info(f"Replicate prediction {job.remote_id} created ({job.remote_status})")
        return prediction

    async def poll_once(self, job: GenerationJob, started_at: Optional[float] = None) -> Any:
        """Wait one poll interval, then re-fetch the prediction and record its status."""
        await self.clock.sleep(self.poll_interval)
        prediction = await self._call(self.client.predictions.get, job.remote_id)
        now = self.clock.monotonic()
        elapsed = now - started_at if started_at is not None else 0.0
        job.record_poll(_field(prediction, "status"), time.time(), elapsed)
        return prediction

    async def _cancel_remote(self, job: GenerationJob) -> None:
        if not job.remote_id:
            return
        try:
            await self._call(self.client.predictions.cancel, job.remote_id)
        except Exception as e:
            logger.warning(f"Could not cancel Replicate prediction {job.remote_id}: {e}")

    async def run_until_terminal(self, job: GenerationJob, prediction: Any = None) -> GenerationJob:
        """Poll until the prediction is terminal. Always leaves the job terminal."""
        started_at = self.clock.monotonic()
        consecutive_errors = 0

        try:
            while job.remote_status in ACTIVE_REMOTE_STATUSES:
                elapsed = self.clock.monotonic() - started_at
                if elapsed >= self.deadline:
                    message = f"still {job.remote_status} after {elapsed:.0f}s"
                    job.fail(ErrorCategory.TIMEOUT, message)
                    await self._cancel_remote(job)
                    raise GenerationTimeout(
                        self.name,
                        f"Replicate prediction {job.remote_id} {message}",
                        trace=job.trace,
                    )
                try:
                    prediction = await self.poll_once(job, started_at)
                    consecutive_errors = 0
                except Exception as e:
                    consecutive_errors += 1
                    if ErrorAnalyzer.is_retryable(e) and consecutive_errors < self.max_poll_errors:
                        logger.info(f"Transient poll error for {job.remote_id} ({consecutive_errors}): {e}")
                        continue
                    job.fail(ErrorAnalyzer.categorize_error(e), f"poll failed: {e}")
                    raise ProviderError(
                        self.name,
                        f"Polling Replicate prediction {job.remote_id} failed: {e}",
                        status_code=ErrorAnalyzer.status_of(e),
                        trace=job.trace,
                    ) from e
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.cancel()
                await self._cancel_remote(job)
            raise

        if job.remote_status == "succeeded":
            outputs = _output_locators(_field(prediction, "output"))
            if outputs:
                job.succeed(outputs)
                logger.info(f"Replicate prediction {job.remote_id} succeeded after {job.poll_count} poll(s)")
                return job
            job.fail(ErrorCategory.NO_IMAGE_FOUND, "succeeded without output")
            raise ProviderError(self.name, "Replicate prediction succeeded without output", trace=job.trace)

        error = _field(prediction, "error") if prediction is not None else None
        message = str(error) if error else f"Replicate status: {job.remote_status}"
        job.fail(ErrorCategory.PROVIDER_ERROR, message)
        raise ProviderError(self.name, message, trace=job.trace)

    async def generate(
        self,
        prompt: str,
        image: Any,
        mask: Any = None,
        strength: Optional[float] = None,
        job: Optional[GenerationJob] = None,
    ) -> GenerationJob:
        """Create a prediction and drive it to a terminal state."""
        if not self.configured:
            raise ProviderUnavailable(self.name, "REPLICATE_API_TOKEN is not configured")
        job = job or GenerationJob(provider=self.name)
        prediction = await self.create(job, self.build_input(prompt, image, mask, strength))
        # A warm model can return an already terminal prediction from create
        return await self.run_until_terminal(job, prediction)


def build_providers(context, clock: Any = None, replicate_client: Any = None):
    """Create the primary and fallback providers from a :class:`PipelineContext`."""
    primary = OpenAIEditProvider(
        context.openai_api_key,
        model=context.openai_image_model,
        size=context.openai_image_size,
        timeout=context.request_timeout,
    )
    fallback = ReplicateInpaintProvider(
        context.replicate_api_token,
        context.replicate_model,
        context.replicate_version,
        client=replicate_client,
        clock=clock,
        poll_interval=context.poll_interval,
        deadline=context.poll_deadline,
    )
    return primary, fallback
