"""Generation orchestration: resolve inputs, run the primary provider, fall back once."""

import logging
from typing import Any, Dict, List, Optional, Union

from geophoto.error_handling import (
    ProviderError,
    ProviderUnavailable,
    error_monitoring_context,
)
from geophoto.models import (
    FetchedImage,
    GenerationJob,
    GenerationRequest,
    GenerationResult,
    ReturnMode,
)
from geophoto.providers import (
    OpenAIEditProvider,
    ReplicateInpaintProvider,
    build_edit_prompt,
    build_providers,
    upload_locator,
)
from geophoto.references import parse_reference
from geophoto.storage import ObjectStoreResolver, require_exportable
from geophoto.utils import clip_overlay, encode_data_uri


logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Runs one generation request end to end.

    Providers are tried in strict sequence: the synchronous edit first, then
    the create/poll provider only when the first one is unavailable or fails
    and the second one has credentials.
    """

    def __init__(
        self,
        resolver: ObjectStoreResolver,
        primary: OpenAIEditProvider,
        fallback: Optional[ReplicateInpaintProvider] = None,
    ):
        self.resolver = resolver
        self.primary = primary
        self.fallback = fallback

    @classmethod
    def from_context(cls, context, resolver: ObjectStoreResolver, clock: Any = None, replicate_client: Any = None):
        primary, fallback = build_providers(context, clock=clock, replicate_client=replicate_client)
        return cls(resolver, primary, fallback)

    @property
    def fallback_available(self) -> bool:
        return self.fallback is not None and self.fallback.configured

    async def _run_primary(self, base: FetchedImage, mask: Optional[FetchedImage], prompt: str) -> GenerationJob:
        return await self.primary.edit(base, mask, prompt)

    async def _run_fallback(
        self,
        base: FetchedImage,
        mask: Optional[FetchedImage],
        prompt: str,
        strength: Optional[float],
    ) -> GenerationJob:
        return await self.fallback.generate(
            prompt,
            upload_locator(base),
            upload_locator(mask) if mask is not None else None,
            strength,
        )

    async def generate(self, request: Union[GenerationRequest, Dict[str, Any]]) -> GenerationResult:
        """Turn a generation request into a canonical result, or raise a pipeline error."""
        if not isinstance(request, GenerationRequest):
            request = GenerationRequest.model_validate(request)

        async with error_monitoring_context("generate"):
            base = await self.resolver.resolve(request.base_image)
            mask = await self.resolver.resolve(request.mask) if request.mask else None
            prompt = build_edit_prompt(request.style, request.prompt, request.overlay_summary)

            attempted: List[str] = [self.primary.name]
            provider_errors: Dict[str, Any] = {}
            try:
                job = await self._run_primary(base, mask, prompt)
            except (ProviderUnavailable, ProviderError) as primary_error:
                provider_errors[self.primary.name] = primary_error.to_dict()
                if not self.fallback_available:
                    raise
                logger.warning(
                    f"{self.primary.name} failed ({primary_error.category.value}): {primary_error.message}; "
                    f"falling back to {self.fallback.name}"
                )
                attempted.append(self.fallback.name)
                try:
                    job = await self._run_fallback(base, mask, prompt, request.strength)
                except (ProviderUnavailable, ProviderError) as fallback_error:
                    fallback_error.diagnostics.setdefault('attempted_providers', attempted)
                    fallback_error.diagnostics.setdefault('provider_errors', provider_errors)
                    raise

            overlay = None
            if request.return_mode is ReturnMode.OVERLAYS:
                overlay = await self._overlay(job.output, mask)

            diagnostics = {
                'attempted_providers': attempted,
                'job': job.to_dict(),
                'base_via_fallback': base.via_fallback,
            }
            if provider_errors:
                diagnostics['provider_errors'] = provider_errors

            return GenerationResult(
                image=job.output,
                model=job.provider,
                overlay=overlay,
                job_id=job.id,
                diagnostics=diagnostics,
            )

    async def _overlay(self, image_locator: str, mask: Optional[FetchedImage]) -> Optional[str]:
        """Clip the generated image by the mask into a transparent PNG overlay."""
        if mask is None:
            logger.info("Overlay requested without a mask; returning the photo only")
            return None
        require_exportable(mask)
        generated = await self.resolver.fetch_bytes(parse_reference(image_locator))
        return encode_data_uri(clip_overlay(generated.data, mask.data), "image/png")
