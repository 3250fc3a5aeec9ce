"""FastAPI application exposing generation, reachability and stop discovery."""

import logging
import time
from typing import Any, Dict

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from geophoto import __version__
from geophoto.error_handling import (
    GenerationTimeout,
    InvalidReference,
    ListingExhausted,
    MediaPipelineError,
    NoImageFound,
    ProviderError,
    ProviderUnavailable,
    ResolutionExhausted,
    TaintedContentError,
)
from geophoto.models import GenerationRequest
from geophoto.runtime import Runtime, get_runtime
from geophoto.scanner import BoundedRecursiveScanner
from geophoto.scenarios import discover_stops


logger = logging.getLogger(__name__)


# Most specific first
ERROR_STATUS_CODES = (
    (InvalidReference, 400),
    (ProviderUnavailable, 503),
    (GenerationTimeout, 504),
    (ProviderError, 502),
    (ResolutionExhausted, 502),
    (ListingExhausted, 502),
    (NoImageFound, 502),
    (TaintedContentError, 409),
)


def status_code_for(error: MediaPipelineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


app = FastAPI(
    title="GeoPhoto",
    description="Media resolution and AI photo generation for scenario stops",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def runtime_dependency() -> Runtime:
    return get_runtime()


@app.exception_handler(MediaPipelineError)
async def pipeline_error_handler(request: Request, exc: MediaPipelineError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {status_code} ({exc.category.value}): {exc.message}")
    return JSONResponse(status_code=status_code, content={'ok': False, **exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            'ok': False,
            'error': 'Invalid generation request',
            'category': 'invalid_request',
            'diagnostics': {'errors': [
                {'loc': list(error.get('loc', ())), 'msg': error.get('msg', '')} for error in exc.errors()
            ]},
        },
    )


@app.post("/api/ping")
async def ping() -> Dict[str, Any]:
    """Reachability target for the endpoint prober."""
    return {'ok': True, 'ts': int(time.time() * 1000)}


@app.post("/api/ai-image")
async def generate_image(request: GenerationRequest, runtime: Runtime = Depends(runtime_dependency)) -> Dict[str, Any]:
    """Run one generation and return the canonical result."""
    result = await runtime.orchestrator.generate(request)
    return result.model_dump()


@app.get("/api/scenarios/{scenario_id}/stops")
async def scenario_stops(scenario_id: str, runtime: Runtime = Depends(runtime_dependency)) -> Dict[str, Any]:
    """Discover the stops of a scenario from its store folder."""
    root = f"{runtime.context.scenario_root.strip('/')}/{scenario_id}".strip("/")
    stops = await discover_stops(
        runtime.resolver,
        root,
        scanner=BoundedRecursiveScanner(
            runtime.resolver,
            max_depth=runtime.context.scan_max_depth,
            max_files=runtime.context.scan_max_files,
        ),
        pool_size=runtime.context.materializer_concurrency,
    )
    return {
        'ok': True,
        'scenario_id': scenario_id,
        'stops': [stop.model_dump(exclude_none=True) for stop in stops],
    }


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the FastAPI server."""
    uvicorn.run(
        "geophoto.web.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    run_server()
