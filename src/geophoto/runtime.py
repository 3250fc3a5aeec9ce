"""Process-wide runtime: configuration plus the store and provider clients built from it."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from geophoto.context import PipelineContext, get_default_context
from geophoto.orchestrator import GenerationOrchestrator
from geophoto.storage import ObjectStoreResolver, build_resolver


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Runtime:
    """Read-only bundle shared by every request in the process."""
    context: PipelineContext
    resolver: ObjectStoreResolver
    orchestrator: GenerationOrchestrator


_runtime: Optional[Runtime] = None
_lock = threading.Lock()


def init_runtime(
    context: Optional[PipelineContext] = None,
    resolver: Optional[ObjectStoreResolver] = None,
    orchestrator: Optional[GenerationOrchestrator] = None,
) -> Runtime:
    """Initialize the runtime once. Later calls return the existing instance."""
    global _runtime
    with _lock:
        if _runtime is not None:
            return _runtime
        context = context or get_default_context()
        resolver = resolver or build_resolver(context)
        orchestrator = orchestrator or GenerationOrchestrator.from_context(context, resolver)
        _runtime = Runtime(context=context, resolver=resolver, orchestrator=orchestrator)
        logger.info(
            f"Runtime initialized (bucket={context.storage_bucket or 'none'}, "
            f"openai={'yes' if context.openai_configured else 'no'}, "
            f"replicate={'yes' if context.replicate_configured else 'no'})"
        )
        return _runtime


def get_runtime() -> Runtime:
    """Return the runtime, initializing it from the environment on first use."""
    if _runtime is None:
        return init_runtime()
    return _runtime


def reset_runtime() -> None:
    """Forget the current runtime. Intended for tests."""
    global _runtime
    with _lock:
        _runtime = None
