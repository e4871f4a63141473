from typing import Any, Dict, List, Optional
from loguru import logger

from .core.cache import MISS, GenerationCache
from .core.orchestrator import Orchestrator
from .core.scheduler import JobHandler, ProgressReporter
from .core.types import Job


async def generate_cached(
        orchestrator: Orchestrator,
        cache: Optional[GenerationCache],
        prompt: str,
        backend: Optional[str] = None,
        model: Optional[str] = None
) -> str:
    if cache is not None:
        cached = cache.get(prompt, backend=backend, model=model)
        if cached is not MISS:
            return cached

    text = await orchestrator.generate(prompt, backend, model)
    if cache is not None:
        cache.set(prompt, text, backend=backend, model=model)
    return text


def make_generate_handler(orchestrator: Orchestrator, cache: Optional[GenerationCache] = None) -> JobHandler:
    """Payload: ``{'prompt': str, 'backend': str | None, 'model': str | None}``."""
    async def generate(job: Job, report_progress: ProgressReporter) -> str:
        payload: Dict[str, Any] = job.payload or {}
        prompt = payload.get('prompt')
        if not prompt:
            raise ValueError(f"Job {job.id} has no prompt")

        report_progress(10)
        text = await generate_cached(orchestrator, cache, prompt, payload.get('backend'), payload.get('model'))
        report_progress(100)
        return text

    return generate


def make_bulk_generate_handler(orchestrator: Orchestrator, cache: Optional[GenerationCache] = None) -> JobHandler:
    """
    Payload: ``{'prompts': [str, ...], 'backend': ..., 'model': ...}``.

    Prompts run one after another. A failed item is recorded in the result
    instead of failing the batch; the job only fails if every item failed.
    """
    async def bulk_generate(job: Job, report_progress: ProgressReporter) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = job.payload or {}
        prompts = payload.get('prompts') or []
        if not prompts:
            raise ValueError(f"Job {job.id} has no prompts")

        results = []
        for i, prompt in enumerate(prompts):
            try:
                text = await generate_cached(orchestrator, cache, prompt, payload.get('backend'), payload.get('model'))
                results.append({'prompt': prompt, 'text': text, 'error': None})
            except Exception as e:
                logger.warning(f"[BulkGenerate] Item {i + 1}/{len(prompts)} of {job.id} failed: {e}")
                results.append({'prompt': prompt, 'text': None, 'error': str(e)})
            report_progress((i + 1) / len(prompts) * 100)

        if all(r['error'] for r in results):
            raise RuntimeError(f"All {len(prompts)} items failed; last error: {results[-1]['error']}")
        return results

    return bulk_generate
