import time
from typing import Any, Callable, Dict, List, Mapping, Optional
from loguru import logger

from .backends import DEFAULT_BACKENDS, BackendAdapter, build_adapter
from .config import OrchestratorSettings, load_settings
from .core.cache import ApiResponseCache, EmbeddingCache, GenerationCache, ResultCache
from .core.credentials import CredentialPool
from .core.health import HealthScorer
from .core.orchestrator import Orchestrator
from .core.quota import QuotaTracker
from .core.scheduler import JobScheduler
from .core.types import (
    BackendStatus,
    CacheStats,
    CredentialPoolSnapshot,
    JobStatusView,
    QueueStats,
    QuotaSnapshot,
    ReliabilitySnapshot,
)
from .handlers import generate_cached, make_bulk_generate_handler, make_generate_handler


class OrchestrationService:
    """
    Builds every component once and hands the same instances to the
    orchestrator, the scheduler and the status views.
    """
    def __init__(
            self,
            settings: OrchestratorSettings,
            adapters: Optional[List[BackendAdapter]] = None,
            clock: Callable[[], float] = time.time
    ):
        self.settings = settings
        self.clock = clock

        if adapters is None:
            adapters = [build_adapter(self._backend_config(name)) for name in DEFAULT_BACKENDS]

        self.credentials: Dict[str, CredentialPool] = {}
        self.quota = QuotaTracker(clock=clock)
        self.health = HealthScorer(clock=clock)
        for adapter in adapters:
            backend = settings.backends.get(adapter.name)
            keys = backend.keys if backend else []
            self.credentials[adapter.name] = CredentialPool(
                adapter.name, keys, cooldown_seconds=settings.credential_cooldown_seconds, clock=clock
            )
            self.quota.register(adapter.name, adapter.config.requests_per_minute, adapter.config.monthly_token_limit)
            if keys:
                logger.info(f"[OrchestrationService] {adapter.name} enabled with {len(keys)} key(s)")

        self.cache = ResultCache(sweep_interval=settings.cache_sweep_interval, clock=clock)
        self.generation_cache = GenerationCache(self.cache)
        self.embedding_cache = EmbeddingCache(self.cache)
        self.api_response_cache = ApiResponseCache(self.cache)

        self.orchestrator = Orchestrator(
            adapters,
            self.credentials,
            self.quota,
            self.health,
            primary=settings.primary_backend,
            request_timeout=settings.request_timeout,
            clock=clock
        )
        self.scheduler = JobScheduler(
            concurrency=settings.queue_concurrency,
            retry_delay=settings.queue_retry_delay,
            job_timeout=settings.queue_job_timeout,
            max_retries=settings.queue_max_retries,
            clock=clock
        )
        self.scheduler.register_handler('generate', make_generate_handler(self.orchestrator, self.generation_cache))
        self.scheduler.register_handler('bulk-generate', make_bulk_generate_handler(self.orchestrator, self.generation_cache))

        self._wire_events()
        enabled = self.orchestrator.enabled_backends()
        logger.info(f"[OrchestrationService] Primary backend: {settings.primary_backend.upper()}")
        if not enabled:
            logger.warning('[OrchestrationService] No LLM backends configured! Add API keys to the environment')

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs: Any) -> 'OrchestrationService':
        return cls(load_settings(environ), **kwargs)

    def _backend_config(self, name: str):
        config = DEFAULT_BACKENDS[name]
        backend = self.settings.backends.get(name)
        if backend is None:
            return config.model_copy(update={'enabled': False})
        # OpenAI-compatible hosts without a base URL stay disabled.
        return config.model_copy(update={
            'base_url': backend.base_url or config.base_url,
            'enabled': bool(backend.keys) and bool(backend.base_url or config.base_url),
        })

    def _wire_events(self):
        self.orchestrator.on('attempt', lambda b, model: logger.info(f"[Orchestrator] Trying {b.upper()} ({model})..."))
        self.orchestrator.on('skipped', lambda b, err: logger.warning(f"[Orchestrator] Skipped {b.upper()}: {err or 'rate limited'}"))
        self.orchestrator.on('success', lambda b, ms: logger.info(f"[Orchestrator] Generated with {b.upper()} in {ms:.0f}ms"))
        self.orchestrator.on('failed', lambda b, err: logger.warning(f"[Orchestrator] {b.upper()} failed: {err}"))
        self.orchestrator.on('exhausted', lambda attempts: logger.error(f"[Orchestrator] ALL BACKENDS EXHAUSTED after {len(attempts)} attempt(s)"))

    # ── Operations ───────────────────────────────────────────────────────

    async def generate(
            self,
            prompt: str,
            preferred_backend: Optional[str] = None,
            preferred_model: Optional[str] = None,
            use_cache: bool = True
    ) -> str:
        cache = self.generation_cache if use_cache else None
        return await generate_cached(self.orchestrator, cache, prompt, preferred_backend, preferred_model)

    def submit(self, job_type: str, payload: Any = None, priority: int = 0) -> str:
        return self.scheduler.submit(job_type, payload, priority)

    def job_status(self, job_id: str) -> Optional[JobStatusView]:
        return self.scheduler.status(job_id)

    # ── Status views ─────────────────────────────────────────────────────

    def backend_status(self) -> Dict[str, BackendStatus]:
        return self.orchestrator.status()

    def credential_status(self) -> Dict[str, CredentialPoolSnapshot]:
        return {name: pool.snapshot() for name, pool in self.credentials.items()}

    def reliability(self) -> Dict[str, ReliabilitySnapshot]:
        return {name: self.health.snapshot(name) for name in self.orchestrator.adapters}

    def quota_status(self) -> Dict[str, QuotaSnapshot]:
        return self.quota.snapshots()

    def cache_status(self) -> CacheStats:
        return self.cache.stats()

    def queue_status(self) -> QueueStats:
        return self.scheduler.stats()

    def status(self) -> Dict[str, Any]:
        return {
            'backends': {k: v.model_dump(by_alias=True) for k, v in self.backend_status().items()},
            'reliability': {k: v.model_dump(by_alias=True) for k, v in self.reliability().items()},
            'quota': {k: v.model_dump(by_alias=True) for k, v in self.quota_status().items()},
            'cache': self.cache_status().model_dump(by_alias=True),
            'queue': self.queue_status().model_dump(by_alias=True),
        }

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self):
        self.cache.start()
        logger.info('[OrchestrationService] Started cache sweeper')

    async def stop(self):
        await self.scheduler.shutdown()
        await self.cache.stop()
        for adapter in self.orchestrator.adapters.values():
            await adapter.close()
        logger.info('[OrchestrationService] Stopped')
