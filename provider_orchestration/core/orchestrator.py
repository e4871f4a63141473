import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional
from loguru import logger
from .classification import classify_error, is_quota_class
from .credentials import CredentialPool
from .exceptions import (
    AllBackendsExhaustedError,
    BackendCallFailedError,
    NoCredentialAvailableError,
    OrchestrationError,
    QuotaExceededError,
)
from .health import HealthScorer
from .quota import QuotaTracker
from .types import AttemptRecord, BackendStatus, ErrorKind


class Orchestrator:
    """
    Turns one ``generate`` request into a sequential walk over backends.

    Call order is preferred backend, then primary, then the remaining
    enabled backends by reliability. Blacklisted backends are dropped, quota
    gates and credential exhaustion skip a backend without counting a
    failure, and the first success wins. Only when every candidate has been
    tried does ``AllBackendsExhaustedError`` reach the caller.

    Events (register with ``on``): ``attempt(backend, model)``,
    ``skipped(backend, error)``, ``success(backend, latency_ms)``,
    ``failed(backend, error)``, ``exhausted(attempts)``.
    """
    def __init__(
            self,
            adapters: Iterable,
            credentials: Dict[str, CredentialPool],
            quota: QuotaTracker,
            health: HealthScorer,
            primary: Optional[str] = None,
            request_timeout: Optional[float] = None,
            clock: Callable[[], float] = time.time
    ):
        self.adapters = {a.name: a for a in adapters}
        self.credentials = credentials
        self.quota = quota
        self.health = health
        self.primary = primary
        self.request_timeout = request_timeout
        self.clock = clock
        self._callbacks: Dict[str, List[Callable]] = {}

    def on(self, event: str, callback: Callable):
        if event not in self._callbacks:
            self._callbacks[event] = []
        self._callbacks[event].append(callback)

    def _emit(self, event: str, *args, **kwargs):
        for cb in self._callbacks.get(event, []):
            try:
                cb(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in event listener for {event}: {e}")

    def is_enabled(self, backend: str) -> bool:
        adapter = self.adapters.get(backend)
        pool = self.credentials.get(backend)
        return adapter is not None and adapter.config.enabled and pool is not None and len(pool) > 0

    def enabled_backends(self) -> List[str]:
        return [name for name in self.adapters if self.is_enabled(name)]

    def call_order(self, preferred_backend: Optional[str] = None) -> List[str]:
        head = []
        for name in (preferred_backend, self.primary):
            if name and self.is_enabled(name) and name not in head:
                head.append(name)
        rest = [name for name in self.enabled_backends() if name not in head]

        order = [name for name in head if not self.health.is_blacklisted(name)]
        order.extend(self.health.rank(rest))

        unfiltered = head + rest
        if not order and unfiltered:
            # Every backend is blacklisted; try the first one anyway rather than fail outright.
            logger.warning(f"[Orchestrator] All backends blacklisted, falling back to {unfiltered[0]}")
            order = [unfiltered[0]]
        return order

    async def generate(
            self,
            prompt: str,
            preferred_backend: Optional[str] = None,
            preferred_model: Optional[str] = None
    ) -> str:
        attempts: List[AttemptRecord] = []

        for backend in self.call_order(preferred_backend):
            if not self.quota.can_call(backend):
                logger.warning(f"[Orchestrator] {backend} per-minute limit reached, skipping")
                attempts.append(AttemptRecord(backend=backend, kind=ErrorKind.QUOTA_EXCEEDED, message='per-minute request limit reached'))
                self._emit('skipped', backend, None)
                continue

            pool = self.credentials[backend]
            credential = pool.next()
            if credential is None:
                skip = NoCredentialAvailableError(backend)
                attempts.append(AttemptRecord(backend=backend, kind=skip.kind, message=str(skip)))
                self._emit('skipped', backend, skip)
                continue

            adapter = self.adapters[backend]
            model = adapter.config.resolve_model(preferred_model)
            self._emit('attempt', backend, model)

            start = self.clock()
            try:
                completion = await self._call(adapter.complete(prompt, model, credential.secret))
            except Exception as e:
                error = self._record_failure(backend, pool, credential, e)
                attempts.append(AttemptRecord(backend=backend, kind=error.kind, message=str(error)))
                self._emit('failed', backend, error)
                continue

            latency_ms = (self.clock() - start) * 1000
            self.health.record_success(backend, latency_ms)
            self.quota.record(backend, completion.tokens, True, None)
            pool.record_success(credential)
            self._emit('success', backend, latency_ms)
            return completion.text

        self._emit('exhausted', attempts)
        raise AllBackendsExhaustedError(attempts)

    async def _call(self, call):
        if not self.request_timeout:
            return await call
        task = asyncio.ensure_future(call)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.request_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise TimeoutError(f"Request timed out after {self.request_timeout}s")
        return task.result()

    def _record_failure(self, backend: str, pool: CredentialPool, credential, e: Exception) -> OrchestrationError:
        error_class = classify_error(e)
        is_quota = is_quota_class(error_class)
        error = QuotaExceededError(backend, e) if is_quota else BackendCallFailedError(backend, e)

        self.health.record_failure(backend, e, is_quota)
        self.quota.record(backend, 0, False, str(e) or type(e).__name__, error_class)
        pool.record_error(credential, e)
        if is_quota:
            pool.mark_quota_exceeded(credential)
        return error

    def status(self) -> Dict[str, BackendStatus]:
        status = {}
        for name, adapter in self.adapters.items():
            pool = self.credentials.get(name)
            status[name] = BackendStatus(
                available=self.is_enabled(name) and pool.has_available(),
                configured_key_count=len(pool) if pool else 0,
                models=adapter.config.models,
                is_primary=name == self.primary
            )
        return status

    def available_models(self) -> Dict[str, List[str]]:
        return {name: adapter.config.models for name, adapter in self.adapters.items()}
