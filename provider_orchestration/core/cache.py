import asyncio
import hashlib
import json
import re
import time
from typing import Any, Callable, Dict, List, Optional
from loguru import logger
from ..config import CONFIG
from .types import CacheEntry, CacheStats, HotKey


class _Miss:
    def __repr__(self) -> str:
        return 'MISS'

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


def _format_bytes(size: int) -> str:
    if size == 0:
        return '0 Bytes'
    for unit in ('Bytes', 'KB', 'MB'):
        if size < 1024:
            return f"{round(size, 2)} {unit}"
        size /= 1024
    return f"{round(size, 2)} GB"


class ResultCache:
    """
    Time-boxed key/value store shared by the category views below.

    Keys are ``<category>:<sha256 of canonical JSON params>``. JSON is
    dumped with sorted keys so map-like params hash the same regardless of
    insertion order. Expired entries are evicted lazily on lookup and by a
    periodic sweep task started with ``start()``.
    """
    def __init__(
            self,
            default_ttl_seconds: float = CONFIG['CACHE_DEFAULT_TTL'],
            sweep_interval: float = CONFIG['CACHE_SWEEP_INTERVAL'],
            clock: Callable[[], float] = time.time
    ):
        self.default_ttl = default_ttl_seconds
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def make_key(category: str, params: Any) -> str:
        canonical = json.dumps(params, sort_keys=True, separators=(',', ':'), default=str)
        return f"{category}:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            del self.entries[key]
            self.evictions += 1
            return None
        return entry

    def get_by_key(self, key: str) -> Any:
        entry = self._live_entry(key)
        if entry is None:
            self.misses += 1
            return MISS
        entry.hits += 1
        self.hits += 1
        logger.debug(f"[ResultCache] HIT for {key[:24]}... (hits: {entry.hits})")
        return entry.value

    def get(self, category: str, params: Any) -> Any:
        return self.get_by_key(self.make_key(category, params))

    def set(self, category: str, params: Any, value: Any, ttl_seconds: Optional[float] = None) -> str:
        key = self.make_key(category, params)
        now = self.clock()
        self.entries[key] = CacheEntry(
            key=key,
            category=category,
            value=value,
            created_at=now,
            expires_at=now + (ttl_seconds if ttl_seconds is not None else self.default_ttl)
        )
        logger.debug(f"[ResultCache] Cached {category} with key {key[:24]}...")
        return key

    def has(self, category: str, params: Any) -> bool:
        return self._live_entry(self.make_key(category, params)) is not None

    def delete(self, category: str, params: Any) -> bool:
        return self.entries.pop(self.make_key(category, params), None) is not None

    def invalidate(self, category: str) -> int:
        stale = [k for k, e in self.entries.items() if e.category == category]
        for k in stale:
            del self.entries[k]
        logger.info(f"[ResultCache] Cleared {len(stale)} entries of category {category}")
        return len(stale)

    def invalidate_key(self, key: str) -> bool:
        return self.entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        stale = [k for k in self.entries if regex.search(k)]
        for k in stale:
            del self.entries[k]
        logger.info(f"[ResultCache] Invalidated {len(stale)} entries matching pattern: {pattern}")
        return len(stale)

    def clear(self) -> int:
        size = len(self.entries)
        self.entries.clear()
        logger.info(f"[ResultCache] Cleared entire cache ({size} entries)")
        return size

    def sweep(self) -> int:
        now = self.clock()
        expired = [k for k, e in self.entries.items() if now >= e.expires_at]
        for k in expired:
            del self.entries[k]
        self.evictions += len(expired)
        if expired:
            logger.info(f"[ResultCache] Sweep removed {len(expired)} expired entries")
        return len(expired)

    def hot_keys(self, limit: int = 10) -> List[HotKey]:
        now = self.clock()
        ranked = sorted(self.entries.values(), key=lambda e: e.hits, reverse=True)[:limit]
        return [
            HotKey(key=f"{e.key[:24]}...", category=e.category, hits=e.hits, age_seconds=int(now - e.created_at))
            for e in ranked
        ]

    def memory_size_estimate(self) -> str:
        size = 0
        for key, entry in self.entries.items():
            size += len(key)
            size += len(json.dumps(entry.value, default=str))
        return _format_bytes(size)

    def stats(self, hot_limit: int = 10) -> CacheStats:
        total = self.hits + self.misses
        return CacheStats(
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
            hit_rate=round(self.hits / total * 100, 2) if total else 0.0,
            size=len(self.entries),
            memory_size_estimate=self.memory_size_estimate(),
            hot_keys=self.hot_keys(hot_limit)
        )

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


class GenerationCache:
    CATEGORY = 'generation'
    TTL = CONFIG['CACHE_GENERATION_TTL']

    def __init__(self, store: ResultCache):
        self.store = store

    def get(self, prompt: str, **metadata: Any) -> Any:
        return self.store.get(self.CATEGORY, {'prompt': prompt, **metadata})

    def set(self, prompt: str, text: str, **metadata: Any) -> str:
        return self.store.set(self.CATEGORY, {'prompt': prompt, **metadata}, text, self.TTL)

    def has(self, prompt: str, **metadata: Any) -> bool:
        return self.store.has(self.CATEGORY, {'prompt': prompt, **metadata})


class EmbeddingCache:
    CATEGORY = 'embedding'
    TTL = CONFIG['CACHE_EMBEDDING_TTL']

    def __init__(self, store: ResultCache):
        self.store = store

    def get(self, text: str) -> Any:
        return self.store.get(self.CATEGORY, {'text': text[:100]})

    def set(self, text: str, embedding: List[float]) -> str:
        return self.store.set(self.CATEGORY, {'text': text[:100]}, embedding, self.TTL)

    def has(self, text: str) -> bool:
        return self.store.has(self.CATEGORY, {'text': text[:100]})


class ApiResponseCache:
    CATEGORY = 'api'
    TTL = CONFIG['CACHE_API_RESPONSE_TTL']

    def __init__(self, store: ResultCache):
        self.store = store

    def get(self, provider: str, endpoint: str, params: Any) -> Any:
        return self.store.get(self.CATEGORY, {'provider': provider, 'endpoint': endpoint, 'params': params})

    def set(self, provider: str, endpoint: str, params: Any, response: Any) -> str:
        return self.store.set(
            self.CATEGORY, {'provider': provider, 'endpoint': endpoint, 'params': params}, response, self.TTL
        )

    def has(self, provider: str, endpoint: str, params: Any) -> bool:
        return self.store.has(self.CATEGORY, {'provider': provider, 'endpoint': endpoint, 'params': params})
