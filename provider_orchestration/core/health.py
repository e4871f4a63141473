import time
from typing import Callable, Dict, List, Sequence
from loguru import logger
from ..config import CONFIG
from .types import HealthRecord, HealthSummary, ReliabilitySnapshot, Suggestion


class HealthScorer:
    """
    Rolling success/failure/latency statistics per backend.

    Scores run 0-100, half success rate and half latency. A backend with no
    history scores 100 so new or reset backends get a fair trial. More than
    ``BLACKLIST_THRESHOLD`` consecutive failures inside ``BLACKLIST_DURATION``
    blacklists a backend until its next success or until the window lapses.
    """
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.records: Dict[str, HealthRecord] = {}

    def _record(self, backend: str) -> HealthRecord:
        record = self.records.get(backend)
        if record is None:
            record = HealthRecord(backend=backend)
            self.records[backend] = record
        return record

    def record_success(self, backend: str, latency_ms: float):
        record = self._record(backend)
        record.success_count += 1
        record.latencies.append(latency_ms)
        del record.latencies[:-CONFIG['LATENCY_SAMPLES']]

        was_blacklisted = record.failure_streak > CONFIG['BLACKLIST_THRESHOLD']
        record.failure_streak = 0
        record.first_failure_at = None
        record.quota_exceeded = False
        if was_blacklisted:
            logger.info(f"[HealthScorer] {backend} RECOVERED after failure streak")
        logger.debug(f"[HealthScorer] {backend} success - Score: {record.reliability_score():.2f}")

    def record_failure(self, backend: str, error: object, is_quota_error: bool = False):
        now = self.clock()
        record = self._record(backend)
        record.failure_count += 1
        record.last_error = str(error) or type(error).__name__
        record.last_error_at = now
        if is_quota_error:
            record.quota_exceeded = True

        if record.first_failure_at is None or now - record.first_failure_at >= CONFIG['BLACKLIST_DURATION']:
            record.failure_streak = 0
            record.first_failure_at = now
        record.failure_streak += 1

        if record.failure_streak == CONFIG['BLACKLIST_THRESHOLD'] + 1:
            logger.warning(f"[HealthScorer] {backend} BLACKLISTED after {record.failure_streak} failures")
        logger.debug(f"[HealthScorer] {backend} failure - {record.last_error}")

    def is_blacklisted(self, backend: str) -> bool:
        record = self.records.get(backend)
        if record is None or record.first_failure_at is None:
            return False
        if record.failure_streak <= CONFIG['BLACKLIST_THRESHOLD']:
            return False
        return self.clock() - record.first_failure_at < CONFIG['BLACKLIST_DURATION']

    def score(self, backend: str) -> float:
        record = self.records.get(backend)
        return record.reliability_score() if record else 100.0

    def rank(self, candidates: Sequence[str]) -> List[str]:
        allowed = [b for b in candidates if not self.is_blacklisted(b)]
        return sorted(allowed, key=self.score, reverse=True)

    def recommend(self, candidates: Sequence[str]) -> str:
        ranked = self.rank(candidates)
        if not ranked:
            # Every candidate is blacklisted; the first one is still better than nothing.
            logger.warning('[HealthScorer] No available backends! Using fallback.')
            return candidates[0]
        return ranked[0]

    def snapshot(self, backend: str) -> ReliabilitySnapshot:
        record = self.records.get(backend) or HealthRecord(backend=backend)
        return ReliabilitySnapshot(
            backend=backend,
            success_rate=round(record.success_rate(), 2),
            success_count=record.success_count,
            failure_count=record.failure_count,
            avg_response_time_ms=round(record.average_latency()),
            reliability_score=round(record.reliability_score(), 2),
            blacklisted=self.is_blacklisted(backend),
            quota_exceeded=record.quota_exceeded,
            last_error=record.last_error,
            last_error_at=record.last_error_at
        )

    def snapshots(self) -> Dict[str, ReliabilitySnapshot]:
        return {backend: self.snapshot(backend) for backend in self.records}

    def ranked(self, candidates: Sequence[str]) -> List[ReliabilitySnapshot]:
        return [self.snapshot(b) for b in self.rank(candidates)]

    def health_summary(self) -> HealthSummary:
        metrics = self.snapshots()
        return HealthSummary(
            total_backends=len(metrics),
            healthy_backends=sum(1 for m in metrics.values() if m.success_rate > 90),
            unhealthy_backends=sum(1 for m in metrics.values() if m.success_rate < 50),
            metrics=metrics
        )

    def suggest_improvements(self) -> List[Suggestion]:
        suggestions = []
        for backend, stats in self.snapshots().items():
            if stats.success_rate < 80:
                suggestions.append(Suggestion(
                    backend=backend,
                    issue='Low success rate',
                    value=stats.success_rate,
                    recommendation=f"Consider using {backend} as fallback only"
                ))
            if stats.avg_response_time_ms > 3000:
                suggestions.append(Suggestion(
                    backend=backend,
                    issue='Slow response time',
                    value=stats.avg_response_time_ms,
                    recommendation=f"{backend} is slow, use for non-urgent requests"
                ))
            if stats.quota_exceeded:
                suggestions.append(Suggestion(
                    backend=backend,
                    issue='Quota exceeded',
                    recommendation=f"Rotate keys or wait for quota reset for {backend}"
                ))
        return suggestions

    def reset(self, backend: str):
        self.records.pop(backend, None)
        logger.info(f"[HealthScorer] Reset metrics for {backend}")

    def clear(self):
        self.records.clear()
        logger.info('[HealthScorer] Cleared all metrics')
