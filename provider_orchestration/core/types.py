from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ErrorKind(str, Enum):
    NO_CREDENTIAL_AVAILABLE = 'NoCredentialAvailable'
    QUOTA_EXCEEDED = 'QuotaExceeded'
    BACKEND_CALL_FAILED = 'BackendCallFailed'
    ALL_BACKENDS_EXHAUSTED = 'AllBackendsExhausted'
    JOB_TIMEOUT = 'JobTimeout'
    JOB_FAILED = 'JobFailed'


class ErrorClass(str, Enum):
    QUOTA = 'QUOTA'
    RATE_LIMIT = 'RATE_LIMIT'
    OTHER = 'OTHER'


class JobState(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Snapshot(BaseModel):
    """Read-only projection handed to status endpoints; dumps camelCase with by_alias=True."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BackendConfig(BaseModel):
    name: str
    models: List[str]
    model_prefixes: Tuple[str, ...] = Field(default=())
    base_url: Optional[str] = Field(default=None)
    requests_per_minute: Optional[int] = Field(default=None)
    monthly_token_limit: Optional[int] = Field(default=None)
    enabled: bool = Field(default=True)

    def resolve_model(self, preferred: Optional[str] = None) -> str:
        if preferred and any(preferred.startswith(p) for p in self.model_prefixes):
            return preferred
        return self.models[0]


class Completion(BaseModel):
    text: str
    tokens: int = Field(default=0)


class Credential(BaseModel):
    secret: str
    index: int
    cooldown_until: Optional[float] = Field(default=None)
    request_count: int = Field(default=0)
    window_started_at: float = Field(default=0.0)
    error_count: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)

    model_config = ConfigDict(validate_assignment=True)

    @property
    def masked(self) -> str:
        if len(self.secret) <= 10:
            return '***'
        return f"{self.secret[:5]}...{self.secret[-5:]}"

    def __repr__(self) -> str:
        return f"Credential(index={self.index}, secret={self.masked!r})"

    __str__ = __repr__


class QuotaWindow(BaseModel):
    requests_per_minute: Optional[int] = Field(default=None)
    monthly_token_limit: Optional[int] = Field(default=None)
    requests_this_minute: int = Field(default=0)
    last_reset: float = Field(default=0.0)
    monthly_tokens_used: int = Field(default=0)
    month_resets_at: float = Field(default=0.0)
    exceeded: bool = Field(default=False)
    last_error: Optional[str] = Field(default=None)
    last_error_at: Optional[float] = Field(default=None)


class HealthRecord(BaseModel):
    backend: str
    success_count: int = Field(default=0)
    failure_count: int = Field(default=0)
    latencies: List[float] = Field(default_factory=list)
    last_error: Optional[str] = Field(default=None)
    last_error_at: Optional[float] = Field(default=None)
    quota_exceeded: bool = Field(default=False)
    failure_streak: int = Field(default=0)
    first_failure_at: Optional[float] = Field(default=None)

    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 100.0
        return self.success_count / total * 100

    def average_latency(self) -> float:
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)

    def reliability_score(self) -> float:
        time_score = max(0.0, 100 - self.average_latency() / 10)
        return self.success_rate() * 0.5 + time_score * 0.5


class CacheEntry(BaseModel):
    key: str
    category: str
    value: Any
    created_at: float
    expires_at: float
    hits: int = Field(default=0)


class Job(BaseModel):
    id: str
    type: str
    payload: Any = Field(default=None)
    priority: int = Field(default=0)
    status: JobState = Field(default=JobState.PENDING)
    created_at: float
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)
    progress: int = Field(default=0)
    result: Any = Field(default=None)
    error: Optional[str] = Field(default=None)
    error_kind: Optional[ErrorKind] = Field(default=None)
    retries: int = Field(default=0)
    max_retries: int = Field(default=3)

    def start(self, now: float):
        self.status = JobState.PROCESSING
        self.started_at = now

    def complete(self, result: Any, now: float):
        self.status = JobState.COMPLETED
        self.completed_at = now
        self.result = result

    def fail(self, error: BaseException, kind: ErrorKind, now: float):
        self.status = JobState.FAILED
        self.completed_at = now
        self.error = str(error) or type(error).__name__
        self.error_kind = kind

    def update_progress(self, progress: float):
        self.progress = int(min(100, max(0, progress)))

    def duration(self, now: float) -> float:
        end = self.completed_at or now
        start = self.started_at or self.created_at
        return end - start


# ── Snapshots ────────────────────────────────────────────────────────────

class BackendStatus(Snapshot):
    available: bool
    configured_key_count: int
    models: List[str]
    is_primary: bool


class ReliabilitySnapshot(Snapshot):
    backend: str
    success_rate: float
    success_count: int
    failure_count: int
    avg_response_time_ms: float
    reliability_score: float
    blacklisted: bool
    quota_exceeded: bool
    last_error: Optional[str] = None
    last_error_at: Optional[float] = None


class HealthSummary(Snapshot):
    total_backends: int
    healthy_backends: int
    unhealthy_backends: int
    metrics: Dict[str, ReliabilitySnapshot]


class Suggestion(Snapshot):
    backend: str
    issue: str
    recommendation: str
    value: Optional[float] = None


class QuotaSnapshot(Snapshot):
    backend: str
    requests_this_minute: int
    limit: Optional[int]
    percentage_used: Optional[float]
    resets_in_seconds: int
    monthly_tokens_used: int
    monthly_token_limit: Optional[int]
    month_resets_on: str
    days_until_reset: int
    exceeded: bool
    last_error: Optional[str] = None


class QuotaNotice(Snapshot):
    title: str
    message: str
    retry_after: Optional[int]


class CredentialSnapshot(Snapshot):
    masked_key: str
    requests_this_hour: int
    hourly_limit: int
    percentage_used: float
    cooling_down: bool
    cooldown_minutes_remaining: int
    error_count: int
    last_error: Optional[str] = None


class CredentialPoolSnapshot(Snapshot):
    backend: str
    total_keys: int
    available_keys: int
    current_index: int
    keys: List[CredentialSnapshot]


class HotKey(Snapshot):
    key: str
    category: str
    hits: int
    age_seconds: int


class CacheStats(Snapshot):
    hits: int
    misses: int
    evictions: int
    hit_rate: float
    size: int
    memory_size_estimate: str
    hot_keys: List[HotKey]


class QueueStats(Snapshot):
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    retried_jobs: int
    pending: int
    processing: int
    completed: int
    failed: int
    average_job_seconds: float


class JobStatusView(Snapshot):
    id: str
    type: str
    status: JobState
    progress: int
    retries: int
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class JobSummary(Snapshot):
    id: str
    type: str
    priority: int
    created_at: float
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None


class JobEvent(Snapshot):
    job_id: str
    status: JobState
    progress: int
    retries: int
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def terminal(self) -> bool:
        return self.status in (JobState.COMPLETED, JobState.FAILED)


class AttemptRecord(Snapshot):
    backend: str
    kind: ErrorKind
    message: str
