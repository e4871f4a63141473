from .config import CONFIG, OrchestratorSettings, BackendSettings, load_settings, parse_keys_from_env
from .core.cache import MISS, ResultCache, GenerationCache, EmbeddingCache, ApiResponseCache
from .core.classification import classify_error, is_quota_class
from .core.credentials import CredentialPool
from .core.exceptions import (
    OrchestrationError,
    NoCredentialAvailableError,
    QuotaExceededError,
    BackendCallFailedError,
    AllBackendsExhaustedError,
    JobTimeoutError,
    JobFailedError,
)
from .core.health import HealthScorer
from .core.orchestrator import Orchestrator
from .core.quota import QuotaTracker
from .core.scheduler import JobScheduler
from .core.types import BackendConfig, Completion, Credential, ErrorClass, ErrorKind, Job, JobEvent, JobState
from .backends import BackendAdapter, GeminiAdapter, OpenAICompatibleAdapter, AnthropicAdapter, DEFAULT_BACKENDS
from .service import OrchestrationService

__all__ = [
    'CONFIG',
    'OrchestratorSettings',
    'BackendSettings',
    'load_settings',
    'parse_keys_from_env',
    'MISS',
    'ResultCache',
    'GenerationCache',
    'EmbeddingCache',
    'ApiResponseCache',
    'classify_error',
    'is_quota_class',
    'CredentialPool',
    'OrchestrationError',
    'NoCredentialAvailableError',
    'QuotaExceededError',
    'BackendCallFailedError',
    'AllBackendsExhaustedError',
    'JobTimeoutError',
    'JobFailedError',
    'HealthScorer',
    'Orchestrator',
    'QuotaTracker',
    'JobScheduler',
    'BackendConfig',
    'Completion',
    'Credential',
    'ErrorClass',
    'ErrorKind',
    'Job',
    'JobEvent',
    'JobState',
    'BackendAdapter',
    'GeminiAdapter',
    'OpenAICompatibleAdapter',
    'AnthropicAdapter',
    'DEFAULT_BACKENDS',
    'OrchestrationService',
]
