import json
import os
from typing import Dict, List, Mapping, Optional
from loguru import logger
from pydantic import BaseModel, Field

CONFIG = {
    'COOLDOWN_QUOTA': 5 * 60,
    'CREDENTIAL_WINDOW': 60 * 60,
    'CREDENTIAL_HOURLY_LIMIT': 60,
    'QUOTA_WINDOW': 60,
    'BLACKLIST_THRESHOLD': 3,
    'BLACKLIST_DURATION': 5 * 60,
    'LATENCY_SAMPLES': 100,
    'CACHE_DEFAULT_TTL': 60 * 60,
    'CACHE_GENERATION_TTL': 120 * 60,
    'CACHE_EMBEDDING_TTL': 240 * 60,
    'CACHE_API_RESPONSE_TTL': 30 * 60,
    'CACHE_SWEEP_INTERVAL': 5 * 60,
    'QUEUE_CONCURRENCY': 3,
    'QUEUE_RETRY_DELAY': 1.0,
    'QUEUE_JOB_TIMEOUT': 5 * 60,
    'QUEUE_MAX_RETRIES': 3,
}


def parse_keys_from_env(env_keys: List[str], environ: Optional[Mapping[str, str]] = None) -> List[str]:
    environ = os.environ if environ is None else environ
    keys = []
    for env_name in env_keys:
        val = environ.get(env_name, "").strip()
        if not val:
            continue
        if val.startswith('['):
            try:
                parsed = json.loads(val)
                if isinstance(parsed, list):
                    keys.extend([k.strip() for k in parsed if isinstance(k, str) and k.strip()])
                    continue
            except json.JSONDecodeError:
                logger.warning(f"[Config] {env_name} looks like JSON but does not parse; splitting on commas")
        keys.extend([k.strip() for k in val.split(',') if k.strip()])
    return list(dict.fromkeys(keys))  # Deduplicate


class BackendSettings(BaseModel):
    name: str
    keys: List[str] = Field(default_factory=list)
    base_url: Optional[str] = Field(default=None)


class OrchestratorSettings(BaseModel):
    primary_backend: str = Field(default='gemini')
    backends: Dict[str, BackendSettings] = Field(default_factory=dict)
    credential_cooldown_seconds: float = Field(default=CONFIG['COOLDOWN_QUOTA'], gt=0)
    request_timeout: Optional[float] = Field(default=None, gt=0)
    queue_concurrency: int = Field(default=CONFIG['QUEUE_CONCURRENCY'], ge=1)
    queue_retry_delay: float = Field(default=CONFIG['QUEUE_RETRY_DELAY'], ge=0)
    queue_job_timeout: float = Field(default=CONFIG['QUEUE_JOB_TIMEOUT'], gt=0)
    queue_max_retries: int = Field(default=CONFIG['QUEUE_MAX_RETRIES'], ge=0)
    cache_sweep_interval: float = Field(default=CONFIG['CACHE_SWEEP_INTERVAL'], gt=0)


_SETTINGS_ENV = {
    'credential_cooldown_seconds': 'CREDENTIAL_COOLDOWN_SECONDS',
    'request_timeout': 'LLM_REQUEST_TIMEOUT',
    'queue_concurrency': 'QUEUE_CONCURRENCY',
    'queue_retry_delay': 'QUEUE_RETRY_DELAY',
    'queue_job_timeout': 'QUEUE_JOB_TIMEOUT',
    'queue_max_retries': 'QUEUE_MAX_RETRIES',
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> OrchestratorSettings:
    """
    Build settings from environment variables.

    Keys for each catalogued backend come from ``<NAME>_API_KEYS`` or
    ``<NAME>_API_KEY`` (comma list or JSON array). OpenAI-compatible hosts
    read ``<NAME>_API_BASE_URL``. Values are validated by pydantic, so a bad
    number fails here rather than on first use.
    """
    from .backends import DEFAULT_BACKENDS

    environ = os.environ if environ is None else environ
    backends = {}
    for name, backend in DEFAULT_BACKENDS.items():
        prefix = name.upper()
        keys = parse_keys_from_env([f"{prefix}_API_KEYS", f"{prefix}_API_KEY"], environ)
        base_url = environ.get(f"{prefix}_API_BASE_URL") or backend.base_url
        backends[name] = BackendSettings(name=name, keys=keys, base_url=base_url)

    overrides = {field: environ[env] for field, env in _SETTINGS_ENV.items() if environ.get(env)}
    return OrchestratorSettings(
        primary_backend=environ.get('PRIMARY_LLM_PROVIDER', 'gemini').strip().lower(),
        backends=backends,
        **overrides
    )
