import math
import time
from typing import Callable, List, Optional
from loguru import logger
from ..config import CONFIG
from .types import Credential, CredentialPoolSnapshot, CredentialSnapshot


class CredentialPool:
    """
    Round-robin rotation over one backend's API keys.

    A key that hits a quota error cools down for a fixed period and is
    skipped until it elapses. ``next()`` returning None means every key is
    cooling down; callers treat that as "backend unavailable".
    """
    def __init__(
            self,
            backend: str,
            secrets: List[str],
            cooldown_seconds: float = CONFIG['COOLDOWN_QUOTA'],
            clock: Callable[[], float] = time.time
    ):
        self.backend = backend
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.current_index = 0

        now = clock()
        unique = list(dict.fromkeys(s.strip() for s in secrets if s and s.strip()))
        self.credentials: List[Credential] = [
            Credential(secret=s, index=i, window_started_at=now) for i, s in enumerate(unique)
        ]
        for c in self.credentials:
            logger.info(f"[CredentialPool:{backend}] Key {c.index + 1}/{len(self.credentials)} registered: {c.masked}")

    def __len__(self) -> int:
        return len(self.credentials)

    def _is_cooling_down(self, c: Credential, now: float) -> bool:
        if c.cooldown_until is None:
            return False
        if now < c.cooldown_until:
            return True
        logger.info(f"[CredentialPool:{self.backend}] Key {c.index + 1} cooldown expired, retrying...")
        c.cooldown_until = None
        return False

    def next(self) -> Optional[Credential]:
        now = self.clock()
        for _ in range(len(self.credentials)):
            c = self.credentials[self.current_index]
            self.current_index = (self.current_index + 1) % len(self.credentials)
            if self._is_cooling_down(c, now):
                logger.debug(f"[CredentialPool:{self.backend}] Key {c.index + 1} still in cooldown, trying next...")
                continue
            return c

        if self.credentials:
            logger.warning(f"[CredentialPool:{self.backend}] All {len(self.credentials)} keys are cooling down")
        return None

    def has_available(self) -> bool:
        now = self.clock()
        return any(c.cooldown_until is None or now >= c.cooldown_until for c in self.credentials)

    def mark_quota_exceeded(self, credential: Credential):
        credential.cooldown_until = self.clock() + self.cooldown_seconds
        logger.warning(
            f"[CredentialPool:{self.backend}] Key {credential.index + 1} ({credential.masked}) "
            f"marked as quota-limited. Cooldown: {self.cooldown_seconds / 60:g} minutes"
        )

    def record_success(self, credential: Credential):
        now = self.clock()
        if now - credential.window_started_at >= CONFIG['CREDENTIAL_WINDOW']:
            credential.request_count = 1
            credential.window_started_at = now
        else:
            credential.request_count += 1

    def record_error(self, credential: Credential, error: BaseException):
        credential.error_count += 1
        credential.last_error = str(error) or type(error).__name__

    def snapshot(self) -> CredentialPoolSnapshot:
        now = self.clock()
        limit = CONFIG['CREDENTIAL_HOURLY_LIMIT']
        keys = []
        for c in self.credentials:
            remaining = (c.cooldown_until - now) if c.cooldown_until else 0
            keys.append(CredentialSnapshot(
                masked_key=c.masked,
                requests_this_hour=c.request_count,
                hourly_limit=limit,
                percentage_used=round(c.request_count / limit * 100, 1),
                cooling_down=remaining > 0,
                cooldown_minutes_remaining=max(0, math.ceil(remaining / 60)),
                error_count=c.error_count,
                last_error=c.last_error
            ))
        return CredentialPoolSnapshot(
            backend=self.backend,
            total_keys=len(self.credentials),
            available_keys=sum(1 for k in keys if not k.cooling_down),
            current_index=self.current_index,
            keys=keys
        )
