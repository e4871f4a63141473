import math
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from loguru import logger
from ..config import CONFIG
from .classification import classify_error, is_quota_class
from .types import ErrorClass, QuotaNotice, QuotaSnapshot, QuotaWindow


def month_reset_after(now: float) -> float:
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    if current.month == 12:
        reset = datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        reset = datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)
    return reset.timestamp()


class QuotaTracker:
    """
    Per-backend request and token counters.

    The per-minute window rolls lazily on access, so no timer is needed.
    The ``exceeded`` flag comes from classifying provider error text and is
    advisory only; ``can_call`` looks at the request counter alone.
    """
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.windows: Dict[str, QuotaWindow] = {}

    def register(self, backend: str, requests_per_minute: Optional[int] = None, monthly_token_limit: Optional[int] = None):
        window = self._window(backend)
        window.requests_per_minute = requests_per_minute
        window.monthly_token_limit = monthly_token_limit

    def _window(self, backend: str) -> QuotaWindow:
        now = self.clock()
        window = self.windows.get(backend)
        if window is None:
            window = QuotaWindow(last_reset=now, month_resets_at=month_reset_after(now))
            self.windows[backend] = window
            return window

        if now - window.last_reset >= CONFIG['QUOTA_WINDOW']:
            window.requests_this_minute = 0
            window.last_reset = now
        if now >= window.month_resets_at:
            logger.info(f"[QuotaTracker:{backend}] Monthly token counter reset ({window.monthly_tokens_used} used)")
            window.monthly_tokens_used = 0
            window.month_resets_at = month_reset_after(now)
        return window

    def can_call(self, backend: str) -> bool:
        window = self._window(backend)
        if window.requests_per_minute is None:
            return True
        return window.requests_this_minute < window.requests_per_minute

    def record(
            self,
            backend: str,
            tokens: int = 0,
            success: bool = True,
            error_text: Optional[str] = None,
            error_class: Optional[ErrorClass] = None
    ):
        """``error_class`` overrides classifying ``error_text`` when the caller already has it."""
        window = self._window(backend)
        window.requests_this_minute += 1
        window.monthly_tokens_used += max(0, tokens)

        if success:
            window.exceeded = False
            window.last_error = None
            window.last_error_at = None
        elif error_text:
            window.last_error = error_text
            window.last_error_at = self.clock()
            if error_class is None:
                error_class = classify_error(error_text)
            if is_quota_class(error_class):
                window.exceeded = True

    def snapshot(self, backend: str) -> QuotaSnapshot:
        window = self._window(backend)
        now = self.clock()
        limit = window.requests_per_minute
        return QuotaSnapshot(
            backend=backend,
            requests_this_minute=window.requests_this_minute,
            limit=limit,
            percentage_used=round(window.requests_this_minute / limit * 100, 1) if limit else None,
            resets_in_seconds=max(0, CONFIG['QUOTA_WINDOW'] - int(now - window.last_reset)),
            monthly_tokens_used=window.monthly_tokens_used,
            monthly_token_limit=window.monthly_token_limit,
            month_resets_on=datetime.fromtimestamp(window.month_resets_at, tz=timezone.utc).date().isoformat(),
            days_until_reset=math.ceil((window.month_resets_at - now) / 86400),
            exceeded=window.exceeded,
            last_error=window.last_error
        )

    def snapshots(self) -> Dict[str, QuotaSnapshot]:
        return {backend: self.snapshot(backend) for backend in list(self.windows)}

    def notice(self, backend: str, kind: str = 'rate-limit') -> QuotaNotice:
        status = self.snapshot(backend)
        if kind == 'rate-limit':
            return QuotaNotice(
                title='API Rate Limit Exceeded',
                message=(
                    f"You've made {status.requests_this_minute}/{status.limit or 'unlimited'} requests "
                    f"this minute. Please wait {status.resets_in_seconds} seconds before trying again."
                ),
                retry_after=status.resets_in_seconds
            )
        if kind == 'monthly-quota':
            return QuotaNotice(
                title='Monthly Quota Exceeded',
                message=(
                    f"You've used your monthly token quota. It will reset on {status.month_resets_on} "
                    f"(in {status.days_until_reset} days)."
                ),
                retry_after=status.days_until_reset * 86400
            )
        raise ValueError(f"[QuotaTracker] Unknown notice kind '{kind}'. Expected 'rate-limit' or 'monthly-quota'")
