import re
from typing import Any, Optional
from .types import ErrorClass

# Best-effort: provider error text changes across API versions, so this is a
# heuristic and callers must tolerate misclassification.
ERROR_PATTERNS = {
    'isRateLimit': re.compile(r'\b429\b|rate.?limit|too.?many.?requests', re.IGNORECASE),
    'isQuota': re.compile(r'quota|exceeded|resource.?exhausted', re.IGNORECASE),
}


def _status_of(error: Any) -> Optional[int]:
    status = getattr(error, 'status_code', getattr(error, 'status', None))
    response = getattr(error, 'response', None)
    if response is not None:
        status = getattr(response, 'status_code', status)
    return status if isinstance(status, int) else None


def classify_error(error: Any) -> ErrorClass:
    if error is None:
        return ErrorClass.OTHER

    if not isinstance(error, str) and _status_of(error) == 429:
        return ErrorClass.RATE_LIMIT

    error_str = str(error)
    if ERROR_PATTERNS['isRateLimit'].search(error_str):
        return ErrorClass.RATE_LIMIT
    if ERROR_PATTERNS['isQuota'].search(error_str):
        return ErrorClass.QUOTA
    return ErrorClass.OTHER


def is_quota_class(error_class: ErrorClass) -> bool:
    return error_class in (ErrorClass.QUOTA, ErrorClass.RATE_LIMIT)
