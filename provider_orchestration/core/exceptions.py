from typing import List, Optional
from .types import AttemptRecord, ErrorKind


class OrchestrationError(Exception):
    kind: Optional[ErrorKind] = None


class NoCredentialAvailableError(OrchestrationError):
    kind = ErrorKind.NO_CREDENTIAL_AVAILABLE

    def __init__(self, backend: str):
        self.backend = backend
        super().__init__(f"No credential available for {backend}: all keys cooling down")


class QuotaExceededError(OrchestrationError):
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, backend: str, cause: BaseException):
        self.backend = backend
        self.cause = cause
        super().__init__(f"{backend} quota exceeded: {str(cause) or type(cause).__name__}")


class BackendCallFailedError(OrchestrationError):
    kind = ErrorKind.BACKEND_CALL_FAILED

    def __init__(self, backend: str, cause: BaseException):
        self.backend = backend
        self.cause = cause
        super().__init__(f"{backend} call failed: {str(cause) or type(cause).__name__}")


class AllBackendsExhaustedError(OrchestrationError):
    kind = ErrorKind.ALL_BACKENDS_EXHAUSTED

    def __init__(self, attempts: Optional[List[AttemptRecord]] = None):
        self.attempts = attempts or []
        super().__init__("All AI backends exhausted. Please check your API keys and quotas.")


class JobTimeoutError(OrchestrationError):
    kind = ErrorKind.JOB_TIMEOUT

    def __init__(self, job_id: str, seconds: float):
        self.job_id = job_id
        self.seconds = seconds
        super().__init__(f"Job {job_id} timed out after {seconds}s")


class JobFailedError(OrchestrationError):
    kind = ErrorKind.JOB_FAILED

    def __init__(self, job_id: str, error: Optional[str]):
        self.job_id = job_id
        self.error = error
        super().__init__(f"Job {job_id} failed: {error}")
