from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass


class ValidationError(BaseServiceError):
    """Raised when a job request fails validation. Never becomes a job record."""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class DatabaseError(BaseServiceError):
    """Exception raised for database-related errors."""
    pass


class ExternalServiceError(BaseServiceError):
    """Base exception for calls to the channel or supplier."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientExternalError(ExternalServiceError):
    """Retriable failure: timeouts, network errors, 5xx and 429 responses."""
    pass


class PermanentExternalError(ExternalServiceError):
    """Non-retriable failure: 4xx responses other than 429."""
    pass


class CircuitOpenError(TransientExternalError):
    """Raised when the circuit breaker rejects a call without attempting it."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open, retry in {retry_after:.1f}s")


class ChannelAPIError(PermanentExternalError):
    """Raised when the channel's GraphQL API answers with errors."""

    def __init__(self, errors: list):
        self.errors = errors
        message = "GraphQL query failed with errors:\n"
        for error in errors:
            msg = error.get('message', 'Unknown error')
            path = error.get('path', [])
            message += f"- Message: {msg}, Path: {path}\n"
        super().__init__(message)


class JobError(BaseServiceError):
    """Base exception for job lifecycle errors."""
    pass


class JobNotFoundError(JobError):
    """Raised when a job id is not in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class StateTransitionError(JobError):
    """Raised for an invalid lifecycle edge. The job is left unchanged."""

    def __init__(self, job_id: str, status: str, action: str, detail: Optional[str] = None):
        self.job_id = job_id
        self.status = status
        self.action = action
        message = f"Cannot {action} job {job_id} in status '{status}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class StaleJobError(JobError):
    """Raised when a persisted job changed underneath an optimistic update."""

    def __init__(self, job_id: str, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(f"Job {job_id} was modified concurrently (expected version {expected_version})")


class JobFatalError(JobError):
    """Unexpected internal failure. Fails the job without further attempts."""

    def __init__(self, message: str, context: Optional[dict] = None):
        self.context = context or {}
        super().__init__(message)


class OperationCancelledError(BaseServiceError):
    """Raised inside a run when its cancel token has been set."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)
