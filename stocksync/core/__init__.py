"""
Core module exports.
"""
from .enums import (
    SyncStatus,
    JobKind,
    JobStatus,
    JobAction,
    SyncType,
    TriggerSource,
    PriorityLevel,
    CircuitState
)

from .exceptions import (
    BaseServiceError,
    ValidationError,
    DatabaseError,
    ExternalServiceError,
    TransientExternalError,
    PermanentExternalError,
    CircuitOpenError,
    ChannelAPIError,
    JobError,
    JobNotFoundError,
    StateTransitionError,
    StaleJobError,
    JobFatalError,
    OperationCancelledError
)

from .utils import (
    utc_now,
    chunked,
    generate_job_id,
    CancelToken,
    is_cancelled,
    cancellable_sleep
)
