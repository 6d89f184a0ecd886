"""
Shared enums and constants used across the application.
"""

from enum import Enum


class SyncStatus(str, Enum):
    """Per-record identifier resolution status."""
    UNRESOLVED = "unresolved"    # Channel identifiers not looked up yet (or lookup unavailable)
    SUCCESS = "success"          # Both channel identifiers present
    FAILED = "failed"            # Lookup ran but the record is still not updatable


class JobKind(str, Enum):
    MANUAL = "manual"
    BATCH = "batch"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    DELAYED = "delayed"          # Paused by an operator, never a backoff wait
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobAction(str, Enum):
    """Lifecycle actions that drive a job from one status to the next."""
    ENQUEUE = "enqueue"
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class SyncType(str, Enum):
    INVENTORY = "inventory"
    FULL = "full"
    EMERGENCY = "emergency"
    CLEANUP = "cleanup"


class TriggerSource(str, Enum):
    MANUAL = "manual"
    API = "api"
    SCHEDULER = "scheduler"
    MAINTENANCE = "maintenance"
    EMERGENCY = "emergency"


class PriorityLevel(int, Enum):
    """Queue priority, higher number runs sooner."""
    CRITICAL = 10    # Error recovery and emergency syncs
    HIGH = 7         # Manual user-initiated syncs
    NORMAL = 5       # Regular scheduled syncs
    LOW = 3          # Large batch operations
    BACKGROUND = 1   # Cleanup and maintenance


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"
