# stocksync/services/job_priority.py
"""
Priority and retry policy for reconciliation jobs.

Higher numbers run sooner. The policy also decides how many attempts a job
gets and how long to back off between them.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from stocksync.core.enums import PriorityLevel, SyncType, TriggerSource

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    sync_type: str = SyncType.INVENTORY.value
    triggered_by: str = TriggerSource.MANUAL.value
    is_scheduled: bool = False
    retry_count: int = 0
    has_errors: bool = False
    user_initiated: bool = False
    store_count: int = 1
    vendor_count: int = 1


@dataclass(frozen=True)
class QueueOptions:
    attempts: int
    backoff_type: str   # "exponential" or "fixed"
    backoff_delay: float  # seconds

    def retry_delay(self, attempt: int, max_delay: Optional[float] = None) -> float:
        """Seconds to wait before re-running after failed attempt number `attempt` (1-based)."""
        if self.backoff_type == "exponential":
            delay = self.backoff_delay * (2 ** max(0, attempt - 1))
        else:
            delay = self.backoff_delay
        if max_delay is not None:
            delay = min(delay, max_delay)
        return delay


@dataclass
class PriorityDecision:
    priority: PriorityLevel
    reason: str
    options: Optional[QueueOptions] = None

    @property
    def name(self) -> str:
        return self.priority.name.lower()

    @property
    def level(self) -> int:
        return int(self.priority)


_QUEUE_OPTIONS = {
    PriorityLevel.CRITICAL: QueueOptions(attempts=5, backoff_type="exponential", backoff_delay=2.0),
    PriorityLevel.HIGH: QueueOptions(attempts=3, backoff_type="exponential", backoff_delay=5.0),
    PriorityLevel.NORMAL: QueueOptions(attempts=3, backoff_type="exponential", backoff_delay=10.0),
    PriorityLevel.LOW: QueueOptions(attempts=2, backoff_type="fixed", backoff_delay=30.0),
    PriorityLevel.BACKGROUND: QueueOptions(attempts=1, backoff_type="fixed", backoff_delay=60.0),
}


def priority_level(name: str) -> PriorityLevel:
    try:
        return PriorityLevel[name.upper()]
    except KeyError:
        logger.warning(f"Unknown priority level: {name}, defaulting to NORMAL")
        return PriorityLevel.NORMAL


def priority_name(level: int) -> str:
    for member in PriorityLevel:
        if member.value == level:
            return member.name.lower()
    return "normal"


def nearest_level(level: int) -> PriorityLevel:
    """Map an arbitrary priority number onto the closest named level at or below it."""
    for member in sorted(PriorityLevel, key=lambda m: m.value, reverse=True):
        if level >= member.value:
            return member
    return PriorityLevel.BACKGROUND


def queue_options(priority: PriorityLevel) -> QueueOptions:
    return _QUEUE_OPTIONS[nearest_level(int(priority))]


def determine_priority(context: JobContext) -> PriorityDecision:
    """First matching rule wins, top to bottom."""
    if context.has_errors and context.retry_count > 0:
        priority, reason = PriorityLevel.CRITICAL, "Error recovery retry"
    elif context.sync_type == SyncType.EMERGENCY.value or context.triggered_by == TriggerSource.EMERGENCY.value:
        priority, reason = PriorityLevel.CRITICAL, "Emergency sync operation"
    elif context.user_initiated or context.triggered_by == TriggerSource.MANUAL.value:
        priority, reason = PriorityLevel.HIGH, "User-initiated operation"
    elif context.sync_type == SyncType.INVENTORY.value and not context.is_scheduled:
        priority, reason = PriorityLevel.HIGH, "Manual inventory sync"
    elif context.store_count > 5 or context.vendor_count > 5:
        priority, reason = PriorityLevel.LOW, "Large batch operation"
    elif context.sync_type == SyncType.FULL.value and context.is_scheduled:
        priority, reason = PriorityLevel.LOW, "Scheduled full sync"
    elif context.sync_type == SyncType.CLEANUP.value or context.triggered_by == TriggerSource.MAINTENANCE.value:
        priority, reason = PriorityLevel.BACKGROUND, "Maintenance operation"
    elif context.is_scheduled:
        priority, reason = PriorityLevel.NORMAL, "Scheduled operation"
    else:
        priority, reason = PriorityLevel.NORMAL, "Default priority"

    logger.debug(f"Job priority determined: {priority.name} ({reason})")
    return PriorityDecision(priority=priority, reason=reason, options=queue_options(priority))


def priority_stats(jobs: Iterable) -> dict:
    """Counts of jobs by priority name and by status."""
    jobs = list(jobs)
    by_priority = Counter(priority_name(job.priority or PriorityLevel.NORMAL.value) for job in jobs)
    by_status = Counter(job.status or "unknown" for job in jobs)
    return {
        "total": len(jobs),
        "by_priority": dict(by_priority),
        "by_status": dict(by_status),
    }
