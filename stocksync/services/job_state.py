# stocksync/services/job_state.py
"""
Job lifecycle state machine.

The table below is the complete set of legal edges; any other
(status, action) pair raises StateTransitionError and leaves the job
untouched. Every accepted transition appends one audit entry.

    queued   --start-->    active
    queued   --cancel-->   cancelled
    active   --complete--> completed
    active   --fail-->     failed
    active   --retry-->    queued      (whole-job backoff)
    active   --pause-->    delayed
    active   --cancel-->   cancelled
    delayed  --resume-->   queued      (only after an unresumed pause)
    delayed  --cancel-->   cancelled
"""

from datetime import datetime
from typing import Dict, Optional, Tuple

from stocksync.core.enums import JobAction, JobStatus
from stocksync.core.exceptions import StateTransitionError
from stocksync.core.utils import utc_now
from stocksync.models.job import JobAuditEntry, SyncJob

TRANSITIONS: Dict[Tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.QUEUED, JobAction.START): JobStatus.ACTIVE,
    (JobStatus.QUEUED, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.ACTIVE, JobAction.COMPLETE): JobStatus.COMPLETED,
    (JobStatus.ACTIVE, JobAction.FAIL): JobStatus.FAILED,
    (JobStatus.ACTIVE, JobAction.RETRY): JobStatus.QUEUED,
    (JobStatus.ACTIVE, JobAction.PAUSE): JobStatus.DELAYED,
    (JobStatus.ACTIVE, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.DELAYED, JobAction.RESUME): JobStatus.QUEUED,
    (JobStatus.DELAYED, JobAction.CANCEL): JobStatus.CANCELLED,
}


def next_status(status: JobStatus, action: JobAction) -> Optional[JobStatus]:
    return TRANSITIONS.get((JobStatus(status), JobAction(action)))


def can_transition(job: SyncJob, action: JobAction) -> bool:
    target = next_status(job.job_status, action)
    if target is None:
        return False
    if JobAction(action) == JobAction.RESUME:
        return has_unresumed_pause(job)
    return True


def has_unresumed_pause(job: SyncJob) -> bool:
    """True when the latest pause/resume entry in the audit trail is a pause."""
    for entry in reversed(job.audit):
        if entry.action == JobAction.PAUSE.value:
            return True
        if entry.action == JobAction.RESUME.value:
            return False
    return False


def _append_audit(job: SyncJob, action: JobAction, actor: str, reason: Optional[str],
                  from_status: Optional[str], to_status: str, at: datetime) -> JobAuditEntry:
    entry = JobAuditEntry(
        sequence=len(job.audit) + 1,
        actor=actor,
        action=action.value,
        reason=reason,
        from_status=from_status,
        to_status=to_status,
        at=at,
    )
    job.audit.append(entry)
    return entry


def record_enqueue(job: SyncJob, actor: str = "system", reason: Optional[str] = None) -> JobAuditEntry:
    """First audit entry of a freshly created job."""
    return _append_audit(job, JobAction.ENQUEUE, actor, reason, None, job.status, utc_now())


def apply_transition(job: SyncJob, action: JobAction, actor: str = "system",
                     reason: Optional[str] = None) -> JobAuditEntry:
    """
    Move `job` along one edge of the state machine.

    Raises:
        StateTransitionError: the edge does not exist, or a resume has no
            matching pause. The job is not modified.
    """
    action = JobAction(action)
    current = job.job_status
    target = next_status(current, action)
    if target is None:
        raise StateTransitionError(job.id, current.value, action.value)
    if action == JobAction.RESUME and not has_unresumed_pause(job):
        raise StateTransitionError(job.id, current.value, action.value, "job was not paused")

    now = utc_now()
    job.status = target.value

    if action == JobAction.START:
        job.attempts = (job.attempts or 0) + 1
        if job.started_at is None:
            job.started_at = now
        job.scheduled_for = None
    elif action == JobAction.CANCEL:
        result = dict(job.result or {})
        result.update({"cancelled": True, "cause": reason, "actor": actor})
        job.result = result

    if target.is_terminal:
        job.completed_at = now

    return _append_audit(job, action, actor, reason, current.value, target.value, now)
