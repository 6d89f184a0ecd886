# stocksync/services/job_registry.py
"""
Single id-keyed registry of live jobs.

All status changes and progress writes for a job are serialized by that
job's lock, checked against the status the caller expects, persisted
through the repository and then published to the event sink.
"""

import asyncio
import copy
import logging
from typing import Callable, Dict, Iterable, List, Optional

from stocksync.core.enums import JobAction, JobStatus
from stocksync.core.exceptions import JobNotFoundError, StaleJobError, StateTransitionError
from stocksync.integrations.events import EventSink, EventType, LoggingEventSink
from stocksync.models.job import SyncJob
from stocksync.services import job_state
from stocksync.services.job_repository import JobRepository
from stocksync.services.reconciliation_scan import ScanProgress

logger = logging.getLogger(__name__)

ACTION_EVENTS = {
    JobAction.START: EventType.ACTIVE,
    JobAction.COMPLETE: EventType.COMPLETED,
    JobAction.FAIL: EventType.FAILED,
    JobAction.RETRY: EventType.RETRYING,
    JobAction.PAUSE: EventType.PAUSED,
    JobAction.RESUME: EventType.RESUMED,
    JobAction.CANCEL: EventType.CANCELLED,
}


def _snapshot(job: SyncJob) -> tuple:
    values = {column.key: copy.deepcopy(getattr(job, column.key)) for column in SyncJob.__table__.columns}
    return values, len(job.audit)


def _restore(job: SyncJob, snapshot: tuple) -> None:
    values, audit_length = snapshot
    for key, value in values.items():
        setattr(job, key, value)
    del job.audit[audit_length:]


class JobRegistry:

    def __init__(self, repository: JobRepository, sink: Optional[EventSink] = None):
        self.repository = repository
        self.sink = sink or LoggingEventSink()
        self._jobs: Dict[str, SyncJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tokens: Dict[str, asyncio.Event] = {}

    # --- Lookup ---

    def get(self, job_id: str) -> SyncJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def jobs(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[SyncJob]:
        return [
            job for job in self._jobs.values()
            if (kind is None or job.kind == kind) and (status is None or job.status == status)
        ]

    def cancel_token(self, job_id: str) -> asyncio.Event:
        token = self._tokens.get(job_id)
        if token is None:
            token = self._tokens[job_id] = asyncio.Event()
        return token

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def _release_if_terminal(self, job_id: str) -> None:
        # A finished job takes no more transitions or progress
        job = self._jobs.get(job_id)
        if job is not None and job.is_terminal:
            self._locks.pop(job_id, None)
            self._tokens.pop(job_id, None)

    # --- Writes ---

    async def create(self, job: SyncJob, actor: str = "system") -> SyncJob:
        job_state.record_enqueue(job, actor=actor)
        await self.repository.add(job)
        self._jobs[job.id] = job
        await self.publish(job, EventType.QUEUED, {"actor": actor})
        return job

    def adopt(self, job: SyncJob) -> None:
        """Register a job loaded from the repository."""
        self._jobs[job.id] = job

    async def transition(
        self,
        job_id: str,
        action: JobAction,
        actor: str = "system",
        reason: Optional[str] = None,
        expected: Optional[Iterable[JobStatus]] = None,
        mutate: Optional[Callable[[SyncJob], None]] = None,
    ) -> SyncJob:
        """
        Apply one lifecycle action under the job's lock.

        Args:
            expected: statuses the caller believes the job is in; anything
                else is rejected as a lost race
            mutate: extra changes to persist together with the transition

        Raises:
            JobNotFoundError, StateTransitionError
        """
        action = JobAction(action)
        try:
            async with self._lock(job_id):
                job = self.get(job_id)
                if expected is not None and job.job_status not in set(expected):
                    raise StateTransitionError(job.id, job.status, action.value, "status changed concurrently")

                snapshot = _snapshot(job)
                expected_version = job.version
                job_state.apply_transition(job, action, actor=actor, reason=reason)
                if mutate:
                    mutate(job)
                try:
                    await self.repository.save(job, expected_version)
                except StaleJobError as e:
                    _restore(job, snapshot)
                    raise StateTransitionError(job.id, job.status, action.value, "job was modified concurrently") from e
                except Exception:
                    _restore(job, snapshot)
                    raise

                if action in (JobAction.CANCEL, JobAction.PAUSE):
                    self.cancel_token(job_id).set()
                elif action == JobAction.START:
                    # Fresh token for every run
                    self._tokens[job_id] = asyncio.Event()
        finally:
            self._release_if_terminal(job_id)

        logger.info(f"Job {job_id} {action.value} by {actor}: -> {job.status}" + (f" ({reason})" if reason else ""))
        payload = {"status": job.status, "actor": actor, "reason": reason, "progress": job.progress}
        if job.is_terminal:
            payload["result"] = job.result
            payload["error"] = job.error
        await self.publish(job, ACTION_EVENTS[action], payload)
        return job

    async def record_progress(self, job_id: str, progress: ScanProgress, attempt: Optional[int] = None) -> bool:
        """
        Write scan progress through to the job record.

        Refused (returns False) once the job has left `active`, e.g. after a
        cancel, or when `attempt` no longer matches the job's attempt count
        because a pause and resume restarted it under a newer run. The caller
        owns the refused run and should stop it.
        """
        try:
            async with self._lock(job_id):
                job = self.get(job_id)
                if job.job_status != JobStatus.ACTIVE:
                    return False
                if attempt is not None and job.attempts != attempt:
                    logger.warning(
                        f"Progress for job {job_id} refused: attempt {attempt} superseded by attempt {job.attempts}"
                    )
                    return False

                snapshot = _snapshot(job)
                expected_version = job.version
                job.scanned = progress.scanned
                job.resolved = progress.resolved
                job.skipped = progress.skipped
                job.total_estimate = progress.total_estimate
                job.cursor = progress.last_key
                try:
                    await self.repository.save(job, expected_version)
                except StaleJobError:
                    _restore(job, snapshot)
                    logger.warning(f"Progress for job {job_id} refused: record changed concurrently")
                    return False
                except Exception:
                    _restore(job, snapshot)
                    raise
        finally:
            self._release_if_terminal(job_id)

        await self.publish(job, EventType.PROGRESS, progress.to_dict())
        return True

    async def publish(self, job: SyncJob, event_type: str, payload: Optional[dict] = None) -> None:
        # EventSink.publish already logs and swallows sink failures
        await self.sink.publish(job.id, event_type, dict(payload or {}, kind=job.kind))
