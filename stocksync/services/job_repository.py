# stocksync/services/job_repository.py
"""
Durable storage for job records.

Writes use optimistic locking: `save(job, expected_version)` only succeeds
when the stored version still equals `expected_version`, then bumps it.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import select, update

from stocksync.core.enums import JobStatus
from stocksync.core.exceptions import DatabaseError, JobNotFoundError, StaleJobError
from stocksync.models.job import JobAuditEntry, SyncJob

logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = (JobStatus.QUEUED.value, JobStatus.ACTIVE.value, JobStatus.DELAYED.value)

_IMMUTABLE_COLUMNS = {"id", "created_at", "version"}


class JobRepository(ABC):

    @abstractmethod
    async def add(self, job: SyncJob) -> None:
        pass

    @abstractmethod
    async def save(self, job: SyncJob, expected_version: int) -> None:
        """Persist `job` if nobody else has; sets job.version to the new version."""
        pass

    @abstractmethod
    async def get(self, job_id: str) -> SyncJob:
        pass

    @abstractmethod
    async def list_jobs(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[SyncJob]:
        pass

    async def list_unfinished(self) -> List[SyncJob]:
        jobs = await self.list_jobs()
        return [job for job in jobs if job.status in UNFINISHED_STATUSES]


class InMemoryJobRepository(JobRepository):

    def __init__(self):
        self._jobs: Dict[str, SyncJob] = {}
        self._versions: Dict[str, int] = {}

    async def add(self, job: SyncJob) -> None:
        self._jobs[job.id] = job
        self._versions[job.id] = job.version

    async def save(self, job: SyncJob, expected_version: int) -> None:
        current = self._versions.get(job.id)
        if current is None:
            raise JobNotFoundError(job.id)
        if current != expected_version:
            raise StaleJobError(job.id, expected_version)
        job.version = expected_version + 1
        self._versions[job.id] = job.version
        self._jobs[job.id] = job

    async def get(self, job_id: str) -> SyncJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id)

    async def list_jobs(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[SyncJob]:
        jobs = [
            job for job in self._jobs.values()
            if (kind is None or job.kind == kind) and (status is None or job.status == status)
        ]
        return sorted(jobs, key=lambda job: job.created_at)


class SqlJobRepository(JobRepository):
    """Async SQLAlchemy repository; audit entries are insert-only."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def add(self, job: SyncJob) -> None:
        async with self.session_factory() as session:
            try:
                session.add(job)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to create job {job.id}: {e}")
                raise DatabaseError(f"Failed to create job {job.id}: {e}") from e

    async def save(self, job: SyncJob, expected_version: int) -> None:
        values = {
            column.key: copy.deepcopy(getattr(job, column.key))
            for column in SyncJob.__table__.columns
            if column.key not in _IMMUTABLE_COLUMNS
        }
        values["version"] = expected_version + 1
        new_entries = [entry for entry in job.audit if entry.id is None]

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job.id, SyncJob.version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise StaleJobError(job.id, expected_version)

                rows = []
                for entry in new_entries:
                    row = JobAuditEntry(
                        job_id=job.id,
                        sequence=entry.sequence,
                        actor=entry.actor,
                        action=entry.action,
                        reason=entry.reason,
                        from_status=entry.from_status,
                        to_status=entry.to_status,
                        at=entry.at,
                    )
                    session.add(row)
                    rows.append(row)
                await session.commit()
            except StaleJobError:
                raise
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to save job {job.id}: {e}")
                raise DatabaseError(f"Failed to save job {job.id}: {e}") from e

        for entry, row in zip(new_entries, rows):
            entry.id = row.id
        job.version = expected_version + 1

    async def get(self, job_id: str) -> SyncJob:
        async with self.session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    async def list_jobs(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[SyncJob]:
        stmt = select(SyncJob)
        if kind is not None:
            stmt = stmt.where(SyncJob.kind == kind)
        if status is not None:
            stmt = stmt.where(SyncJob.status == status)
        stmt = stmt.order_by(SyncJob.created_at.asc())
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
