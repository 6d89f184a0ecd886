"""
Durable record of one reconciliation run and its audit trail.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from stocksync.core.enums import JobStatus
from stocksync.core.utils import utc_now
from stocksync.database import Base


class SyncJob(Base):
    """
    One reconciliation run.

    Status changes go through the state machine in
    stocksync.services.job_state; nothing else should assign `status`.
    """

    __tablename__ = "sync_jobs"

    id = Column(String(64), primary_key=True)
    kind = Column(String(16), nullable=False, index=True)        # manual, batch, scheduled
    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value, index=True)
    priority = Column(Integer, nullable=False, default=5)
    sync_type = Column(String(16), nullable=False, default="inventory")
    trigger_source = Column(String(16), nullable=False, default="manual")

    # --- Progress ---
    scanned = Column(Integer, nullable=False, default=0)
    resolved = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    total_estimate = Column(Integer, nullable=True)
    cursor = Column(Integer, nullable=True)  # last committed keyset key

    # --- Retry ---
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)

    # --- Payload ---
    config = Column(JSON, nullable=False, default=dict)
    tags = Column(JSON, nullable=False, default=list)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    # Optimistic locking, bumped on every persisted change
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    audit = relationship(
        "JobAuditEntry",
        back_populates="job",
        order_by="JobAuditEntry.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", JobStatus.QUEUED.value)
        kwargs.setdefault("priority", 5)
        kwargs.setdefault("sync_type", "inventory")
        kwargs.setdefault("trigger_source", "manual")
        kwargs.setdefault("scanned", 0)
        kwargs.setdefault("resolved", 0)
        kwargs.setdefault("skipped", 0)
        kwargs.setdefault("attempts", 0)
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("config", {})
        kwargs.setdefault("tags", [])
        kwargs.setdefault("version", 0)
        kwargs.setdefault("created_at", utc_now())
        super().__init__(**kwargs)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.job_status.is_terminal

    @property
    def progress(self) -> dict:
        return {
            "scanned": self.scanned,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "total_estimate": self.total_estimate,
            "percentage": self.percentage,
        }

    @property
    def percentage(self) -> int:
        if self.status == JobStatus.COMPLETED.value:
            return 100
        if not self.total_estimate:
            return 0
        # The estimate is advisory; never report more than 100%
        return min(100, round(self.scanned * 100 / self.total_estimate))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "priority": self.priority,
            "sync_type": self.sync_type,
            "trigger_source": self.trigger_source,
            "progress": self.progress,
            "cursor": self.cursor,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "config": dict(self.config or {}),
            "tags": list(self.tags or []),
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "audit": [entry.to_dict() for entry in self.audit],
        }

    def __repr__(self) -> str:
        return f"<SyncJob(id={self.id}, kind={self.kind}, status={self.status}, priority={self.priority})>"


class JobAuditEntry(Base):
    """Append-only record of a single lifecycle transition."""

    __tablename__ = "sync_job_audit"

    id = Column(Integer, primary_key=True)
    job_id = Column(String(64), ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    actor = Column(String(64), nullable=False)
    action = Column(String(16), nullable=False)
    reason = Column(Text, nullable=True)
    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=False)
    at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    job = relationship("SyncJob", back_populates="audit")

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "actor": self.actor,
            "action": self.action,
            "reason": self.reason,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "at": self.at.isoformat() if self.at else None,
        }

    def __repr__(self) -> str:
        return f"<JobAuditEntry(job={self.job_id}, #{self.sequence} {self.action}: {self.from_status}->{self.to_status})>"
