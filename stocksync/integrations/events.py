"""
Purpose: Delivers job lifecycle and progress events to observers.
Contents:
JobEvent (Pydantic Model): one notification about a job (queued, active, progress, terminal, ...).
EventSink implementations: logging, in-memory capture, broadcast to a connection manager, fan-out.
Publishing is best-effort: a failing sink is logged and never breaks the job that emitted the event.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from stocksync.core.utils import utc_now

logger = logging.getLogger(__name__)


class EventType:
    QUEUED = "job.queued"
    ACTIVE = "job.active"
    PROGRESS = "job.progress"
    COMPLETED = "job.completed"
    FAILED = "job.failed"
    RETRYING = "job.retrying"
    PAUSED = "job.paused"
    RESUMED = "job.resumed"
    CANCELLED = "job.cancelled"


class JobEvent(BaseModel):
    job_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def to_message(self) -> dict:
        return {
            "type": self.event_type,
            "job_id": self.job_id,
            "data": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink:
    """Base sink. Subclasses implement `deliver`."""

    async def publish(self, job_id: str, event_type: str, payload: Optional[dict] = None) -> None:
        event = JobEvent(job_id=job_id, event_type=event_type, payload=payload or {})
        try:
            await self.deliver(event)
        except Exception as e:
            logger.error(f"Event sink {type(self).__name__} failed on {event_type} for job {job_id}: {e}")

    async def deliver(self, event: JobEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    async def deliver(self, event: JobEvent) -> None:
        if event.event_type == EventType.PROGRESS:
            logger.debug(f"Job {event.job_id} progress: {event.payload}")
        else:
            logger.info(f"Job {event.job_id} {event.event_type}: {event.payload}")


class InMemoryEventSink(EventSink):
    """Keeps every event, handy for tests and status pages."""

    def __init__(self, max_events: Optional[int] = None):
        self.events: List[JobEvent] = []
        self.max_events = max_events

    async def deliver(self, event: JobEvent) -> None:
        self.events.append(event)
        if self.max_events and len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def for_job(self, job_id: str) -> List[JobEvent]:
        return [event for event in self.events if event.job_id == job_id]

    def types_for(self, job_id: str) -> List[str]:
        return [event.event_type for event in self.for_job(job_id)]

    def clear(self) -> None:
        self.events = []


class BroadcastEventSink(EventSink):
    """
    Forwards events to anything exposing `async broadcast(message: dict)`,
    e.g. a WebSocket ConnectionManager.
    """

    def __init__(self, manager, include_progress: bool = True):
        self.manager = manager
        self.include_progress = include_progress

    async def deliver(self, event: JobEvent) -> None:
        if event.event_type == EventType.PROGRESS and not self.include_progress:
            return
        await self.manager.broadcast(event.to_message())


class CompositeEventSink(EventSink):
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    async def publish(self, job_id: str, event_type: str, payload: Optional[dict] = None) -> None:
        # Each child isolates its own failures
        for sink in self.sinks:
            await sink.publish(job_id, event_type, payload)

    async def deliver(self, event: JobEvent) -> None:
        for sink in self.sinks:
            await sink.publish(event.job_id, event.event_type, event.payload)
