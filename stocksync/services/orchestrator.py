# stocksync/services/orchestrator.py
"""
Runs reconciliation jobs.

One Orchestrator is built at startup and handed to whoever needs it (CLI,
scheduler, API layer). It owns the job registry and one worker pool per
job kind; each pool has its own priority queue, so a burst of batch jobs
never holds up manual ones.

    orchestrator = Orchestrator(store, channel, repository=SqlJobRepository(factory))
    await orchestrator.start()
    job_id = await orchestrator.enqueue({"kind": "manual", "only_missing_identifiers": True})
    job = await orchestrator.wait_for(job_id)
"""

import asyncio
import itertools
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from stocksync.core.config import get_settings
from stocksync.core.enums import JobAction, JobKind, JobStatus, SyncType, TriggerSource
from stocksync.core.exceptions import JobFatalError, JobNotFoundError, StateTransitionError, ValidationError
from stocksync.core.utils import generate_job_id, utc_now
from stocksync.integrations.base import ChannelClient
from stocksync.integrations.events import EventSink
from stocksync.models.job import SyncJob
from stocksync.services.identifier_resolver import IdentifierResolver
from stocksync.services.inventory_store import InventoryFilter, InventoryStore
from stocksync.services.job_priority import JobContext, QueueOptions, determine_priority, priority_stats
from stocksync.services.job_registry import JobRegistry
from stocksync.services.job_repository import InMemoryJobRepository, JobRepository
from stocksync.services.reconciliation_scan import ReconciliationScan, ScanProgress, ScanResult
from stocksync.services.resilience import CircuitBreaker, ResilientCaller

logger = logging.getLogger(__name__)

_DEFAULT_TRIGGERS = {
    JobKind.MANUAL: TriggerSource.MANUAL,
    JobKind.BATCH: TriggerSource.API,
    JobKind.SCHEDULED: TriggerSource.SCHEDULER,
}


class SyncJobRequest(BaseModel):
    """What a caller may ask for when enqueuing a reconciliation run."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True, validate_default=True)

    kind: JobKind = JobKind.MANUAL
    sync_type: SyncType = SyncType.INVENTORY
    trigger_source: Optional[TriggerSource] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    batch_size: Optional[int] = Field(default=None, gt=0, le=1000)
    batch_delay: Optional[float] = Field(default=None, ge=0)
    update_out_of_stock: bool = True

    # Record filter
    only_missing_identifiers: bool = False
    only_in_stock: bool = False
    variant_keys: Optional[List[str]] = None
    min_quantity: Optional[int] = Field(default=None, ge=0)
    max_quantity: Optional[int] = Field(default=None, ge=0)

    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_filter(self):
        if self.variant_keys is not None:
            if not self.variant_keys:
                raise ValueError("variant_keys must not be empty when given")
            if any(not key or not key.strip() for key in self.variant_keys):
                raise ValueError("variant_keys must not contain blank keys")
        if (self.min_quantity is not None and self.max_quantity is not None
                and self.min_quantity > self.max_quantity):
            raise ValueError("min_quantity cannot exceed max_quantity")
        return self

    def to_filter(self) -> InventoryFilter:
        return InventoryFilter(
            only_missing_identifiers=self.only_missing_identifiers,
            only_in_stock=self.only_in_stock,
            variant_keys=self.variant_keys,
            min_quantity=self.min_quantity,
            max_quantity=self.max_quantity,
        )


class WorkerPool:
    """Fixed number of workers draining one priority queue (highest first, FIFO within a level)."""

    def __init__(self, kind: str, concurrency: int, handler: Callable[[str], Awaitable[None]]):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.kind = kind
        self.concurrency = concurrency
        self.handler = handler
        self.queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self.active = 0
        self._sequence = itertools.count()
        self._workers: List[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def put(self, job_id: str, priority: int) -> None:
        self.queue.put_nowait((-priority, next(self._sequence), job_id))

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"{self.kind}-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} {self.kind} workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"Stopped {self.kind} workers")

    async def join(self) -> None:
        await self.queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            _, _, job_id = await self.queue.get()
            self.active += 1
            try:
                await self.handler(job_id)
            except Exception as e:
                logger.exception(f"{self.kind} worker {index} crashed on job {job_id}: {e}")
            finally:
                self.active -= 1
                self.queue.task_done()


class Orchestrator:

    def __init__(
        self,
        store: InventoryStore,
        channel: ChannelClient,
        repository: Optional[JobRepository] = None,
        sink: Optional[EventSink] = None,
        settings=None,
        caller: Optional[ResilientCaller] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.channel = channel
        self.registry = JobRegistry(repository or InMemoryJobRepository(), sink)

        if caller is None:
            breaker = CircuitBreaker(
                channel.name,
                fail_max=self.settings.BREAKER_FAIL_MAX,
                reset_timeout=self.settings.BREAKER_RESET_TIMEOUT,
                monitoring_window=self.settings.BREAKER_MONITORING_WINDOW,
            )
            caller = ResilientCaller.from_settings(self.settings, breaker=breaker)
        self.caller = caller

        self.resolver = IdentifierResolver.from_settings(self.settings, store, channel, caller=caller)
        self.scan = ReconciliationScan(store, self.resolver, max_errors=self.settings.JOB_RESULT_MAX_ERRORS)

        concurrency = {
            JobKind.MANUAL: self.settings.WORKER_CONCURRENCY_MANUAL,
            JobKind.BATCH: self.settings.WORKER_CONCURRENCY_BATCH,
            JobKind.SCHEDULED: self.settings.WORKER_CONCURRENCY_SCHEDULED,
        }
        self.pools: Dict[str, WorkerPool] = {
            kind.value: WorkerPool(kind.value, count, self._run_job) for kind, count in concurrency.items()
        }
        self._finished: Dict[str, asyncio.Event] = {}
        self._retry_tasks: Set[asyncio.Task] = set()

    # --- Lifecycle ---

    async def start(self) -> None:
        for pool in self.pools.values():
            pool.start()

    async def stop(self) -> None:
        for task in list(self._retry_tasks):
            task.cancel()
        await asyncio.gather(*self._retry_tasks, return_exceptions=True)
        self._retry_tasks.clear()
        for pool in self.pools.values():
            await pool.stop()

    async def recover(self) -> int:
        """
        Reload unfinished jobs from the repository after a restart.

        Queued jobs go back on their queue; jobs left `active` by a crash are
        moved back to `queued` and resume from their last committed cursor.
        Paused jobs stay paused. Returns the number of jobs re-enqueued.
        """
        requeued = 0
        for job in await self.registry.repository.list_unfinished():
            if job.id in self.registry:
                continue
            self.registry.adopt(job)
            if job.job_status == JobStatus.ACTIVE:
                try:
                    await self._transition(job.id, JobAction.RETRY, actor="system",
                                           reason="interrupted by restart", expected=[JobStatus.ACTIVE])
                except StateTransitionError as e:
                    logger.warning(f"Could not recover job {job.id}: {e}")
                    continue
            if job.job_status == JobStatus.QUEUED:
                self._pool_for(job).put(job.id, job.priority)
                requeued += 1
        logger.info(f"Recovered {requeued} jobs")
        return requeued

    # --- Commands ---

    async def enqueue(self, request: Union[SyncJobRequest, Dict[str, Any]], actor: str = "system") -> str:
        """
        Validate a job request and queue it.

        Raises:
            ValidationError: the request is malformed; no job is created
        """
        if not isinstance(request, SyncJobRequest):
            try:
                request = SyncJobRequest.model_validate(request or {})
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid sync job request: {e}", errors=e.errors()) from e

        kind = JobKind(request.kind)
        trigger = TriggerSource(request.trigger_source) if request.trigger_source else _DEFAULT_TRIGGERS[kind]
        decision = determine_priority(JobContext(
            sync_type=request.sync_type,
            triggered_by=trigger.value,
            is_scheduled=kind == JobKind.SCHEDULED,
            user_initiated=kind == JobKind.MANUAL and trigger == TriggerSource.MANUAL,
        ))

        job = SyncJob(
            id=generate_job_id(),
            kind=kind.value,
            sync_type=request.sync_type,
            trigger_source=trigger.value,
            priority=request.priority or decision.level,
            max_attempts=request.max_attempts or decision.options.attempts,
            config={
                "batch_size": request.batch_size or self.settings.DEFAULT_BATCH_SIZE,
                "batch_delay": (request.batch_delay if request.batch_delay is not None
                                else self.settings.DEFAULT_BATCH_DELAY),
                "update_out_of_stock": request.update_out_of_stock,
                "filter": request.to_filter().to_config(),
                "backoff": {"type": decision.options.backoff_type, "delay": decision.options.backoff_delay},
                "priority_reason": decision.reason,
            },
            tags=list(request.tags),
        )
        await self.registry.create(job, actor=actor)
        self._pool_for(job).put(job.id, job.priority)
        logger.info(f"Enqueued {job.kind} job {job.id} (priority {job.priority}: {decision.reason})")
        return job.id

    async def pause(self, job_id: str, reason: Optional[str] = None, actor: str = "admin") -> SyncJob:
        return await self._transition(job_id, JobAction.PAUSE, actor=actor, reason=reason)

    async def resume(self, job_id: str, reason: Optional[str] = None, actor: str = "admin") -> SyncJob:
        job = await self._transition(job_id, JobAction.RESUME, actor=actor, reason=reason)
        self._pool_for(job).put(job.id, job.priority)
        return job

    async def cancel(self, job_id: str, reason: Optional[str] = None, actor: str = "admin") -> SyncJob:
        return await self._transition(job_id, JobAction.CANCEL, actor=actor, reason=reason)

    # --- Queries ---

    def get_job(self, job_id: str) -> SyncJob:
        return self.registry.get(job_id)

    def list_jobs(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[SyncJob]:
        return sorted(self.registry.jobs(kind=kind, status=status), key=lambda job: job.created_at)

    def queue_stats(self) -> dict:
        jobs = self.registry.jobs()
        return {
            "pools": {
                kind: {"pending": pool.pending, "active": pool.active, "concurrency": pool.concurrency}
                for kind, pool in self.pools.items()
            },
            "statuses": dict(Counter(job.status for job in jobs)),
            "priorities": priority_stats(jobs)["by_priority"],
            "circuit": self.caller.breaker.get_status() if self.caller.breaker else None,
        }

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> SyncJob:
        """
        Wait until the job reaches a terminal status.

        Raises:
            JobNotFoundError
            asyncio.TimeoutError: still running after `timeout` seconds
        """
        job = self.registry.get(job_id)
        if job.is_terminal:
            return job
        await asyncio.wait_for(self._finished_event(job_id).wait(), timeout=timeout)
        return self.registry.get(job_id)

    # --- Worker side ---

    def _pool_for(self, job: SyncJob) -> WorkerPool:
        return self.pools[job.kind]

    def _finished_event(self, job_id: str) -> asyncio.Event:
        event = self._finished.get(job_id)
        if event is None:
            event = self._finished[job_id] = asyncio.Event()
        return event

    async def _transition(self, job_id: str, action: JobAction, **kwargs) -> SyncJob:
        job = await self.registry.transition(job_id, action, **kwargs)
        if job.is_terminal:
            # Wake waiters and forget the event
            event = self._finished.pop(job_id, None)
            if event is not None:
                event.set()
        return job

    async def _run_job(self, job_id: str) -> None:
        try:
            job = self.registry.get(job_id)
        except JobNotFoundError:
            logger.warning(f"Dequeued unknown job {job_id}")
            return
        if job.job_status != JobStatus.QUEUED:
            logger.debug(f"Skipping job {job_id} in status {job.status}")
            return

        started = {}
        try:
            job = await self._transition(job_id, JobAction.START, actor="worker", expected=[JobStatus.QUEUED],
                                         mutate=lambda job: started.update(attempt=job.attempts))
        except StateTransitionError as e:
            logger.info(f"Job {job_id} not started: {e}")
            return

        attempt = started["attempt"]
        if job.job_status != JobStatus.ACTIVE or job.attempts != attempt:
            # Paused, cancelled or restarted before this run got going
            return
        token = self.registry.cancel_token(job_id)
        resuming = job.cursor is not None

        async def on_progress(progress: ScanProgress) -> None:
            if not await self.registry.record_progress(job_id, progress, attempt):
                # Cancelled, paused or superseded by a newer run
                token.set()

        try:
            options = self._scan_options(job)
            result = await self.scan.run(
                options["filter"],
                options["batch_size"],
                on_progress,
                update_out_of_stock=options["update_out_of_stock"],
                batch_delay=options["batch_delay"],
                after_key=job.cursor,
                start_counts=(job.scanned, job.resolved, job.skipped) if resuming else None,
                total_estimate=job.total_estimate if resuming else None,
                cancel_token=token,
            )
        except JobFatalError as e:
            logger.error(f"Job {job_id} hit a fatal error: {e}")
            await self._fail(job_id, f"{type(e).__name__}: {e}", context=e.context)
            return
        except Exception as e:
            logger.exception(f"Job {job_id} attempt {attempt} failed: {e}")
            await self._handle_failure(job_id, e, attempt)
            return

        await self._complete(job_id, result, attempt)

    def _scan_options(self, job: SyncJob) -> dict:
        """
        Read the stored run configuration.

        Raises:
            JobFatalError: the stored configuration cannot be run; retrying
                would hit the same problem
        """
        config = job.config or {}
        try:
            options = {
                "filter": InventoryFilter.from_config(config.get("filter")),
                "batch_size": int(config.get("batch_size") or self.settings.DEFAULT_BATCH_SIZE),
                "batch_delay": float(config.get("batch_delay", self.settings.DEFAULT_BATCH_DELAY) or 0),
                "update_out_of_stock": bool(config.get("update_out_of_stock", True)),
            }
        except (TypeError, ValueError) as e:
            raise JobFatalError(f"Invalid job configuration: {e}", context={"config": config}) from e
        if options["batch_size"] <= 0 or options["batch_delay"] < 0:
            raise JobFatalError(
                "Invalid job configuration: batch_size must be positive and batch_delay non-negative",
                context={"config": config},
            )
        return options

    async def _complete(self, job_id: str, result: ScanResult, attempt: int) -> None:
        job = self.registry.get(job_id)
        if job.job_status != JobStatus.ACTIVE or job.attempts != attempt:
            # Paused, cancelled or restarted while the last page was running
            logger.info(f"Job {job_id} stopped in status {job.status}")
            return
        if result.stopped:
            await self._handle_failure(job_id, RuntimeError(f"scan stopped unexpectedly ({result.stop_reason})"), attempt)
            return

        summary = result.to_dict()

        def apply_result(job: SyncJob) -> None:
            job.scanned = result.scanned
            job.resolved = result.resolved
            job.skipped = result.skipped
            job.total_estimate = result.total_estimate
            job.cursor = result.last_key
            job.result = summary
            job.error = None

        try:
            await self._transition(job_id, JobAction.COMPLETE, actor="worker",
                                   expected=[JobStatus.ACTIVE], mutate=apply_result)
        except StateTransitionError as e:
            logger.info(f"Job {job_id} finished but could not be completed: {e}")

    async def _handle_failure(self, job_id: str, error: Exception, attempt: int) -> None:
        job = self.registry.get(job_id)
        if job.job_status != JobStatus.ACTIVE or job.attempts != attempt:
            # Stopped, or already restarted by a later run
            return
        message = f"{type(error).__name__}: {error}"

        if job.attempts >= job.max_attempts:
            await self._fail(job_id, message, context={"attempts": job.attempts})
            return

        backoff = (job.config or {}).get("backoff") or {}
        options = QueueOptions(
            attempts=job.max_attempts,
            backoff_type=backoff.get("type", "exponential"),
            backoff_delay=backoff.get("delay", self.settings.JOB_RETRY_BASE_DELAY),
        )
        delay = options.retry_delay(job.attempts, max_delay=self.settings.JOB_RETRY_MAX_DELAY)

        def schedule(job: SyncJob) -> None:
            job.error = message
            job.scheduled_for = utc_now() + timedelta(seconds=delay)

        try:
            job = await self._transition(job_id, JobAction.RETRY, actor="worker", reason=message,
                                         expected=[JobStatus.ACTIVE], mutate=schedule)
        except StateTransitionError as e:
            logger.info(f"Job {job_id} not retried: {e}")
            return
        logger.warning(f"Job {job_id} will retry in {delay:.1f}s (attempt {job.attempts}/{job.max_attempts})")
        self._requeue_later(job, delay)

    async def _fail(self, job_id: str, message: str, context: Optional[dict] = None) -> None:
        def record_error(job: SyncJob) -> None:
            job.error = message
            job.result = {
                "error": message,
                "context": context or {},
                "progress": job.progress,
                "cursor": job.cursor,
            }

        try:
            await self._transition(job_id, JobAction.FAIL, actor="worker", reason=message,
                                   expected=[JobStatus.ACTIVE], mutate=record_error)
        except StateTransitionError as e:
            logger.info(f"Job {job_id} not failed: {e}")

    def _requeue_later(self, job: SyncJob, delay: float) -> None:
        pool = self._pool_for(job)
        if delay <= 0:
            pool.put(job.id, job.priority)
            return

        async def requeue() -> None:
            await asyncio.sleep(delay)
            pool.put(job.id, job.priority)

        task = asyncio.create_task(requeue())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
