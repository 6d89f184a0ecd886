# Orchestrator: queues, workers, retries and job control
import asyncio

import pytest

from stocksync.core.enums import JobStatus
from stocksync.core.exceptions import JobFatalError, JobNotFoundError, StateTransitionError, ValidationError
from stocksync.integrations.events import EventType
from stocksync.models.job import SyncJob
from stocksync.services import job_state
from stocksync.services.job_repository import InMemoryJobRepository
from stocksync.services.orchestrator import Orchestrator, SyncJobRequest
from tests.mocks.factories import make_record

WAIT = 5


@pytest.fixture
async def make_orchestrator(inventory_store, mock_channel, event_sink, settings, fast_caller):
    created = []

    def factory(repository=None, **overrides):
        orchestrator = Orchestrator(
            inventory_store,
            mock_channel,
            repository=repository,
            sink=event_sink,
            settings=settings.model_copy(update=overrides) if overrides else settings,
            caller=fast_caller,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.stop()


@pytest.fixture
async def orchestrator(make_orchestrator):
    orchestrator = make_orchestrator()
    await orchestrator.start()
    return orchestrator


def seed(store, channel, count):
    for index in range(count):
        key = f"noxa_O{index}-White-2"
        store.add(make_record(key))
        channel.add_variant(key, f"gid://v/{index}", f"gid://inv/{index}")


async def wait_until(predicate, timeout=WAIT):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


"""
1. Enqueue validation
"""

@pytest.mark.asyncio
@pytest.mark.parametrize("request_data", [
    {"batch_size": 0},
    {"batch_size": 5000},
    {"kind": "nightly"},
    {"unknown_option": True},
    {"variant_keys": []},
    {"variant_keys": ["noxa_A1", "  "]},
    {"min_quantity": 10, "max_quantity": 2},
    {"priority": 11},
])
async def test_invalid_request_creates_no_job(make_orchestrator, request_data):
    orchestrator = make_orchestrator()

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.enqueue(request_data)

    assert exc_info.value.errors
    assert orchestrator.list_jobs() == []


@pytest.mark.asyncio
async def test_enqueue_applies_priority_policy_and_defaults(make_orchestrator, settings):
    orchestrator = make_orchestrator()

    manual = orchestrator.get_job(await orchestrator.enqueue({"kind": "manual"}, actor="ops"))
    scheduled = orchestrator.get_job(await orchestrator.enqueue({"kind": "scheduled"}))
    pinned = orchestrator.get_job(await orchestrator.enqueue({"kind": "batch", "priority": 2, "max_attempts": 1}))

    assert manual.priority == 7
    assert manual.trigger_source == "manual"
    assert manual.max_attempts == 3
    assert manual.config["batch_size"] == settings.DEFAULT_BATCH_SIZE
    assert manual.config["priority_reason"] == "User-initiated operation"
    assert manual.audit[0].actor == "ops"
    assert scheduled.priority == 5
    assert scheduled.trigger_source == "scheduler"
    assert pinned.priority == 2
    assert pinned.max_attempts == 1
    assert all(job.status == "queued" for job in orchestrator.list_jobs())


def test_request_builds_filter():
    request = SyncJobRequest(only_missing_identifiers=True, variant_keys=["noxa_A1-White-2"], min_quantity=1)

    record_filter = request.to_filter()

    assert record_filter.only_missing_identifiers
    assert record_filter.variant_keys == ["noxa_A1-White-2"]
    assert record_filter.min_quantity == 1


"""
2. Running jobs
"""

@pytest.mark.asyncio
async def test_manual_job_runs_to_completion(orchestrator, inventory_store, mock_channel, event_sink):
    seed(inventory_store, mock_channel, 25)

    job_id = await orchestrator.enqueue({"kind": "manual"})
    job = await orchestrator.wait_for(job_id, timeout=WAIT)

    assert job.status == "completed"
    assert (job.scanned, job.resolved, job.skipped) == (25, 25, 0)
    assert job.percentage == 100
    assert job.completed_at is not None
    assert job.result["pages"] == 3
    types = event_sink.types_for(job_id)
    assert types[0] == EventType.QUEUED
    assert types[1] == EventType.ACTIVE
    assert types[-1] == EventType.COMPLETED
    assert types.count(EventType.PROGRESS) == 3


@pytest.mark.asyncio
async def test_empty_scan_completes(orchestrator):
    job = await orchestrator.wait_for(await orchestrator.enqueue({}), timeout=WAIT)

    assert job.status == "completed"
    assert job.scanned == 0


@pytest.mark.asyncio
async def test_filter_is_applied(orchestrator, inventory_store, mock_channel):
    seed(inventory_store, mock_channel, 5)

    job_id = await orchestrator.enqueue({"variant_keys": ["noxa_O1-White-2", "noxa_O3-White-2"]})
    job = await orchestrator.wait_for(job_id, timeout=WAIT)

    assert job.scanned == 2
    assert mock_channel.lookup_calls == [["noxa_O1-White-2", "noxa_O3-White-2"]]


@pytest.mark.asyncio
async def test_higher_priority_runs_first(make_orchestrator, event_sink):
    orchestrator = make_orchestrator(WORKER_CONCURRENCY_MANUAL=1)
    low = await orchestrator.enqueue({"priority": 2})
    high = await orchestrator.enqueue({"priority": 9})
    normal = await orchestrator.enqueue({"priority": 5})

    await orchestrator.start()
    for job_id in (low, high, normal):
        await orchestrator.wait_for(job_id, timeout=WAIT)

    started = [event.job_id for event in event_sink.events if event.event_type == EventType.ACTIVE]
    assert started == [high, normal, low]


"""
3. Retries and failures
"""

@pytest.mark.asyncio
async def test_failed_attempt_is_retried(orchestrator, inventory_store, event_sink, mocker):
    mocker.patch.object(inventory_store, "count_matching", side_effect=[RuntimeError("db blip"), 0])

    job_id = await orchestrator.enqueue({})
    job = await orchestrator.wait_for(job_id, timeout=WAIT)

    assert job.status == "completed"
    assert job.attempts == 2
    assert EventType.RETRYING in event_sink.types_for(job_id)


@pytest.mark.asyncio
async def test_job_fails_after_max_attempts(orchestrator, inventory_store, event_sink, mocker):
    mocker.patch.object(inventory_store, "count_matching", side_effect=RuntimeError("db down"))

    job_id = await orchestrator.enqueue({"max_attempts": 3})
    job = await orchestrator.wait_for(job_id, timeout=WAIT)

    assert job.status == "failed"
    assert job.attempts == 3
    assert "RuntimeError: db down" in job.error
    assert job.result["context"] == {"attempts": 3}
    assert event_sink.types_for(job_id).count(EventType.RETRYING) == 2
    assert event_sink.types_for(job_id)[-1] == EventType.FAILED


@pytest.mark.asyncio
async def test_fatal_error_fails_without_retry(orchestrator, inventory_store, mocker):
    mocker.patch.object(inventory_store, "find_page",
                        side_effect=JobFatalError("corrupt page", context={"after_key": None}))

    job = await orchestrator.wait_for(await orchestrator.enqueue({"max_attempts": 5}), timeout=WAIT)

    assert job.status == "failed"
    assert job.attempts == 1
    assert "corrupt page" in job.error
    assert job.result["context"] == {"after_key": None}


"""
4. Pause, resume and cancel
"""

@pytest.mark.asyncio
async def test_cancel_queued_job(make_orchestrator):
    orchestrator = make_orchestrator()
    job_id = await orchestrator.enqueue({})

    job = await orchestrator.cancel(job_id, reason="not needed", actor="ops")

    assert job.status == "cancelled"
    assert job.completed_at is not None
    assert job.result == {"cancelled": True, "cause": "not needed", "actor": "ops"}
    await orchestrator.start()
    await orchestrator.pools["manual"].join()
    assert orchestrator.get_job(job_id).attempts == 0
    assert (await orchestrator.wait_for(job_id, timeout=WAIT)) is job


@pytest.mark.asyncio
async def test_cancel_during_scan_stops_the_job(orchestrator, inventory_store, mock_channel):
    seed(inventory_store, mock_channel, 20)
    job_ids = []

    async def cancel_on_first_lookup(_keys):
        if len(mock_channel.lookup_calls) == 1:
            await orchestrator.cancel(job_ids[0], reason="operator stop")

    mock_channel.before_lookup = cancel_on_first_lookup
    job_ids.append(await orchestrator.enqueue({"batch_size": 5}))

    job = await orchestrator.wait_for(job_ids[0], timeout=WAIT)
    await orchestrator.pools["manual"].join()

    assert job.status == "cancelled"
    assert job.completed_at is not None
    assert job.scanned < 20
    assert len(mock_channel.lookup_calls) == 1
    assert job.result["cause"] == "operator stop"


@pytest.mark.asyncio
async def test_pause_then_resume_finishes_the_scan(orchestrator, inventory_store, mock_channel):
    seed(inventory_store, mock_channel, 20)
    job_ids = []

    async def pause_on_first_lookup(_keys):
        if len(mock_channel.lookup_calls) == 1:
            await orchestrator.pause(job_ids[0], reason="maintenance")

    mock_channel.before_lookup = pause_on_first_lookup
    job_ids.append(await orchestrator.enqueue({"batch_size": 5}))
    await orchestrator.pools["manual"].join()

    paused = orchestrator.get_job(job_ids[0])
    assert paused.status == "delayed"
    assert paused.completed_at is None

    await orchestrator.resume(job_ids[0], reason="maintenance over")
    job = await orchestrator.wait_for(job_ids[0], timeout=WAIT)

    assert job.status == "completed"
    assert job.scanned == 20
    assert job.resolved == 20
    assert job.attempts == 2
    actions = [entry.action for entry in job.audit]
    assert actions == ["enqueue", "start", "pause", "resume", "start", "complete"]


@pytest.mark.asyncio
async def test_cancel_after_committed_pages_keeps_last_progress(orchestrator, inventory_store, mock_channel,
                                                                event_sink):
    seed(inventory_store, mock_channel, 20)
    job_ids = []

    async def cancel_on_third_lookup(_keys):
        if len(mock_channel.lookup_calls) == 3:
            await orchestrator.cancel(job_ids[0], reason="operator stop")

    mock_channel.before_lookup = cancel_on_third_lookup
    job_ids.append(await orchestrator.enqueue({"batch_size": 5}))

    job = await orchestrator.wait_for(job_ids[0], timeout=WAIT)
    await orchestrator.pools["manual"].join()

    progress = [event.payload for event in event_sink.for_job(job.id) if event.event_type == EventType.PROGRESS]
    assert job.status == "cancelled"
    assert [update["scanned"] for update in progress] == [5, 10]
    assert job.resolved == progress[-1]["resolved"] == 10
    assert job.scanned == 10
    assert job.cursor == progress[-1]["last_key"]
    assert len(mock_channel.lookup_calls) == 3


@pytest.mark.asyncio
async def test_run_superseded_by_resume_cannot_rewind_progress(orchestrator, inventory_store, mock_channel,
                                                               event_sink):
    seed(inventory_store, mock_channel, 20)
    job_ids = []

    async def stall_first_run(_keys):
        calls = len(mock_channel.lookup_calls)
        if calls == 1:
            # The second worker restarts the job while this lookup is in flight
            await orchestrator.pause(job_ids[0], reason="maintenance")
            await orchestrator.resume(job_ids[0], reason="maintenance over")
            await wait_until(lambda: orchestrator.get_job(job_ids[0]).scanned >= 10)
        elif calls == 4:
            await asyncio.sleep(0.2)

    mock_channel.before_lookup = stall_first_run
    job_ids.append(await orchestrator.enqueue({"batch_size": 5}))

    job = await orchestrator.wait_for(job_ids[0], timeout=WAIT)
    await orchestrator.pools["manual"].join()

    scanned = [event.payload["scanned"] for event in event_sink.for_job(job.id)
               if event.event_type == EventType.PROGRESS]
    assert scanned == [5, 10, 15, 20]
    assert job.status == "completed"
    assert (job.scanned, job.resolved) == (20, 20)
    assert job.attempts == 2
    assert [entry.action for entry in job.audit] == ["enqueue", "start", "pause", "resume", "start", "complete"]


@pytest.mark.asyncio
async def test_invalid_commands_are_rejected(orchestrator):
    job = await orchestrator.wait_for(await orchestrator.enqueue({}), timeout=WAIT)

    with pytest.raises(StateTransitionError):
        await orchestrator.resume(job.id)
    with pytest.raises(StateTransitionError):
        await orchestrator.cancel(job.id)
    with pytest.raises(JobNotFoundError):
        await orchestrator.pause("job_missing")


@pytest.mark.asyncio
async def test_wait_for_times_out(make_orchestrator):
    orchestrator = make_orchestrator()
    job_id = await orchestrator.enqueue({})

    with pytest.raises(asyncio.TimeoutError):
        await orchestrator.wait_for(job_id, timeout=0.05)


"""
5. Recovery and stats
"""

def stored_job(job_id, status, **kwargs):
    job = SyncJob(id=job_id, kind="manual", config={"batch_size": 10, "filter": {}}, **kwargs)
    job_state.record_enqueue(job)
    job.status = status
    return job


@pytest.mark.asyncio
async def test_recover_requeues_unfinished_jobs(make_orchestrator, inventory_store, mock_channel):
    seed(inventory_store, mock_channel, 3)
    repository = InMemoryJobRepository()
    await repository.add(stored_job("job_queued", "queued"))
    await repository.add(stored_job("job_active", "active", attempts=1))
    await repository.add(stored_job("job_paused", "delayed"))
    await repository.add(stored_job("job_done", "completed"))
    orchestrator = make_orchestrator(repository=repository)

    requeued = await orchestrator.recover()
    await orchestrator.start()

    assert requeued == 2
    for job_id in ("job_queued", "job_active"):
        job = await orchestrator.wait_for(job_id, timeout=WAIT)
        assert job.status == "completed"
    interrupted = orchestrator.get_job("job_active")
    assert interrupted.audit[1].action == "retry"
    assert interrupted.audit[1].actor == "system"
    assert orchestrator.get_job("job_paused").status == "delayed"
    assert "job_done" not in orchestrator.registry


@pytest.mark.asyncio
@pytest.mark.parametrize("batch_size", ["many", -5])
async def test_unusable_stored_config_fails_without_retry(make_orchestrator, batch_size):
    repository = InMemoryJobRepository()
    broken = stored_job("job_broken", "queued", max_attempts=5)
    broken.config = {"batch_size": batch_size, "filter": {}}
    await repository.add(broken)
    orchestrator = make_orchestrator(repository=repository)

    await orchestrator.recover()
    await orchestrator.start()
    job = await orchestrator.wait_for("job_broken", timeout=WAIT)

    assert job.status == "failed"
    assert job.attempts == 1
    assert "JobFatalError: Invalid job configuration" in job.error
    assert job.result["context"]["config"]["batch_size"] == batch_size


@pytest.mark.asyncio
async def test_finished_jobs_leave_no_bookkeeping(make_orchestrator, inventory_store, mock_channel):
    seed(inventory_store, mock_channel, 3)
    orchestrator = make_orchestrator()
    cancelled = await orchestrator.enqueue({})
    waiter = asyncio.create_task(orchestrator.wait_for(cancelled, timeout=WAIT))
    await asyncio.sleep(0)

    await orchestrator.cancel(cancelled)
    await orchestrator.start()
    done = await orchestrator.enqueue({})
    await orchestrator.wait_for(done, timeout=WAIT)
    await orchestrator.pools["manual"].join()

    assert (await waiter).status == "cancelled"
    assert orchestrator.get_job(done).status == "completed"
    for job_id in (cancelled, done):
        assert job_id not in orchestrator._finished
        assert job_id not in orchestrator.registry._locks
        assert job_id not in orchestrator.registry._tokens


@pytest.mark.asyncio
async def test_queue_stats(make_orchestrator):
    orchestrator = make_orchestrator()
    await orchestrator.enqueue({"kind": "manual"})
    await orchestrator.enqueue({"kind": "batch"})

    stats = orchestrator.queue_stats()

    assert stats["pools"]["manual"]["pending"] == 1
    assert stats["pools"]["batch"]["pending"] == 1
    assert stats["pools"]["scheduled"]["pending"] == 0
    assert stats["statuses"] == {JobStatus.QUEUED.value: 2}
    assert stats["circuit"]["state"] == "closed"
