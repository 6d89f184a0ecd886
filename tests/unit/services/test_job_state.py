# Job lifecycle state machine tests
import pytest

from stocksync.core.enums import JobAction, JobStatus
from stocksync.core.exceptions import StateTransitionError
from stocksync.models.job import SyncJob
from stocksync.services import job_state


def make_job(status=JobStatus.QUEUED, **kwargs):
    job = SyncJob(id="job-1", kind="manual", **kwargs)
    job_state.record_enqueue(job, actor="tester")
    job.status = JobStatus(status).value
    return job


def drive(job, *actions):
    for action in actions:
        job_state.apply_transition(job, action, actor="tester")
    return job


"""
1. Transition table
"""

@pytest.mark.parametrize("status", list(JobStatus))
@pytest.mark.parametrize("action", [action for action in JobAction if action != JobAction.ENQUEUE])
def test_every_pair_is_either_legal_or_rejected_untouched(status, action):
    if status == JobStatus.DELAYED:
        # A real pause, so resume is legal
        job = drive(make_job(), JobAction.START, JobAction.PAUSE)
    else:
        job = make_job(status)
    audit_before = len(job.audit)
    expected = job_state.TRANSITIONS.get((status, action))

    if expected is None:
        with pytest.raises(StateTransitionError):
            job_state.apply_transition(job, action)
        assert job.status == status.value
        assert len(job.audit) == audit_before
    else:
        entry = job_state.apply_transition(job, action)
        assert job.status == expected.value
        assert len(job.audit) == audit_before + 1
        assert entry.from_status == status.value
        assert entry.to_status == expected.value


@pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
def test_terminal_statuses_have_no_outgoing_edges(status):
    job = make_job(status)

    for action in JobAction:
        assert not job_state.can_transition(job, action)


"""
2. Field updates
"""

def test_start_counts_attempts_and_keeps_first_start_time():
    job = make_job()

    drive(job, JobAction.START)
    first_started = job.started_at
    drive(job, JobAction.RETRY, JobAction.START)

    assert job.attempts == 2
    assert job.started_at == first_started
    assert job.completed_at is None


def test_terminal_transition_sets_completed_at():
    job = drive(make_job(), JobAction.START, JobAction.COMPLETE)

    assert job.status == "completed"
    assert job.completed_at is not None
    assert job.completed_at >= job.started_at


def test_cancel_records_cause_and_actor():
    job = make_job()

    job_state.apply_transition(job, JobAction.CANCEL, actor="ops@example.com", reason="wrong filter")

    assert job.status == "cancelled"
    assert job.result == {"cancelled": True, "cause": "wrong filter", "actor": "ops@example.com"}
    assert job.completed_at is not None


def test_audit_entries_are_sequenced():
    job = drive(make_job(), JobAction.START, JobAction.PAUSE, JobAction.RESUME, JobAction.START)

    assert [entry.action for entry in job.audit] == ["enqueue", "start", "pause", "resume", "start"]
    assert [entry.sequence for entry in job.audit] == [1, 2, 3, 4, 5]
    assert all(entry.actor == "tester" for entry in job.audit)
    assert job.audit[0].from_status is None


"""
3. Resume guard
"""

def test_resume_requires_a_pause():
    job = make_job(JobStatus.DELAYED)

    with pytest.raises(StateTransitionError) as exc_info:
        job_state.apply_transition(job, JobAction.RESUME)

    assert "not paused" in str(exc_info.value)
    assert job.status == "delayed"


def test_second_resume_is_rejected():
    job = drive(make_job(), JobAction.START, JobAction.PAUSE, JobAction.RESUME)

    assert not job_state.can_transition(job, JobAction.RESUME)
    with pytest.raises(StateTransitionError):
        job_state.apply_transition(job, JobAction.RESUME)


def test_pause_resume_cycle_can_repeat():
    job = drive(
        make_job(),
        JobAction.START, JobAction.PAUSE, JobAction.RESUME,
        JobAction.START, JobAction.PAUSE,
    )

    assert job_state.has_unresumed_pause(job)
    drive(job, JobAction.RESUME)
    assert job.status == "queued"
