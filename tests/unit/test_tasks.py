from datetime import timedelta
from unittest.mock import patch

from sqlmodel import Session

from src.engines.aggregation.barrier import CompletionBarrier
from src.engines.aggregation.compositor import ConsensusCompositor
from src.engines.aggregation.schemas import RunResult
from src.modules.aggregation.models import AggregationJob, JobStatus
from src.pipeline import tasks


def age_job(engine, job_id: str, seconds: int):
    with Session(engine) as session:
        row = session.get(AggregationJob, job_id)
        row.created_at = row.created_at - timedelta(seconds=seconds)
        session.add(row)
        session.commit()


def test_sweep_rechecks_quorum_and_forces_stale_jobs(store, engine):
    ready = store.create_job(width=4, height=4, quorum_required=1, expected_runs=2)
    store.append_result(ready.id, RunResult(error="x"))
    stale = store.create_job(width=4, height=4, quorum_required=2, expected_runs=2)
    age_job(engine, stale.id, 3600)
    fresh = store.create_job(width=4, height=4, quorum_required=2, expected_runs=2)

    with patch.object(tasks, "get_job_store", return_value=store), \
            patch.object(tasks, "dispatch_barrier_check") as dispatch, \
            patch.object(tasks.force_finalize_job, "delay") as force:
        outcome = tasks.sweep_stalled_jobs()

    dispatch.assert_called_once_with(ready.id)
    force.assert_called_once_with(stale.id)
    assert outcome == {"rechecked": [ready.id], "forced": [stale.id], "expired": []}
    assert fresh.id not in outcome["forced"]


def test_check_task_runs_barrier(store):
    job = store.create_job(width=4, height=4, quorum_required=1, expected_runs=1)
    store.append_result(job.id, RunResult(error="x"))
    barrier = CompletionBarrier(store, ConsensusCompositor())

    with patch.object(tasks, "get_completion_barrier", return_value=barrier):
        result = tasks.check_aggregation_job.apply(args=[job.id]).get()

    assert result == {"job_id": job.id, "finalized": True}
    assert store.require_job(job.id).status == JobStatus.FAILED.value


def test_force_finalize_task(store):
    job = store.create_job(width=4, height=4, quorum_required=2, expected_runs=2)
    barrier = CompletionBarrier(store, ConsensusCompositor())

    with patch.object(tasks, "get_completion_barrier", return_value=barrier):
        result = tasks.force_finalize_job.apply(args=[job.id]).get()

    assert result["finalized"] is True
    failed = store.require_job(job.id)
    assert failed.error_message == "insufficient results"


def test_sweep_fails_jobs_stuck_in_processing(store, engine):
    job = store.create_job(width=4, height=4, quorum_required=1, expected_runs=1)
    store.append_result(job.id, RunResult(error="x"))
    store.claim(job.id)
    with Session(engine) as session:
        row = session.get(AggregationJob, job.id)
        row.claimed_at = row.claimed_at - timedelta(hours=1)
        session.add(row)
        session.commit()

    with patch.object(tasks, "get_job_store", return_value=store), \
            patch.object(tasks, "dispatch_barrier_check") as dispatch, \
            patch.object(tasks.force_finalize_job, "delay") as force:
        outcome = tasks.sweep_stalled_jobs()

    dispatch.assert_not_called()
    force.assert_not_called()
    assert outcome["expired"] == [job.id]

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "finalization interrupted"

    # Once failed the job is terminal and later checks are no-ops
    assert CompletionBarrier(store, ConsensusCompositor()).check(job.id) is False
