from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlmodel import Session

from src.core.exceptions import (
    AppendConflictError,
    ConcurrencyConflict,
    JobClosedError,
    JobNotFoundError,
    ValidationError,
)
from src.engines.aggregation.schemas import RegionMask, RunResult
from src.modules.aggregation.models import AggregationJob, JobStatus
from tests.helpers import solid_mask


def a_run(label: str = "item") -> RunResult:
    return RunResult(regions=[RegionMask(label=label, box_2d=(0, 0, 1000, 1000), mask=solid_mask(2, 2))])


def test_create_job_defaults(store):
    job = store.create_job(width=64, height=32, quorum_required=2, expected_runs=3)

    assert job.status == JobStatus.PENDING.value
    assert job.source_dimensions == {"width": 64, "height": 32}
    assert job.results == []
    assert job.results_version == 0
    assert job.compose_count == 0


@pytest.mark.parametrize("kwargs", [
    dict(width=0, height=10, quorum_required=1, expected_runs=1),
    dict(width=10, height=10, quorum_required=0, expected_runs=1),
    dict(width=10, height=10, quorum_required=4, expected_runs=3),
])
def test_create_job_rejects_invalid_parameters(store, kwargs):
    with pytest.raises(ValidationError):
        store.create_job(**kwargs)


def test_append_bumps_version_and_round_trips(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=3)

    assert store.append_result(job.id, a_run("first")) == 1
    assert store.append_result(job.id, RunResult(error="timeout")) == 2

    stored = store.require_job(job.id)
    assert stored.results_version == 2
    results = store.load_results(stored)
    assert results[0].regions[0].label == "first"
    assert results[0].regions[0].mask == solid_mask(2, 2)
    assert results[1].is_empty
    assert results[1].error == "timeout"


def test_append_rejects_stale_version(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=3)
    stale = store.require_job(job.id)
    store.append_result(job.id, a_run())

    # Simulate a writer that read the row before the append above landed
    with patch.object(store, "require_job", return_value=stale):
        with pytest.raises(AppendConflictError):
            store.append_result(job.id, a_run())

    assert store.require_job(job.id).results_count == 1


def test_append_to_unknown_job(store):
    with pytest.raises(JobNotFoundError):
        store.append_result("missing", a_run())


def test_append_stops_at_expected_runs(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    store.append_result(job.id, a_run())

    with pytest.raises(JobClosedError):
        store.append_result(job.id, a_run())


def test_append_rejected_once_claimed(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=3)
    store.append_result(job.id, a_run())
    store.claim(job.id)

    with pytest.raises(JobClosedError):
        store.append_result(job.id, a_run())


def test_claim_succeeds_once(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)

    store.claim(job.id)
    with pytest.raises(ConcurrencyConflict):
        store.claim(job.id)

    claimed = store.require_job(job.id)
    assert claimed.status == JobStatus.PROCESSING.value
    assert claimed.public_status == JobStatus.PENDING.value
    assert claimed.claimed_at is not None


def test_finish_requires_processing(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)

    with pytest.raises(ConcurrencyConflict):
        store.mark_complete(job.id, b"png")

    store.claim(job.id)
    store.mark_complete(job.id, b"png")

    done = store.require_job(job.id)
    assert done.status == JobStatus.COMPLETE.value
    assert done.final_mask == b"png"
    assert done.compose_count == 1
    with pytest.raises(ConcurrencyConflict):
        store.mark_failed(job.id, "late")


def test_mark_failed_without_composition_keeps_count(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    store.claim(job.id)

    store.mark_failed(job.id, "gave up", composed=False)

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "gave up"
    assert failed.final_mask is None
    assert failed.compose_count == 0


def test_fail_pending_only_from_pending(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)

    store.fail_pending(job.id, "insufficient results")
    with pytest.raises(ConcurrencyConflict):
        store.fail_pending(job.id, "insufficient results")

    assert store.require_job(job.id).status == JobStatus.FAILED.value


def test_find_pending_jobs_by_age(store, engine):
    old = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    fresh = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    done = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    store.fail_pending(done.id, "x")

    with Session(engine) as session:
        row = session.get(AggregationJob, old.id)
        row.created_at = row.created_at - timedelta(hours=1)
        session.add(row)
        session.commit()

    assert {j.id for j in store.find_pending_jobs()} == {old.id, fresh.id}
    assert [j.id for j in store.find_pending_jobs(older_than=timedelta(minutes=5))] == [old.id]


def test_purge_strips_binary_fields(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=2)
    store.append_result(job.id, a_run("kept"))

    with pytest.raises(JobClosedError):
        store.purge_binary_fields(job.id)

    store.claim(job.id)
    store.mark_complete(job.id, b"png")
    purged = store.purge_binary_fields(job.id)

    assert purged.final_mask is None
    assert purged.purged_at is not None
    assert purged.status == JobStatus.COMPLETE.value
    region = purged.results[0]["regions"][0]
    assert region["mask"] is None
    assert region["label"] == "kept"
    assert region["box_2d"] == [0, 0, 1000, 1000]


def test_timestamps_round_trip_through_lifecycle(store):
    job = store.create_job(width=8, height=8, quorum_required=1, expected_runs=2)
    store.append_result(job.id, a_run())
    store.claim(job.id)
    store.mark_complete(job.id, b"png")

    done = store.require_job(job.id)
    assert done.created_at <= done.updated_at
    assert done.claimed_at <= done.completed_at

    response = done.to_response_dict(include_mask=False)
    assert datetime.fromisoformat(response["completed_at"]) == done.completed_at

    # Run timestamps are stored in the JSON column with their UTC offset
    submitted = store.load_results(done)[0].submitted_at
    assert submitted.utcoffset() == timedelta(0)


def test_create_job_rejects_too_many_expected_runs(store):
    with pytest.raises(ValidationError):
        store.create_job(width=8, height=8, quorum_required=1, expected_runs=70000)


def age_claim(engine, job_id: str, seconds: int):
    with Session(engine) as session:
        row = session.get(AggregationJob, job_id)
        row.claimed_at = row.claimed_at - timedelta(seconds=seconds)
        session.add(row)
        session.commit()


def test_fail_stalled_processing_expires_old_claims(store, engine):
    stuck = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    store.claim(stuck.id)
    age_claim(engine, stuck.id, 3600)
    busy = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)
    store.claim(busy.id)
    waiting = store.create_job(width=8, height=8, quorum_required=1, expected_runs=1)

    expired = store.fail_stalled_processing(timedelta(minutes=5), "finalization interrupted")

    assert expired == [stuck.id]
    failed = store.require_job(stuck.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.public_status == JobStatus.FAILED.value
    assert failed.error_message == "finalization interrupted"
    assert failed.compose_count == 0
    assert store.require_job(busy.id).status == JobStatus.PROCESSING.value
    assert store.require_job(waiting.id).status == JobStatus.PENDING.value

    # A finalizer that wakes up late cannot overwrite the failure
    with pytest.raises(ConcurrencyConflict):
        store.mark_complete(stuck.id, b"png")
    assert store.fail_stalled_processing(timedelta(minutes=5), "finalization interrupted") == []
