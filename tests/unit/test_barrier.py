import threading
from unittest.mock import MagicMock, patch

import pytest

from src.core.exceptions import CompositionError
from src.engines.aggregation.barrier import INSUFFICIENT_RESULTS, CompletionBarrier
from src.engines.aggregation.compositor import ConsensusCompositor
from src.engines.aggregation.schemas import RegionMask, RunResult
from src.modules.aggregation.models import JobStatus
from tests.helpers import read_png, solid_mask


def full_run() -> RunResult:
    return RunResult(regions=[RegionMask(label="item", box_2d=(0, 0, 1000, 1000), mask=solid_mask(2, 2))])


def job_with_runs(store, runs: int, quorum: int = 2, expected: int = 3, empty: int = 0):
    job = store.create_job(width=6, height=4, quorum_required=quorum, expected_runs=expected)
    for _ in range(runs):
        store.append_result(job.id, full_run())
    for _ in range(empty):
        store.append_result(job.id, RunResult(error="worker failed"))
    return job


class CountingCompositor(ConsensusCompositor):
    def __init__(self):
        super().__init__()
        self.calls = 0
        self._lock = threading.Lock()

    def compose(self, *args, **kwargs):
        with self._lock:
            self.calls += 1
        return super().compose(*args, **kwargs)


# =============================================================================
# check
# =============================================================================

def test_check_below_quorum_is_noop(store):
    job = job_with_runs(store, runs=1, quorum=2)
    compositor = CountingCompositor()

    assert CompletionBarrier(store, compositor).check(job.id) is False

    assert compositor.calls == 0
    assert store.require_job(job.id).status == JobStatus.PENDING.value


def test_check_at_quorum_completes(store):
    job = job_with_runs(store, runs=2, quorum=2)

    assert CompletionBarrier(store, ConsensusCompositor()).check(job.id) is True

    done = store.require_job(job.id)
    assert done.status == JobStatus.COMPLETE.value
    assert done.compose_count == 1
    assert done.error_message is None
    assert read_png(done.final_mask).shape == (4, 6)
    assert read_png(done.final_mask).all()


def test_repeated_checks_compose_once(store):
    job = job_with_runs(store, runs=3, quorum=2)
    before = store.require_job(job.id).results
    compositor = CountingCompositor()
    barrier = CompletionBarrier(store, compositor)

    outcomes = [barrier.check(job.id) for _ in range(5)]

    assert outcomes == [True, False, False, False, False]
    assert compositor.calls == 1
    done = store.require_job(job.id)
    assert done.compose_count == 1
    assert done.results == before


def test_concurrent_checks_compose_once(store):
    job = job_with_runs(store, runs=3, quorum=2)
    compositor = CountingCompositor()
    start = threading.Barrier(8)
    outcomes = []

    def worker():
        # Separate barrier instances, as separate Celery workers would have
        barrier = CompletionBarrier(store, compositor)
        start.wait()
        outcomes.append(barrier.check(job.id))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(True) == 1
    assert compositor.calls == 1
    assert store.require_job(job.id).compose_count == 1


def test_check_unknown_job(store):
    assert CompletionBarrier(store, ConsensusCompositor()).check("missing") is False


def test_no_usable_masks_fails_job(store):
    job = job_with_runs(store, runs=0, quorum=2, empty=2)

    assert CompletionBarrier(store, ConsensusCompositor()).check(job.id) is True

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "no usable masks"
    assert failed.final_mask is None


def test_composition_error_fails_job_without_mask(store):
    job = job_with_runs(store, runs=2, quorum=2)
    compositor = MagicMock()
    compositor.compose.side_effect = CompositionError("raster could not be decoded")

    CompletionBarrier(store, compositor).check(job.id)

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "raster could not be decoded"
    assert failed.final_mask is None
    assert failed.compose_count == 1


def test_unexpected_error_fails_job_and_propagates(store):
    job = job_with_runs(store, runs=2, quorum=2)
    compositor = MagicMock()
    compositor.compose.side_effect = RuntimeError("canvas too large")

    with pytest.raises(RuntimeError):
        CompletionBarrier(store, compositor).check(job.id)

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message.startswith("Aggregation failed:")


def test_failure_reading_results_after_claim_fails_job(store):
    job = job_with_runs(store, runs=2, quorum=2)
    compositor = CountingCompositor()

    with patch.object(store, "load_results", side_effect=RuntimeError("connection reset")):
        with pytest.raises(RuntimeError):
            CompletionBarrier(store, compositor).check(job.id)

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "Aggregation failed: connection reset"
    assert failed.final_mask is None
    assert compositor.calls == 0


# =============================================================================
# force_finalize
# =============================================================================

def test_force_finalize_insufficient_results_fails(store):
    # One run failed and the third never reported back
    job = store.create_job(width=6, height=4, quorum_required=3, expected_runs=3)
    store.append_result(job.id, full_run())
    store.append_result(job.id, RunResult(error="worker failed"))
    compositor = CountingCompositor()

    assert CompletionBarrier(store, compositor).force_finalize(job.id) is True

    failed = store.require_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == INSUFFICIENT_RESULTS
    assert failed.final_mask is None
    assert compositor.calls == 0


def test_force_finalize_with_relaxed_minimum_composes(store):
    job = store.create_job(width=6, height=4, quorum_required=3, expected_runs=3)
    store.append_result(job.id, full_run())
    store.append_result(job.id, full_run())

    assert CompletionBarrier(store, ConsensusCompositor()).force_finalize(job.id, min_results=2) is True

    done = store.require_job(job.id)
    assert done.status == JobStatus.COMPLETE.value
    # Vote threshold drops to the number of results present
    assert read_png(done.final_mask).all()
    assert done.compose_count == 1


def test_force_finalize_after_completion_is_noop(store):
    job = job_with_runs(store, runs=2, quorum=2)
    barrier = CompletionBarrier(store, ConsensusCompositor())
    barrier.check(job.id)

    assert barrier.force_finalize(job.id) is False
    assert store.require_job(job.id).compose_count == 1
