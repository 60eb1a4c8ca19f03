"""
Celery Tasks for Consensus Mask Aggregation

Implements:
- Run ingestion for inference workers that report through the queue
- Fire-and-forget barrier checks, executed on the compositor queue
- Watchdog sweep that force-finalizes stalled jobs and expires dead claims
"""

import traceback
from datetime import timedelta
from typing import Any, Dict, Optional

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.database import engine
from src.core.exceptions import AppendConflictError
from src.core.logging import get_logger, set_job_context, clear_job_context
from src.core.metrics import record_job_completion, track_latency
from src.engines.aggregation.barrier import FINALIZE_INTERRUPTED, CompletionBarrier
from src.engines.aggregation.collector import ResultCollector
from src.engines.aggregation.compositor import ConsensusCompositor
from src.engines.aggregation.store import AggregationJobStore
from src.modules.aggregation.models import JobStatus

logger = get_logger(__name__)


# =============================================================================
# Wiring
# =============================================================================

def get_job_store() -> AggregationJobStore:
    return AggregationJobStore(engine)


def get_completion_barrier() -> CompletionBarrier:
    return CompletionBarrier(get_job_store(), ConsensusCompositor())


def dispatch_barrier_check(job_id: str):
    """Queue a barrier check without waiting for it."""
    check_aggregation_job.delay(job_id)


def get_result_collector() -> ResultCollector:
    return ResultCollector(get_job_store(), signal=dispatch_barrier_check)


# =============================================================================
# Ingestion
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.submit_run_result",
    max_retries=3,
    default_retry_delay=2,
    acks_late=True
)
def submit_run_result(self, job_id: str, payload: Any) -> Dict[str, Any]:
    """Record one inference run. Used by workers that report through Celery."""
    set_job_context(job_id, "collect")
    try:
        run = get_result_collector().submit(job_id, payload)
        return {
            "job_id": job_id,
            "accepted": run is not None,
            "regions_accepted": len(run.regions) if run else 0,
        }
    except AppendConflictError as e:
        logger.warning("task_submit_conflict", error=e.message, retries=self.request.retries)
        raise self.retry(exc=e)
    finally:
        clear_job_context()


# =============================================================================
# Barrier
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.check_aggregation_job",
    max_retries=0,
    acks_late=True
)
def check_aggregation_job(self, job_id: str) -> Dict[str, Any]:
    """Run the completion barrier for one job. Safe to deliver any number of times."""
    set_job_context(job_id, "barrier")
    try:
        finalized = get_completion_barrier().check(job_id)
        return {"job_id": job_id, "finalized": finalized}
    except Exception as e:
        logger.error("task_barrier_unexpected_error", error=str(e), traceback=traceback.format_exc())
        raise
    finally:
        clear_job_context()


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.force_finalize_job",
    max_retries=0,
    acks_late=True
)
def force_finalize_job(self, job_id: str, min_results: Optional[int] = None) -> Dict[str, Any]:
    set_job_context(job_id, "force_finalize")
    try:
        finalized = get_completion_barrier().force_finalize(job_id, min_results=min_results)
        return {"job_id": job_id, "finalized": finalized}
    finally:
        clear_job_context()


# =============================================================================
# Watchdog
# =============================================================================

@celery_app.task(name="src.pipeline.tasks.sweep_stalled_jobs")
@track_latency("watchdog")
def sweep_stalled_jobs() -> Dict[str, Any]:
    """
    Recover jobs whose runs stopped arriving, whose signal was lost, or
    whose finalizer died after claiming them.

    - pending with >= quorum results: re-dispatch the barrier check
    - pending and older than STALE_JOB_SECONDS: force finalize
    - processing and claimed more than STALLED_CLAIM_SECONDS ago: fail
    """
    store = get_job_store()
    rechecked = []
    forced = []

    for job in store.find_pending_jobs():
        if job.results_count >= job.quorum_required:
            dispatch_barrier_check(job.id)
            rechecked.append(job.id)

    stale_after = timedelta(seconds=settings.STALE_JOB_SECONDS)
    for job in store.find_pending_jobs(older_than=stale_after):
        if job.id in rechecked:
            continue
        force_finalize_job.delay(job.id)
        forced.append(job.id)

    expired = store.fail_stalled_processing(
        older_than=timedelta(seconds=settings.STALLED_CLAIM_SECONDS),
        error_message=FINALIZE_INTERRUPTED,
    )
    for _ in expired:
        record_job_completion(JobStatus.FAILED.value)

    if rechecked or forced or expired:
        logger.info("watchdog_sweep", rechecked=len(rechecked), forced=len(forced), expired=len(expired))

    return {"rechecked": rechecked, "forced": forced, "expired": expired}
