"""
CompletionBarrier - Quorum Detection and At-Most-Once Finalization

`check` may be called any number of times, concurrently and from different
processes. The conditional pending -> processing update in the store is the
only admission point to composition; every caller that loses it returns
without side effects.

The claim happens on the first check that sees quorum, and the compositor
sees exactly the results present at that moment. Runs that land afterwards
are rejected, so which runs vote depends on arrival order when signals are
delivered as each run lands.
"""

import traceback
from typing import Optional

from src.core.config import settings
from src.core.exceptions import (
    CompositionError,
    ConcurrencyConflict,
    InsufficientDataError,
)
from src.core.logging import LogContext, get_logger
from src.core.metrics import record_barrier_check, record_job_completion, track_stage_latency
from src.engines.aggregation.compositor import ConsensusCompositor
from src.engines.aggregation.store import AggregationJobStore
from src.modules.aggregation.models import AggregationJob, JobStatus

logger = get_logger(__name__)

INSUFFICIENT_RESULTS = "insufficient results"
FINALIZE_INTERRUPTED = "finalization interrupted"


class CompletionBarrier:
    """Claims a job once quorum is met and runs the compositor for it."""

    def __init__(self, store: AggregationJobStore, compositor: ConsensusCompositor):
        self.store = store
        self.compositor = compositor

    def check(self, job_id: str) -> bool:
        """
        Finalize the job if it has reached quorum and nobody else has claimed it.

        Returns:
            True only for the caller that claimed and finalized the job.
        """
        with LogContext(job_id=job_id, stage="barrier"):
            job = self.store.get_job(job_id)
            if job is None:
                logger.warning("barrier_job_not_found")
                record_barrier_check("not_found")
                return False

            if job.status != JobStatus.PENDING.value:
                record_barrier_check("already_resolved")
                return False

            if job.results_count < job.quorum_required:
                logger.info(
                    "barrier_awaiting_results",
                    results_count=job.results_count,
                    quorum_required=job.quorum_required
                )
                record_barrier_check("awaiting")
                return False

            try:
                self.store.claim(job_id)
            except ConcurrencyConflict:
                logger.debug("barrier_claim_lost")
                record_barrier_check("conflict")
                return False

            logger.info("barrier_claimed", results_count=job.results_count)
            record_barrier_check("claimed")
            self._finalize(job_id, quorum=job.quorum_required)
            return True

    def force_finalize(self, job_id: str, min_results: Optional[int] = None) -> bool:
        """
        Administrative finalize for a watchdog once runs stop arriving.

        Composes with whatever results exist when there are at least
        `min_results` of them (default: FORCE_FINALIZE_MIN_RESULTS, or the
        job's quorum when unset). The vote threshold is then
        min(quorum_required, results). Otherwise the job fails with
        "insufficient results".

        Returns:
            True if this call moved the job to a terminal state.
        """
        with LogContext(job_id=job_id, stage="force_finalize"):
            job = self.store.require_job(job_id)
            if job.status != JobStatus.PENDING.value:
                logger.info("force_finalize_skipped", status=job.status)
                return False

            if min_results is None:
                min_results = settings.FORCE_FINALIZE_MIN_RESULTS
            if min_results is None:
                min_results = job.quorum_required
            min_results = max(1, min_results)

            count = job.results_count
            if count < min_results:
                try:
                    self.store.fail_pending(job_id, INSUFFICIENT_RESULTS)
                except ConcurrencyConflict:
                    logger.debug("force_finalize_claim_lost")
                    return False
                logger.warning(
                    "aggregation_failed",
                    error=INSUFFICIENT_RESULTS,
                    results_count=count,
                    min_results=min_results
                )
                record_job_completion(JobStatus.FAILED.value)
                return True

            try:
                self.store.claim(job_id)
            except ConcurrencyConflict:
                logger.debug("force_finalize_claim_lost")
                return False

            quorum = min(job.quorum_required, count)
            logger.info(
                "force_finalize_claimed",
                results_count=count,
                quorum_required=job.quorum_required,
                effective_quorum=quorum
            )
            self._finalize(job_id, quorum=quorum)
            return True

    def _finalize(self, job_id: str, quorum: int):
        """Compose and write the terminal state. Caller must hold the claim."""
        try:
            # Re-read after the claim: appends stop at `processing`, so this
            # snapshot is the final results list.
            job: AggregationJob = self.store.require_job(job_id)
            results = self.store.load_results(job)

            with track_stage_latency("compose"):
                final_mask = self.compositor.compose(
                    results,
                    job.source_width,
                    job.source_height,
                    quorum,
                )
        except (InsufficientDataError, CompositionError) as e:
            self.store.mark_failed(job_id, e.message)
            logger.warning("aggregation_failed", error=e.message, error_type=type(e).__name__)
            record_job_completion(JobStatus.FAILED.value)
            return
        except Exception as e:
            self.store.mark_failed(job_id, f"Aggregation failed: {e}")
            logger.error(
                "aggregation_unexpected_error",
                error=str(e),
                traceback=traceback.format_exc()
            )
            record_job_completion(JobStatus.FAILED.value)
            raise

        self.store.mark_complete(job_id, final_mask)
        logger.info("aggregation_completed", runs=len(results), quorum=quorum)
        record_job_completion(JobStatus.COMPLETE.value)
