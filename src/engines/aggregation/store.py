"""
AggregationJobStore - Persisted Job State with Conditional Updates

Every mutation of `results` or `status` is a single conditional UPDATE
against the job row, so the guarantees hold across processes:
- append: UPDATE ... WHERE results_version = :seen AND status = 'pending'
- claim:  UPDATE ... WHERE status = 'pending'
- finish: UPDATE ... WHERE status = 'processing'
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from src.core.config import settings
from src.core.exceptions import (
    AppendConflictError,
    ConcurrencyConflict,
    JobClosedError,
    JobNotFoundError,
    ValidationError,
)
from src.core.logging import get_logger
from src.engines.aggregation.schemas import RunResult
from src.modules.aggregation.models import AggregationJob, JobStatus, utc_now

logger = get_logger(__name__)


class AggregationJobStore:
    """Repository for AggregationJob rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # =========================================================================
    # Creation / reads
    # =========================================================================

    def create_job(
        self,
        width: int,
        height: int,
        quorum_required: int,
        expected_runs: int,
        job_id: Optional[str] = None,
    ) -> AggregationJob:
        if width <= 0 or height <= 0:
            raise ValidationError(f"Invalid source dimensions {width}x{height}")
        if quorum_required < 1:
            raise ValidationError("quorum_required must be at least 1")
        if expected_runs > settings.MAX_EXPECTED_RUNS:
            raise ValidationError(
                f"expected_runs cannot exceed {settings.MAX_EXPECTED_RUNS}",
                details={"expected_runs": expected_runs}
            )
        if quorum_required > expected_runs:
            raise ValidationError(
                "quorum_required cannot exceed expected_runs",
                details={"quorum_required": quorum_required, "expected_runs": expected_runs}
            )

        job = AggregationJob(
            source_width=width,
            source_height=height,
            quorum_required=quorum_required,
            expected_runs=expected_runs,
            results=[],
        )
        if job_id:
            job.id = job_id

        with Session(self.engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)

        logger.info(
            "aggregation_job_created",
            job_id=job.id,
            width=width,
            height=height,
            quorum_required=quorum_required,
            expected_runs=expected_runs
        )
        return job

    def get_job(self, job_id: str) -> Optional[AggregationJob]:
        with Session(self.engine) as session:
            return session.get(AggregationJob, job_id)

    def require_job(self, job_id: str) -> AggregationJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def load_results(self, job: AggregationJob) -> List[RunResult]:
        return [RunResult.from_record(record) for record in job.results or []]

    def find_pending_jobs(self, older_than: Optional[timedelta] = None) -> List[AggregationJob]:
        """Pending jobs, optionally only those created before now - older_than."""
        statement = select(AggregationJob).where(AggregationJob.status == JobStatus.PENDING.value)
        if older_than is not None:
            statement = statement.where(AggregationJob.created_at < utc_now() - older_than)
        with Session(self.engine) as session:
            return list(session.exec(statement).all())

    # =========================================================================
    # Append (ResultCollector)
    # =========================================================================

    def append_result(self, job_id: str, run: RunResult) -> int:
        """
        Append one run with a single compare-and-swap on results_version.

        Returns:
            The new number of results.

        Raises:
            JobNotFoundError: unknown job
            JobClosedError: job is not pending or already holds expected_runs results
            AppendConflictError: another writer appended first; caller may retry
        """
        job = self.require_job(job_id)

        if job.status != JobStatus.PENDING.value:
            raise JobClosedError(f"Job is {job.status}; results are closed", job_id=job_id)

        current = list(job.results or [])
        if len(current) >= job.expected_runs:
            raise JobClosedError(
                f"Job already holds {len(current)}/{job.expected_runs} expected runs",
                job_id=job_id
            )

        new_results = current + [run.to_record()]
        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.results_version == job.results_version)
            .where(AggregationJob.status == JobStatus.PENDING.value)
            .values(
                results=new_results,
                results_version=job.results_version + 1,
                updated_at=utc_now(),
            )
        )

        with Session(self.engine) as session:
            outcome = session.execute(statement)
            session.commit()

        if outcome.rowcount != 1:
            raise AppendConflictError(job_id=job_id, details={"seen_version": job.results_version})

        return len(new_results)

    # =========================================================================
    # Claim / finalize (CompletionBarrier)
    # =========================================================================

    def claim(self, job_id: str):
        """Atomically transition pending -> processing.

        Raises:
            ConcurrencyConflict: the job was not pending (another caller won)
        """
        now = utc_now()
        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.PROCESSING.value, claimed_at=now, updated_at=now)
        )
        with Session(self.engine) as session:
            outcome = session.execute(statement)
            session.commit()

        if outcome.rowcount != 1:
            raise ConcurrencyConflict(job_id=job_id)

    def mark_complete(self, job_id: str, final_mask: bytes):
        """processing -> complete, writing the final mask."""
        now = utc_now()
        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.status == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.COMPLETE.value,
                final_mask=final_mask,
                compose_count=AggregationJob.compose_count + 1,
                completed_at=now,
                updated_at=now,
            )
        )
        self._finish(job_id, statement)

    def mark_failed(self, job_id: str, error_message: str, composed: bool = True):
        """processing -> failed, writing the error.

        `composed` is False when no composition was attempted.
        """
        now = utc_now()
        values = dict(
            status=JobStatus.FAILED.value,
            error_message=error_message,
            completed_at=now,
            updated_at=now,
        )
        if composed:
            values["compose_count"] = AggregationJob.compose_count + 1

        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.status == JobStatus.PROCESSING.value)
            .values(**values)
        )
        self._finish(job_id, statement)

    def fail_pending(self, job_id: str, error_message: str):
        """pending -> failed in one conditional update (no composition possible).

        Raises:
            ConcurrencyConflict: the job was no longer pending
        """
        now = utc_now()
        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.FAILED.value,
                error_message=error_message,
                claimed_at=now,
                completed_at=now,
                updated_at=now,
            )
        )
        with Session(self.engine) as session:
            outcome = session.execute(statement)
            session.commit()

        if outcome.rowcount != 1:
            raise ConcurrencyConflict(job_id=job_id)

    def fail_stalled_processing(self, older_than: timedelta, error_message: str) -> List[str]:
        """processing -> failed for claims older than now - older_than.

        Recovers jobs whose finalizer died between claim and finish. Each row
        is moved with its own conditional update, so a finalizer that
        finishes in the meantime keeps its result.
        """
        cutoff = utc_now() - older_than
        statement = (
            select(AggregationJob.id)
            .where(AggregationJob.status == JobStatus.PROCESSING.value)
            .where(AggregationJob.claimed_at < cutoff)
        )
        with Session(self.engine) as session:
            candidates = list(session.exec(statement).all())

        failed = []
        for job_id in candidates:
            now = utc_now()
            transition = (
                update(AggregationJob)
                .where(AggregationJob.id == job_id)
                .where(AggregationJob.status == JobStatus.PROCESSING.value)
                .where(AggregationJob.claimed_at < cutoff)
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=error_message,
                    completed_at=now,
                    updated_at=now,
                )
            )
            with Session(self.engine) as session:
                outcome = session.execute(transition)
                session.commit()
            if outcome.rowcount == 1:
                failed.append(job_id)

        if failed:
            logger.warning("aggregation_claims_expired", jobs=failed, error=error_message)
        return failed

    def _finish(self, job_id: str, statement):
        with Session(self.engine) as session:
            outcome = session.execute(statement)
            session.commit()

        if outcome.rowcount != 1:
            # Only the claim holder finalizes; reaching this means the row
            # left `processing` underneath us.
            raise ConcurrencyConflict(
                "Job is no longer processing",
                job_id=job_id,
                stage="finalize"
            )

    # =========================================================================
    # Consumer purge
    # =========================================================================

    def purge_binary_fields(self, job_id: str) -> AggregationJob:
        """Drop region rasters and the final mask of a terminal job.

        Run metadata (labels, boxes, errors) is kept for diagnostics.
        """
        job = self.require_job(job_id)
        if not JobStatus(job.status).is_terminal:
            raise JobClosedError(f"Job is {job.status}; only terminal jobs can be purged", job_id=job_id)

        stripped = []
        for record in job.results or []:
            regions = [dict(region, mask=None) for region in record.get("regions") or []]
            stripped.append(dict(record, regions=regions))

        now = utc_now()
        statement = (
            update(AggregationJob)
            .where(AggregationJob.id == job_id)
            .where(AggregationJob.status == job.status)
            .values(results=stripped, final_mask=None, purged_at=now, updated_at=now)
        )
        with Session(self.engine) as session:
            session.execute(statement)
            session.commit()

        logger.info("aggregation_job_purged", job_id=job_id, runs=len(stripped))
        return self.require_job(job_id)
