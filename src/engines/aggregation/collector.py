"""
ResultCollector - Run Ingestion

Decodes one run's payload, appends it to the job with bounded optimistic
retries and signals the CompletionBarrier without waiting on it.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Union

from src.core.config import settings
from src.core.exceptions import (
    AppendConflictError,
    JobClosedError,
    JobNotFoundError,
    ValidationError,
)
from src.core.logging import LogContext, get_logger
from src.core.metrics import record_region_rejection, record_run_submission
from src.engines.aggregation.codec import decode_region
from src.engines.aggregation.schemas import RegionMask, RunResult
from src.engines.aggregation.store import AggregationJobStore

logger = get_logger(__name__)

RunPayload = Union[List[Any], Dict[str, Any], bytes, str, None]


def decode_run(run_payload: RunPayload) -> RunResult:
    """
    Decode a run payload into a RunResult.

    Accepted shapes:
    - a list of region objects (the raw inference output)
    - {"regions": [...]} with an optional "error"
    - {"error": "..."} for a run whose worker failed
    - a single region object

    Invalid regions are logged and dropped. A run without valid regions is
    an empty run; it is still recorded but contributes no votes.
    """
    error = None
    if isinstance(run_payload, dict):
        error = run_payload.get("error")
        if "regions" in run_payload:
            raw_regions = run_payload.get("regions") or []
        elif "box_2d" in run_payload:
            raw_regions = [run_payload]
        else:
            raw_regions = []
    elif isinstance(run_payload, (list, tuple)):
        raw_regions = list(run_payload)
    elif run_payload is None:
        raw_regions = []
    else:
        # JSON document (bytes/str) holding a single region
        raw_regions = [run_payload]

    if not isinstance(raw_regions, list):
        error = error or "regions is not a list"
        raw_regions = []

    regions: List[RegionMask] = []
    for index, raw in enumerate(raw_regions):
        try:
            regions.append(decode_region(raw))
        except ValidationError as e:
            record_region_rejection()
            logger.warning(
                "region_rejected",
                region_index=index,
                error=e.message,
                details=e.details
            )

    if not regions and error is None and raw_regions:
        error = "no valid regions"

    return RunResult(regions=regions, error=str(error) if error is not None else None)


class ResultCollector:
    """Appends decoded runs to aggregation jobs."""

    def __init__(
        self,
        store: AggregationJobStore,
        signal: Callable[[str], Any],
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.store = store
        self.signal = signal
        self.max_retries = settings.APPEND_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.APPEND_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    def submit(self, job_id: str, run_payload: RunPayload) -> Optional[RunResult]:
        """
        Record one run and signal the barrier.

        Returns:
            The recorded RunResult, or None when the job is unknown or closed.

        Raises:
            AppendConflictError: concurrent writers kept winning for max_retries attempts
        """
        with LogContext(job_id=job_id, stage="collect"):
            run = decode_run(run_payload)

            count = self._append(job_id, run)
            if count is None:
                return None

            logger.info(
                "run_appended",
                results_count=count,
                regions=len(run.regions),
                empty_run=run.is_empty
            )
            record_run_submission("empty" if run.is_empty else "accepted")

            self._fire_signal(job_id)
            return run

    def _append(self, job_id: str, run: RunResult) -> Optional[int]:
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.store.append_result(job_id, run)
            except JobNotFoundError:
                logger.warning("run_dropped", reason="job_not_found")
                record_run_submission("job_not_found")
                return None
            except JobClosedError as e:
                logger.warning("run_dropped", reason="job_closed", error=e.message)
                record_run_submission("job_closed")
                return None
            except AppendConflictError:
                logger.info("append_conflict", attempt=attempt, max_retries=self.max_retries)
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * attempt)

        record_run_submission("conflict")
        raise AppendConflictError(
            f"Append failed after {self.max_retries} attempts",
            job_id=job_id
        )

    def _fire_signal(self, job_id: str):
        # Dispatch failures are recoverable: the watchdog re-checks pending jobs.
        try:
            self.signal(job_id)
        except Exception as e:
            logger.warning("barrier_signal_failed", error=str(e), error_type=type(e).__name__)
