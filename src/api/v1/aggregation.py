"""
Aggregation Endpoints - Consensus Mask Jobs

POST   /api/v1/aggregation/jobs                    - Create a job (orchestration)
POST   /api/v1/aggregation/jobs/{job_id}/runs      - Submit one run result (inference)
GET    /api/v1/aggregation/jobs/{job_id}           - Poll job result (consumer)
GET    /api/v1/aggregation/jobs/{job_id}/mask      - Final mask PNG, optionally expanded
POST   /api/v1/aggregation/jobs/{job_id}/finalize  - Force finalize (watchdog / admin)
DELETE /api/v1/aggregation/jobs/{job_id}/binary    - Purge large binary fields
"""

from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field, model_validator

from src.api.dependencies import get_completion_barrier, get_job_store, get_result_collector
from src.core.config import settings
from src.core.logging import get_logger, LogContext
from src.engines.aggregation.barrier import CompletionBarrier
from src.engines.aggregation.codec import binarize, decode_raster, encode_raster
from src.engines.aggregation.collector import ResultCollector
from src.engines.aggregation.expander import dilate, expand_mask
from src.engines.aggregation.store import AggregationJobStore
from src.modules.aggregation.models import JobStatus

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class SourceDimensions(BaseModel):
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class JobCreateRequest(BaseModel):
    """Job creation from the orchestration layer."""
    source_dimensions: SourceDimensions
    quorum_required: int = Field(default=settings.DEFAULT_QUORUM, ge=1)
    expected_runs: int = Field(default=settings.DEFAULT_EXPECTED_RUNS, ge=1, le=settings.MAX_EXPECTED_RUNS)

    @model_validator(mode="after")
    def check_quorum(self) -> "JobCreateRequest":
        if self.quorum_required > self.expected_runs:
            raise ValueError("quorum_required cannot exceed expected_runs")
        return self


class JobCreateResponse(BaseModel):
    job_id: str
    status: str


class RegionPayload(BaseModel):
    """Loosely typed on purpose: strict validation happens in the codec so a
    bad region only empties its run instead of rejecting the request."""
    label: Optional[str] = None
    box_2d: Any = None
    mask: Optional[str] = None


class RunSubmitRequest(BaseModel):
    """One inference run. Failed runs send `error` and no regions."""
    regions: List[RegionPayload] = Field(default_factory=list)
    error: Optional[str] = None


class RunSubmitResponse(BaseModel):
    job_id: str
    accepted: bool
    regions_accepted: int = 0
    empty_run: bool = False


class JobResultResponse(BaseModel):
    id: str
    status: str
    source_dimensions: Dict[str, int]
    quorum_required: int
    expected_runs: int
    results_received: int
    final_mask: Optional[str] = None  # base64 PNG
    error: Optional[str] = None
    purged: bool = False
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class FinalizeResponse(BaseModel):
    job_id: str
    finalized: bool
    status: str


# =============================================================================
# Endpoints
# =============================================================================
# Plain `def` endpoints: FastAPI runs them in its threadpool, which keeps the
# blocking store and raster work off the event loop.

@router.post("/jobs", response_model=JobCreateResponse, status_code=201)
def create_job(
    request: JobCreateRequest,
    store: AggregationJobStore = Depends(get_job_store),
):
    """Create an aggregation job before dispatching inference runs."""
    job = store.create_job(
        width=request.source_dimensions.width,
        height=request.source_dimensions.height,
        quorum_required=request.quorum_required,
        expected_runs=request.expected_runs,
    )
    return JobCreateResponse(job_id=job.id, status=job.public_status)


@router.post("/jobs/{job_id}/runs", response_model=RunSubmitResponse, status_code=202)
def submit_run(
    job_id: str,
    request: RunSubmitRequest,
    store: AggregationJobStore = Depends(get_job_store),
    collector: ResultCollector = Depends(get_result_collector),
):
    """
    Submit one run's regions.

    Invalid regions are dropped and logged; the run is still recorded.
    The barrier check is queued, not awaited.
    """
    if store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    payload = {
        "regions": [region.model_dump(exclude_none=True) for region in request.regions],
        "error": request.error,
    }
    run = collector.submit(job_id, payload)

    return RunSubmitResponse(
        job_id=job_id,
        accepted=run is not None,
        regions_accepted=len(run.regions) if run else 0,
        empty_run=run.is_empty if run else False,
    )


@router.get("/jobs/{job_id}", response_model=JobResultResponse)
def get_job(
    job_id: str,
    include_mask: bool = Query(True),
    store: AggregationJobStore = Depends(get_job_store),
):
    """
    Poll a job.

    Only `pending`, `complete` (with mask) and `failed` (with error) are ever
    reported.
    """
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return JobResultResponse(**job.to_response_dict(include_mask=include_mask))


@router.get("/jobs/{job_id}/mask")
def get_job_mask(
    job_id: str,
    expand: int = Query(0, ge=0, le=512, description="Dilation iterations"),
    margin: bool = Query(False, description="Grow by a margin proportional to the canvas"),
    store: AggregationJobStore = Depends(get_job_store),
):
    """Final consensus mask as PNG, optionally grown by `expand` pixels or a proportional margin."""
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if job.status != JobStatus.COMPLETE.value:
        raise HTTPException(status_code=409, detail=f"Job is {job.public_status}")
    if not job.final_mask:
        raise HTTPException(status_code=410, detail="Final mask was purged")

    content = job.final_mask
    if margin:
        with LogContext(job_id=job_id):
            content = expand_mask(content)
    if expand:
        with LogContext(job_id=job_id, stage="expand"):
            grown = dilate(binarize(decode_raster(content)), expand)
            content = encode_raster(grown)
            logger.info("mask_served_expanded", iterations=expand)

    return Response(content=content, media_type="image/png")


@router.post("/jobs/{job_id}/finalize", response_model=FinalizeResponse)
def finalize_job(
    job_id: str,
    min_results: Optional[int] = Query(None, ge=1),
    store: AggregationJobStore = Depends(get_job_store),
    barrier: CompletionBarrier = Depends(get_completion_barrier),
):
    """Administrative finalize for jobs whose runs stopped arriving."""
    finalized = barrier.force_finalize(job_id, min_results=min_results)
    job = store.require_job(job_id)
    return FinalizeResponse(job_id=job_id, finalized=finalized, status=job.public_status)


@router.delete("/jobs/{job_id}/binary", response_model=JobResultResponse)
def purge_job_binary(
    job_id: str,
    store: AggregationJobStore = Depends(get_job_store),
):
    """Drop region rasters and the final mask after the consumer has read them."""
    job = store.purge_binary_fields(job_id)
    return JobResultResponse(**job.to_response_dict(include_mask=False))
