"""
FastAPI Dependencies for the Aggregation Engine

Provides dependency injection for:
- AggregationJobStore (per-request, shared engine)
- ResultCollector (signals the barrier through Celery)
- CompletionBarrier (admin force finalize)

Overridable in tests via app.dependency_overrides.
"""

from fastapi import Depends

from src.engines.aggregation.barrier import CompletionBarrier
from src.engines.aggregation.collector import ResultCollector
from src.engines.aggregation.compositor import ConsensusCompositor
from src.engines.aggregation.store import AggregationJobStore
from src.pipeline import tasks


def get_job_store() -> AggregationJobStore:
    return tasks.get_job_store()


def get_result_collector(
    store: AggregationJobStore = Depends(get_job_store),
) -> ResultCollector:
    return ResultCollector(store, signal=tasks.dispatch_barrier_check)


def get_completion_barrier(
    store: AggregationJobStore = Depends(get_job_store),
) -> CompletionBarrier:
    return CompletionBarrier(store, ConsensusCompositor())
