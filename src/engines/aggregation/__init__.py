"""
Consensus Mask Aggregation Engine

Codec -> Store -> Collector -> Barrier -> Compositor, plus the Expander
helper used by mask consumers.
"""

from src.engines.aggregation.barrier import CompletionBarrier
from src.engines.aggregation.collector import ResultCollector, decode_run
from src.engines.aggregation.compositor import ConsensusCompositor, denormalize_box
from src.engines.aggregation.expander import dilate, expand_mask
from src.engines.aggregation.schemas import RegionMask, RunResult
from src.engines.aggregation.store import AggregationJobStore

__all__ = [
    "AggregationJobStore",
    "CompletionBarrier",
    "ConsensusCompositor",
    "RegionMask",
    "ResultCollector",
    "RunResult",
    "decode_run",
    "denormalize_box",
    "dilate",
    "expand_mask",
]
