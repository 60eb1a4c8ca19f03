"""
Aggregation Module - Consensus Mask Jobs

Contains the persisted job model and its status enum.
"""

from src.modules.aggregation.models import AggregationJob, JobStatus

__all__ = ["AggregationJob", "JobStatus"]
