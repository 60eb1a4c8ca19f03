"""
AggregationJob Model with Consensus State Tracking

One row per source image:
- Accumulated run results (append-only, versioned for optimistic concurrency)
- Quorum requirement and source dimensions (fixed at creation)
- Terminal state: final mask or error, never both
"""

import uuid
from enum import Enum
from sqlalchemy import LargeBinary
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp for every persisted time column."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Aggregation job status states."""
    PENDING = "pending"           # Collecting runs
    PROCESSING = "processing"     # Claimed by exactly one finalizer
    COMPLETE = "complete"         # Final mask written
    FAILED = "failed"             # Error written

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


class AggregationJob(SQLModel, table=True):
    """
    Persisted state of one consensus aggregation.

    `results` and `status` are the only shared mutable fields; they are
    written exclusively through AggregationJobStore conditional updates.
    """
    __tablename__ = "mask_aggregation_jobs"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    status: str = Field(default=JobStatus.PENDING.value, index=True)

    # Fixed at creation
    source_width: int
    source_height: int
    quorum_required: int
    expected_runs: int

    # Accumulated runs, see RunResult.to_record()
    results: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    results_version: int = Field(default=0)

    # Incremented only by the claimed finalize path
    compose_count: int = Field(default=0)

    # Terminal outputs
    final_mask: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    error_message: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    purged_at: Optional[datetime] = None

    @property
    def source_dimensions(self) -> Dict[str, int]:
        return {"width": self.source_width, "height": self.source_height}

    @property
    def results_count(self) -> int:
        return len(self.results or [])

    @property
    def public_status(self) -> str:
        """Status as seen by consumers: the claim window is reported as pending."""
        if self.status == JobStatus.PROCESSING.value:
            return JobStatus.PENDING.value
        return self.status

    def to_response_dict(self, include_mask: bool = True) -> Dict[str, Any]:
        """Convert to API response format."""
        # Imported lazily: the codec pulls in the imaging stack
        from src.engines.aggregation.codec import encode_mask_string

        final_mask = None
        if include_mask and self.status == JobStatus.COMPLETE.value and self.final_mask:
            final_mask = encode_mask_string(self.final_mask)

        return {
            "id": self.id,
            "status": self.public_status,
            "source_dimensions": self.source_dimensions,
            "quorum_required": self.quorum_required,
            "expected_runs": self.expected_runs,
            "results_received": self.results_count,
            "final_mask": final_mask,
            "error": self.error_message if self.status == JobStatus.FAILED.value else None,
            "purged": self.purged_at is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None
        }
