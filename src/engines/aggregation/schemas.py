from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any, Tuple
from datetime import datetime, timezone


# Box layout: (y_min, x_min, y_max, x_max) in the normalized 0..1000 space
Box2D = Tuple[int, int, int, int]


class RegionMask(BaseModel):
    """One labeled local raster constrained to a normalized bounding box.

    Instances built by the codec are validated; the compositor still
    tolerates degenerate boxes so that persisted data never crashes it.
    """
    label: str = ""
    box_2d: Box2D
    mask: bytes = Field(..., repr=False)  # lossless PNG

    @property
    def is_degenerate(self) -> bool:
        y_min, x_min, y_max, x_max = self.box_2d
        return x_max <= x_min or y_max <= y_min

    def to_record(self) -> Dict[str, Any]:
        from src.engines.aggregation.codec import encode_mask_string

        return {
            "label": self.label,
            "box_2d": list(self.box_2d),
            "mask": encode_mask_string(self.mask) if self.mask else None,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RegionMask":
        from src.engines.aggregation.codec import decode_mask_string

        mask = record.get("mask")
        return cls(
            label=record.get("label") or "",
            box_2d=tuple(record["box_2d"]),
            mask=decode_mask_string(mask) if mask else b"",
        )


class RunResult(BaseModel):
    """Output of one inference run. Only `regions[0]` takes part in the vote."""
    regions: List[RegionMask] = Field(default_factory=list)
    error: Optional[str] = None
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return not self.regions

    @property
    def primary_region(self) -> Optional[RegionMask]:
        """The region used for voting.

        Additional regions are kept for diagnostics but ignored. Whether
        multi-region runs should be unioned instead is an open product
        question; keep the dominant-region behaviour until decided.
        """
        return self.regions[0] if self.regions else None

    def to_record(self) -> Dict[str, Any]:
        return {
            "regions": [region.to_record() for region in self.regions],
            "error": self.error,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RunResult":
        submitted_at = record.get("submitted_at")
        return cls(
            regions=[RegionMask.from_record(r) for r in record.get("regions") or []],
            error=record.get("error"),
            submitted_at=datetime.fromisoformat(submitted_at) if submitted_at else datetime.now(timezone.utc),
        )
