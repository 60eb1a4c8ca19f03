"""
ConsensusCompositor - Per-Pixel Majority Vote over Projected Region Masks

Steps:
1. Filter runs without a usable first region
2. Denormalize each box from the 0..1000 space to canvas pixels
3. Project each local raster onto a canvas-sized plane
4. Count "on" votes per pixel
5. Keep pixels with votes >= quorum
6. Encode the binary canvas
"""

import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from src.core.config import settings
from src.core.exceptions import (
    CompositionError,
    InsufficientDataError,
    ValidationError,
)
from src.core.logging import get_logger
from src.core.metrics import composition_duration_seconds
from src.engines.aggregation.codec import binarize, decode_raster, encode_raster
from src.engines.aggregation.schemas import RegionMask, RunResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class PixelBox:
    """A denormalized box in canvas pixel space."""
    x: int
    y: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


def _floor_div(numerator: int, denominator: int) -> int:
    return numerator // denominator


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def denormalize_box(
    box_2d: Sequence[int],
    width: int,
    height: int,
    scale: Optional[int] = None,
) -> PixelBox:
    """
    Map (y_min, x_min, y_max, x_max) in 0..scale to canvas pixels.

    Start coordinates are floored and extents ceiled so adjacent regions never
    leave a one-pixel gap at a shared boundary. Integer arithmetic keeps the
    mapping exact (333/1000 of 100 px is 33, not 33.300000000000004).
    """
    if scale is None:
        scale = settings.BOX_SCALE
    y_min, x_min, y_max, x_max = (int(v) for v in box_2d)
    return PixelBox(
        x=_floor_div(x_min * width, scale),
        y=_floor_div(y_min * height, scale),
        width=_ceil_div((x_max - x_min) * width, scale),
        height=_ceil_div((y_max - y_min) * height, scale),
    )


def project_region(
    region: RegionMask,
    width: int,
    height: int,
    threshold: Optional[int] = None,
) -> Optional[np.ndarray]:
    """
    Place a region's local raster on a width x height boolean canvas.

    Returns None when the box denormalizes to an empty extent.

    Raises:
        CompositionError: the raster cannot be decoded
    """
    box = denormalize_box(region.box_2d, width, height)
    if box.is_empty:
        return None

    canvas = np.zeros((height, width), dtype=bool)
    _paste(canvas, _resample(region, box, threshold), box)
    return canvas


def _resample(region: RegionMask, box: PixelBox, threshold: Optional[int]) -> np.ndarray:
    try:
        raster = decode_raster(region.mask)
    except ValidationError as e:
        raise CompositionError(
            f"Region '{region.label}' raster could not be decoded: {e.message}",
            details={"box_2d": list(region.box_2d)}
        )

    if raster.shape != (box.height, box.width):
        raster = cv2.resize(raster, (box.width, box.height), interpolation=cv2.INTER_LINEAR)
    return binarize(raster, threshold)


def _paste(canvas: np.ndarray, local: np.ndarray, box: PixelBox):
    """Write `local` at (box.x, box.y), clipped to the canvas. Adds into integer canvases."""
    height, width = canvas.shape
    x_end = min(box.x + box.width, width)
    y_end = min(box.y + box.height, height)
    if x_end <= box.x or y_end <= box.y:
        return

    window = local[: y_end - box.y, : x_end - box.x]
    if canvas.dtype == np.bool_:
        canvas[box.y:y_end, box.x:x_end] = window
    else:
        canvas[box.y:y_end, box.x:x_end] += window


class ConsensusCompositor:
    """Combines run results into one consensus mask."""

    def __init__(self, threshold: Optional[int] = None):
        self.threshold = settings.MASK_BINARIZE_THRESHOLD if threshold is None else threshold

    def usable_regions(self, results: Iterable[RunResult], width: int, height: int) -> List[Tuple[RegionMask, PixelBox]]:
        """Step 1: first region per run, skipping empty runs and degenerate boxes."""
        usable = []
        for index, run in enumerate(results):
            region = run.primary_region
            if region is None or not region.mask:
                logger.debug("run_skipped", run_index=index, reason="empty_run")
                continue
            if region.is_degenerate:
                logger.info("run_skipped", run_index=index, reason="degenerate_box", box_2d=list(region.box_2d))
                continue
            box = denormalize_box(region.box_2d, width, height)
            if box.is_empty:
                logger.info("run_skipped", run_index=index, reason="empty_extent", box_2d=list(region.box_2d))
                continue
            usable.append((region, box))
        return usable

    def vote(self, results: Sequence[RunResult], width: int, height: int) -> Tuple[np.ndarray, int]:
        """
        Steps 1-4: per-pixel vote counts.

        Returns:
            (votes, runs_used) where votes is a uint16 height x width array

        Raises:
            InsufficientDataError: no run has a usable region
            CompositionError: a raster cannot be decoded
        """
        usable = self.usable_regions(results, width, height)
        if not usable:
            raise InsufficientDataError("no usable masks", details={"runs": len(results)})

        # Summing directly is equivalent to stacking N projected canvases and
        # keeps memory at one canvas regardless of N.
        votes = np.zeros((height, width), dtype=np.uint16)
        for region, box in usable:
            local = _resample(region, box, self.threshold)
            _paste(votes, local.astype(np.uint16), box)
        return votes, len(usable)

    def compose(
        self,
        results: Sequence[RunResult],
        width: int,
        height: int,
        quorum: int,
    ) -> bytes:
        """
        Combine runs into the consensus mask: pixel on iff votes >= quorum.

        Returns:
            PNG bytes of a width x height single-channel 0/255 raster
        """
        if width <= 0 or height <= 0:
            raise CompositionError(f"Invalid canvas {width}x{height}")
        if quorum < 1:
            raise CompositionError(f"Invalid quorum {quorum}")

        start = time.time()
        votes, runs_used = self.vote(results, width, height)
        consensus = votes >= quorum
        encoded = encode_raster(consensus)
        duration = time.time() - start
        composition_duration_seconds.observe(duration)

        logger.info(
            "composition_completed",
            runs_total=len(results),
            runs_used=runs_used,
            quorum=quorum,
            on_pixels=int(consensus.sum()),
            canvas=f"{width}x{height}",
            duration_ms=int(duration * 1000)
        )
        return encoded
