"""
MaskExpander - grows a binary mask by a margin for downstream inpainting.
"""

from typing import Optional

import cv2
import numpy as np

from src.core.config import settings
from src.core.logging import get_logger, with_logging
from src.engines.aggregation.codec import binarize, decode_raster, encode_raster

logger = get_logger(__name__)

# 4-connected neighbourhood: each pass ORs the mask with its N/S/E/W shifts
CROSS_KERNEL = cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))


def dilate(mask: np.ndarray, iterations: int) -> np.ndarray:
    """
    Grow the "on" region by about one pixel of radius per iteration.

    The result has the same shape and dtype as `mask`. Pixels outside the
    canvas never contribute, so a full canvas stays full.
    """
    if iterations < 0:
        raise ValueError(f"iterations must be >= 0, got {iterations}")

    mask = np.asarray(mask)
    if mask.ndim != 2:
        raise ValueError(f"Expected a 2D mask, got shape {mask.shape}")
    if iterations == 0 or mask.size == 0:
        return mask.copy()

    is_bool = mask.dtype == np.bool_
    plane = (mask > 0).astype(np.uint8) * 255 if is_bool else mask.astype(np.uint8, copy=False)

    grown = cv2.dilate(
        plane,
        CROSS_KERNEL,
        iterations=iterations,
        borderType=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
    return grown > 0 if is_bool else grown


def expansion_radius(width: int, height: int, ratio: Optional[float] = None) -> int:
    """Margin in pixels: a fraction of the shorter side, at least one pixel."""
    if ratio is None:
        ratio = settings.EXPANDER_RATIO
    return max(1, int(round(min(width, height) * ratio)))


@with_logging("expand")
def expand_mask(
    mask_png: bytes,
    ratio: Optional[float] = None,
    max_dimension: Optional[int] = None,
) -> bytes:
    """
    Binarize, dilate by `expansion_radius` and re-encode a mask PNG.

    Masks whose longest side exceeds `max_dimension` are dilated at reduced
    resolution and scaled back with nearest-neighbour sampling.
    """
    if max_dimension is None:
        max_dimension = settings.EXPANDER_MAX_DIMENSION

    plane = binarize(decode_raster(mask_png)).astype(np.uint8) * 255
    original_height, original_width = plane.shape

    scale = 1.0
    if max(original_width, original_height) > max_dimension:
        scale = max_dimension / max(original_width, original_height)
        working_size = (
            max(1, int(round(original_width * scale))),
            max(1, int(round(original_height * scale))),
        )
        plane = cv2.resize(plane, working_size, interpolation=cv2.INTER_AREA)
        plane = np.where(plane > settings.MASK_BINARIZE_THRESHOLD, 255, 0).astype(np.uint8)
        logger.info("mask_downscaled_for_expansion", width=working_size[0], height=working_size[1])

    height, width = plane.shape
    radius = expansion_radius(width, height, ratio)
    expanded = dilate(plane, radius)

    if scale < 1.0:
        expanded = cv2.resize(
            expanded,
            (original_width, original_height),
            interpolation=cv2.INTER_NEAREST,
        )

    logger.info(
        "mask_expanded",
        radius_px=radius,
        width=original_width,
        height=original_height
    )
    return encode_raster(expanded)
