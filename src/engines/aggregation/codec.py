"""
RegionMask Codec

Ingress validation and raster I/O for region masks:
- Normalizes box_2d (flat or nested pairs) and checks the 0..1000 range
- Decodes base64 / data-URL PNG masks into an intensity plane
- Encodes binary rasters as lossless single-channel PNG
"""

import io
import json
import base64
import binascii
import numbers
from typing import Any, Dict, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.engines.aggregation.schemas import RegionMask, Box2D

DATA_URL_MARKER = ";base64,"


# =============================================================================
# Mask string <-> bytes
# =============================================================================

def decode_mask_string(value: Union[str, bytes]) -> bytes:
    """Decode a base64 mask, with or without a `data:image/...;base64,` prefix."""
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            raise ValidationError("Mask is not ASCII base64")
    if value.startswith("data:"):
        _, sep, value = value.partition(DATA_URL_MARKER)
        if not sep:
            raise ValidationError("Mask data URL is not base64 encoded")
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Mask is not valid base64: {e}")


def encode_mask_string(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


# =============================================================================
# Raster I/O
# =============================================================================

def decode_raster(data: bytes) -> np.ndarray:
    """
    Decode image bytes into the 2D uint8 plane used for voting.

    Transparent pixels count as "off": any alpha is composited onto black
    before the red channel is taken.
    """
    if not data:
        raise ValidationError("Mask raster is empty")
    if len(data) > settings.MAX_MASK_SIZE_BYTES:
        raise ValidationError(
            "Mask raster exceeds maximum size",
            details={"size_bytes": len(data), "max_bytes": settings.MAX_MASK_SIZE_BYTES}
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode in ("L", "1"):
                plane = img.convert("L")
            else:
                rgba = img.convert("RGBA")
                background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
                plane = Image.alpha_composite(background, rgba).getchannel("R")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ValidationError(f"Mask raster could not be decoded: {e}")

    raster = np.asarray(plane, dtype=np.uint8)
    if raster.ndim != 2 or raster.size == 0:
        raise ValidationError("Mask raster has no pixels")
    return np.ascontiguousarray(raster)


def encode_raster(mask: np.ndarray) -> bytes:
    """Encode a 2D raster (bool or uint8) as a lossless grayscale PNG."""
    mask = np.asarray(mask)
    if mask.ndim != 2:
        raise ValueError(f"Expected a 2D raster, got shape {mask.shape}")
    if mask.dtype == np.bool_:
        mask = mask.astype(np.uint8) * 255
    elif mask.dtype != np.uint8:
        mask = np.clip(mask, 0, 255).astype(np.uint8)

    buffer = io.BytesIO()
    Image.fromarray(mask).save(buffer, format="PNG")
    return buffer.getvalue()


def binarize(raster: np.ndarray, threshold: int = None) -> np.ndarray:
    """Boolean plane: True where intensity exceeds the threshold."""
    if threshold is None:
        threshold = settings.MASK_BINARIZE_THRESHOLD
    return np.asarray(raster) > threshold


# =============================================================================
# Region validation
# =============================================================================

def _coerce_coordinate(value: Any) -> int:
    # bool is a numbers.Number subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError(f"box_2d coordinate is not numeric: {value!r}")
    if isinstance(value, float) and not np.isfinite(value):
        raise ValidationError(f"box_2d coordinate is not finite: {value!r}")
    return int(round(value))


def normalize_box(raw: Any) -> Box2D:
    """
    Validate a box into (y_min, x_min, y_max, x_max).

    Accepts the flat form [y_min, x_min, y_max, x_max] and the nested form
    [[y_min, x_min], [y_max, x_max]]. Zero-area boxes pass; the compositor
    drops them. Inverted or out-of-range boxes are rejected.
    """
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"box_2d must be a list, got {type(raw).__name__}")

    if len(raw) == 2 and all(isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in raw):
        raw = [raw[0][0], raw[0][1], raw[1][0], raw[1][1]]

    if len(raw) != 4:
        raise ValidationError(f"box_2d must have 4 coordinates, got {len(raw)}")

    y_min, x_min, y_max, x_max = (_coerce_coordinate(v) for v in raw)

    scale = settings.BOX_SCALE
    for name, value in (("y_min", y_min), ("x_min", x_min), ("y_max", y_max), ("x_max", x_max)):
        if value < 0 or value > scale:
            raise ValidationError(
                f"box_2d {name}={value} is outside [0, {scale}]",
                details={"box_2d": [y_min, x_min, y_max, x_max]}
            )

    if y_max < y_min or x_max < x_min:
        raise ValidationError(
            "box_2d is inverted",
            details={"box_2d": [y_min, x_min, y_max, x_max]}
        )

    return (y_min, x_min, y_max, x_max)


def decode_region(raw: Union[bytes, str, Dict[str, Any]]) -> RegionMask:
    """
    Decode one inference region into a validated RegionMask.

    `raw` may be the JSON document (bytes or str) or an already parsed dict
    with keys `label`, `box_2d` and `mask`.

    Raises:
        ValidationError: malformed JSON, box or raster
    """
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError(f"Region payload is not valid JSON: {e}")

    if not isinstance(raw, dict):
        raise ValidationError(f"Region payload must be an object, got {type(raw).__name__}")

    if "box_2d" not in raw:
        raise ValidationError("Region payload is missing box_2d")
    mask_value = raw.get("mask")
    if not mask_value or not isinstance(mask_value, (str, bytes)):
        raise ValidationError("Region payload is missing mask")

    label = raw.get("label")
    box_2d = normalize_box(raw["box_2d"])
    raster = decode_raster(decode_mask_string(mask_value))

    return RegionMask(
        label=str(label) if label is not None else "",
        box_2d=box_2d,
        mask=encode_raster(raster),
    )
