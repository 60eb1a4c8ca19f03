"""Raster helpers shared by the unit and e2e tests."""

import io
import base64

import numpy as np
from PIL import Image


def png_bytes(plane: np.ndarray) -> bytes:
    """Encode a 2D uint8 (or bool) array as a grayscale PNG."""
    plane = np.asarray(plane)
    if plane.dtype == np.bool_:
        plane = plane.astype(np.uint8) * 255
    buffer = io.BytesIO()
    Image.fromarray(plane.astype(np.uint8)).save(buffer, format="PNG")
    return buffer.getvalue()


def solid_mask(width: int, height: int, value: int = 255) -> bytes:
    return png_bytes(np.full((height, width), value, dtype=np.uint8))


def mask_string(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def read_png(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as img:
        return np.asarray(img.convert("L"))
