"""Geometry helpers shared by the viewport controller and the crop rasterizer."""

from __future__ import annotations

import math
from typing import Tuple

# Bounding boxes are rounded to this many decimals before taking the ceiling so
# that cos(pi/2) noise never adds a pixel to an exact quarter turn.
_BBOX_DECIMALS = 6


def to_radians(degrees: float) -> float:
    return degrees * math.pi / 180.0


def normalize_rotation(degrees: float) -> float:
    """Fold ``degrees`` into ``[0, 360)``."""
    value = math.fmod(float(degrees), 360.0)
    if value < 0.0:
        value += 360.0
    if value >= 360.0 or value == 0.0:
        return 0.0
    return value


def rotated_bounding_box(width: float, height: float, rotation_degrees: float) -> Tuple[float, float]:
    """Return the axis-aligned ``(width, height)`` of a ``width x height`` box rotated by ``rotation_degrees``."""
    theta = to_radians(rotation_degrees)
    cos_t = abs(math.cos(theta))
    sin_t = abs(math.sin(theta))
    return (cos_t * width + sin_t * height, sin_t * width + cos_t * height)


def canvas_size_for(width: float, height: float, rotation_degrees: float) -> Tuple[int, int]:
    bbox_w, bbox_h = rotated_bounding_box(width, height, rotation_degrees)
    return (
        max(int(math.ceil(round(bbox_w, _BBOX_DECIMALS))), 1),
        max(int(math.ceil(round(bbox_h, _BBOX_DECIMALS))), 1),
    )


def clamp(value: float, lo: float, hi: float) -> float:
    """Clamp ``value`` to the inclusive range ``[lo, hi]``."""
    return max(lo, min(hi, value))
