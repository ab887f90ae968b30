from __future__ import annotations

import base64
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping, Tuple, Union

from PIL import Image

from .geometry import clamp


@dataclass(frozen=True)
class ViewportTransform:
    """Scale and translation of the displayed image, translation in unscaled display units."""

    scale: float = 1.0
    translate_x: float = 0.0
    translate_y: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.scale == 1.0 and self.translate_x == 0.0 and self.translate_y == 0.0

    def css(self) -> str:
        return f"scale({self.scale:g}) translate({self.translate_x:g}px, {self.translate_y:g}px)"

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ViewportTransform":
        return ViewportTransform(
            scale=float(data.get("scale", 1.0)),
            translate_x=float(data.get("translate_x", 0.0)),
            translate_y=float(data.get("translate_y", 0.0)),
        )


@dataclass(frozen=True)
class ContainerSize:
    width: float
    height: float


@dataclass(frozen=True)
class SourceImageSize:
    natural_width: int
    natural_height: int

    @property
    def aspect(self) -> float:
        if self.natural_height <= 0:
            return 0.0
        return self.natural_width / self.natural_height

    @staticmethod
    def of(image: Image.Image) -> "SourceImageSize":
        width, height = image.size
        return SourceImageSize(width, height)


@dataclass(frozen=True)
class PanGesture:
    pointer_start: Tuple[float, float]
    translate_at_start: Tuple[float, float]


@dataclass(frozen=True)
class CropRegion:
    """Rectangle in source-pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CropRegion":
        return CropRegion(
            x=data["x"],
            y=data["y"],
            width=data["width"],
            height=data["height"],
        )


@dataclass(frozen=True)
class OutputImage:
    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    def save(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        target.write_bytes(self.data)
        return target


def fit_display_size(container: ContainerSize, source: SourceImageSize) -> Tuple[float, float]:
    """Largest aspect-preserving size of ``source`` that fits inside ``container``."""
    if container.width <= 0 or container.height <= 0:
        return (0.0, 0.0)
    if source.natural_width <= 0 or source.natural_height <= 0:
        return (0.0, 0.0)
    aspect = source.aspect
    display_w = float(container.width)
    display_h = display_w / aspect
    if display_h > container.height:
        display_h = float(container.height)
        display_w = display_h * aspect
    return (display_w, display_h)


def max_translate(scale: float, container: ContainerSize, source: SourceImageSize) -> Tuple[float, float]:
    """Largest ``|translate|`` per axis that keeps the scaled image covering the container."""
    if not scale or not math.isfinite(scale):
        scale = 1.0
    display_w, display_h = fit_display_size(container, source)
    max_x = max(0.0, (display_w * scale - container.width) / 2.0) / scale
    max_y = max(0.0, (display_h * scale - container.height) / 2.0) / scale
    return (max_x, max_y)


def clamp_scale(scale: float, min_scale: float = 1.0, max_scale: float = 10.0) -> float:
    if math.isnan(scale):
        return min_scale
    return clamp(scale, min_scale, max_scale)


def clamp_transform(
    transform: ViewportTransform,
    container: ContainerSize,
    source: SourceImageSize,
    min_scale: float = 1.0,
    max_scale: float = 10.0,
) -> ViewportTransform:
    scale = clamp_scale(transform.scale, min_scale, max_scale)
    max_x, max_y = max_translate(scale, container, source)
    tx = transform.translate_x if math.isfinite(transform.translate_x) else 0.0
    ty = transform.translate_y if math.isfinite(transform.translate_y) else 0.0
    # Normalise -0.0 so snapshots compare and serialise cleanly.
    return ViewportTransform(
        scale=scale,
        translate_x=clamp(tx, -max_x, max_x) + 0.0,
        translate_y=clamp(ty, -max_y, max_y) + 0.0,
    )
