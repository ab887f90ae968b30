"""Tunable constants for the viewport controller and crop rasterizer."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Union

from PIL import Image

RESAMPLE_FILTERS: Dict[str, int] = {
    "nearest": Image.NEAREST,
    "bilinear": Image.BILINEAR,
    "bicubic": Image.BICUBIC,
}

MIME_TYPES: Dict[str, str] = {
    "PNG": "image/png",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}


@dataclass
class EngineTokens:
    min_scale: float = 1.0
    max_scale: float = 10.0
    wheel_zoom_factor: float = 1.1
    button_zoom_factor: float = 1.5
    output_format: str = "PNG"
    resample: str = "bicubic"
    max_output_pixels: int = 89_478_485

    def __post_init__(self) -> None:
        if self.min_scale <= 0 or self.max_scale < self.min_scale:
            raise ValueError(f"Invalid scale range: [{self.min_scale}, {self.max_scale}]")
        if self.wheel_zoom_factor <= 1.0 or self.button_zoom_factor <= 1.0:
            raise ValueError("Zoom factors must be greater than 1.")
        self.output_format = self.output_format.upper()
        if self.output_format not in MIME_TYPES:
            raise ValueError(f"Unsupported output format: {self.output_format}")
        self.resample = self.resample.lower()
        if self.resample not in RESAMPLE_FILTERS:
            raise ValueError(f"Unknown resample filter: {self.resample}")
        if self.max_output_pixels <= 0:
            raise ValueError("max_output_pixels must be positive.")

    @property
    def mime_type(self) -> str:
        return MIME_TYPES[self.output_format]

    @property
    def resample_filter(self) -> int:
        return RESAMPLE_FILTERS[self.resample]

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @staticmethod
    def from_json(text: str) -> "EngineTokens":
        data: Dict[str, Any] = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Engine config must be a JSON object.")
        defaults = EngineTokens()
        kwargs = {}
        for item in fields(EngineTokens):
            if item.name in data:
                kwargs[item.name] = type(getattr(defaults, item.name))(data[item.name])
        return EngineTokens(**kwargs)


def load_tokens(path: Union[str, Path, None]) -> EngineTokens:
    if path is None:
        return EngineTokens()
    return EngineTokens.from_json(Path(path).read_text(encoding="utf-8"))
