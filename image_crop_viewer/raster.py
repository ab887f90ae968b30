from __future__ import annotations

import base64
import binascii
import io
import logging
import math
import numbers
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Protocol, Union

from PIL import Image, UnidentifiedImageError

from .config import EngineTokens
from .core import CropRegion, OutputImage, SourceImageSize
from .errors import CropBusyError, EncodingError, InputError, RasterizationError
from .geometry import canvas_size_for, normalize_rotation, to_radians

LOGGER = logging.getLogger(__name__)

SourceRef = Union[Image.Image, str, Path, bytes]

_QUARTER_TURNS = {
    90.0: Image.Transpose.ROTATE_270,
    180.0: Image.Transpose.ROTATE_180,
    270.0: Image.Transpose.ROTATE_90,
}

# Modes each encoder writes without losing precision; anything else is drawn as RGBA.
_NATIVE_MODES = {
    "PNG": {"1", "L", "LA", "P", "RGB", "RGBA", "I;16"},
    "TIFF": {"1", "L", "LA", "P", "RGB", "RGBA", "I;16", "I", "F"},
    "WEBP": {"RGB", "RGBA"},
}

_SAVE_OPTIONS = {
    "WEBP": {"lossless": True},
}


class Rasterizer(Protocol):
    def rasterize(self, source: Image.Image, crop_region: CropRegion, rotation_degrees: float) -> OutputImage:
        ...


def load_source(ref: SourceRef) -> Image.Image:
    """Decode ``ref`` (Pillow image, path, raw bytes or ``data:`` URL) into a loaded image."""
    if isinstance(ref, Image.Image):
        return ref
    try:
        if isinstance(ref, bytes):
            image = Image.open(io.BytesIO(ref))
        elif isinstance(ref, str) and ref.startswith("data:"):
            header, _, payload = ref.partition(",")
            if not payload or ";base64" not in header:
                raise InputError("Only base64 data URLs are supported.")
            image = Image.open(io.BytesIO(base64.b64decode(payload, validate=True)))
        else:
            image = Image.open(ref)
        image.load()
    except InputError:
        raise
    except (OSError, UnidentifiedImageError, binascii.Error, ValueError) as exc:
        raise InputError(f"Could not decode source image: {exc}") from exc
    return image


def validate_crop_region(region: CropRegion, size: SourceImageSize) -> None:
    values = (region.x, region.y, region.width, region.height)
    if any(isinstance(v, bool) or not isinstance(v, numbers.Integral) for v in values):
        raise InputError(f"Crop region must use whole pixel coordinates: {region}")
    if region.width <= 0 or region.height <= 0:
        raise InputError(f"Crop region must have a positive size: {region}")
    if region.x < 0 or region.y < 0:
        raise InputError(f"Crop region starts outside the image: {region}")
    if region.x + region.width > size.natural_width or region.y + region.height > size.natural_height:
        raise InputError(
            f"Crop region {region} exceeds the {size.natural_width}x{size.natural_height} source."
        )


def affine_matrix_for_rotation(
    crop_size: tuple[int, int],
    canvas_size: tuple[int, int],
    rotation_degrees: float,
) -> tuple[float, float, float, float, float, float]:
    """Inverse mapping from canvas pixels back into the crop, rotating clockwise about both centers."""
    angle = to_radians(rotation_degrees)
    ca = math.cos(angle)
    sa = math.sin(angle)
    cx = crop_size[0] / 2.0
    cy = crop_size[1] / 2.0
    ox = canvas_size[0] / 2.0
    oy = canvas_size[1] / 2.0
    a0 = ca
    a1 = sa
    a2 = cx - ca * ox - sa * oy
    b0 = -sa
    b1 = ca
    b2 = cy + sa * ox - ca * oy
    return (a0, a1, a2, b0, b1, b2)


class PillowRasterizer:
    def __init__(self, tokens: Optional[EngineTokens] = None) -> None:
        self.tokens = tokens or EngineTokens()

    def rasterize(self, source: Image.Image, crop_region: CropRegion, rotation_degrees: float) -> OutputImage:
        validate_crop_region(crop_region, SourceImageSize.of(source))
        if not math.isfinite(rotation_degrees):
            raise InputError(f"Rotation must be a finite angle, got {rotation_degrees!r}.")
        rotation = normalize_rotation(rotation_degrees)
        canvas_w, canvas_h = canvas_size_for(crop_region.width, crop_region.height, rotation)
        if canvas_w * canvas_h > self.tokens.max_output_pixels:
            raise RasterizationError(
                f"Output canvas {canvas_w}x{canvas_h} exceeds {self.tokens.max_output_pixels} pixels."
            )

        started = time.perf_counter()
        surface = self._draw(source, crop_region, rotation, (canvas_w, canvas_h))
        data = self._encode(surface)
        LOGGER.debug(
            "Cropped %s at %.2f deg into %dx%d in %.1f ms",
            crop_region,
            rotation,
            canvas_w,
            canvas_h,
            (time.perf_counter() - started) * 1000.0,
        )
        return OutputImage(data=data, mime_type=self.tokens.mime_type, width=canvas_w, height=canvas_h)

    def _draw(
        self,
        source: Image.Image,
        region: CropRegion,
        rotation: float,
        canvas_size: tuple[int, int],
    ) -> Image.Image:
        try:
            if rotation == 0.0 or rotation in _QUARTER_TURNS:
                crop = source.crop(region.box)
                if crop.mode not in _NATIVE_MODES[self.tokens.output_format]:
                    crop = crop.convert("RGBA")
                if rotation == 0.0:
                    return crop
                return crop.transpose(_QUARTER_TURNS[rotation])
            crop = source.convert("RGBA").crop(region.box)
            matrix = affine_matrix_for_rotation(crop.size, canvas_size, rotation)
            return crop.transform(
                canvas_size,
                Image.AFFINE,
                matrix,
                resample=self.tokens.resample_filter,
                fillcolor=(0, 0, 0, 0),
            )
        except (MemoryError, ValueError, OSError, Image.DecompressionBombError) as exc:
            raise RasterizationError(f"Could not allocate a {canvas_size[0]}x{canvas_size[1]} surface: {exc}") from exc

    def _encode(self, surface: Image.Image) -> bytes:
        buffer = io.BytesIO()
        try:
            surface.save(buffer, format=self.tokens.output_format, **_SAVE_OPTIONS.get(self.tokens.output_format, {}))
        except (OSError, ValueError, KeyError) as exc:
            raise EncodingError(f"Could not encode crop as {self.tokens.output_format}: {exc}") from exc
        data = buffer.getvalue()
        if not data:
            raise EncodingError("Encoder produced no data.")
        return data


def crop_image(
    source: SourceRef,
    crop_region: CropRegion,
    rotation_degrees: float = 0.0,
    rasterizer: Optional[Rasterizer] = None,
    tokens: Optional[EngineTokens] = None,
) -> OutputImage:
    backend = rasterizer or PillowRasterizer(tokens)
    return backend.rasterize(load_source(source), crop_region, rotation_degrees)


class CropSession:
    """Runs at most one crop at a time; a second request while busy is rejected."""

    def __init__(self, rasterizer: Optional[Rasterizer] = None, tokens: Optional[EngineTokens] = None) -> None:
        self.rasterizer = rasterizer or PillowRasterizer(tokens)
        self._lock = threading.Lock()
        self._busy = False
        self._closed = False
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def _acquire(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Crop session is closed.")
            if self._busy:
                LOGGER.warning("Rejected crop request: another crop is in flight")
                raise CropBusyError("A crop is already in progress.")
            self._busy = True

    def _release(self) -> None:
        with self._lock:
            self._busy = False

    def _run(self, source: SourceRef, crop_region: CropRegion, rotation_degrees: float) -> OutputImage:
        try:
            return crop_image(source, crop_region, rotation_degrees, rasterizer=self.rasterizer)
        finally:
            self._release()

    def commit(self, source: SourceRef, crop_region: CropRegion, rotation_degrees: float = 0.0) -> OutputImage:
        self._acquire()
        return self._run(source, crop_region, rotation_degrees)

    def submit(self, source: SourceRef, crop_region: CropRegion, rotation_degrees: float = 0.0) -> Future:
        """Run the crop on the worker thread; the busy flag clears before the future resolves."""
        self._acquire()
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="crop")
            future = self._executor.submit(self._run, source, crop_region, rotation_degrees)
        except BaseException:
            self._release()
            raise
        # Cancelled work never reaches _run.
        future.add_done_callback(lambda f: self._release() if f.cancelled() else None)
        return future

    def close(self) -> None:
        with self._lock:
            self._closed = True
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
