"""Exceptions raised by the crop rasterizer."""

from __future__ import annotations


class CropError(Exception):
    """Base class for every error a crop commit can raise."""


class InputError(CropError, ValueError):
    """The crop region or source image is unusable (out of bounds, empty, undecodable)."""


class RasterizationError(CropError):
    """A drawing surface of the requested size could not be created."""


class EncodingError(CropError):
    """The rendered surface could not be encoded to bytes."""


class CropBusyError(CropError):
    """A crop was requested while another one is still in flight."""
