"""Pan/zoom state machine for the image viewport.

The controller never raises: every request is corrected into a transform that
keeps the zoomed image covering the container, see :func:`core.clamp_transform`.
Events are plain values so the same logic runs from tkinter callbacks or tests.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

from .config import EngineTokens
from .core import (
    ContainerSize,
    PanGesture,
    SourceImageSize,
    ViewportTransform,
    clamp_transform,
)

LOGGER = logging.getLogger(__name__)


class InteractionState(enum.Enum):
    IDLE = "idle"
    PANNING = "panning"


class PointerKind(enum.Enum):
    DOWN = "down"
    MOVE = "move"
    UP = "up"
    LEAVE = "leave"


@dataclass(frozen=True)
class WheelEvent:
    delta: float


@dataclass(frozen=True)
class PointerEvent:
    kind: PointerKind
    x: float = 0.0
    y: float = 0.0


Event = Union[WheelEvent, PointerEvent]


class TransformController:
    def __init__(
        self,
        container: ContainerSize,
        source: SourceImageSize,
        tokens: Optional[EngineTokens] = None,
    ) -> None:
        self.tokens = tokens or EngineTokens()
        self._container = container
        self._source = source
        self._transform = ViewportTransform()
        self._state = InteractionState.IDLE
        self._gesture: Optional[PanGesture] = None

    @property
    def transform(self) -> ViewportTransform:
        return self._transform

    @property
    def state(self) -> InteractionState:
        return self._state

    @property
    def gesture(self) -> Optional[PanGesture]:
        return self._gesture

    @property
    def container(self) -> ContainerSize:
        return self._container

    @property
    def source(self) -> SourceImageSize:
        return self._source

    def _apply(self, transform: ViewportTransform) -> ViewportTransform:
        self._transform = clamp_transform(
            transform,
            self._container,
            self._source,
            min_scale=self.tokens.min_scale,
            max_scale=self.tokens.max_scale,
        )
        return self._transform

    def set_scale(self, requested: float) -> ViewportTransform:
        if math.isnan(requested):
            LOGGER.debug("Ignoring NaN scale request")
            return self._transform
        current = self._transform
        return self._apply(ViewportTransform(requested, current.translate_x, current.translate_y))

    def wheel_zoom(self, delta: float) -> ViewportTransform:
        if not delta or math.isnan(delta):
            return self._transform
        factor = self.tokens.wheel_zoom_factor
        scale = self._transform.scale
        return self.set_scale(scale * factor if delta < 0 else scale / factor)

    def zoom_in(self) -> ViewportTransform:
        return self.set_scale(self._transform.scale * self.tokens.button_zoom_factor)

    def zoom_out(self) -> ViewportTransform:
        return self.set_scale(self._transform.scale / self.tokens.button_zoom_factor)

    def set_translate(self, x: float, y: float) -> ViewportTransform:
        return self._apply(ViewportTransform(self._transform.scale, x, y))

    def pointer_down(self, x: float, y: float) -> ViewportTransform:
        if self._state is InteractionState.PANNING:
            return self._transform
        if self._transform.scale <= 1.0:
            return self._transform
        current = self._transform
        self._gesture = PanGesture(
            pointer_start=(x, y),
            translate_at_start=(current.translate_x, current.translate_y),
        )
        self._state = InteractionState.PANNING
        LOGGER.debug("Pan started at (%.1f, %.1f)", x, y)
        return current

    def pan_to(self, x: float, y: float) -> ViewportTransform:
        if self._state is not InteractionState.PANNING or self._gesture is None:
            return self._transform
        scale = self._transform.scale or 1.0
        start_x, start_y = self._gesture.pointer_start
        base_x, base_y = self._gesture.translate_at_start
        return self.set_translate(
            (x - start_x) / scale + base_x,
            (y - start_y) / scale + base_y,
        )

    def pointer_up(self) -> ViewportTransform:
        if self._state is InteractionState.PANNING:
            LOGGER.debug("Pan ended at %s", self._transform)
        self._state = InteractionState.IDLE
        self._gesture = None
        return self._transform

    def reset(self) -> ViewportTransform:
        self.pointer_up()
        self._transform = ViewportTransform()
        return self._transform

    def resize(self, container: ContainerSize) -> ViewportTransform:
        self._container = container
        return self._apply(self._transform)

    def set_source(self, source: SourceImageSize) -> ViewportTransform:
        self._source = source
        return self.reset()

    def handle(self, event: Event) -> ViewportTransform:
        if isinstance(event, WheelEvent):
            return self.wheel_zoom(event.delta)
        if event.kind is PointerKind.DOWN:
            return self.pointer_down(event.x, event.y)
        if event.kind is PointerKind.MOVE:
            return self.pan_to(event.x, event.y)
        return self.pointer_up()
