import math

import pytest

from image_crop_viewer.geometry import (
    canvas_size_for,
    clamp,
    normalize_rotation,
    rotated_bounding_box,
    to_radians,
)


def test_to_radians():
    assert to_radians(180) == pytest.approx(math.pi)
    assert to_radians(0) == 0


@pytest.mark.parametrize("size", [(1, 1), (100, 50), (3.5, 1234.0)])
def test_rotated_bounding_box_identities(size):
    w, h = size
    assert rotated_bounding_box(w, h, 0) == pytest.approx((w, h), rel=1e-6)
    assert rotated_bounding_box(w, h, 90) == pytest.approx((h, w), rel=1e-6)
    assert rotated_bounding_box(w, h, 180) == pytest.approx((w, h), rel=1e-6)


def test_rotated_bounding_box_quarter_turn_swaps():
    assert rotated_bounding_box(100, 50, 90) == pytest.approx((50, 100))


def test_rotated_bounding_box_diagonal():
    width, height = rotated_bounding_box(100, 100, 45)
    assert width == pytest.approx(141.42, abs=0.01)
    assert height == pytest.approx(141.42, abs=0.01)


def test_canvas_size_rounds_up_without_float_noise():
    assert canvas_size_for(100, 100, 45) == (142, 142)
    assert canvas_size_for(100, 50, 90) == (50, 100)
    assert canvas_size_for(100, 50, 270) == (50, 100)
    assert canvas_size_for(7, 3, 0) == (7, 3)


def test_normalize_rotation():
    assert normalize_rotation(0) == 0.0
    assert normalize_rotation(360) == 0.0
    assert normalize_rotation(-90) == 270.0
    assert normalize_rotation(725) == 5.0
    assert normalize_rotation(-1e-20) == 0.0
    assert math.copysign(1.0, normalize_rotation(-0.0)) == 1.0


def test_clamp():
    assert clamp(5, 0, 10) == 5
    assert clamp(-1, 0, 10) == 0
    assert clamp(11, 0, 10) == 10
