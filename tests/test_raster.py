import base64
import io
import threading

import pytest
from PIL import Image, features

from image_crop_viewer.config import EngineTokens
from image_crop_viewer.core import CropRegion, OutputImage, SourceImageSize
from image_crop_viewer.errors import (
    CropBusyError,
    EncodingError,
    InputError,
    RasterizationError,
)
from image_crop_viewer.raster import (
    CropSession,
    PillowRasterizer,
    affine_matrix_for_rotation,
    crop_image,
    load_source,
    validate_crop_region,
)


def _gradient(width, height):
    img = Image.new("RGBA", (width, height))
    for y in range(height):
        for x in range(width):
            img.putpixel((x, y), (x % 256, y % 256, (x * 7 + y * 3) % 256, 255))
    return img


def _decode(output: OutputImage) -> Image.Image:
    img = Image.open(io.BytesIO(output.data))
    img.load()
    return img


def test_crop_without_rotation_is_pixel_exact():
    src = _gradient(20, 15)
    region = CropRegion(3, 4, 10, 6)
    output = crop_image(src, region, 0)

    assert output.mime_type == "image/png"
    assert (output.width, output.height) == (10, 6)
    decoded = _decode(output).convert("RGBA")
    assert list(decoded.getdata()) == list(src.crop(region.box).getdata())


def test_crop_full_turn_matches_unrotated():
    src = _gradient(8, 8)
    region = CropRegion(0, 0, 8, 8)
    assert crop_image(src, region, 360).data == crop_image(src, region, 0).data


def test_quarter_turn_is_clockwise_and_exact():
    src = _gradient(10, 6)
    region = CropRegion(2, 1, 5, 3)
    decoded = _decode(crop_image(src, region, 90)).convert("RGBA")

    assert decoded.size == (3, 5)
    crop = src.crop(region.box)
    # Clockwise: the crop's bottom-left pixel lands in the output's top-left corner.
    assert decoded.getpixel((0, 0)) == crop.getpixel((0, 2))
    assert decoded.getpixel((2, 0)) == crop.getpixel((0, 0))
    assert decoded.getpixel((0, 4)) == crop.getpixel((4, 2))


def test_negative_quarter_turn_normalized():
    src = _gradient(10, 6)
    region = CropRegion(0, 0, 10, 6)
    assert crop_image(src, region, -90).data == crop_image(src, region, 270).data


def test_diagonal_rotation_canvas():
    src = Image.new("RGB", (100, 100), (200, 30, 30))
    output = crop_image(src, CropRegion(0, 0, 100, 100), 45)

    assert (output.width, output.height) == (142, 142)
    decoded = _decode(output).convert("RGBA")
    assert decoded.size == (142, 142)
    assert decoded.getpixel((71, 71)) == (200, 30, 30, 255)
    for corner in ((0, 0), (141, 0), (0, 141), (141, 141)):
        assert decoded.getpixel(corner)[3] == 0
    # Rotated square touches the middle of each edge.
    assert decoded.getpixel((71, 5))[3] == 255
    assert decoded.getpixel((5, 71))[3] == 255


def test_rotation_is_deterministic():
    src = _gradient(30, 20)
    region = CropRegion(5, 5, 20, 10)
    assert crop_image(src, region, 33.3).data == crop_image(src, region, 33.3).data


def test_out_of_bounds_region_raises_input_error():
    src = Image.new("RGB", (800, 600))
    with pytest.raises(InputError):
        crop_image(src, CropRegion(750, 0, 100, 100), 0)


@pytest.mark.parametrize(
    "region",
    [
        CropRegion(0, 0, 0, 10),
        CropRegion(0, 0, 10, -1),
        CropRegion(-1, 0, 10, 10),
        CropRegion(0, -1, 10, 10),
        CropRegion(0, 595, 10, 10),
        CropRegion(0.5, 0, 10, 10),
        CropRegion(True, 0, 10, 10),
    ],
)
def test_validate_crop_region_rejects(region):
    with pytest.raises(InputError):
        validate_crop_region(region, SourceImageSize(800, 600))


def test_validate_crop_region_accepts_full_image():
    validate_crop_region(CropRegion(0, 0, 800, 600), SourceImageSize(800, 600))


def test_pixel_cap_raises_rasterization_error():
    rasterizer = PillowRasterizer(EngineTokens(max_output_pixels=50))
    with pytest.raises(RasterizationError):
        rasterizer.rasterize(Image.new("RGB", (10, 10)), CropRegion(0, 0, 10, 10), 0)


def test_encoder_failure_raises_encoding_error():
    class BrokenImage:
        def save(self, *args, **kwargs):
            raise OSError("encoder exploded")

    rasterizer = PillowRasterizer()
    with pytest.raises(EncodingError):
        rasterizer._encode(BrokenImage())


def test_alternate_output_format():
    output = crop_image(Image.new("RGB", (4, 4)), CropRegion(0, 0, 4, 4), 0, tokens=EngineTokens(output_format="tiff"))
    assert output.mime_type == "image/tiff"
    assert _decode(output).format == "TIFF"


def test_affine_matrix_identity_at_zero():
    assert affine_matrix_for_rotation((10, 6), (10, 6), 0) == pytest.approx((1, 0, 0, 0, 1, 0))


def test_load_source_variants(tmp_path):
    img = Image.new("RGB", (3, 2), (1, 2, 3))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    raw = buffer.getvalue()
    path = tmp_path / "src.png"
    path.write_bytes(raw)
    data_url = "data:image/png;base64," + base64.b64encode(raw).decode("ascii")

    assert load_source(img) is img
    for ref in (raw, str(path), path, data_url):
        assert load_source(ref).size == (3, 2)


@pytest.mark.parametrize("ref", [b"not an image", "data:image/png;base64,@@@", "data:text/plain,hello"])
def test_load_source_rejects_garbage(ref):
    with pytest.raises(InputError):
        load_source(ref)


def test_load_source_missing_file(tmp_path):
    with pytest.raises(InputError):
        load_source(tmp_path / "missing.png")


def test_custom_rasterizer_backend():
    calls = []

    class RecordingRasterizer:
        def rasterize(self, source, crop_region, rotation_degrees):
            calls.append((source.size, crop_region, rotation_degrees))
            return OutputImage(b"x", "image/png", 1, 1)

    output = crop_image(Image.new("RGB", (5, 5)), CropRegion(0, 0, 1, 1), 12.0, rasterizer=RecordingRasterizer())
    assert output.data == b"x"
    assert calls == [((5, 5), CropRegion(0, 0, 1, 1), 12.0)]


class _BlockingRasterizer:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def rasterize(self, source, crop_region, rotation_degrees):
        self.started.set()
        self.release.wait(5)
        return OutputImage(b"done", "image/png", 1, 1)


def test_session_rejects_second_request_while_busy():
    backend = _BlockingRasterizer()
    session = CropSession(rasterizer=backend)
    src = Image.new("RGB", (4, 4))
    region = CropRegion(0, 0, 2, 2)

    future = session.submit(src, region, 0)
    assert backend.started.wait(5)
    assert session.busy
    with pytest.raises(CropBusyError):
        session.submit(src, region, 0)
    with pytest.raises(CropBusyError):
        session.commit(src, region, 0)

    backend.release.set()
    assert future.result(5).data == b"done"
    session.close()
    assert not session.busy


def test_session_commit_releases_after_error():
    session = CropSession()
    src = Image.new("RGB", (4, 4))
    with pytest.raises(InputError):
        session.commit(src, CropRegion(0, 0, 10, 10), 0)
    assert not session.busy
    assert session.commit(src, CropRegion(0, 0, 2, 2), 0).width == 2


def test_session_submit_surfaces_errors():
    session = CropSession()
    future = session.submit(Image.new("RGB", (4, 4)), CropRegion(3, 3, 2, 2), 0)
    with pytest.raises(InputError):
        future.result(5)
    session.close()


def test_closed_session_refuses_work():
    session = CropSession()
    session.close()
    with pytest.raises(RuntimeError):
        session.commit(Image.new("RGB", (2, 2)), CropRegion(0, 0, 1, 1), 0)


@pytest.mark.parametrize("rotation", [0, 90, 180, 270])
def test_sixteen_bit_source_keeps_precision(rotation):
    src = Image.new("I;16", (4, 3))
    for y in range(3):
        for x in range(4):
            src.putpixel((x, y), 1000 + x * 500 + y * 20000)
    region = CropRegion(1, 0, 3, 2)
    output = crop_image(src, region, rotation)

    decoded = _decode(output)
    expected = src.crop(region.box)
    if rotation:
        expected = expected.rotate(-rotation, expand=True)
    assert decoded.size == expected.size
    assert list(decoded.getdata()) == list(expected.getdata())
    assert max(decoded.getdata()) > 255


def test_float_source_kept_as_float_in_tiff():
    src = Image.new("F", (3, 3), 0.25)
    output = crop_image(src, CropRegion(0, 0, 2, 2), 0, tokens=EngineTokens(output_format="TIFF"))
    decoded = _decode(output)
    assert decoded.mode == "F"
    assert decoded.getpixel((1, 1)) == pytest.approx(0.25)


def test_unsupported_mode_for_format_drawn_as_rgba():
    src = Image.new("CMYK", (4, 4), (0, 0, 0, 0))
    decoded = _decode(crop_image(src, CropRegion(0, 0, 2, 2), 0))
    assert decoded.mode == "RGBA"
    assert decoded.getpixel((0, 0)) == (255, 255, 255, 255)


@pytest.mark.parametrize("rotation", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_rotation_raises_input_error(rotation):
    with pytest.raises(InputError):
        crop_image(Image.new("RGB", (10, 10)), CropRegion(0, 0, 5, 5), rotation)


def test_webp_output_is_lossless():
    if not features.check("webp"):
        pytest.skip("Pillow built without WebP support")
    src = _gradient(16, 12).convert("RGB")
    output = crop_image(src, CropRegion(0, 0, 16, 12), 0, tokens=EngineTokens(output_format="webp"))
    assert output.mime_type == "image/webp"
    decoded = _decode(output).convert("RGB")
    assert list(decoded.getdata()) == list(src.getdata())
