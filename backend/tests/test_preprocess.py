import io

import pytest
from PIL import Image

from skinscan.capture.preprocess import image_size, recompress, target_size
from skinscan.core.exceptions import DecodeError


def _encode(img, fmt="PNG"):
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def test_large_image_is_downscaled_preserving_aspect():
    blob = _encode(Image.new("RGB", (2048, 1024), (120, 80, 60)))

    out = recompress(blob, max_dimension=1024, quality=0.85)

    assert out[:3] == b"\xff\xd8\xff"
    assert image_size(out) == (1024, 512)


def test_portrait_image_is_bounded_by_height():
    blob = _encode(Image.new("RGB", (900, 1800), (10, 10, 10)))
    assert image_size(recompress(blob, max_dimension=600)) == (300, 600)


def test_small_image_is_never_upscaled():
    blob = _encode(Image.new("RGB", (100, 50), (200, 200, 200)), fmt="JPEG")
    assert image_size(recompress(blob, max_dimension=1024)) == (100, 50)


def test_transparency_is_flattened_onto_white():
    blob = _encode(Image.new("RGBA", (20, 20), (0, 0, 0, 0)))

    out = recompress(blob)

    with Image.open(io.BytesIO(out)) as img:
        assert img.mode == "RGB"
        assert all(channel > 245 for channel in img.getpixel((10, 10)))


def test_undecodable_bytes_raise_decode_error():
    with pytest.raises(DecodeError):
        recompress(b"definitely not an image")


@pytest.mark.parametrize(
    "size,max_dim,expected",
    [
        ((3000, 2000), 1024, (1024, 683)),
        ((1024, 1024), 1024, (1024, 1024)),
        ((640, 480), 1024, (640, 480)),
    ],
)
def test_target_size(size, max_dim, expected):
    assert target_size(*size, max_dim) == expected
