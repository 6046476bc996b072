from __future__ import annotations

import io

import numpy as np
import pytest
import requests
from PIL import Image, features

from conftest import FakeHttp, FakeResponse
from astrovision.errors import DecodeError, ImageFetchError
from astrovision.imaging import NORMALIZED_SIZE, normalize_image, probe_image_bytes


def _encode(image: Image.Image, fmt: str) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.mark.parametrize(
    "size,fmt",
    [
        ((500, 500), "PNG"),
        ((120, 37), "PNG"),
        ((37, 900), "JPEG"),
        ((1024, 768), "BMP"),
        ((1, 1), "GIF"),
    ],
)
def test_normalize_always_yields_fixed_grid(size, fmt):
    image = Image.new("RGB", size, (40, 80, 120))
    result = normalize_image(_encode(image, fmt))
    assert result.pixels.shape == (500, 500)
    assert result.pixels.dtype == np.uint8
    assert result.shape == (500, 500)
    assert result.original_size == size
    assert result.format == fmt.lower()


def test_greyscale_png_at_target_size_is_lossless(png_bytes_from_array, sky_frame):
    frame = sky_frame()
    result = normalize_image(png_bytes_from_array(frame), source="user")
    assert np.array_equal(result.pixels, frame)
    assert result.source == "user"


def test_transparent_regions_read_as_black():
    image = Image.new("RGBA", (64, 64), (255, 255, 255, 0))
    result = normalize_image(_encode(image, "PNG"))
    assert int(result.pixels.max()) == 0


def test_opaque_colour_uses_luminance():
    image = Image.new("RGB", (500, 500), (255, 255, 255))
    result = normalize_image(image)
    assert int(result.pixels.min()) == 255
    assert result.source == "pil"


def test_sixteen_bit_input_is_stretched():
    arr = np.linspace(0, 60000, 200 * 100, dtype=np.float64).reshape(100, 200).astype(np.uint16)
    result = normalize_image(Image.fromarray(arr))
    assert result.pixels.shape == NORMALIZED_SIZE
    assert int(result.pixels.min()) < 20
    assert int(result.pixels.max()) > 235


@pytest.mark.parametrize("payload", [b"", b"not an image at all", b"\x00" * 64])
def test_garbage_raises_decode_error(payload):
    with pytest.raises(DecodeError):
        normalize_image(payload)


def test_truncated_png_raises_decode_error(png_bytes_from_array, sky_frame):
    data = png_bytes_from_array(sky_frame())
    with pytest.raises(DecodeError):
        normalize_image(data[:60])


def test_decode_error_is_value_error():
    with pytest.raises(ValueError):
        normalize_image(b"garbage")


def test_url_input_is_fetched(png_bytes_from_array, sky_frame):
    frame = sky_frame()
    http = FakeHttp({"example.test": FakeResponse(content=png_bytes_from_array(frame))})
    result = normalize_image("https://example.test/ref.png", http=http)
    assert np.array_equal(result.pixels, frame)
    assert result.source == "https://example.test/ref.png"
    assert http.calls[0][2]["timeout"] == 30.0


def test_url_fetch_failure_raises_image_fetch_error():
    http = FakeHttp({"example.test": FakeResponse(status_code=503)})
    with pytest.raises(ImageFetchError):
        normalize_image("https://example.test/ref.png", http=http)

    http = FakeHttp({"example.test": requests.ConnectionError("refused")})
    with pytest.raises(ImageFetchError):
        normalize_image("https://example.test/ref.png", http=http)


def test_non_url_string_is_rejected():
    with pytest.raises(DecodeError):
        normalize_image("/tmp/observation.jpg")


def test_probe_reports_format_and_size():
    probe = probe_image_bytes(_encode(Image.new("L", (64, 32)), "PNG"))
    assert probe.format == "png"
    assert probe.mime == "image/png"
    assert (probe.width, probe.height) == (64, 32)


@pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")
def test_probe_recognises_webp_container():
    probe = probe_image_bytes(_encode(Image.new("RGB", (10, 12)), "WEBP"))
    assert probe.format == "webp"
    assert (probe.width, probe.height) == (10, 12)


def test_fits_input_is_normalized():
    fits = pytest.importorskip("astropy.io.fits")
    rng = np.random.default_rng(seed=3)
    data = rng.normal(100.0, 5.0, size=(64, 80)).astype(np.float32)
    buffer = io.BytesIO()
    fits.PrimaryHDU(data).writeto(buffer)
    payload = buffer.getvalue()

    probe = probe_image_bytes(payload)
    assert probe.format == "fits"
    assert (probe.width, probe.height) == (80, 64)

    result = normalize_image(payload)
    assert result.pixels.shape == (500, 500)
    assert result.format == "fits"


def test_unsupported_input_type_raises_decode_error():
    with pytest.raises(DecodeError):
        normalize_image(12345)
