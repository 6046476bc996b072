"""Image normalization for AstroVision.

Every image that reaches the difference scorer goes through
`normalize_image()` first, which guarantees a fixed 500x500 single-channel
8-bit grid regardless of the input's format, size or aspect ratio:

1) **Sniff** the signature (PNG/JPEG/GIF/BMP/TIFF/WebP/FITS) so that garbage
   is rejected before Pillow tries to decode it.
2) **Decode** raster formats with Pillow, FITS with astropy (optional).
3) **Resize** by stretching to the target size (no cropping) and convert to
   luminance.

Accepted inputs:
- Raw bytes (an encoded image)
- An ``http(s)://`` URL, fetched with `requests`
- `PIL.Image.Image`

Any decoding problem surfaces as `DecodeError`; fetch problems as
`ImageFetchError`. Both are soft failures from the pipeline's point of view.

>>> from astrovision.imaging import normalize_image
>>> img = normalize_image(open("observation.jpg", "rb").read())
>>> img.pixels.shape
(500, 500)
"""
from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
import requests
from PIL import Image

from astrovision.errors import DecodeError, ImageFetchError

ImageDecompressionBombError = Image.DecompressionBombError

# FITS support is optional
_ASTROPY_OK = False
try:  # noqa: SIM105
    from astropy.io import fits  # type: ignore

    _ASTROPY_OK = True
except Exception:  # pragma: no cover - soft dependency
    fits = None  # type: ignore

logger = logging.getLogger("astrovision.imaging")

NORMALIZED_SIZE: Tuple[int, int] = (500, 500)
FITS_PERCENTILE_LOW = 1.0
FITS_PERCENTILE_HIGH = 99.0
RESAMPLE_BILINEAR = (
    Image.Resampling.BILINEAR if hasattr(Image, "Resampling") else Image.BILINEAR
)

ImageSource = Union[bytes, bytearray, memoryview, str, Image.Image]


# --------------------------------------------------------------------------------------
# Format sniffing
# --------------------------------------------------------------------------------------

_SIGNATURES: Tuple[Tuple[str, str, Tuple[bytes, ...]], ...] = (
    ("png", "image/png", (b"\x89PNG\r\n\x1a\n",)),
    ("jpeg", "image/jpeg", (b"\xff\xd8\xff",)),
    ("gif", "image/gif", (b"GIF87a", b"GIF89a")),
    ("bmp", "image/bmp", (b"BM",)),
    ("tiff", "image/tiff", (b"II*\x00", b"MM\x00*")),
    ("fits", "application/fits", (b"SIMPLE  =",)),
)


@dataclass(frozen=True)
class ImageProbe:
    format: str
    mime: str
    width: Optional[int] = None
    height: Optional[int] = None


def has_fits_support() -> bool:
    return _ASTROPY_OK


def probe_image_bytes(data: bytes) -> ImageProbe:
    """Identify the image format from its signature; dimensions are filled when cheap."""
    if not data:
        raise DecodeError("Image payload is empty.")

    fmt = mime = None
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        fmt, mime = "webp", "image/webp"
    else:
        for name, media_type, prefixes in _SIGNATURES:
            if any(data.startswith(p) for p in prefixes):
                fmt, mime = name, media_type
                break
    if fmt is None:
        raise DecodeError("File signature does not match supported image formats.")

    if fmt == "fits":
        width, height = _fits_dimensions(data)
        return ImageProbe(format=fmt, mime=mime, width=width, height=height)

    # Image.open only parses the header here; pixel data is loaded later.
    try:
        with Image.open(io.BytesIO(data)) as im:
            width, height = im.size
    except ImageDecompressionBombError as exc:
        raise DecodeError("Image is too large to process safely.") from exc
    except Exception as exc:
        raise DecodeError(f"Corrupt {fmt.upper()} header: {exc}") from exc
    if width <= 0 or height <= 0:
        raise DecodeError(f"{fmt.upper()} image has non-positive dimensions ({width}x{height}).")
    return ImageProbe(format=fmt, mime=mime, width=width, height=height)


def _fits_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    header = data[:2880]
    axes = {}
    for offset in range(0, len(header) - 79, 80):
        card = header[offset:offset + 80]
        key = card[:8].decode("ascii", errors="ignore").strip()
        if key == "END":
            break
        if key.startswith("NAXIS") and key[5:].isdigit():
            try:
                axes[int(key[5:])] = int(card[10:30].strip())
            except ValueError:
                continue
    return axes.get(1), axes.get(2)


# --------------------------------------------------------------------------------------
# Normalized grid
# --------------------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class NormalizedImage:
    """Fixed-size single-channel luminance grid (uint8, row-major)."""

    pixels: np.ndarray
    source: str = "image"
    original_size: Optional[Tuple[int, int]] = None
    format: Optional[str] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)


def normalize_image(
    image: ImageSource,
    *,
    size: Tuple[int, int] = NORMALIZED_SIZE,
    source: Optional[str] = None,
    timeout: float = 30.0,
    http: Optional[requests.Session] = None,
) -> NormalizedImage:
    """Decode `image` and return it stretched to `size` as 8-bit luminance."""
    fmt: Optional[str] = None
    if isinstance(image, Image.Image):
        pil = image
        label = source or "pil"
    else:
        if isinstance(image, str):
            label = source or image
            data = _fetch_bytes(image, timeout=timeout, http=http)
        elif isinstance(image, (bytes, bytearray, memoryview)):
            label = source or "bytes"
            data = bytes(image)
        else:
            raise DecodeError(f"Unsupported image type: {type(image)!r}")
        probe = probe_image_bytes(data)
        fmt = probe.format
        pil = _decode_fits(data) if fmt == "fits" else _decode_raster(data)

    original = pil.size
    grey = _to_luminance(pil)
    if grey.size != tuple(size):
        grey = grey.resize(tuple(size), RESAMPLE_BILINEAR)
    pixels = np.asarray(grey, dtype=np.uint8).copy()
    logger.debug("normalized %s %sx%s -> %sx%s", label, original[0], original[1], size[0], size[1])
    return NormalizedImage(pixels=pixels, source=label, original_size=original, format=fmt)


def _fetch_bytes(url: str, *, timeout: float, http: Optional[requests.Session]) -> bytes:
    if not url.lower().startswith(("http://", "https://")):
        raise DecodeError(f"Not a fetchable image URL: {url!r}")
    getter = http.get if http is not None else requests.get
    try:
        resp = getter(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ImageFetchError(f"Failed to fetch image {url}: {exc}") from exc
    return resp.content


def _decode_raster(data: bytes) -> Image.Image:
    start = time.perf_counter()
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.load()
            decoded = im.copy()
    except ImageDecompressionBombError as exc:
        raise DecodeError("Image is too large to process safely.") from exc
    except Exception as exc:
        raise DecodeError(f"Failed to decode image: {exc}") from exc
    logger.debug("decoded %s in %.3fs", decoded.mode, time.perf_counter() - start)
    return decoded


def _decode_fits(data: bytes) -> Image.Image:
    if not _ASTROPY_OK or fits is None:
        raise DecodeError("FITS support requires astropy to be installed.")
    try:
        with fits.open(io.BytesIO(data), memmap=False) as hdul:
            arr = None
            for hdu in hdul:
                if hdu.data is not None and np.ndim(hdu.data) >= 2:
                    arr = np.array(hdu.data, dtype=np.float64)
                    break
    except Exception as exc:
        raise DecodeError(f"Failed to read FITS data: {exc}") from exc
    if arr is None:
        raise DecodeError("FITS file has no 2-D image data.")
    # Cubes: keep the first plane
    while arr.ndim > 2:
        arr = arr[0]
    return Image.fromarray(_stretch_to_uint8(arr, FITS_PERCENTILE_LOW, FITS_PERCENTILE_HIGH), mode="L")


def _stretch_to_uint8(arr: np.ndarray, low: float = 0.0, high: float = 100.0) -> np.ndarray:
    finite = np.isfinite(arr)
    if not np.any(finite):
        return np.zeros(arr.shape, dtype=np.uint8)
    vmin, vmax = np.percentile(arr[finite], [low, high])
    if vmax <= vmin:
        return np.zeros(arr.shape, dtype=np.uint8)
    scaled = (np.where(finite, arr, vmin) - vmin) / (vmax - vmin)
    return np.clip(np.round(scaled * 255.0), 0, 255).astype(np.uint8)


def _to_luminance(im: Image.Image) -> Image.Image:
    if im.mode == "L":
        return im
    if im.mode in ("I", "I;16", "I;16B", "I;16L", "F"):
        arr = np.asarray(im, dtype=np.float64)
        return Image.fromarray(_stretch_to_uint8(arr), mode="L")
    if im.mode == "P":
        im = im.convert("RGBA" if "transparency" in im.info else "RGB")
    if im.mode in ("RGBA", "LA", "PA"):
        # Transparent regions read as empty sky
        background = Image.new("RGBA", im.size, (0, 0, 0, 255))
        im = Image.alpha_composite(background, im.convert("RGBA"))
    return im.convert("L")
