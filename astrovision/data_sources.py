from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import requests

from astrovision.config import DEFAULT_HTTP_TIMEOUT, DEFAULT_REFERENCE_SIZE_DEG, DEFAULT_SKYVIEW_SURVEY
from astrovision.errors import ReferenceFetchError

__all__ = [
    "REFERENCE_PIXELS",
    "ReferenceImage",
    "ReferenceProvider",
    "SkyViewProvider",
    "SdssCutoutProvider",
    "get_reference_provider",
]

logger = logging.getLogger("astrovision.data_sources")

# Matches the normalizer's grid so the reference is never resampled
REFERENCE_PIXELS = 500


@dataclass(frozen=True)
class ReferenceImage:
    service: str
    url: str
    ra: float
    dec: float
    size_deg: float
    media_type: str = "image/jpeg"


class ReferenceProvider(Protocol):
    name: str

    def locate(self, ra: float, dec: float) -> ReferenceImage:
        ...

    def fetch(self, reference: ReferenceImage) -> bytes:
        ...


def _build_url(base: str, params: Dict[str, str]) -> str:
    prepared = requests.Request("GET", base, params=params).prepare()
    return str(prepared.url)


class _HttpReferenceProvider:
    name = "base"

    def __init__(
        self,
        *,
        size_deg: float = DEFAULT_REFERENCE_SIZE_DEG,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT,
        http: Optional[requests.Session] = None,
    ):
        if size_deg <= 0:
            raise ValueError("size_deg must be > 0")
        self.size_deg = size_deg
        self.timeout_s = timeout_s
        self._http = http

    def fetch(self, reference: ReferenceImage) -> bytes:
        getter = self._http.get if self._http is not None else requests.get
        try:
            resp = getter(reference.url, timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ReferenceFetchError(f"{self.name} reference fetch failed: {exc}") from exc
        if not resp.content:
            raise ReferenceFetchError(f"{self.name} returned an empty reference image.")
        logger.info("fetched %d bytes of reference imagery from %s", len(resp.content), self.name)
        return resp.content


class SkyViewProvider(_HttpReferenceProvider):
    name = "skyview"
    BASE_URL = "https://skyview.gsfc.nasa.gov/cgi-bin/images"

    def __init__(self, *, survey: str = DEFAULT_SKYVIEW_SURVEY, **kwargs):
        super().__init__(**kwargs)
        self.survey = survey

    def locate(self, ra: float, dec: float) -> ReferenceImage:
        params = {
            "survey": self.survey,
            "position": f"{ra},{dec}",
            "size": f"{self.size_deg}",
            "pixels": str(REFERENCE_PIXELS),
        }
        return ReferenceImage(
            service=self.name,
            url=_build_url(self.BASE_URL, params),
            ra=float(ra),
            dec=float(dec),
            size_deg=self.size_deg,
        )


class SdssCutoutProvider(_HttpReferenceProvider):
    name = "sdss"
    BASE_URL = "https://skyserver.sdss.org/dr17/SkyServerWS/ImgCutout/getjpeg"

    def locate(self, ra: float, dec: float) -> ReferenceImage:
        scale = self.size_deg * 3600.0 / REFERENCE_PIXELS  # arcsec per pixel
        params = {
            "ra": f"{ra}",
            "dec": f"{dec}",
            "scale": f"{scale:.6f}",
            "width": str(REFERENCE_PIXELS),
            "height": str(REFERENCE_PIXELS),
        }
        return ReferenceImage(
            service=self.name,
            url=_build_url(self.BASE_URL, params),
            ra=float(ra),
            dec=float(dec),
            size_deg=self.size_deg,
        )


def get_reference_provider(
    service: str,
    *,
    size_deg: float = DEFAULT_REFERENCE_SIZE_DEG,
    survey: str = DEFAULT_SKYVIEW_SURVEY,
    timeout_s: float = DEFAULT_HTTP_TIMEOUT,
    http: Optional[requests.Session] = None,
) -> ReferenceProvider:
    service_lower = service.lower()
    if service_lower in {"skyview", "nasa", "gsfc"}:
        return SkyViewProvider(survey=survey, size_deg=size_deg, timeout_s=timeout_s, http=http)
    if service_lower in {"sdss", "dr17"}:
        return SdssCutoutProvider(size_deg=size_deg, timeout_s=timeout_s, http=http)
    raise ValueError(f"Unsupported reference service: {service}")
