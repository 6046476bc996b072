from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

T = TypeVar("T")

DEFAULT_SOLVER_URL = "https://nova.astrometry.net/api"
DEFAULT_SOLVER_ATTEMPTS = 20
DEFAULT_SOLVER_INTERVAL = 3.0
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_REFERENCE_SERVICE = "skyview"
DEFAULT_SKYVIEW_SURVEY = "sdssi"
DEFAULT_REFERENCE_SIZE_DEG = 0.1
DEFAULT_DIFF_THRESHOLD = 0.15
DEFAULT_ANOMALY_PIXELS = 1500
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50 MB
DEFAULT_MAX_IMAGE_PIXELS = 80_000_000  # 80 MP


def _env_value(
    environ: Mapping[str, str],
    name: str,
    default: T,
    cast: Callable[[str], T],
) -> T:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    astrometry_api_key: Optional[str] = None
    astrometry_api_url: str = DEFAULT_SOLVER_URL
    solver_attempts: int = DEFAULT_SOLVER_ATTEMPTS
    solver_interval_s: float = DEFAULT_SOLVER_INTERVAL
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT
    reference_service: str = DEFAULT_REFERENCE_SERVICE
    skyview_survey: str = DEFAULT_SKYVIEW_SURVEY
    reference_size_deg: float = DEFAULT_REFERENCE_SIZE_DEG
    diff_threshold: float = DEFAULT_DIFF_THRESHOLD
    anomaly_pixels: int = DEFAULT_ANOMALY_PIXELS
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    max_image_pixels: int = DEFAULT_MAX_IMAGE_PIXELS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        api_key = (env.get("ASTROMETRY_API_KEY") or "").strip() or None
        return cls(
            astrometry_api_key=api_key,
            astrometry_api_url=_env_value(env, "ASTROMETRY_API_URL", DEFAULT_SOLVER_URL, str).rstrip("/"),
            solver_attempts=_env_value(env, "ASTRO_SOLVER_ATTEMPTS", DEFAULT_SOLVER_ATTEMPTS, int),
            solver_interval_s=_env_value(env, "ASTRO_SOLVER_INTERVAL", DEFAULT_SOLVER_INTERVAL, float),
            http_timeout_s=_env_value(env, "ASTRO_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, float),
            reference_service=_env_value(env, "ASTRO_REFERENCE_SERVICE", DEFAULT_REFERENCE_SERVICE, str),
            skyview_survey=_env_value(env, "ASTRO_SKYVIEW_SURVEY", DEFAULT_SKYVIEW_SURVEY, str),
            reference_size_deg=_env_value(env, "ASTRO_REFERENCE_SIZE_DEG", DEFAULT_REFERENCE_SIZE_DEG, float),
            diff_threshold=_env_value(env, "ASTRO_DIFF_THRESHOLD", DEFAULT_DIFF_THRESHOLD, float),
            anomaly_pixels=_env_value(env, "ASTRO_ANOMALY_PIXELS", DEFAULT_ANOMALY_PIXELS, int),
            max_upload_bytes=_env_value(env, "ASTRO_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES, int),
            max_image_pixels=_env_value(env, "ASTRO_MAX_IMAGE_PIXELS", DEFAULT_MAX_IMAGE_PIXELS, int),
        )

    @property
    def has_api_key(self) -> bool:
        return bool(self.astrometry_api_key)
