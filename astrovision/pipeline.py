"""Discovery pipeline: plate-solve a sky photo, compare it with survey imagery.

Stages (each traced as ``pipeline.<stage>``):

- **solve**: login, upload and poll astrometry.net for RA/Dec.
- **reference**: build the survey request for the solved position.
- **compare**: fetch the reference, normalize both images concurrently,
  count differing pixels and classify.

Solving and reference retrieval fail hard (`PipelineError`). Comparison fails
soft: a decoding or scoring problem yields score 0, ``GALAXY`` and
``degraded=True`` because an unscoreable image only means no anomaly was
detected.
"""
from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

from astrovision.config import DEFAULT_ANOMALY_PIXELS, Settings
from astrovision.data_sources import ReferenceImage, ReferenceProvider, get_reference_provider
from astrovision.diffscore import count_differences
from astrovision.errors import ReferenceFetchError
from astrovision.imaging import NormalizedImage, normalize_image
from astrovision.observability import get_tracer, stage_span
from astrovision.solver import AstrometryNetClient, CalibrationResult

__all__ = [
    "DiscoveryType",
    "DifferenceReport",
    "DiscoveryResult",
    "DiscoveryPipeline",
    "analyze_discovery",
    "classify",
]

logger = logging.getLogger("astrovision.pipeline")
TRACER = get_tracer("astrovision.pipeline")


class DiscoveryType(str, enum.Enum):
    SUPERNOVA = "SUPERNOVA"
    GALAXY = "GALAXY"


@dataclass(frozen=True)
class DifferenceReport:
    raw_score: int
    is_anomaly: bool
    category: DiscoveryType
    message: str
    degraded: bool = False
    diagnostic: Optional[str] = None


def classify(
    score: int,
    threshold: int = DEFAULT_ANOMALY_PIXELS,
    *,
    degraded: bool = False,
    diagnostic: Optional[str] = None,
) -> DifferenceReport:
    """Label a difference count: strictly above `threshold` is an anomaly."""
    score = int(score)
    if score > threshold:
        return DifferenceReport(
            raw_score=score,
            is_anomaly=True,
            category=DiscoveryType.SUPERNOVA,
            message=f"ANOMALY: Found {score} pixel variances.",
            degraded=degraded,
            diagnostic=diagnostic,
        )
    return DifferenceReport(
        raw_score=score,
        is_anomaly=False,
        category=DiscoveryType.GALAXY,
        message="Region stable.",
        degraded=degraded,
        diagnostic=diagnostic,
    )


@dataclass(frozen=True)
class DiscoveryResult:
    calibration: CalibrationResult
    reference: ReferenceImage
    report: DifferenceReport
    timings: Dict[str, float] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "coords": {
                "ra": f"{self.calibration.ra:.4f}",
                "dec": f"{self.calibration.dec:.4f}",
            },
            "historicalImage": self.reference.url,
            "discovery": self.report.message,
            "type": self.report.category.value,
            "rawScore": self.report.raw_score,
            "degraded": self.report.degraded,
            "diagnostic": self.report.diagnostic,
            "jobId": self.calibration.job_id,
            "timings": {stage: round(seconds, 4) for stage, seconds in self.timings.items()},
        }


SolverFactory = Callable[[], AstrometryNetClient]
Normalizer = Callable[..., NormalizedImage]
Scorer = Callable[[NormalizedImage, NormalizedImage, float], int]


class DiscoveryPipeline:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        solver_factory: Optional[SolverFactory] = None,
        reference_provider: Optional[ReferenceProvider] = None,
        normalizer: Normalizer = normalize_image,
        scorer: Scorer = count_differences,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.settings = settings or Settings.from_env()
        self._solver_factory = solver_factory or self._default_solver
        self._reference_provider = reference_provider or get_reference_provider(
            self.settings.reference_service,
            size_deg=self.settings.reference_size_deg,
            survey=self.settings.skyview_survey,
            timeout_s=self.settings.http_timeout_s,
        )
        self._normalizer = normalizer
        self._scorer = scorer
        self._clock = clock

    @property
    def reference_provider(self) -> ReferenceProvider:
        return self._reference_provider

    def _default_solver(self) -> AstrometryNetClient:
        s = self.settings
        return AstrometryNetClient(
            s.astrometry_api_key,
            base_url=s.astrometry_api_url,
            attempts=s.solver_attempts,
            interval_s=s.solver_interval_s,
            timeout_s=s.http_timeout_s,
        )

    @contextmanager
    def _timed(self, timings: Dict[str, float], stage: str, **attributes) -> Iterator[None]:
        start = self._clock()
        try:
            with stage_span(TRACER, stage, **attributes):
                yield
        finally:
            timings[stage] = self._clock() - start

    def analyze_discovery(self, image: bytes) -> DiscoveryResult:
        """Run one end-to-end analysis of `image` (raw encoded bytes)."""
        logger.info("Starting discovery pipeline (%d bytes)", len(image))
        timings: Dict[str, float] = {}

        with self._timed(timings, "solve", image_bytes=len(image)):
            solver = self._solver_factory()
            with solver:
                calibration = solver.solve(image)

        with self._timed(timings, "reference", ra=calibration.ra, dec=calibration.dec):
            reference = self._reference_provider.locate(calibration.ra, calibration.dec)

        with self._timed(timings, "compare", service=reference.service):
            report = self._compare(image, reference)

        logger.info(
            "discovery complete: RA=%.4f Dec=%.4f type=%s score=%d%s",
            calibration.ra, calibration.dec, report.category.value, report.raw_score,
            " (degraded)" if report.degraded else "",
        )
        return DiscoveryResult(calibration=calibration, reference=reference, report=report, timings=timings)

    def _fetch_and_normalize(self, reference: ReferenceImage) -> NormalizedImage:
        data = self._reference_provider.fetch(reference)
        return self._normalizer(data, source=f"reference:{reference.service}")

    def _compare(self, image: bytes, reference: ReferenceImage) -> DifferenceReport:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="astrovision-normalize") as pool:
            user_future = pool.submit(self._normalizer, image, source="user")
            reference_future = pool.submit(self._fetch_and_normalize, reference)

        # Both normalizations have finished once the pool shuts down.
        # A missing reference makes the comparison meaningless
        reference_exc = reference_future.exception()
        if isinstance(reference_exc, ReferenceFetchError):
            raise reference_exc

        try:
            user_img = user_future.result()
            reference_img = reference_future.result()
            score = self._scorer(user_img, reference_img, self.settings.diff_threshold)
        except Exception as exc:
            logger.warning("comparison failed, reporting no anomaly: %s: %s", type(exc).__name__, exc)
            return classify(
                0,
                self.settings.anomaly_pixels,
                degraded=True,
                diagnostic=f"{type(exc).__name__}: {exc}",
            )
        return classify(score, self.settings.anomaly_pixels)


def analyze_discovery(image: bytes, settings: Optional[Settings] = None) -> DiscoveryResult:
    return DiscoveryPipeline(settings).analyze_discovery(image)
