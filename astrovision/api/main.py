# astrovision/api/main.py
from __future__ import annotations

import base64
import binascii
import io
import os
import re
import time
import logging
import tempfile
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, File, UploadFile, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from PIL import Image
from pydantic import BaseModel, Field

# Prometheus
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)

from astrovision.config import Settings
from astrovision.data_sources import get_reference_provider
from astrovision.errors import (
    AuthError,
    DecodeError,
    PipelineError,
    ReferenceFetchError,
    SolverError,
    SolveTimeoutError,
    UploadError,
)
from astrovision.imaging import has_fits_support, probe_image_bytes
from astrovision.observability import configure_logging, configure_observability, get_tracer
from astrovision.pipeline import DiscoveryPipeline

API_VERSION = "3.0.0"

# -----------------------------------------------------------------------------
# Logging / settings
# -----------------------------------------------------------------------------
configure_logging()
logger = logging.getLogger("astrovision.api")

SETTINGS = Settings.from_env()
Image.MAX_IMAGE_PIXELS = SETTINGS.max_image_pixels


def _astro_error(
    status: int,
    code: str,
    message: str,
    hint: Optional[str] = None,
    stage: Optional[str] = None,
) -> HTTPException:
    payload: Dict[str, Any] = {"code": code, "message": message}
    if hint:
        payload["hint"] = hint
    if stage:
        payload["stage"] = stage
    return HTTPException(status_code=status, detail=payload)

def _validation_error(message: str, *, hint: Optional[str] = None, code: str = "ASTRO_4001") -> HTTPException:
    return _astro_error(400, code, message, hint)

def _service_error(message: str, *, hint: Optional[str] = None, code: str = "ASTRO_5000") -> HTTPException:
    return _astro_error(500, code, message, hint)


# Hard pipeline failures -> (status, code, hint); most specific class first
_PIPELINE_ERROR_MAP = (
    (AuthError, 502, "ASTRO_5021", "Check ASTROMETRY_API_KEY."),
    (UploadError, 502, "ASTRO_5022", "Retry later or upload a smaller image."),
    (SolveTimeoutError, 504, "ASTRO_5041", "The sky could not be solved in time; resubmit the image."),
    (SolverError, 502, "ASTRO_5023", "The plate-solving service is unavailable."),
    (ReferenceFetchError, 502, "ASTRO_5024", "The sky-survey service is unavailable."),
)


def _pipeline_error(exc: PipelineError) -> HTTPException:
    for cls, status, code, hint in _PIPELINE_ERROR_MAP:
        if isinstance(exc, cls):
            return _astro_error(status, code, str(exc), hint, stage=exc.stage)
    return _astro_error(500, "ASTRO_5000", str(exc), stage=exc.stage)


def _validate_image_payload(data: bytes) -> None:
    if not data:
        raise _validation_error("Image payload is empty", hint="Provide a non-empty image.")
    if len(data) > SETTINGS.max_upload_bytes:
        raise _astro_error(
            413,
            "ASTRO_4002",
            "Image exceeds size limit",
            hint=f"Reduce file size below {SETTINGS.max_upload_bytes} bytes.",
        )
    try:
        probe_image_bytes(data)
    except DecodeError as exc:
        raise _validation_error(
            str(exc),
            hint="Upload a PNG/JPEG/TIFF/GIF/BMP/WebP/FITS image.",
            code="ASTRO_4004",
        ) from exc


_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)


def _decode_base64_image(payload: str) -> bytes:
    # MIME-wrapped base64 carries line breaks every 76 characters
    text = "".join(_DATA_URL_PREFIX.sub("", payload.strip()).split())
    if len(text) * 3 // 4 > SETTINGS.max_upload_bytes:
        raise _astro_error(
            413,
            "ASTRO_4002",
            "Image exceeds size limit",
            hint=f"Reduce file size below {SETTINGS.max_upload_bytes} bytes.",
        )
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise _validation_error("imageBase64 is not valid base64", hint=str(exc)) from exc


# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------
app = FastAPI(title="AstroVision Discovery API", version=API_VERSION)
API_PREFIX = "/v1"
router = APIRouter(prefix=API_PREFIX)

configure_observability(app)
TRACER = get_tracer("astrovision.api")

if not SETTINGS.has_api_key:
    logger.warning("ASTROMETRY_API_KEY is not set; /v1/analyze-discovery will return ASTRO_5021")


def _versioned(path: str) -> str:
    if path.startswith(API_PREFIX):
        return path
    return f"{API_PREFIX}{path}"


@app.middleware("http")
async def _version_header(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-AstroVision-API"] = "1"
    return response

@app.exception_handler(HTTPException)
async def _astro_http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    payload: Dict[str, Any]
    if isinstance(detail, dict):
        payload = detail.copy()
        message = payload.get("message", "Request failed")
    else:
        message = str(detail) if detail else "Request failed"
        payload = {"message": message}

    if "code" not in payload:
        if 400 <= exc.status_code < 500:
            payload["code"] = "ASTRO_4001"
        elif exc.status_code == 502:
            payload["code"] = "ASTRO_5021"
        elif exc.status_code == 504:
            payload["code"] = "ASTRO_5041"
        else:
            payload["code"] = "ASTRO_5000"

    payload.setdefault("hint", "See message for details.")
    payload["message"] = message
    return JSONResponse(status_code=exc.status_code, content=payload)

# -----------------------------------------------------------------------------
# Prometheus registry (multiprocess-aware)
# -----------------------------------------------------------------------------
def _build_registry() -> CollectorRegistry:
    registry = CollectorRegistry()
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        multiprocess.MultiProcessCollector(registry)
    return registry

PROM_REGISTRY = _build_registry()

REQ_COUNTER = Counter(
    "astro_requests_total",
    "Total requests per endpoint and status",
    ["endpoint", "status"],
    registry=PROM_REGISTRY,
)

LATENCY_HIST = Histogram(
    "astro_request_latency_seconds",
    "Request latency per endpoint",
    ["endpoint"],
    registry=PROM_REGISTRY,
)

STAGE_HIST = Histogram(
    "astro_pipeline_stage_seconds",
    "Discovery pipeline stage duration",
    ["stage"],
    buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 90.0, 120.0),
    registry=PROM_REGISTRY,
)

DISCOVERY_COUNTER = Counter(
    "astro_discoveries_total",
    "Completed discovery analyses by classification",
    ["type"],
    registry=PROM_REGISTRY,
)

DEGRADED_COUNTER = Counter(
    "astro_degraded_comparisons_total",
    "Analyses whose image comparison failed and was scored as zero",
    registry=PROM_REGISTRY,
)

FAILURE_COUNTER = Counter(
    "astro_pipeline_failures_total",
    "Aborted discovery analyses by failing stage",
    ["stage"],
    registry=PROM_REGISTRY,
)

# Pre-register baseline label values for visibility in /metrics
for _endpoint in ("health", "ready", "metrics", "analyze-discovery", "analyze-discovery/upload", "reference"):
    path = _versioned(f"/{_endpoint}")
    for _status in ("200", "400", "413", "502", "504", "500"):
        REQ_COUNTER.labels(endpoint=path, status=_status)
    LATENCY_HIST.labels(endpoint=path)

for _stage in ("solve", "reference", "compare"):
    STAGE_HIST.labels(stage=_stage)

for _type in ("SUPERNOVA", "GALAXY"):
    DISCOVERY_COUNTER.labels(type=_type)

for _stage in ("login", "upload", "poll", "solve", "reference"):
    FAILURE_COUNTER.labels(stage=_stage)


def _track(endpoint: str, method: str):
    start = time.perf_counter()

    class _Tracker:
        def ok(self, status: int = 200):
            self._observe(status)

        def fail(self, status: int):
            self._observe(status)

        def _observe(self, status: int):
            LATENCY_HIST.labels(endpoint=endpoint).observe(time.perf_counter() - start)
            REQ_COUNTER.labels(endpoint=endpoint, status=str(status)).inc()

    return _Tracker()


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------
def build_pipeline() -> DiscoveryPipeline:
    """One pipeline per request; nothing is shared between analyses."""
    return DiscoveryPipeline(SETTINGS)


class DiscoveryRequest(BaseModel):
    imageBase64: str = Field(..., min_length=1, description="Base64 image, data-URL prefix allowed")


async def _run_discovery(data: bytes, endpoint: str, t) -> Dict[str, Any]:
    pipeline = build_pipeline()
    try:
        result = await run_in_threadpool(pipeline.analyze_discovery, data)
    except PipelineError as exc:
        logger.error("discovery pipeline failed at %s: %s", exc.stage, exc)
        FAILURE_COUNTER.labels(stage=exc.stage).inc()
        http_exc = _pipeline_error(exc)
        t.fail(http_exc.status_code)
        raise http_exc from exc
    except Exception as exc:
        logger.exception("discovery pipeline crashed")
        t.fail(500)
        raise _service_error("Discovery analysis failed", hint=str(exc)) from exc

    for stage, seconds in result.timings.items():
        STAGE_HIST.labels(stage=stage).observe(seconds)
    DISCOVERY_COUNTER.labels(type=result.report.category.value).inc()
    if result.report.degraded:
        DEGRADED_COUNTER.inc()
    t.ok()
    return result.to_payload()


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------
@app.get("/")
def root() -> Dict[str, Any]:
    return {
        "message": "AstroVision Discovery Backend",
        "version": API_VERSION,
        "features": ["Plate Solving", "Reference Imagery", "Change Detection"],
        "status": {
            "astrometry_key": SETTINGS.has_api_key,
            "reference_service": SETTINGS.reference_service,
            "fits_support": has_fits_support(),
        },
    }


@router.get("/health")
def health() -> Dict[str, str]:
    endpoint = _versioned("/health")
    t = _track(endpoint, "GET")
    t.ok()
    return {"status": "ok"}

# Backwards compatibility: expose unversioned /health
app.add_api_route("/health", health, methods=["GET"])


@router.get("/ready")
def ready():
    endpoint = _versioned("/ready")
    t = _track(endpoint, "GET")
    checks: Dict[str, Dict[str, Any]] = {}

    checks["astrometry_key"] = {"ok": SETTINGS.has_api_key}
    if not SETTINGS.has_api_key:
        checks["astrometry_key"]["error"] = "ASTROMETRY_API_KEY not set"

    # FITS support is optional and does not degrade readiness
    checks["fits"] = {"ok": True, "available": has_fits_support()}

    try:
        with tempfile.NamedTemporaryFile(prefix="astro_ready_", delete=True) as fh:
            fh.write(b"ok")
        checks["tmp_write"] = {"ok": True}
    except OSError as exc:
        checks["tmp_write"] = {"ok": False, "error": str(exc)}

    status_code = 200 if all(entry["ok"] for entry in checks.values()) else 503
    if status_code == 200:
        t.ok()
    else:
        t.fail(status_code)
    payload = {"status": "ok" if status_code == 200 else "degraded", "checks": checks}
    return JSONResponse(status_code=status_code, content=payload)

# Backwards compatibility: expose unversioned /ready
app.add_api_route("/ready", ready, methods=["GET"])


@router.get("/metrics")
def metrics():
    data = generate_latest(PROM_REGISTRY)
    return PlainTextResponse(content=data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

# Backwards compatibility: expose unversioned /metrics
app.add_api_route("/metrics", metrics, methods=["GET"])


@router.post("/analyze-discovery")
async def analyze_discovery(body: DiscoveryRequest):
    endpoint = _versioned("/analyze-discovery")
    t = _track(endpoint, "POST")
    try:
        data = _decode_base64_image(body.imageBase64)
        _validate_image_payload(data)
    except HTTPException as exc:
        t.fail(exc.status_code)
        raise
    return await _run_discovery(data, endpoint, t)


@router.post("/analyze-discovery/upload")
async def analyze_discovery_upload(file: UploadFile = File(..., description="Sky photograph")):
    endpoint = _versioned("/analyze-discovery/upload")
    t = _track(endpoint, "POST")
    try:
        data = await file.read()
        _validate_image_payload(data)
    except HTTPException as exc:
        t.fail(exc.status_code)
        raise
    return await _run_discovery(data, endpoint, t)


@router.get("/reference")
async def fetch_reference(
    ra: float = Query(..., ge=0.0, lt=360.0, description="Right ascension in degrees"),
    dec: float = Query(..., ge=-90.0, le=90.0, description="Declination in degrees"),
    service: Optional[str] = Query(None, description="Survey service: skyview|sdss"),
    size_deg: Optional[float] = Query(None, gt=0.0, le=10.0, description="Field size in degrees"),
):
    endpoint = _versioned("/reference")
    t = _track(endpoint, "GET")
    try:
        provider = get_reference_provider(
            service or SETTINGS.reference_service,
            size_deg=size_deg or SETTINGS.reference_size_deg,
            survey=SETTINGS.skyview_survey,
            timeout_s=SETTINGS.http_timeout_s,
        )
    except ValueError as exc:
        t.fail(400)
        raise _validation_error(str(exc), hint="Use service=skyview or service=sdss.", code="ASTRO_4003")

    reference = provider.locate(ra, dec)
    try:
        content = await run_in_threadpool(provider.fetch, reference)
    except ReferenceFetchError as exc:
        t.fail(502)
        raise _pipeline_error(exc) from exc

    try:
        media_type = probe_image_bytes(content).mime
    except DecodeError:
        media_type = reference.media_type

    t.ok()
    headers = {
        "X-Astro-Provider": reference.service,
        "X-Astro-Reference-Url": reference.url,
    }
    return StreamingResponse(io.BytesIO(content), media_type=media_type, headers=headers)


app.include_router(router)
