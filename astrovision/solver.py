from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import requests

from astrovision.config import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_SOLVER_ATTEMPTS,
    DEFAULT_SOLVER_INTERVAL,
    DEFAULT_SOLVER_URL,
)
from astrovision.errors import (
    AuthError,
    SolverError,
    SolverStateError,
    SolveTimeoutError,
    UploadError,
)

__all__ = [
    "SolverState",
    "Submission",
    "CalibrationResult",
    "AstrometryNetClient",
]

logger = logging.getLogger("astrovision.solver")

UPLOAD_FILENAME = "observation.jpg"


class SolverState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    SESSION_OPEN = "session_open"
    SUBMITTED = "submitted"
    POLLING = "polling"
    CALIBRATED = "calibrated"
    TIMED_OUT = "timed_out"


_TRANSITIONS: Dict[SolverState, FrozenSet[SolverState]] = {
    SolverState.UNAUTHENTICATED: frozenset({SolverState.SESSION_OPEN}),
    SolverState.SESSION_OPEN: frozenset({SolverState.SUBMITTED}),
    SolverState.SUBMITTED: frozenset({SolverState.POLLING}),
    SolverState.POLLING: frozenset({SolverState.CALIBRATED, SolverState.TIMED_OUT}),
    SolverState.CALIBRATED: frozenset(),
    SolverState.TIMED_OUT: frozenset(),
}


@dataclass
class Submission:
    session: str
    submission_id: int
    image: bytes = field(repr=False)


@dataclass(frozen=True)
class CalibrationResult:
    ra: float
    dec: float
    job_id: int
    radius: Optional[float] = None
    pixscale: Optional[float] = None
    orientation: Optional[float] = None
    parity: Optional[float] = None

    @classmethod
    def from_payload(cls, job_id: int, payload: Mapping[str, Any]) -> "CalibrationResult":
        try:
            ra = float(payload["ra"])
            dec = float(payload["dec"])
        except (KeyError, TypeError, ValueError) as exc:
            raise SolverError(f"Calibration for job {job_id} is missing ra/dec: {payload!r}") from exc

        def _opt(key: str) -> Optional[float]:
            value = payload.get(key)
            try:
                return float(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            ra=ra,
            dec=dec,
            job_id=int(job_id),
            radius=_opt("radius"),
            pixscale=_opt("pixscale"),
            orientation=_opt("orientation"),
            parity=_opt("parity"),
        )


class AstrometryNetClient:
    """Plate solving via the astrometry.net web API.

    One instance drives one solve: login, upload, then poll the submission
    at a fixed interval until a calibration appears or the attempt budget
    runs out. `sleep` and `clock` are injectable so the polling loop can be
    exercised without wall-clock delays.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_SOLVER_URL,
        attempts: int = DEFAULT_SOLVER_ATTEMPTS,
        interval_s: float = DEFAULT_SOLVER_INTERVAL,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.attempts = attempts
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self._owns_http = http is None
        self._http = http if http is not None else requests.Session()
        self._sleep = sleep
        self._clock = clock
        self.state = SolverState.UNAUTHENTICATED
        self.attempts_made = 0

    # ------------------------------------------------------------------ lifecycle
    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "AstrometryNetClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _advance(self, target: SolverState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SolverStateError(f"Cannot move from {self.state.value} to {target.value}")
        logger.debug("solver state %s -> %s", self.state.value, target.value)
        self.state = target

    def _require(self, expected: SolverState, action: str) -> None:
        if self.state is not expected:
            raise SolverStateError(f"{action} requires state {expected.value}, client is {self.state.value}")

    # ------------------------------------------------------------------ HTTP
    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise SolverError(f"Solver returned non-JSON payload (HTTP {resp.status_code})") from exc
        if not isinstance(data, dict):
            raise SolverError(f"Unexpected solver payload: {data!r}")
        return data

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            resp = self._http.get(self._url(path), timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise SolverError(f"GET {path} failed: {exc}") from exc
        return self._json(resp)

    # ------------------------------------------------------------------ operations
    def open_session(self) -> str:
        self._require(SolverState.UNAUTHENTICATED, "open_session")
        if not self.api_key:
            raise AuthError("No astrometry.net API key configured (set ASTROMETRY_API_KEY).")
        try:
            resp = self._http.post(
                self._url("login"),
                data={"request-json": json.dumps({"apikey": self.api_key})},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            result = self._json(resp)
        except (requests.RequestException, SolverError) as exc:
            raise AuthError(f"Login request failed: {exc}") from exc
        session = result.get("session")
        if result.get("status") != "success" or not session:
            reason = result.get("errormessage") or result.get("status") or "unknown error"
            raise AuthError(f"Login rejected: {reason}")
        self._advance(SolverState.SESSION_OPEN)
        logger.info("astrometry.net session opened")
        return str(session)

    def submit(self, session: str, image: bytes, *, filename: str = UPLOAD_FILENAME) -> Submission:
        self._require(SolverState.SESSION_OPEN, "submit")
        if not image:
            raise UploadError("Refusing to upload an empty image.")
        payload = {"session": session, "publicly_visible": "n"}
        try:
            resp = self._http.post(
                self._url("upload"),
                data={"request-json": json.dumps(payload)},
                files={"file": (filename, image, "application/octet-stream")},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            result = self._json(resp)
        except (requests.RequestException, SolverError) as exc:
            raise UploadError(f"Upload failed: {exc}") from exc
        if result.get("status") != "success" or result.get("subid") is None:
            reason = result.get("errormessage") or result.get("status") or "unknown error"
            raise UploadError(f"Upload rejected: {reason}")
        try:
            submission_id = int(result["subid"])
        except (TypeError, ValueError) as exc:
            raise UploadError(f"Upload returned invalid subid: {result['subid']!r}") from exc
        submission = Submission(session=session, submission_id=submission_id, image=image)
        self._advance(SolverState.SUBMITTED)
        logger.info("uploaded %d bytes as submission %s", len(image), submission.submission_id)
        return submission

    def poll_for_calibration(self, submission_id: int) -> CalibrationResult:
        self._require(SolverState.SUBMITTED, "poll_for_calibration")
        self._advance(SolverState.POLLING)
        started = self._clock()
        for attempt in range(1, self.attempts + 1):
            self.attempts_made = attempt
            status = self._get(f"submissions/{submission_id}")
            job_id = _completed_job(status)
            if job_id is not None:
                calibration = CalibrationResult.from_payload(job_id, self._get(f"jobs/{job_id}/calibration/"))
                self._advance(SolverState.CALIBRATED)
                logger.info(
                    "submission %s calibrated by job %s after %d attempt(s): RA=%.4f Dec=%.4f",
                    submission_id, job_id, attempt, calibration.ra, calibration.dec,
                )
                return calibration
            logger.info("Solving coordinates... attempt %d/%d", attempt, self.attempts)
            if attempt < self.attempts:
                self._sleep(self.interval_s)

        self._advance(SolverState.TIMED_OUT)
        elapsed = self._clock() - started
        raise SolveTimeoutError(
            f"Astrometry solving timed out after {self.attempts} attempts ({elapsed:.1f}s)."
        )

    def solve(self, image: bytes) -> CalibrationResult:
        session = self.open_session()
        submission = self.submit(session, image)
        return self.poll_for_calibration(submission.submission_id)


def _completed_job(status: Mapping[str, Any]) -> Optional[int]:
    """Job id of the first finished calibration in a submission status, if any."""
    calibrations = status.get("job_calibrations") or []
    if not calibrations:
        return None
    first = calibrations[0]
    candidate: Any = None
    if isinstance(first, (list, tuple)) and first:
        candidate = first[0]
    if candidate is None:
        jobs: Tuple[Any, ...] = tuple(j for j in (status.get("jobs") or []) if j is not None)
        candidate = jobs[0] if jobs else None
    if candidate is None:
        return None
    try:
        return int(candidate)
    except (TypeError, ValueError):
        return None
