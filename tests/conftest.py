from __future__ import annotations

import io
from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pytest
import requests
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, content: bytes = b""):
        self.status_code = status_code
        self._json = json_data
        self.content = content

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON payload")
        return self._json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


Route = Union[FakeResponse, Exception, Callable[[str], FakeResponse]]


class FakeHttp:
    """Stand-in for `requests.Session`: routes by URL substring, records every call."""

    def __init__(self, routes: Dict[str, Route]):
        self.routes = routes
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def _dispatch(self, url: str) -> FakeResponse:
        for fragment, route in self.routes.items():
            if fragment in url:
                if isinstance(route, Exception):
                    raise route
                if callable(route) and not isinstance(route, FakeResponse):
                    return route(url)
                return route
        raise AssertionError(f"Unexpected request to {url}")

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("GET", url, kwargs))
        return self._dispatch(url)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("POST", url, kwargs))
        return self._dispatch(url)

    def close(self) -> None:
        self.closed = True

    def count(self, fragment: str) -> int:
        return sum(1 for _, url, _ in self.calls if fragment in url)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return float(sum(self.calls))


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def solver_http() -> Callable[..., FakeHttp]:
    """Factory for a fake astrometry.net backend that solves on a given poll attempt."""

    def _factory(
        solve_on_attempt: Optional[int] = 1,
        ra: float = 180.1234,
        dec: float = 45.6789,
        job_id: int = 4242,
        login: Optional[Route] = None,
        upload: Optional[Route] = None,
    ) -> FakeHttp:
        state = {"polls": 0}

        def _status(url: str) -> FakeResponse:
            state["polls"] += 1
            if solve_on_attempt is not None and state["polls"] >= solve_on_attempt:
                return FakeResponse(json_data={"jobs": [job_id], "job_calibrations": [[job_id, 77]]})
            return FakeResponse(json_data={"jobs": [], "job_calibrations": []})

        routes: Dict[str, Route] = {
            "/login": login or FakeResponse(json_data={"status": "success", "session": "sess-1"}),
            "/upload": upload or FakeResponse(json_data={"status": "success", "subid": 991}),
            "/submissions/": _status,
            "/calibration/": FakeResponse(
                json_data={"ra": ra, "dec": dec, "radius": 0.2, "pixscale": 1.1, "orientation": 90.0, "parity": 1.0}
            ),
        }
        return FakeHttp(routes)

    return _factory


@pytest.fixture(scope="session")
def sky_frame() -> Callable[..., np.ndarray]:
    """Deterministic dim star field as a uint8 grid (background well below 200)."""

    def _factory(size: int = 500, stars: int = 40, seed: int = 7) -> np.ndarray:
        rng = np.random.default_rng(seed=seed)
        frame = rng.integers(5, 40, size=(size, size), dtype=np.uint8)
        ys = rng.integers(0, size, stars)
        xs = rng.integers(0, size, stars)
        frame[ys, xs] = 120
        return frame

    return _factory


@pytest.fixture(scope="session")
def brighten() -> Callable[[np.ndarray, int], np.ndarray]:
    """Copy of `frame` with exactly `count` pixels pushed to full brightness."""

    def _factory(frame: np.ndarray, count: int) -> np.ndarray:
        out = frame.copy()
        flat = out.reshape(-1)
        flat[:count] = 255
        return out

    return _factory


@pytest.fixture(scope="session")
def png_bytes_from_array() -> Callable[[np.ndarray], bytes]:
    """Encode a uint8 array into a lossless PNG (mode L or RGB by shape)."""

    def _factory(array: np.ndarray) -> bytes:
        arr = np.asarray(array, dtype=np.uint8)
        mode = "L" if arr.ndim == 2 else "RGB"
        image = Image.fromarray(arr, mode=mode)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    return _factory
