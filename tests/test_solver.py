from __future__ import annotations

import json

import pytest
import requests

from conftest import FakeResponse
from astrovision.errors import AuthError, SolverError, SolverStateError, SolveTimeoutError, UploadError
from astrovision.solver import AstrometryNetClient, CalibrationResult, SolverState, _completed_job

IMAGE = b"\xff\xd8\xff fake jpeg body"


def _client(http, sleeper, **kwargs):
    kwargs.setdefault("base_url", "https://solver.test/api")
    return AstrometryNetClient("test-key", http=http, sleep=sleeper, **kwargs)


def test_solves_on_third_attempt(solver_http, sleeper):
    http = solver_http(solve_on_attempt=3)
    client = _client(http, sleeper)

    result = client.solve(IMAGE)

    assert isinstance(result, CalibrationResult)
    assert (result.ra, result.dec) == (180.1234, 45.6789)
    assert result.job_id == 4242
    assert result.pixscale == pytest.approx(1.1)
    assert client.state is SolverState.CALIBRATED
    assert client.attempts_made == 3
    assert http.count("/submissions/991") == 3
    assert sleeper.calls == [3.0, 3.0]


def test_stops_on_first_completed_job(solver_http, sleeper):
    http = solver_http(solve_on_attempt=1)
    client = _client(http, sleeper)
    client.solve(IMAGE)
    assert http.count("/submissions/") == 1
    assert http.count("/jobs/4242/calibration/") == 1
    assert sleeper.calls == []


def test_times_out_after_budget(solver_http, sleeper):
    http = solver_http(solve_on_attempt=None)
    client = _client(http, sleeper)

    with pytest.raises(SolveTimeoutError) as excinfo:
        client.solve(IMAGE)

    assert excinfo.value.stage == "poll"
    assert client.state is SolverState.TIMED_OUT
    assert client.attempts_made == 20
    assert http.count("/submissions/") == 20
    assert len(sleeper.calls) == 19
    assert sleeper.total == pytest.approx(57.0)
    assert http.count("/calibration/") == 0


def test_custom_budget(solver_http, sleeper):
    http = solver_http(solve_on_attempt=None)
    client = _client(http, sleeper, attempts=4, interval_s=0.5)
    with pytest.raises(SolveTimeoutError):
        client.solve(IMAGE)
    assert sleeper.calls == [0.5, 0.5, 0.5]


def test_login_sends_api_key(solver_http, sleeper):
    http = solver_http()
    client = _client(http, sleeper)
    assert client.open_session() == "sess-1"
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("POST", "https://solver.test/api/login")
    assert json.loads(kwargs["data"]["request-json"]) == {"apikey": "test-key"}
    assert client.state is SolverState.SESSION_OPEN


def test_upload_is_private_multipart(solver_http, sleeper):
    http = solver_http()
    client = _client(http, sleeper)
    session = client.open_session()
    submission = client.submit(session, IMAGE)

    assert submission.submission_id == 991
    _, url, kwargs = http.calls[1]
    assert url == "https://solver.test/api/upload"
    assert json.loads(kwargs["data"]["request-json"]) == {"session": "sess-1", "publicly_visible": "n"}
    filename, body, _ = kwargs["files"]["file"]
    assert filename == "observation.jpg"
    assert body == IMAGE


def test_missing_key_fails_without_network(solver_http, sleeper):
    http = solver_http()
    client = AstrometryNetClient(None, http=http, sleep=sleeper)
    with pytest.raises(AuthError):
        client.solve(IMAGE)
    assert http.calls == []


def test_login_rejected(solver_http, sleeper):
    http = solver_http(login=FakeResponse(json_data={"status": "error", "errormessage": "bad apikey"}))
    with pytest.raises(AuthError, match="bad apikey") as excinfo:
        _client(http, sleeper).solve(IMAGE)
    assert excinfo.value.stage == "login"


def test_login_transport_error(solver_http, sleeper):
    http = solver_http(login=requests.ConnectionError("refused"))
    with pytest.raises(AuthError):
        _client(http, sleeper).solve(IMAGE)


def test_upload_rejected(solver_http, sleeper):
    http = solver_http(upload=FakeResponse(json_data={"status": "error", "errormessage": "no session"}))
    with pytest.raises(UploadError, match="no session"):
        _client(http, sleeper).solve(IMAGE)


def test_upload_http_error(solver_http, sleeper):
    http = solver_http(upload=FakeResponse(status_code=500))
    with pytest.raises(UploadError) as excinfo:
        _client(http, sleeper).solve(IMAGE)
    assert excinfo.value.stage == "upload"


def test_poll_transport_error_is_not_a_timeout(solver_http, sleeper):
    http = solver_http()
    http.routes["/submissions/"] = requests.Timeout("slow")
    with pytest.raises(SolverError) as excinfo:
        _client(http, sleeper).solve(IMAGE)
    assert not isinstance(excinfo.value, SolveTimeoutError)


def test_calibration_without_coordinates(solver_http, sleeper):
    http = solver_http()
    http.routes["/calibration/"] = FakeResponse(json_data={"radius": 0.1})
    with pytest.raises(SolverError, match="ra/dec"):
        _client(http, sleeper).solve(IMAGE)


def test_operations_enforce_state(solver_http, sleeper):
    client = _client(solver_http(), sleeper)
    with pytest.raises(SolverStateError):
        client.submit("sess-1", IMAGE)
    with pytest.raises(SolverStateError):
        client.poll_for_calibration(991)

    client.solve(IMAGE)
    with pytest.raises(SolverStateError):
        client.open_session()


def test_closes_only_owned_session(solver_http, sleeper):
    http = solver_http()
    with _client(http, sleeper):
        pass
    assert http.closed is False


@pytest.mark.parametrize(
    "status,expected",
    [
        ({"jobs": [], "job_calibrations": []}, None),
        ({"jobs": [None], "job_calibrations": []}, None),
        ({"jobs": [5], "job_calibrations": [[5, 12]]}, 5),
        ({"jobs": [None, 9], "job_calibrations": [[None, 3]]}, 9),
    ],
)
def test_completed_job_detection(status, expected):
    assert _completed_job(status) == expected


def test_rejects_invalid_budget():
    with pytest.raises(ValueError):
        AstrometryNetClient("k", attempts=0)


@pytest.mark.parametrize("subid", ["abc", None, [991]])
def test_upload_with_unusable_subid(solver_http, sleeper, subid):
    http = solver_http(upload=FakeResponse(json_data={"status": "success", "subid": subid}))
    client = _client(http, sleeper)
    session = client.open_session()
    with pytest.raises(UploadError) as excinfo:
        client.submit(session, IMAGE)
    assert excinfo.value.stage == "upload"
    assert client.state is SolverState.SESSION_OPEN
