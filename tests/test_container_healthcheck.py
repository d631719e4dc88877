from __future__ import annotations

import pytest
import requests

from scripts import container_healthcheck
from scripts.container_healthcheck import probe_port


class _FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _FakeSession:
    def __init__(self, *, status_code: int = 200, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.requests: list[tuple[str, dict[str, object]]] = []
        self.closed = False

    def get(self, url: str, **kwargs: object) -> _FakeResponse:
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return _FakeResponse(self.status_code)

    def close(self) -> None:
        self.closed = True


def test_probe_port_passes_on_any_http_response() -> None:
    session = _FakeSession(status_code=404)

    ok, reason = probe_port(host="127.0.0.1", port=8080, timeout_sec=2.0, session=session)

    assert ok is True
    assert reason == "port-probe-ok:http://127.0.0.1:8080/:status=404"
    assert session.requests == [
        ("http://127.0.0.1:8080/", {"timeout": 2.0, "allow_redirects": False})
    ]
    assert session.closed is False


def test_probe_port_fails_when_connection_refused() -> None:
    session = _FakeSession(error=requests.ConnectionError("refused"))

    ok, reason = probe_port(host="127.0.0.1", port=8080, timeout_sec=1.0, session=session)

    assert ok is False
    assert reason == "port-probe-refused:http://127.0.0.1:8080/:ConnectionError"


def test_probe_port_fails_on_timeout() -> None:
    session = _FakeSession(error=requests.ReadTimeout("slow"))

    ok, reason = probe_port(host="127.0.0.1", port=3000, timeout_sec=1.0, session=session)

    assert ok is False
    assert reason == "port-probe-timeout:http://127.0.0.1:3000/"


def test_probe_port_reports_other_request_errors() -> None:
    session = _FakeSession(error=requests.TooManyRedirects("loop"))

    ok, reason = probe_port(host="localhost", port=8080, timeout_sec=1.0, session=session)

    assert ok is False
    assert reason.startswith("port-probe-error:http://localhost:8080/")


def test_probe_port_closes_session_it_created(monkeypatch: pytest.MonkeyPatch) -> None:
    session = _FakeSession(status_code=200)
    monkeypatch.setattr(container_healthcheck.requests, "Session", lambda: session)

    ok, _ = probe_port(host="127.0.0.1", port=8080, timeout_sec=1.0)

    assert ok is True
    assert session.closed is True


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("3000", 3000), ("", 8080), ("abc", 8080), ("70000", 8080)],
)
def test_resolve_port_falls_back_to_default(
    monkeypatch: pytest.MonkeyPatch,
    raw: str,
    expected: int,
) -> None:
    monkeypatch.setenv("EXPOSED_PORT", raw)

    assert container_healthcheck._resolve_port() == expected


def test_main_returns_exit_code_from_probe(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("HEALTHCHECK_HOST", "10.0.0.5")
    monkeypatch.setenv("EXPOSED_PORT", "3000")
    captured: dict[str, object] = {}

    def _fake_probe(*, host: str, port: int, timeout_sec: float) -> tuple[bool, str]:
        captured.update(host=host, port=port)
        return False, "port-probe-refused:http://10.0.0.5:3000/:ConnectionError"

    monkeypatch.setattr(container_healthcheck, "probe_port", _fake_probe)

    assert container_healthcheck.main() == 1
    assert captured == {"host": "10.0.0.5", "port": 3000}
    assert "port-probe-refused" in capsys.readouterr().out
