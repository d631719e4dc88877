from __future__ import annotations

import os

import requests

DEFAULT_EXPOSED_PORT = 8080
DEFAULT_PROBE_HOST = "127.0.0.1"
DEFAULT_TIMEOUT_SEC = 3.0


def _resolve_port() -> int:
    raw = os.getenv("EXPOSED_PORT", str(DEFAULT_EXPOSED_PORT)).strip()
    try:
        port = int(raw)
    except ValueError:
        return DEFAULT_EXPOSED_PORT
    if not 1 <= port <= 65535:
        return DEFAULT_EXPOSED_PORT
    return port


def _resolve_timeout_sec() -> float:
    raw = os.getenv("HEALTHCHECK_TIMEOUT_SEC", str(DEFAULT_TIMEOUT_SEC)).strip()
    try:
        return max(float(raw), 0.1)
    except ValueError:
        return DEFAULT_TIMEOUT_SEC


def probe_port(
    *,
    host: str,
    port: int,
    timeout_sec: float,
    session: requests.Session | None = None,
) -> tuple[bool, str]:
    # Any HTTP status proves the application answers on the declared port.
    url = f"http://{host}:{port}/"
    client = session or requests.Session()
    try:
        response = client.get(url, timeout=timeout_sec, allow_redirects=False)
    except requests.Timeout:
        return False, f"port-probe-timeout:{url}"
    except requests.ConnectionError as exc:
        return False, f"port-probe-refused:{url}:{exc.__class__.__name__}"
    except requests.RequestException as exc:
        return False, f"port-probe-error:{url}:{exc}"
    finally:
        if session is None:
            client.close()
    return True, f"port-probe-ok:{url}:status={response.status_code}"


def main() -> int:
    host = os.getenv("HEALTHCHECK_HOST", DEFAULT_PROBE_HOST).strip() or DEFAULT_PROBE_HOST
    ok, reason = probe_port(
        host=host,
        port=_resolve_port(),
        timeout_sec=_resolve_timeout_sec(),
    )
    print(reason)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
