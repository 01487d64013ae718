from __future__ import annotations

import time

import httpx

_HEALTHY_WORDS = {"healthy", "ok", "up", "pass"}


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call an instance health endpoint.

    Any 2xx counts as healthy unless the body is JSON with a `status` field
    that says otherwise. Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data:
            status = str(data["status"]).lower()
            if status not in _HEALTHY_WORDS:
                return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
