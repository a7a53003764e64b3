"""
scripts/healthcheck.py

Container health check for the incentive engine API.

Exits 0 when ``GET /health`` answers 2xx with ``{"status": "ok"}``.
"""

from __future__ import annotations

import json
import os
import sys
from urllib.error import URLError
from urllib.request import urlopen


def main() -> int:
    host = os.getenv("HEALTHCHECK_HOST", "127.0.0.1")
    port = os.getenv("PORT", "8000")
    path = os.getenv("HEALTHCHECK_PATH", "/health")
    timeout = float(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "2"))
    url = f"http://{host}:{port}{path}"

    try:
        with urlopen(url, timeout=timeout) as response:
            if not 200 <= response.status < 300:
                print(f"unhealthy: {url} returned {response.status}", file=sys.stderr)
                return 1
            body = json.loads(response.read().decode("utf-8") or "{}")
    except (URLError, TimeoutError, ValueError) as exc:
        print(f"unhealthy: {url} unreachable ({exc})", file=sys.stderr)
        return 1

    if body.get("status") != "ok":
        print(f"unhealthy: {url} reported {body!r}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
