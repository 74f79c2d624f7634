"""Trigger one expiration sweep over HTTP.

Intended for cron or any external scheduler when the in-process sweeper loop
is disabled (`RUN_BACKGROUND_WORKERS=false`). Sweeps are idempotent, so an
overlapping run only finds fewer candidates.
"""

import argparse
import json

import httpx


def run_sweep(base_url: str, api_key: str, timeout_seconds: float) -> int:
    """Call the sweep endpoint and print the report; returns a process exit code."""

    try:
        resp = httpx.post(
            f"{base_url.rstrip('/')}/internal/sweeps/expired",
            headers={"x-api-key": api_key},
            timeout=timeout_seconds,
        )
    except httpx.HTTPError as exc:
        print(f"Sweep request failed: {exc}")
        return 2
    if resp.status_code != 200:
        print(f"Sweep rejected with HTTP {resp.status_code}: {resp.text[:300]}")
        return 1

    report = resp.json()
    print(
        f"found={report['total_found']} expired={report['processed']} "
        f"released_payments={report['released_payments']}"
    )
    errors = [item for item in report["results"] if item.get("status") == "error"]
    for item in errors:
        print(json.dumps(item))
    return 1 if errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one booking expiration sweep.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="")
    parser.add_argument("--timeout-seconds", type=float, default=30.0)
    args = parser.parse_args()
    raise SystemExit(run_sweep(args.base_url, args.api_key, args.timeout_seconds))


if __name__ == "__main__":
    main()
