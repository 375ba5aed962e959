#!/usr/bin/env python3
"""
LibraryFinder post-deploy smoke test.
Hits the health check and the search API and asserts the JSON envelope
has the shape the frontend depends on.  By default only requests that
never reach Google Maps are made; set SMOKE_QUERY to also run one real
search (costs API quota).
Usage:
    python smoke_test.py                          # uses http://127.0.0.1:8000
    python smoke_test.py https://your-url.app     # custom base URL
Exit codes:
    0 = all checks passed
    1 = one or more checks failed

Webhook alerting:
    Set SMOKE_ALERT_WEBHOOK to a Slack or Discord webhook URL.
    On failure, a JSON payload is POSTed with a "text" field summary.
    If unset, alerting is silently skipped.
"""
import json
import os
import sys
import urllib.parse
import urllib.request
import urllib.error
from datetime import datetime, timezone

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DEFAULT_BASE_URL = "http://127.0.0.1:8000"

SEARCH_PATH = "/api/libraries/search"

# Keys every serialized library must carry, even when null.
RESULT_REQUIRED_KEYS = {
    "name", "formattedAddress", "city", "state", "postalCode", "lat", "lng",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def fetch(url: str) -> tuple[int, str]:
    """Fetch a URL, return (status_code, body_text)."""
    req = urllib.request.Request(url, headers={"User-Agent": "LibraryFinder-Smoke/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=30) as resp:
            return resp.status, resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        return e.code, e.read().decode("utf-8", errors="replace")
    except Exception as e:
        print(f"  FETCH ERROR: {e}")
        return 0, ""


def parse_json(body: str) -> dict | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def check_envelope(data: dict | None) -> list[str]:
    """Return a list of problems with a search response envelope."""
    if data is None:
        return ["body is not a JSON object"]
    problems = []
    if not isinstance(data.get("ok"), bool):
        problems.append("missing boolean 'ok'")
    elif data["ok"]:
        results = data.get("results")
        if not isinstance(results, list):
            problems.append("ok response without 'results' list")
        else:
            for i, item in enumerate(results):
                missing = RESULT_REQUIRED_KEYS - set(item)
                if missing:
                    problems.append(f"result {i} missing keys {sorted(missing)}")
    elif not isinstance(data.get("error"), str):
        problems.append("error response without 'error' string")
    return problems


def send_webhook_alert(failures: list[str]) -> None:
    """POST a failure summary to SMOKE_ALERT_WEBHOOK. Fire-and-forget."""
    webhook_url = os.environ.get("SMOKE_ALERT_WEBHOOK", "").strip()
    if not webhook_url:
        return

    commit = os.environ.get("RAILWAY_GIT_COMMIT_SHA", "unknown")[:7]
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    details = "; ".join(failures)
    text = f"LibraryFinder smoke test failed on deploy {commit} at {timestamp}: {details}"

    payload = json.dumps({"text": text}).encode("utf-8")
    req = urllib.request.Request(
        webhook_url,
        data=payload,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=5):
            pass
    except Exception as e:
        print(f"  ALERT WARN: webhook POST failed ({e})")


# ---------------------------------------------------------------------------
# Test runner
# ---------------------------------------------------------------------------
def run_tests(base_url: str) -> bool:
    failures: list[str] = []

    # --- Test 1: Health check ---
    print(f"\n[1] Health check: {base_url}/healthz")
    status, body = fetch(f"{base_url}/healthz")
    if status != 200:
        print(f"  FAIL: status {status} (expected 200)")
        failures.append(f"Test 1 (healthz): HTTP {status}, expected 200")
    else:
        print("  PASS")

    # --- Test 2: Blank query is rejected without upstream calls ---
    blank_url = f"{base_url}{SEARCH_PATH}?q=%20%20"
    print(f"\n[2] Blank query: {blank_url}")
    status, body = fetch(blank_url)
    data = parse_json(body)
    if status != 400:
        print(f"  FAIL: status {status} (expected 400)")
        failures.append(f"Test 2 (blank query): HTTP {status}, expected 400")
    elif not data or data.get("error") != "Empty query":
        print(f"  FAIL: unexpected body {body[:200]!r}")
        failures.append("Test 2 (blank query): error message changed")
    else:
        print("  PASS")

    # --- Test 3: Optional live search ---
    live_query = os.environ.get("SMOKE_QUERY", "").strip()
    if not live_query:
        print("\n[3] Live search: SKIP (SMOKE_QUERY not set)")
    else:
        live_url = f"{base_url}{SEARCH_PATH}?q={urllib.parse.quote(live_query, safe='')}"
        print(f"\n[3] Live search: {live_url}")
        status, body = fetch(live_url)
        problems = check_envelope(parse_json(body))
        if status not in (200, 400):
            print(f"  FAIL: status {status} (expected 200 or 400)")
            failures.append(f"Test 3 (live search): HTTP {status}")
        elif problems:
            print(f"  FAIL: {problems}")
            failures.append(f"Test 3 (live search): {problems}")
        else:
            print(f"  PASS (HTTP {status})")

    # --- Send webhook alert on failure ---
    if failures:
        send_webhook_alert(failures)

    return not failures


def main():
    base_url = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else DEFAULT_BASE_URL
    print("LibraryFinder Smoke Test")
    print(f"Target: {base_url}")
    print("=" * 60)

    ok = run_tests(base_url)

    print("\n" + "=" * 60)
    if ok:
        print("ALL CHECKS PASSED")
        sys.exit(0)
    else:
        print("ONE OR MORE CHECKS FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
