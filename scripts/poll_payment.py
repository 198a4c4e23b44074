#!/usr/bin/env python3
"""Start a hotspot payment and poll its status the way the captive portal does."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from typing import Callable

import httpx


MAX_ATTEMPTS = 30
POLL_INTERVAL_SECONDS = 10.0
TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


@dataclass
class PollResult:
    # completed | failed | cancelled | timeout
    outcome: str
    attempts: int
    session_token: str | None = None


def _api_url(base_url: str, api_prefix: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{api_prefix}{path}"


def start_payment(client: httpx.Client, base_url: str, api_prefix: str, phone: str, plan_id: int, amount: str) -> str:
    resp = client.post(
        _api_url(base_url, api_prefix, "/public/payment"),
        json={"phone": phone, "plan_id": plan_id, "amount": amount},
    )
    if resp.status_code != 200:
        raise RuntimeError(f"Payment request failed: HTTP {resp.status_code}. Body: {resp.text}")
    data = resp.json()
    print(data.get("customer_message") or "Check your phone to complete the payment.")
    return data["correlation_id"]


def poll_status(
    client: httpx.Client,
    base_url: str,
    api_prefix: str,
    correlation_id: str,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """
    Poll until the payment is terminal or ``max_attempts`` is used up.

    Running out of attempts is reported as ``timeout``: the payment may still
    complete later, so it is never treated as a failure. Transient HTTP errors
    count as an attempt and polling continues.
    """
    url = _api_url(base_url, api_prefix, f"/public/payment/status/{correlation_id}")
    for attempt in range(1, max_attempts + 1):
        try:
            resp = client.get(url)
        except httpx.HTTPError as exc:
            print(f"attempt {attempt}: request failed ({exc})")
        else:
            if resp.status_code == 200:
                data = resp.json()
                status = str(data.get("status") or "").lower()
                if status in TERMINAL_STATUSES:
                    return PollResult(outcome=status, attempts=attempt, session_token=data.get("session_token"))
                print(f"attempt {attempt}: {status or 'unknown'}")
            else:
                print(f"attempt {attempt}: HTTP {resp.status_code}")
        if attempt < max_attempts:
            sleep(interval)
    return PollResult(outcome="timeout", attempts=max_attempts)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pay for a hotspot plan and wait for the session token.")
    parser.add_argument("--base-url", required=True, help="Backend base URL, e.g. http://localhost:8000")
    parser.add_argument("--api-prefix", default="/api/v1", help="API prefix (default: /api/v1)")
    parser.add_argument("--phone", required=True, help="Customer phone, e.g. 0712345678")
    parser.add_argument("--plan-id", type=int, required=True)
    parser.add_argument("--amount", required=True, help="Plan price, must match the plan")
    parser.add_argument("--attempts", type=int, default=MAX_ATTEMPTS)
    parser.add_argument("--interval", type=float, default=POLL_INTERVAL_SECONDS, help="Seconds between polls")
    parser.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout in seconds")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    with httpx.Client(timeout=args.timeout) as client:
        correlation_id = start_payment(client, args.base_url, args.api_prefix, args.phone, args.plan_id, args.amount)
        result = poll_status(
            client,
            args.base_url,
            args.api_prefix,
            correlation_id,
            max_attempts=args.attempts,
            interval=args.interval,
        )
    if result.outcome == "completed":
        print(f"SUCCESS: session token {result.session_token}")
        return
    if result.outcome == "timeout":
        print(f"TIMEOUT: no final status after {result.attempts} attempts; check again later ({correlation_id}).")
        raise SystemExit(2)
    print(f"ERROR: payment {result.outcome}.")
    raise SystemExit(1)


if __name__ == "__main__":
    main()
