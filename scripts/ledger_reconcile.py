"""Fetch and print the credit ledger reconciliation report."""

import argparse
import json
import sys

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks; exits 1 when the ledger is unhealthy."""

    parser = argparse.ArgumentParser(description="Fetch the ledger reconciliation report.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.api_url}/reconciliation",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if not report.get("healthy", False):
        sys.exit(1)


if __name__ == "__main__":
    main()
