"""Fetch and print the charge collection report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for collection checks."""

    parser = argparse.ArgumentParser(description="Fetch the billing collection metrics endpoint.")
    parser.add_argument("--billing-url", default="http://localhost:8000")
    parser.add_argument("--unit-id", type=int, default=None)
    args = parser.parse_args()

    params = {"unit_id": args.unit_id} if args.unit_id is not None else {}
    resp = httpx.get(f"{args.billing_url}/charges/metrics", params=params, timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
