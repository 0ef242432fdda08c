"""Re-post errored gateway notifications to the billing webhook.

Replay sends the originally received query string and body, so the
`(resource_id, topic)` dedup guarantees still apply: a record that has since
been processed is skipped by the service.
"""

import argparse
import json

import httpx


def fetch_errored(client: httpx.Client, topic: str | None, limit: int) -> list[dict]:
    """Notification records currently in `error` status."""

    params = {"status": "error", "limit": limit}
    if topic:
        params["topic"] = topic
    resp = client.get("/notifications", params=params)
    resp.raise_for_status()
    return resp.json()


def replay(client: httpx.Client, record: dict, dry_run: bool) -> str:
    raw = record.get("raw_payload") or {}
    query = raw.get("query") or {}
    body = raw.get("body") or None
    if not query and not body:
        # Records without a stored payload are replayed in the canonical query form.
        query = {"id": record["resource_id"], "topic": record["topic"]}
    if dry_run:
        return f"would replay id={record['id']} resource_id={record['resource_id']} query={query}"
    resp = client.post("/webhooks/mercadopago", params=query, json=body)
    resp.raise_for_status()
    return f"replayed id={record['id']} resource_id={record['resource_id']} -> {json.dumps(resp.json())}"


def main() -> None:
    """CLI entrypoint for notification replay."""

    parser = argparse.ArgumentParser(description="Replay errored gateway notifications through the webhook.")
    parser.add_argument("--billing-url", default="http://localhost:8000")
    parser.add_argument("--topic", default="payment")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    with httpx.Client(base_url=args.billing_url, timeout=15.0) as client:
        records = fetch_errored(client, args.topic, args.limit)
        if not records:
            print("No errored notifications found.")
            raise SystemExit(0)
        failures = 0
        for record in records:
            try:
                print(replay(client, record, args.dry_run))
            except httpx.HTTPError as exc:
                failures += 1
                print(f"replay failed id={record['id']} error={exc}")
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
