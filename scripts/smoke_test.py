#!/usr/bin/env python3
"""
Smoke test against a running ingestion service.

Usage:
    python scripts/smoke_test.py health              # Liveness check
    python scripts/smoke_test.py batch               # Send one event batch
    python scripts/smoke_test.py endpoint            # PUT one endpoint
    python scripts/smoke_test.py test                # All of the above
"""
import argparse
import os
import sys
from datetime import datetime, timezone
from uuid import uuid4

import requests

API_URL = os.getenv("INGESTION_API_URL", "http://localhost:3000")
APP_ID = os.getenv("INGESTION_APP_ID", "smoke-test-app")


def check_health() -> bool:
    """GET any path, expect the liveness message."""
    try:
        response = requests.get(f"{API_URL}/", timeout=5)
    except requests.exceptions.RequestException as e:
        print(f"Health check failed: {e}")
        return False
    print(f"Health: HTTP {response.status_code} {response.json()}")
    return response.status_code == 200


def send_batch(client_id: str, count: int = 3) -> bool:
    """POST a batch with ``count`` events for one client."""
    now = datetime.now(timezone.utc).isoformat()
    session_id = str(uuid4())
    events = {
        str(uuid4()): {
            "EventType": "_session.start" if i == 0 else "smoke.test",
            "Timestamp": now,
            "AppVersionCode": "1",
            "Attributes": {"index": str(i)},
            "Metrics": {"value": i},
            "Session": {"Id": session_id, "StartTimestamp": now},
        }
        for i in range(count)
    }
    body = {
        "BatchItem": {
            client_id: {
                "Endpoint": {
                    "Demographic": {"Locale": "en-US", "Make": "Google", "Model": "Pixel", "Platform": "Android"},
                    "Location": {"Country": "us"},
                },
                "Events": events,
            }
        }
    }

    try:
        response = requests.post(f"{API_URL}/v1/apps/{APP_ID}/events", json=body, timeout=10)
    except requests.exceptions.RequestException as e:
        print(f"Batch failed: {e}")
        return False

    print(f"Batch: HTTP {response.status_code}, request id {response.headers.get('x-amzn-requestid')}")
    if response.status_code != 202:
        print(response.text)
        return False
    acknowledged = response.json()["Results"][client_id]["EventsItemResponse"]
    print(f"  {len(acknowledged)}/{count} events acknowledged")
    return set(acknowledged) == set(events)


def put_endpoint(client_id: str) -> bool:
    """PUT endpoint attributes for ``client_id``."""
    body = {
        "Attributes": {"plan": ["free"]},
        "Demographic": {"Locale": "en-GB"},
        "User": {"UserId": client_id},
    }
    try:
        response = requests.put(f"{API_URL}/v1/apps/{APP_ID}/endpoints/{client_id}", json=body, timeout=10)
    except requests.exceptions.RequestException as e:
        print(f"Endpoint update failed: {e}")
        return False
    print(f"Endpoint: HTTP {response.status_code} {response.json()}")
    return response.status_code == 202


def main():
    parser = argparse.ArgumentParser(description="Smoke test the analytics ingestion service")
    parser.add_argument("action", choices=["health", "batch", "endpoint", "test"], help="Action to perform")
    parser.add_argument("--count", type=int, default=3, help="Events per batch (default: 3)")
    parser.add_argument("--client-id", default=None, help="Client id (default: random)")
    args = parser.parse_args()

    client_id = args.client_id or str(uuid4())

    if args.action == "health":
        ok = check_health()
    elif args.action == "batch":
        ok = send_batch(client_id, args.count)
    elif args.action == "endpoint":
        ok = put_endpoint(client_id)
    else:
        ok = check_health() and put_endpoint(client_id) and send_batch(client_id, args.count)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
