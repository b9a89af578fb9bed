import os
import sys
import time
from uuid import uuid4

import requests

base_url = os.getenv("PULSECRM_BASE_URL", "http://localhost:8000").rstrip("/")
email = os.getenv("PULSECRM_EMAIL")
password = os.getenv("PULSECRM_PASSWORD")

if not email or not password:
    raise RuntimeError("PULSECRM_EMAIL and PULSECRM_PASSWORD are required")


def _login() -> dict[str, str]:
    response = requests.post(
        f"{base_url}/auth/login",
        json={"identifier": email, "password": password},
        timeout=15,
    )
    response.raise_for_status()
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def main() -> int:
    headers = _login()
    suffix = uuid4().hex[:8]

    customer_response = requests.post(
        f"{base_url}/customers",
        json={"name": "Smoke Test", "email": f"smoke-{suffix}@example.com"},
        timeout=15,
    )
    customer_response.raise_for_status()
    customer_id = customer_response.json()["id"]

    order_response = requests.post(
        f"{base_url}/orders",
        json={"customer_id": customer_id, "amount": "1500.00"},
        timeout=15,
    )
    order_response.raise_for_status()

    rules = {"conditions": [{"field": "totalSpent", "operator": ">=", "value": "1500"}], "operator": "AND"}
    segment_response = requests.post(
        f"{base_url}/segments",
        json={"name": f"Smoke {suffix}", "rules": rules},
        headers=headers,
        timeout=15,
    )
    segment_response.raise_for_status()
    segment = segment_response.json()

    campaign_response = requests.post(
        f"{base_url}/campaigns",
        json={"name": f"Smoke {suffix}", "segment_id": segment["id"], "message": "Hi {name}!"},
        headers=headers,
        timeout=15,
    )
    campaign_response.raise_for_status()
    campaign_id = campaign_response.json()["id"]

    campaign = {}
    for _ in range(30):
        poll = requests.get(f"{base_url}/campaigns/{campaign_id}", headers=headers, timeout=15)
        poll.raise_for_status()
        campaign = poll.json()
        if campaign["status"] in {"completed", "failed"}:
            break
        time.sleep(1)

    print(f"Segment audience: {segment['audience_size']}")
    print(
        f"Campaign {campaign.get('status')}: {campaign.get('delivered_count')} delivered, "
        f"{campaign.get('failed_count')} failed ({campaign.get('success_rate')}%)"
    )
    return 0 if campaign.get("status") == "completed" else 1


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"API smoke run failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
