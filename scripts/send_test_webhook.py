"""Post a signed sample aggregator webhook to a running instance.

Usage:
    UNIPILE_WEBHOOK_SECRET=... python scripts/send_test_webhook.py <account_external_id> [base_url]

The account must already exist in channel_accounts with provider 'unipile'.
This script is for local/staging validation only.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid

import requests

from unibox.observability.correlation import CORRELATION_ID_HEADER, correlation_scope
from unibox.providers.signature import compute_signature


def sample_payload(account_external_id: str) -> dict:
    message_id = f"test-{uuid.uuid4().hex[:12]}"
    return {
        "event": "message_received",
        "account_id": account_external_id,
        "account_type": "WHATSAPP",
        "chat_id": "test-chat",
        "message_id": message_id,
        "message": "Hello from send_test_webhook",
        "timestamp": int(time.time()),
        "sender": {
            "attendee_provider_id": "5511999990000@s.whatsapp.net",
            "attendee_name": "Webhook Test",
        },
        "attendees": [],
    }


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python scripts/send_test_webhook.py <account_external_id> [base_url]")
        sys.exit(2)

    account_external_id = sys.argv[1]
    base_url = sys.argv[2] if len(sys.argv) > 2 else "http://localhost:8000"

    body = json.dumps(sample_payload(account_external_id)).encode("utf-8")
    headers = {"Content-Type": "application/json"}

    secret = os.environ.get("UNIPILE_WEBHOOK_SECRET", "")
    if secret:
        headers["X-Unipile-Signature"] = compute_signature(body, secret)
    else:
        print("WARNING: UNIPILE_WEBHOOK_SECRET not set, sending unsigned")

    with correlation_scope() as cid:
        headers[CORRELATION_ID_HEADER] = cid
        try:
            resp = requests.post(f"{base_url}/webhooks/unipile", data=body, headers=headers, timeout=10)
        except requests.RequestException as e:
            print(f"ERROR: {e}")
            sys.exit(1)

    print(f"HTTP {resp.status_code} (correlation id {cid})")
    print(resp.text)
    sys.exit(0 if resp.ok else 1)


if __name__ == "__main__":
    main()
