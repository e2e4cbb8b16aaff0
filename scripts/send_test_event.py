#!/usr/bin/env python3
"""
Demo script: sign a checkout.session.completed event and post it twice.
Run against a local endpoint: python scripts/send_test_event.py --local --secret whsec_...
Run against AWS:              python scripts/send_test_event.py --endpoint https://your-api.execute-api.us-east-1.amazonaws.com/v1 --secret whsec_...

The second delivery reuses the event id and must come back as a duplicate.
"""
import argparse
import json
import uuid

import requests

from shared.signature import SIGNATURE_SCHEME, build_signature_header

parser = argparse.ArgumentParser()
parser.add_argument("--endpoint", default="http://localhost:4566/restapis/local/v1/_user_request_")
parser.add_argument("--local", action="store_true")
parser.add_argument("--secret", required=True, help="webhook signing secret")
parser.add_argument("--session-id", required=True, help="an existing checkout session id")
parser.add_argument("--item", action="append", default=[], metavar="PIN:QTY")
args = parser.parse_args()

BASE_URL = "http://localhost:8000" if args.local else args.endpoint
URL = f"{BASE_URL}/webhooks/stripe"

items = []
for item in args.item or ["SKU1:1"]:
    pin, _, qty = item.partition(":")
    items.append({"resourceId": pin, "quantity": int(qty or 1)})

event = {
    "id": f"evt_{uuid.uuid4().hex[:24]}",
    "type": "checkout.session.completed",
    "data": {
        "object": {
            "id": args.session_id,
            "payment_status": "paid",
            "metadata": {"items": json.dumps(items)},
        },
    },
}
body = json.dumps(event)

print(f"Posting {event['id']} ({SIGNATURE_SCHEME} signature) to {URL}")
print(f"Items: {items}")

for attempt in ("first delivery", "redelivery"):
    resp = requests.post(
        URL,
        data=body.encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": build_signature_header(body, args.secret),
        },
        timeout=30,
    )
    print(f"{attempt}: [{resp.status_code}] {resp.text}")

outcome = resp.json().get("outcome")
assert outcome == "duplicate", f"Idempotency broken! Redelivery outcome was {outcome!r}"
print("Idempotency verified: redelivery acknowledged as duplicate.")
