"""
Payment Webhook Lambda Handler
==============================
  POST /webhooks/stripe  ← payment processor notifications (API Gateway proxy)

The handler is thin: pull the raw body and signature header out of the proxy
event, hand them to the Reconciler, and translate the result into the status
code the processor's retry logic understands:

  200  processed, duplicate, ignored, no-op
  400  bad signature or unparseable body
  409  another delivery of this event is mid-flight
  500  downstream failure; please redeliver

The raw body must reach the verifier byte-for-byte: it is never re-serialized.
"""
from __future__ import annotations

import base64
import binascii
import json

from aws_xray_sdk.core import patch_all, xray_recorder

from shared.config import Settings
from shared.errors import (
    ConfigurationError,
    EventInFlightError,
    MalformedEventError,
    PartialApplicationError,
    SignatureVerificationError,
    UpstreamError,
)
from .reconciler import Reconciler

# Patch boto3 and requests for X-Ray distributed tracing
patch_all()

from shared.logger import get_logger
logger = get_logger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

_reconciler: Reconciler | None = None


def get_reconciler() -> Reconciler:
    """Built once per container, on first use."""
    global _reconciler
    if _reconciler is None:
        _reconciler = Reconciler.from_settings(Settings.from_env())
    return _reconciler


# ---------------------------------------------------------------------------
# Main handler
# ---------------------------------------------------------------------------

def handler(event: dict, context) -> dict:
    http_method = event.get("httpMethod", "")
    path = event.get("path", "")

    if http_method != "POST":
        return _response(405, {"error": "Method Not Allowed"})

    try:
        raw_body = _raw_body(event)
        signature = _header(event, SIGNATURE_HEADER)
        with xray_recorder.in_subsegment("reconcile_payment"):
            result = get_reconciler().handle(raw_body, signature)
        return _response(200, {"received": True, **result.as_response()})
    except SignatureVerificationError:
        return _response(400, {"error": "Invalid signature"})
    except MalformedEventError as e:
        return _response(400, {"error": "Malformed event", "details": str(e)})
    except EventInFlightError as e:
        return _response(409, {"received": True, "processing": True, "error": str(e)})
    except PartialApplicationError as e:
        # Already logged at ERROR with the applied lines
        return _response(500, {"error": "Partially applied, retry required", "event_id": e.event_id})
    except UpstreamError as e:
        logger.error(
            "Upstream failure during reconciliation",
            exc_info=True,
            extra={"upstream": e.service, "upstream_status": e.status_code, "path": path},
        )
        return _response(500, {"error": f"{e.service} unavailable"})
    except ConfigurationError as e:
        logger.error("Webhook misconfigured: %s", e)
        return _response(500, {"error": "Webhook is not configured"})
    except Exception:
        logger.exception(
            "Unhandled exception in webhook handler",
            extra={"http_method": http_method, "path": path},
        )
        return _response(500, {"error": "Internal server error"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _raw_body(event: dict) -> bytes:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEventError("Body is not valid base64") from e
    return body.encode("utf-8") if isinstance(body, str) else body


def _header(event: dict, name: str) -> str | None:
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _response(status_code: int, body: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json; charset=utf-8"},
        "body": json.dumps(body),
    }
