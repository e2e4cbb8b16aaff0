"""
Payment processor read API (Stripe REST).

The webhook body is only a snapshot taken when the event was created. The
reconciler re-reads the checkout session here so customer and shipping
details come from the processor's current state, never from a replayed body.
"""
from __future__ import annotations

from urllib.parse import quote

import requests

from shared.errors import PaymentProcessorError

STRIPE_API_URL = "https://api.stripe.com/v1"
DEFAULT_TIMEOUT_SECONDS = 10


class PaymentProcessorClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = STRIPE_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {secret_key}"})

    def get_checkout_session(self, session_id: str) -> dict:
        return self._get(f"/checkout/sessions/{quote(session_id, safe='')}")

    def get_payment_intent(self, payment_intent_id: str) -> dict:
        """Payment intent with its latest charge expanded (billing address lives there)."""
        return self._get(
            f"/payment_intents/{quote(payment_intent_id, safe='')}",
            params={"expand[]": "latest_charge"},
        )

    def _get(self, path: str, params: dict | None = None) -> dict:
        try:
            resp = self._session.get(f"{self._base_url}{path}", params=params, timeout=self._timeout)
        except requests.RequestException as e:
            raise PaymentProcessorError(f"Payment processor request failed: {e}") from e

        if not resp.ok:
            raise PaymentProcessorError(
                f"Payment processor GET {path} {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                detail=resp.text,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise PaymentProcessorError(
                "Payment processor returned non-JSON body",
                status_code=resp.status_code,
                detail=resp.text,
            ) from e
