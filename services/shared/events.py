"""
PinFlow Event Schemas
=====================
Pydantic models for what arrives over the wire from the payment processor
and for the normalized values the reconciler works with.

Inbound notifications are immutable facts. They are parsed leniently (unknown
fields are ignored, missing ones default to empty) because a notification we
cannot identify is acknowledged and dropped rather than rejected.
"""
from __future__ import annotations

import json
import logging
import math
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"


PAID = "paid"


# ---------------------------------------------------------------------------
# Inbound notification
# ---------------------------------------------------------------------------

class EventData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    object: dict[str, Any] = Field(default_factory=dict)


class NotificationEvent(BaseModel):
    """
    Envelope of a payment-processor notification.

    `id` is identical across redeliveries of the same event, which is what
    makes it usable as the ledger key.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = ""
    type: str = ""
    data: EventData = Field(default_factory=EventData)


class CheckoutSessionPayload(BaseModel):
    """The `data.object` of a checkout.session.completed event."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = ""
    payment_status: str = ""
    metadata: dict[str, Any] | None = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status.strip().lower() == PAID

    @property
    def cart_items(self) -> Any:
        return (self.metadata or {}).get("items")


# ---------------------------------------------------------------------------
# Cart lines
# ---------------------------------------------------------------------------

_ID_KEYS = ("resourceId", "resource_id", "pin", "recordId", "r")
_QTY_KEYS = ("quantity", "qty")
MAX_LINE_QUANTITY = 99


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


def parse_cart_lines(raw: Any) -> list[CartLine]:
    """
    Parse `metadata.items` into normalized cart lines.

    Accepts a JSON-encoded array of objects, an already-decoded list, or the
    legacy "PIN:QTY,PIN2:QTY2" string. Anything unparseable yields an empty
    cart rather than an error.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except ValueError:
                logger.warning("Cart metadata is not valid JSON", extra={"items": text[:200]})
                return []
        else:
            return normalize_cart_lines(_legacy_pairs(text))
    if not isinstance(raw, list):
        return []
    return normalize_cart_lines(_entry_pairs(raw))


def normalize_cart_lines(pairs: Iterable[tuple[Any, Any]]) -> list[CartLine]:
    """
    Merge duplicate ids by summation and drop entries without an id or with a
    non-positive quantity. Each merged line is capped at MAX_LINE_QUANTITY.
    First-seen order is preserved.
    """
    merged: dict[str, int] = {}
    for resource_id, quantity in pairs:
        rid = str(resource_id or "").strip()
        qty = _to_quantity(quantity)
        if not rid or qty <= 0:
            continue
        merged[rid] = min(MAX_LINE_QUANTITY, merged.get(rid, 0) + qty)
    return [CartLine(resource_id=rid, quantity=qty) for rid, qty in merged.items()]


def _entry_pairs(entries: list) -> Iterable[tuple[Any, Any]]:
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        rid = next((entry[k] for k in _ID_KEYS if entry.get(k)), None)
        qty = next((entry[k] for k in _QTY_KEYS if k in entry), None)
        yield rid, qty


def _legacy_pairs(text: str) -> Iterable[tuple[str, str]]:
    for part in text.split(","):
        rid, _, qty = part.strip().partition(":")
        yield rid, qty


def _to_quantity(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(number):
        return 0
    return math.floor(number)


# ---------------------------------------------------------------------------
# Re-fetched session details
# ---------------------------------------------------------------------------

class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    line1: str = ""
    line2: str = ""
    city: str = ""
    postal_code: str = ""
    state: str = ""
    country: str = ""

    @classmethod
    def from_dict(cls, data: dict | None) -> "ShippingAddress | None":
        if not data:
            return None
        return cls(**{k: str(data.get(k) or "").strip() for k in cls.model_fields})

    @property
    def street(self) -> str:
        return "\n".join(p for p in (self.line1, self.line2) if p)


class CheckoutDetails(BaseModel):
    """Customer, payment and shipping fields taken from the authoritative session."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    payment_intent_id: str = ""
    customer_email: str = ""
    customer_name: str = ""
    currency: str = "EUR"
    amount_total_cents: int = 0
    shipping: ShippingAddress | None = None

    @classmethod
    def from_session(cls, session: dict, payment_intent: dict | None = None) -> "CheckoutDetails":
        customer = session.get("customer_details") or {}
        shipping = session.get("shipping_details") or {}
        collected = (session.get("collected_information") or {}).get("shipping_details") or {}

        name = (
            str(customer.get("name") or "").strip()
            or str(shipping.get("name") or "").strip()
            or str(collected.get("name") or "").strip()
        )

        address = (
            ShippingAddress.from_dict(collected.get("address"))
            or ShippingAddress.from_dict(shipping.get("address"))
            or ShippingAddress.from_dict(billing_address(payment_intent))
        )

        amount = session.get("amount_total")
        try:
            amount_cents = int(amount) if amount is not None else 0
        except (TypeError, ValueError):
            amount_cents = 0

        return cls(
            session_id=str(session.get("id") or "").strip(),
            payment_intent_id=_payment_intent_id(session.get("payment_intent")),
            customer_email=str(customer.get("email") or "").strip(),
            customer_name=name,
            currency=str(session.get("currency") or "").strip().upper() or "EUR",
            amount_total_cents=amount_cents,
            shipping=address,
        )


def has_shipping_address(session: dict) -> bool:
    collected = (session.get("collected_information") or {}).get("shipping_details") or {}
    shipping = session.get("shipping_details") or {}
    return bool(collected.get("address") or shipping.get("address"))


def billing_address(payment_intent: dict | None) -> dict | None:
    if not payment_intent:
        return None
    charge = payment_intent.get("latest_charge")
    if not isinstance(charge, dict):
        charges = (payment_intent.get("charges") or {}).get("data") or []
        charge = charges[0] if charges else None
    if not isinstance(charge, dict):
        return None
    return (charge.get("billing_details") or {}).get("address")


def _payment_intent_id(value: Any) -> str:
    # Expanded sessions carry the whole object instead of its id
    if isinstance(value, dict):
        return str(value.get("id") or "").strip()
    return str(value or "").strip()


class OrderTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_count: int
    amount_total: float
    currency: str

    @classmethod
    def compute(cls, lines: list[CartLine], details: CheckoutDetails) -> "OrderTotals":
        return cls(
            item_count=sum(line.quantity for line in lines),
            amount_total=round(details.amount_total_cents / 100, 2),
            currency=details.currency,
        )
