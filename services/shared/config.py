"""
PinFlow configuration
=====================
Settings are read from the Lambda environment once per cold start and
validated with pydantic, so a typo in a field name or a missing secret fails
the first invocation loudly instead of surfacing as a confusing record-store
error halfway through a reconciliation.

Record-store field names are configuration, not schema: the shop owner can
rename an Airtable column and point `AIRTABLE_<ROLE>_FIELD` at the new name.
"""
from __future__ import annotations

import os
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from shared.errors import ConfigurationError


class FieldMap(BaseModel):
    """Logical field role -> record-store field name."""
    model_config = ConfigDict(frozen=True)

    # Inventory table
    pin_code: str = "PIN Code"
    stock: str = "Stock"

    # Orders table
    order_id: str = "Order ID"
    stripe_session: str = "Stripe Session ID"
    payment_intent: str = "Payment Intent"
    customer_email: str = "Customer Email"
    customer_name: str = "Customer Name"
    order_status: str = "Order Status"
    amount_total: str = "Amount Total"
    currency: str = "Currency"
    items: str = "Items"
    item_count: str = "Item Count"
    shipping_address: str = "Shipping Address"
    shipping_city: str = "Shipping City"
    shipping_postal: str = "Shipping Postal Code"
    shipping_state: str = "Shipping State/Region"
    shipping_country: str = "Shipping Country"
    tracking_number: str = "Tracking Number"
    paid_email_sent: str = "Paid Email Sent"
    shipped_email_sent: str = "Shipped Email Sent"

    @model_validator(mode="after")
    def _names_are_usable(self) -> "FieldMap":
        values = self.model_dump()
        empty = sorted(role for role, name in values.items() if not name.strip())
        if empty:
            raise ValueError(f"empty field names for roles: {', '.join(empty)}")

        seen: dict[str, str] = {}
        for role, name in values.items():
            if name in seen:
                raise ValueError(f"roles {seen[name]!r} and {role!r} both map to field {name!r}")
            seen[name] = role
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "FieldMap":
        environ = os.environ if environ is None else environ
        overrides = {}
        for role in cls.model_fields:
            value = environ.get(f"AIRTABLE_{role.upper()}_FIELD")
            if value is not None:
                overrides[role] = value.strip()
        return cls(**overrides)


# Settings attribute -> environment variable
_ENV_VARS = {
    "kv_table": "KV_TABLE",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "stripe_secret_key": "STRIPE_SECRET_KEY",
    "signature_tolerance_seconds": "STRIPE_SIGNATURE_TOLERANCE_SECONDS",
    "airtable_token": "AIRTABLE_TOKEN",
    "airtable_base_id": "AIRTABLE_BASE_ID",
    "inventory_table": "AIRTABLE_TABLE_NAME",
    "orders_table": "AIRTABLE_ORDERS_TABLE_NAME",
    "mail_from": "MAIL_FROM",
    "mail_reply_to": "MAIL_REPLY_TO",
    "mail_bcc": "MAIL_BCC",
    "mailchannels_api_key": "MAILCHANNELS_API_KEY",
    "store_name": "STORE_NAME",
    "store_url": "STORE_URL",
    "processing_ttl_seconds": "LEDGER_PROCESSING_TTL_SECONDS",
    "done_ttl_seconds": "LEDGER_DONE_TTL_SECONDS",
    "lock_ttl_seconds": "LOCK_TTL_SECONDS",
    "lock_max_retries": "LOCK_MAX_RETRIES",
    "lock_retry_delay_ms": "LOCK_RETRY_DELAY_MS",
    "intent_stale_after_seconds": "INTENT_STALE_AFTER_SECONDS",
    "paid_status_value": "PAID_STATUS_VALUE",
    "sweep_max_records": "SWEEP_MAX_RECORDS",
}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    kv_table: str = "pinflow-kv"

    stripe_webhook_secret: str = ""
    stripe_secret_key: str = ""
    signature_tolerance_seconds: int = Field(default=300, gt=0)

    airtable_token: str = ""
    airtable_base_id: str = ""
    inventory_table: str = "Products"
    orders_table: str = "Orders"

    mail_from: str = ""
    mail_reply_to: str = ""
    mail_bcc: str = ""
    mailchannels_api_key: str = ""
    store_name: str = "Mosaic Pins"
    store_url: str = "https://mosaicpins.space"

    processing_ttl_seconds: int = Field(default=30 * 60, gt=0)
    done_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    lock_ttl_seconds: int = Field(default=30, gt=0)
    lock_max_retries: int = Field(default=8, gt=0)
    lock_retry_delay_ms: int = Field(default=150, ge=0)
    intent_stale_after_seconds: int = Field(default=30 * 60, gt=0)

    paid_status_value: str = "paid"
    sweep_max_records: int = Field(default=10, gt=0)

    fields: FieldMap = Field(default_factory=FieldMap)

    @model_validator(mode="after")
    def _ttls_are_ordered(self) -> "Settings":
        if self.processing_ttl_seconds >= self.done_ttl_seconds:
            raise ValueError("processing TTL must be shorter than the done TTL")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        environ = os.environ if environ is None else environ
        values: dict = {}
        for attr, var in _ENV_VARS.items():
            raw = environ.get(var)
            if raw is not None and raw.strip() != "":
                values[attr] = raw.strip()
        try:
            values["fields"] = FieldMap.from_env(environ)
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def require(self, *names: str) -> "Settings":
        """Raise ConfigurationError listing every named setting that is empty."""
        missing = [_ENV_VARS.get(name, name) for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")
        return self
