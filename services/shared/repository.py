"""
Inventory and Order Repositories
================================
All record-store access for inventory and orders lives here, expressed in
terms of FieldMap roles so no handler hard-codes an Airtable column name.

Inventory records are never cached: stock is read immediately before it is
written, inside the per-resource advisory lock held by the caller.
"""
from __future__ import annotations

import json
import logging

from shared.config import FieldMap
from shared.events import CartLine, CheckoutDetails, OrderTotals
from shared.record_store import RecordStoreClient, escape_formula_string

logger = logging.getLogger(__name__)


class InventoryRepository:
    def __init__(self, client: RecordStoreClient, table: str, fields: FieldMap):
        self._client = client
        self._table = table
        self._fields = fields

    def find_by_resource(self, resource_id: str) -> dict | None:
        formula = f"{{{self._fields.pin_code}}}='{escape_formula_string(resource_id)}'"
        return self._client.find_record(self._table, formula)

    def stock_of(self, record: dict) -> int:
        raw = (record.get("fields") or {}).get(self._fields.stock)
        try:
            return max(0, int(float(raw or 0)))
        except (TypeError, ValueError):
            logger.warning("Non-numeric stock %r on record %s, treating as 0", raw, record.get("id"))
            return 0

    def set_stock(self, record_id: str, stock: int) -> None:
        self._client.patch_record(self._table, record_id, {self._fields.stock: int(stock)})


class OrderRepository:
    def __init__(self, client: RecordStoreClient, table: str, fields: FieldMap, paid_status: str = "paid"):
        self._client = client
        self._table = table
        self._fields = fields
        self._paid_status = paid_status

    def find_by_session(self, session_id: str) -> dict | None:
        formula = f"{{{self._fields.stripe_session}}}='{escape_formula_string(session_id)}'"
        return self._client.find_record(self._table, formula)

    def create(
        self,
        order_id: str,
        details: CheckoutDetails,
        lines: list[CartLine],
        totals: OrderTotals,
    ) -> dict:
        f = self._fields
        record = {
            f.order_id: order_id,
            f.stripe_session: details.session_id,
            f.payment_intent: details.payment_intent_id,
            f.order_status: self._paid_status,
            f.customer_email: details.customer_email,
            f.customer_name: details.customer_name,
            f.items: json.dumps(
                [{"resourceId": line.resource_id, "quantity": line.quantity} for line in lines]
            ),
            f.item_count: totals.item_count,
            f.amount_total: totals.amount_total,
            f.currency: totals.currency,
            f.paid_email_sent: False,
            f.shipped_email_sent: False,
        }
        if details.shipping:
            record.update({
                f.shipping_address: details.shipping.street,
                f.shipping_city: details.shipping.city,
                f.shipping_postal: details.shipping.postal_code,
                f.shipping_state: details.shipping.state,
                f.shipping_country: details.shipping.country,
            })
        return self._client.create_record(self._table, record)

    def mark_paid_email_sent(self, record_id: str) -> None:
        self._client.patch_record(self._table, record_id, {self._fields.paid_email_sent: True})

    def mark_shipped_email_sent(self, record_id: str) -> None:
        self._client.patch_record(self._table, record_id, {self._fields.shipped_email_sent: True})

    def pending_payment_emails(self, limit: int) -> list[dict]:
        """Paid orders whose 'payment received' email has not gone out."""
        f = self._fields
        formula = (
            f"AND({{{f.order_status}}}='{escape_formula_string(self._paid_status)}', "
            f"NOT({{{f.paid_email_sent}}}))"
        )
        return self._client.list_records(self._table, formula, max_records=limit)

    def pending_shipment_emails(self, limit: int) -> list[dict]:
        """Orders with a tracking number whose 'shipped' email has not gone out."""
        f = self._fields
        formula = f"AND({{{f.tracking_number}}}!='', NOT({{{f.shipped_email_sent}}}))"
        return self._client.list_records(self._table, formula, max_records=limit)
