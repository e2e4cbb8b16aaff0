"""
Notification Service Lambda Handler
===================================
Triggered on an EventBridge schedule, not by the webhook. Two sweeps:

  {"sweep": "payment"}   paid orders whose "payment received" email never went
                         out (the webhook's confirmation is best effort)
  {"sweep": "shipment"}  orders that gained a tracking number and have not had
                         their "shipped" email yet

Each sweep is a poll of the record store. The order's checkbox is the source
of truth for "sent"; the shipment sweep also writes a KV marker so a record
whose checkbox update failed after the email went out is not emailed twice.

A failure on one record is recorded and the sweep moves on; the record stays
unflagged and the next run retries it.
"""
from __future__ import annotations

from aws_xray_sdk.core import patch_all, xray_recorder

from shared import templates
from shared.config import Settings
from shared.errors import UpstreamError
from shared.kv_store import KeyValueStore
from shared.mailer import MailerClient
from shared.record_store import RecordStoreClient
from shared.repository import OrderRepository

patch_all()

from shared.logger import get_logger
logger = get_logger(__name__)

SWEEPS = ("payment", "shipment")


# ---------------------------------------------------------------------------
# Entry point: EventBridge scheduled rule
# ---------------------------------------------------------------------------

def handler(event: dict, context) -> dict:
    sweep = (event or {}).get("sweep", "payment")
    if sweep not in SWEEPS:
        raise ValueError(f"Unknown sweep: {sweep!r}")

    settings = Settings.from_env().require("airtable_token", "airtable_base_id", "mail_from")
    notifier = Notifier(
        settings,
        OrderRepository(
            RecordStoreClient(settings.airtable_token, settings.airtable_base_id),
            settings.orders_table,
            settings.fields,
            settings.paid_status_value,
        ),
        MailerClient(
            settings.mail_from,
            reply_to=settings.mail_reply_to,
            bcc=settings.mail_bcc,
            api_key=settings.mailchannels_api_key,
        ),
        KeyValueStore(settings.kv_table),
    )

    with xray_recorder.in_subsegment(f"{sweep}_email_sweep"):
        if sweep == "payment":
            return notifier.send_payment_emails()
        return notifier.send_shipment_emails()


class Notifier:
    def __init__(self, settings: Settings, orders: OrderRepository, mailer: MailerClient, store: KeyValueStore):
        self._settings = settings
        self._fields = settings.fields
        self._orders = orders
        self._mailer = mailer
        self._store = store

    # ------------------------------------------------------------------
    # Payment received
    # ------------------------------------------------------------------

    def send_payment_emails(self) -> dict:
        records = self._orders.pending_payment_emails(self._settings.sweep_max_records)
        summary = _Summary(len(records))

        for rec in records:
            f = rec.get("fields") or {}
            email = _text(f, self._fields.customer_email)
            label = self._order_label(rec)
            if not email:
                summary.skip(rec, label, "missing_email")
                continue

            amount = f.get(self._fields.amount_total)
            amount_line = ""
            if amount is not None and str(amount).strip() != "":
                amount_line = f"Total: {amount} {_text(f, self._fields.currency)}".strip()

            subject, text = templates.payment_received(
                self._settings.store_name, _text(f, self._fields.customer_name), label, amount_line,
            )
            try:
                self._mailer.send_message(email, subject, text, templates.render_html(text))
                self._orders.mark_paid_email_sent(rec["id"])
            except UpstreamError as e:
                summary.fail(rec, label, e)
                continue
            summary.sent_to(rec, label, email)

        logger.info("Payment email sweep finished", extra=summary.counts())
        return summary.as_dict()

    # ------------------------------------------------------------------
    # Order shipped
    # ------------------------------------------------------------------

    def send_shipment_emails(self) -> dict:
        records = self._orders.pending_shipment_emails(self._settings.sweep_max_records)
        summary = _Summary(len(records))

        for rec in records:
            f = rec.get("fields") or {}
            email = _text(f, self._fields.customer_email)
            tracking = _text(f, self._fields.tracking_number)
            label = self._order_label(rec)
            if not email or not tracking:
                summary.skip(rec, label, "missing_tracking_or_email")
                continue

            marker = f"shipped_email_sent:{rec['id']}"
            if self._store.get(marker):
                summary.skip(rec, label, "already_sent")
                continue

            address = templates.format_address(
                _text(f, self._fields.shipping_address),
                _text(f, self._fields.shipping_postal),
                _text(f, self._fields.shipping_city),
                _text(f, self._fields.shipping_state),
                _text(f, self._fields.shipping_country),
            )
            subject, text = templates.order_shipped(
                self._settings.store_name,
                self._settings.store_url,
                _text(f, self._fields.customer_name),
                label,
                tracking,
                address,
            )
            try:
                self._mailer.send_message(email, subject, text, templates.render_html(text))
                self._store.put(marker, "1", self._settings.done_ttl_seconds)
                self._orders.mark_shipped_email_sent(rec["id"])
            except UpstreamError as e:
                summary.fail(rec, label, e)
                continue
            summary.sent_to(rec, label, email)

        logger.info("Shipment email sweep finished", extra=summary.counts())
        return summary.as_dict()

    def _order_label(self, rec: dict) -> str:
        f = rec.get("fields") or {}
        return _text(f, self._fields.order_id) or _text(f, self._fields.stripe_session) or rec.get("id", "")


class _Summary:
    def __init__(self, found: int):
        self.found = found
        self.sent = 0
        self.skipped = 0
        self.results: list[dict] = []

    def sent_to(self, rec: dict, label: str, email: str) -> None:
        self.sent += 1
        self.results.append({"id": rec.get("id"), "order_id": label, "status": "sent", "to": email})

    def skip(self, rec: dict, label: str, reason: str) -> None:
        self.skipped += 1
        self.results.append({"id": rec.get("id"), "order_id": label, "status": "skipped", "reason": reason})

    def fail(self, rec: dict, label: str, error: Exception) -> None:
        self.skipped += 1
        logger.warning("Notification failed for order %s: %s", label, error)
        self.results.append({"id": rec.get("id"), "order_id": label, "status": "error", "error": str(error)})

    def counts(self) -> dict:
        return {"found": self.found, "sent": self.sent, "skipped": self.skipped}

    def as_dict(self) -> dict:
        return {**self.counts(), "results": self.results}


def _text(fields: dict, name: str) -> str:
    return str(fields.get(name) or "").strip()
