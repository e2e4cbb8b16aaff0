"""
Reconciliation Engine
=====================
Turns a signed, at-least-once "checkout completed" notification into exactly
one stock decrement per cart line and exactly one order record, using nothing
but the shared KV store for coordination.

Per notification:

  RECEIVED -> VERIFIED -> CLAIMED -> (LOCKED -> MUTATED -> UNLOCKED)* -> ORDER_CREATED -> FINALIZED
           \-> REJECTED           \-> IGNORED

  1. verify the signature        (no ledger access for unauthenticated callers)
  2. parse; no event id          -> acknowledge, nothing to deduplicate on
  3. claim in the ledger         done -> duplicate; processing -> 409 so the processor retries
  4. wrong type / not paid       -> finalize as ignored
  5. re-fetch the session        (customer + shipping come from here, not the body)
  6. normalize the cart          empty -> finalize as no-op
  7. per line: lock, read stock, write max(0, stock - qty), unlock
  8. create the order, then send the confirmation email (best effort)
  9. finalize

Crash consistency
  Any failure after the claim abandons it, so the next delivery starts over
  instead of waiting out the processing TTL. Stock is never rolled back; the
  write-ahead intent (see intents.py) lets the retry skip lines it already
  decremented. A failure after some stock was written surfaces as
  PartialApplicationError and is logged at ERROR.

Known gap
  The per-line lock serializes read-modify-write on one inventory record; it
  does not make two different events' decrements atomic with their orders.
"""
from __future__ import annotations

import hashlib
import logging
import time
from enum import Enum
from typing import Callable

from botocore.exceptions import ClientError
from pydantic import BaseModel, Field, ValidationError

from shared import templates
from shared.config import Settings
from shared.errors import (
    EventInFlightError,
    MalformedEventError,
    PartialApplicationError,
    PaymentProcessorError,
    SignatureVerificationError,
    UpstreamError,
)
from shared.events import (
    CartLine,
    CheckoutDetails,
    CheckoutSessionPayload,
    EventType,
    NotificationEvent,
    OrderTotals,
    has_shipping_address,
    parse_cart_lines,
)
from shared.idempotency import ClaimResult, EventLedger
from shared.kv_store import KeyValueStore
from shared.locking import AdvisoryLock
from shared.mailer import MailerClient
from shared.payment_processor import PaymentProcessorClient
from shared.record_store import RecordStoreClient
from shared.repository import InventoryRepository, OrderRepository
from shared.signature import verify_signature
from .intents import Intent, IntentLog

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RECEIVED = "RECEIVED"
    VERIFIED = "VERIFIED"
    CLAIMED = "CLAIMED"
    LOCKED = "LOCKED"
    MUTATED = "MUTATED"
    UNLOCKED = "UNLOCKED"
    ORDER_CREATED = "ORDER_CREATED"
    FINALIZED = "FINALIZED"
    IGNORED = "IGNORED"
    REJECTED = "REJECTED"


class ReconcileOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NO_OP = "no_op"


class StockChange(BaseModel):
    resource_id: str
    quantity: int
    previous: int | None = None
    current: int | None = None
    locked: bool = False
    skipped: str = ""


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    event_id: str = ""
    reason: str = ""
    order_record_id: str | None = None
    stock_changes: list[StockChange] = Field(default_factory=list)

    def as_response(self) -> dict:
        body: dict = {"outcome": self.outcome.value}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.reason:
            body["reason"] = self.reason
        if self.outcome is ReconcileOutcome.DUPLICATE:
            body["duplicate"] = True
        if self.order_record_id:
            body["order_record_id"] = self.order_record_id
        return body


def order_id_for(session_id: str) -> str:
    """Stable, human-sized order id derived from the checkout session."""
    return "MP-" + hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:10].upper()


class Reconciler:
    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        record_store: RecordStoreClient,
        payments: PaymentProcessorClient,
        mailer: MailerClient,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._store = store
        self._payments = payments
        self._mailer = mailer
        self._clock = clock

        self._ledger = EventLedger(store, settings.processing_ttl_seconds, settings.done_ttl_seconds)
        self._locks = AdvisoryLock(
            store,
            ttl_seconds=settings.lock_ttl_seconds,
            max_retries=settings.lock_max_retries,
            retry_delay_ms=settings.lock_retry_delay_ms,
            sleep=sleep,
        )
        self._intents = IntentLog(store, settings.done_ttl_seconds, clock=clock)
        self._inventory = InventoryRepository(record_store, settings.inventory_table, settings.fields)
        self._orders = OrderRepository(
            record_store, settings.orders_table, settings.fields, settings.paid_status_value
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Reconciler":
        settings.require(
            "stripe_webhook_secret", "stripe_secret_key",
            "airtable_token", "airtable_base_id", "mail_from",
        )
        return cls(
            settings,
            KeyValueStore(settings.kv_table),
            RecordStoreClient(settings.airtable_token, settings.airtable_base_id),
            PaymentProcessorClient(settings.stripe_secret_key),
            MailerClient(
                settings.mail_from,
                reply_to=settings.mail_reply_to,
                bcc=settings.mail_bcc,
                api_key=settings.mailchannels_api_key,
            ),
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, raw_body: bytes | str, signature_header: str | None) -> ReconcileResult:
        if not verify_signature(
            raw_body,
            signature_header,
            self._settings.stripe_webhook_secret,
            self._settings.signature_tolerance_seconds,
            now=self._clock(),
        ):
            logger.warning("Rejected notification: bad or stale signature", extra={"stage": Stage.REJECTED.value})
            raise SignatureVerificationError("Invalid signature")

        event = self._parse_event(raw_body)
        if not event.id:
            logger.info("Notification without event id acknowledged", extra={"stage": Stage.IGNORED.value})
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, reason="missing_event_id")
        self._log(event.id, Stage.VERIFIED, "Notification verified", event_type=event.type)

        claim = self._ledger.try_claim(event.id)
        if claim is ClaimResult.ALREADY_DONE:
            logger.info("Duplicate delivery acknowledged", extra={"event_id": event.id})
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE, event_id=event.id)
        if claim is ClaimResult.ALREADY_PROCESSING:
            logger.info("Event in flight elsewhere, asking for redelivery", extra={"event_id": event.id})
            raise EventInFlightError(event.id)
        self._log(event.id, Stage.CLAIMED, "Event claimed")

        try:
            result = self._process(event)
        except Exception:
            self._ledger.abandon(event.id)
            logger.warning("Claim abandoned after failure; next delivery retries", extra={"event_id": event.id})
            raise

        # Cleared before finalize; a redelivery after a crash here takes the order-exists path
        if result.outcome is ReconcileOutcome.PROCESSED:
            self._clear_intent(event.id)

        self._ledger.finalize(event.id)
        self._log(event.id, Stage.FINALIZED, "Event finalized", outcome=result.outcome.value)
        return result

    # ------------------------------------------------------------------
    # Steps 4-8
    # ------------------------------------------------------------------

    def _process(self, event: NotificationEvent) -> ReconcileResult:
        if event.type != EventType.CHECKOUT_SESSION_COMPLETED.value:
            return self._ignored(event.id, "unhandled_event_type")

        try:
            payload = CheckoutSessionPayload.model_validate(event.data.object)
        except ValidationError as e:
            raise MalformedEventError(f"Unreadable checkout session in event {event.id!r}") from e

        if not payload.is_paid:
            return self._ignored(event.id, "payment_status_not_paid")
        if not payload.id:
            raise MalformedEventError(f"Event {event.id!r} has no checkout session id")

        details = self._fetch_details(payload.id)

        lines = parse_cart_lines(payload.cart_items)
        if not lines:
            self._log(event.id, Stage.IGNORED, "Empty cart after normalization")
            return ReconcileResult(outcome=ReconcileOutcome.NO_OP, event_id=event.id, reason="empty_cart")

        intent = self._intents.load(event.id)
        if intent is None:
            # A previous claimant may have finished the whole job and lost its ledger entry
            existing = self._orders.find_by_session(details.session_id)
            if existing is not None:
                logger.info(
                    "Order already recorded for session, skipping stock",
                    extra={"event_id": event.id, "order_record_id": existing.get("id")},
                )
                return ReconcileResult(
                    outcome=ReconcileOutcome.PROCESSED, event_id=event.id,
                    reason="order_exists", order_record_id=existing.get("id"),
                )
            intent = self._intents.begin(event.id, details.session_id, lines)

        totals = OrderTotals.compute(lines, details)
        try:
            changes = self._apply_stock(event.id, intent, lines)
            order = self._ensure_order(event.id, details, lines, totals)
        except Exception as e:
            if intent.applied:
                logger.error(
                    "Stock applied but order not created; retry will skip applied lines",
                    exc_info=True,
                    extra={"event_id": event.id, "applied": intent.applied, "session_id": details.session_id},
                )
                raise PartialApplicationError(event.id, intent.applied, e) from e
            raise

        self._send_confirmation(event.id, order, details, lines, totals)
        return ReconcileResult(
            outcome=ReconcileOutcome.PROCESSED,
            event_id=event.id,
            order_record_id=order.get("id"),
            stock_changes=changes,
        )

    def _fetch_details(self, session_id: str) -> CheckoutDetails:
        session = self._payments.get_checkout_session(session_id)

        payment_intent = None
        intent_id = session.get("payment_intent")
        if not has_shipping_address(session) and isinstance(intent_id, str) and intent_id:
            try:
                payment_intent = self._payments.get_payment_intent(intent_id)
            except PaymentProcessorError:
                logger.warning("Billing address fallback unavailable", extra={"session_id": session_id})

        details = CheckoutDetails.from_session(session, payment_intent)
        if not details.session_id:
            details = details.model_copy(update={"session_id": session_id})
        return details

    def _apply_stock(self, event_id: str, intent: Intent, lines: list[CartLine]) -> list[StockChange]:
        changes = []
        for line in lines:
            if intent.is_applied(line.resource_id):
                changes.append(StockChange(
                    resource_id=line.resource_id, quantity=line.quantity, skipped="already_applied",
                ))
                continue
            changes.append(self._apply_line(event_id, line))
            self._intents.mark_applied(intent, line.resource_id)
        return changes

    def _apply_line(self, event_id: str, line: CartLine) -> StockChange:
        rid = line.resource_id
        with self._locks.hold(rid) as token:
            if token is None:
                logger.warning(
                    "Proceeding without lock; concurrent decrements of this record may race",
                    extra={"event_id": event_id, "resource_id": rid, "stage": Stage.LOCKED.value},
                )
            else:
                self._log(event_id, Stage.LOCKED, "Lock acquired", resource_id=rid)

            record = self._inventory.find_by_resource(rid)
            if record is None:
                logger.warning("Inventory record not found, line skipped", extra={"event_id": event_id, "resource_id": rid})
                return StockChange(
                    resource_id=rid, quantity=line.quantity, locked=token is not None, skipped="record_not_found",
                )

            current = self._inventory.stock_of(record)
            remaining = max(0, current - line.quantity)
            if current < line.quantity:
                logger.warning(
                    "Oversold: stock %d below quantity %d, clamping to 0", current, line.quantity,
                    extra={"event_id": event_id, "resource_id": rid},
                )
            self._inventory.set_stock(record["id"], remaining)
            self._log(event_id, Stage.MUTATED, "Stock updated", resource_id=rid, previous=current, current=remaining)

        if token is not None:
            self._log(event_id, Stage.UNLOCKED, "Lock released", resource_id=rid)
        return StockChange(
            resource_id=rid, quantity=line.quantity, previous=current, current=remaining, locked=token is not None,
        )

    def _ensure_order(
        self, event_id: str, details: CheckoutDetails, lines: list[CartLine], totals: OrderTotals,
    ) -> dict:
        existing = self._orders.find_by_session(details.session_id)
        if existing is not None:
            logger.info("Order already exists for session", extra={"event_id": event_id, "order_record_id": existing.get("id")})
            return existing

        order = self._orders.create(order_id_for(details.session_id), details, lines, totals)
        self._log(event_id, Stage.ORDER_CREATED, "Order created", order_record_id=order.get("id"))
        return order

    def _send_confirmation(
        self,
        event_id: str,
        order: dict,
        details: CheckoutDetails,
        lines: list[CartLine],
        totals: OrderTotals,
    ) -> None:
        if not details.customer_email:
            logger.info("No customer email on session, confirmation skipped", extra={"event_id": event_id})
            return

        marker = f"email_sent:{details.session_id}"
        if self._store.get(marker):
            return

        subject, text = templates.order_confirmed(
            self._settings.store_name, self._settings.store_url, details, lines, totals,
        )
        try:
            self._mailer.send_message(details.customer_email, subject, text, templates.render_html(text))
            self._store.put(marker, "1", self._settings.done_ttl_seconds)
            self._orders.mark_paid_email_sent(order["id"])
        except UpstreamError:
            # The payment-email sweep picks up orders whose flag is still unset
            logger.warning("Confirmation email not completed", exc_info=True, extra={"event_id": event_id})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse_event(self, raw_body: bytes | str) -> NotificationEvent:
        try:
            return NotificationEvent.model_validate_json(raw_body)
        except ValidationError as e:
            raise MalformedEventError("Notification body is not a valid event") from e

    def _ignored(self, event_id: str, reason: str) -> ReconcileResult:
        self._log(event_id, Stage.IGNORED, "Event ignored", reason=reason)
        return ReconcileResult(outcome=ReconcileOutcome.IGNORED, event_id=event_id, reason=reason)

    def _clear_intent(self, event_id: str) -> None:
        try:
            self._intents.clear(event_id)
        except ClientError:
            # The recovery sweep will report it; the event itself is done
            logger.warning("Could not clear intent", exc_info=True, extra={"event_id": event_id})

    def _log(self, event_id: str, stage: Stage, message: str, **fields) -> None:
        logger.info(message, extra={"event_id": event_id, "stage": stage.value, **fields})
