"""
Idempotency Ledger: at-least-once in, once-only side effects out
===============================================================
The payment processor redelivers a notification until it sees a 2xx, and it
may deliver the same event to two Lambda instances at once. The ledger keeps
one entry per event id in the shared KV store:

  evt:<event id>  absent -> "processing" (short TTL) -> "done" (long TTL)

  - try_claim:  atomically create "processing"; report what is there otherwise
  - finalize:   overwrite with "done" for the retention window (weeks)
  - abandon:    delete, so the next delivery starts from scratch

The processing TTL (tens of minutes) is longer than any plausible handling
time but short enough that a crashed invocation does not wedge the event
forever: once it lapses the next delivery claims it as fresh. The done TTL
bounds storage; the processor stops redelivering after three days, far inside
it.

Why a conditional put rather than read-then-write?
  Two concurrent first deliveries would both see "absent" with a plain read.
  DynamoDB's `attribute_not_exists` condition lets exactly one of them win.
"""
from __future__ import annotations

import logging
import os
from enum import Enum

from shared.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PROCESSING_TTL_SECONDS = int(os.environ.get("LEDGER_PROCESSING_TTL_SECONDS", "1800"))  # 30 min
DONE_TTL_SECONDS = int(os.environ.get("LEDGER_DONE_TTL_SECONDS", str(30 * 24 * 60 * 60)))  # 30 days

PROCESSING = "processing"
DONE = "done"


class ClaimResult(str, Enum):
    FRESH = "FRESH"
    ALREADY_DONE = "ALREADY_DONE"
    ALREADY_PROCESSING = "ALREADY_PROCESSING"


class IdempotencyError(Exception):
    """Raised when a ledger entry is in an unexpected state."""


class EventLedger:
    def __init__(
        self,
        store: KeyValueStore,
        processing_ttl_seconds: int = PROCESSING_TTL_SECONDS,
        done_ttl_seconds: int = DONE_TTL_SECONDS,
    ):
        self._store = store
        self.processing_ttl_seconds = processing_ttl_seconds
        self.done_ttl_seconds = done_ttl_seconds

    @staticmethod
    def key(event_id: str) -> str:
        return f"evt:{event_id}"

    def try_claim(self, event_id: str) -> ClaimResult:
        key = self.key(event_id)

        # Second pass only happens if the entry expired between our failed
        # conditional write and the read that followed it.
        for _ in range(2):
            if self._store.put(key, PROCESSING, self.processing_ttl_seconds, only_if_absent=True):
                logger.info("Claimed event", extra={"event_id": event_id})
                return ClaimResult.FRESH

            state = self._store.get(key)
            if state == DONE:
                return ClaimResult.ALREADY_DONE
            if state == PROCESSING:
                return ClaimResult.ALREADY_PROCESSING
            if state is None:
                continue

            logger.warning(
                "Unknown ledger state %r for event, deleting", state,
                extra={"event_id": event_id},
            )
            self._store.delete(key)
            raise IdempotencyError(f"Unexpected ledger state for {event_id!r}: {state}")

        # Lost the race twice in a row: someone else holds it now.
        return ClaimResult.ALREADY_PROCESSING

    def finalize(self, event_id: str) -> None:
        self._store.put(self.key(event_id), DONE, self.done_ttl_seconds)

    def abandon(self, event_id: str) -> None:
        self._store.delete(self.key(event_id))

    def state(self, event_id: str) -> str | None:
        return self._store.get(self.key(event_id))
