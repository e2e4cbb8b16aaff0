"""
Orphaned-intent sweep (EventBridge schedule)
============================================
An intent that outlives the processing window belongs to an event that
decremented stock and then never produced an order: a crash between the
two, or a failure the processor gave up redelivering. Nothing here repairs
it. Each orphan is logged at ERROR with the lines it touched so an operator
can create the order by hand or put the stock back.
"""
from __future__ import annotations

from aws_xray_sdk.core import patch_all, xray_recorder

from shared.config import Settings
from shared.kv_store import KeyValueStore
from .intents import IntentLog

patch_all()

from shared.logger import get_logger
logger = get_logger(__name__)


def handler(event: dict, context) -> dict:
    settings = Settings.from_env()
    intents = IntentLog(KeyValueStore(settings.kv_table), settings.done_ttl_seconds)
    return sweep(intents, settings.intent_stale_after_seconds)


def sweep(intents: IntentLog, stale_after_seconds: int) -> dict:
    with xray_recorder.in_subsegment("orphaned_intent_sweep"):
        orphans = intents.stale(stale_after_seconds)

    for intent in orphans:
        logger.error(
            "Orphaned stock intent: stock may be decremented without an order",
            extra={
                "event_id": intent.event_id,
                "session_id": intent.session_id,
                "applied": intent.applied,
                "lines": [line.model_dump() for line in intent.lines],
                "created_at": intent.created_at,
            },
        )

    return {
        "found": len(orphans),
        "orphaned": [
            {"event_id": i.event_id, "session_id": i.session_id, "applied": i.applied}
            for i in orphans
        ],
    }
