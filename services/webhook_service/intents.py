"""
Write-ahead stock-mutation intents
=================================
Stock decrements and order creation are separate record-store writes with no
transaction around them. Before touching stock the reconciler records what it
is about to do, and after each line it records that the line is done:

  intent:<event id> = {"session_id", "lines", "applied", "created_at"}

The entry is deleted once the order exists. Two things follow:

  - a redelivery after a mid-flight failure skips lines already in `applied`,
    so a retry never decrements the same line twice;
  - an entry that outlives the processing window marks an event that died
    between stock and order, which the recovery sweep reports.
"""
from __future__ import annotations

import logging
import time
from typing import Callable

from pydantic import BaseModel, Field, ValidationError

from shared.events import CartLine
from shared.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "intent:"


class Intent(BaseModel):
    event_id: str
    session_id: str = ""
    lines: list[CartLine]
    applied: list[str] = Field(default_factory=list)
    created_at: float

    def is_applied(self, resource_id: str) -> bool:
        return resource_id in self.applied


class IntentLog:
    def __init__(self, store: KeyValueStore, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def key(event_id: str) -> str:
        return f"{KEY_PREFIX}{event_id}"

    def begin(self, event_id: str, session_id: str, lines: list[CartLine]) -> Intent:
        """Load the intent left by an earlier attempt, or record a new one."""
        existing = self.load(event_id)
        if existing is not None:
            logger.info(
                "Resuming event with %d line(s) already applied", len(existing.applied),
                extra={"event_id": event_id, "applied": existing.applied},
            )
            return existing

        intent = Intent(event_id=event_id, session_id=session_id, lines=lines, created_at=self._clock())
        self._save(intent)
        return intent

    def mark_applied(self, intent: Intent, resource_id: str) -> None:
        if not intent.is_applied(resource_id):
            intent.applied.append(resource_id)
        self._save(intent)

    def clear(self, event_id: str) -> None:
        self._store.delete(self.key(event_id))

    def load(self, event_id: str) -> Intent | None:
        raw = self._store.get(self.key(event_id))
        return self._parse(raw) if raw is not None else None

    def stale(self, older_than_seconds: int) -> list[Intent]:
        cutoff = self._clock() - older_than_seconds
        intents = (self._parse(raw) for raw in self._store.scan_prefix(KEY_PREFIX).values())
        return sorted(
            (i for i in intents if i is not None and i.created_at <= cutoff),
            key=lambda i: i.created_at,
        )

    def _save(self, intent: Intent) -> None:
        self._store.put(self.key(intent.event_id), intent.model_dump_json(), self._ttl_seconds)

    def _parse(self, raw: str) -> Intent | None:
        try:
            return Intent.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable intent entry, ignoring", extra={"raw": raw[:200]})
            return None
