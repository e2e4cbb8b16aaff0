"""
Advisory locks over the shared KV store.

  lock:<resource id> = <holder token>   (short TTL)

Only cooperating callers respect the entry; nothing stops a writer that never
asks. Each holder proves ownership with a random token, so a holder whose
lock expired cannot release the lock a newer holder has since taken.

Acquisition is best effort. When every retry is exhausted `acquire` returns
None and the caller carries on without exclusion; a rare double decrement is
preferable to stalling fulfilment of a paid order.
"""
from __future__ import annotations

import logging
import random
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator

from shared.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class AdvisoryLock:
    """
    Parameters
    ----------
    store:          shared KV store
    ttl_seconds:    lock lifetime; bounds how long a crashed holder blocks others
    max_retries:    acquisition attempts before giving up
    retry_delay_ms: base delay between attempts; up to the same again is added as jitter
    sleep:          injectable for tests
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 30,
        max_retries: int = 8,
        retry_delay_ms: int = 150,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._sleep = sleep

    @staticmethod
    def key(resource_id: str) -> str:
        return f"lock:{resource_id}"

    def acquire(
        self,
        resource_id: str,
        ttl_seconds: int | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> str | None:
        """Return a holder token, or None if the lock could not be taken."""
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        attempts = max_retries if max_retries is not None else self.max_retries
        delay_ms = retry_delay_ms if retry_delay_ms is not None else self.retry_delay_ms

        key = self.key(resource_id)
        token = uuid.uuid4().hex

        for attempt in range(1, attempts + 1):
            if self._store.get(key) is None and self._store.put(key, token, ttl, only_if_absent=True):
                # Confirm the stored token is ours before trusting the write
                if self._store.get(key) == token:
                    logger.debug("Lock acquired", extra={"resource_id": resource_id, "attempt": attempt})
                    return token
            if attempt < attempts:
                self._sleep((delay_ms + random.uniform(0, delay_ms)) / 1000)

        logger.info(
            "Lock not acquired after %d attempts", attempts,
            extra={"resource_id": resource_id},
        )
        return None

    def release(self, resource_id: str, token: str) -> bool:
        """Delete the lock only if `token` still holds it."""
        released = self._store.delete(self.key(resource_id), expected_value=token)
        if not released:
            logger.warning(
                "Lock was no longer ours at release (expired and re-acquired?)",
                extra={"resource_id": resource_id},
            )
        return released

    @contextmanager
    def hold(self, resource_id: str) -> Iterator[str | None]:
        """
        Hold the lock for the duration of the block. Yields the token, or
        None when acquisition failed and the block runs unprotected.
        """
        token = self.acquire(resource_id)
        try:
            yield token
        finally:
            if token is not None:
                self.release(resource_id, token)
