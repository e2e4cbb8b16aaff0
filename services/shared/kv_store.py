"""
Shared Key-Value Store
======================
The only coordination medium between concurrent webhook invocations. Lambda
instances share no memory, so claims, locks and delivery markers all live in
one DynamoDB table:

  pk          (S)  namespaced key, e.g. "evt:evt_123" or "lock:SKU1"
  val         (S)  plain string value
  expires_at  (N)  epoch seconds; also the table's TTL attribute

DynamoDB's TTL reaper runs lazily (up to days late), so an entry whose
`expires_at` has passed is treated as absent by every read and by every
conditional write here. That makes expiry exact from the caller's point of
view even though physical deletion is not.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Callable

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_KV_TABLE_DEFAULT = "pinflow-kv"


class KeyValueStore:
    """
    String-to-string map with per-entry expiry.

    Parameters
    ----------
    table_name: DynamoDB table (defaults to $KV_TABLE)
    clock:      returns epoch seconds; injectable so tests can move time forward
    """

    def __init__(self, table_name: str | None = None, clock: Callable[[], float] = time.time):
        table_name = table_name or os.environ.get("KV_TABLE", _KV_TABLE_DEFAULT)
        self._table = boto3.resource("dynamodb").Table(table_name)
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> str | None:
        resp = self._table.get_item(Key={"pk": key}, ConsistentRead=True)
        item = resp.get("Item")
        if not item or self._expired(item):
            return None
        return str(item["val"])

    def put(self, key: str, value: str, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        """
        Write `value` under `key` for `ttl_seconds`.

        With only_if_absent=True the write is a DynamoDB conditional put that
        succeeds only if no live entry exists. Returns False when that
        condition fails; every other error propagates.
        """
        now = int(self._clock())
        item = {"pk": key, "val": value, "expires_at": now + int(ttl_seconds)}
        kwargs = {}
        if only_if_absent:
            kwargs["ConditionExpression"] = Attr("pk").not_exists() | Attr("expires_at").lte(now)
        try:
            self._table.put_item(Item=item, **kwargs)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def delete(self, key: str, expected_value: str | None = None) -> bool:
        """
        Delete `key`. With `expected_value`, delete only if the stored value
        still equals it (compare-and-delete). Returns False if it did not.
        """
        kwargs = {}
        if expected_value is not None:
            kwargs["ConditionExpression"] = Attr("val").eq(expected_value)
        try:
            self._table.delete_item(Key={"pk": key}, **kwargs)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def scan_prefix(self, prefix: str) -> dict[str, str]:
        """Live entries whose key starts with `prefix`. Full table scan; sweeps only."""
        found: dict[str, str] = {}
        kwargs = {"FilterExpression": Attr("pk").begins_with(prefix), "ConsistentRead": True}
        while True:
            resp = self._table.scan(**kwargs)
            for item in resp.get("Items", []):
                if not self._expired(item):
                    found[str(item["pk"])] = str(item["val"])
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return found
            kwargs["ExclusiveStartKey"] = last_key

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _expired(self, item: dict) -> bool:
        expires_at = item.get("expires_at")
        # DynamoDB returns Decimal for numbers
        return expires_at is not None and int(expires_at) <= int(self._clock())
