"""
Record Store Client
===================
Thin wrapper over the Airtable REST API, where the shop keeps its inventory
and orders. Every call is a single request; success returns the decoded JSON
and any failure raises RecordStoreError with the remote status and body.

No retries here. A retry is only safe where idempotency has been established,
and that is the reconciler's business, not the transport's.
"""
from __future__ import annotations

import logging
from urllib.parse import quote

import requests

from shared.errors import RecordStoreError

logger = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
DEFAULT_TIMEOUT_SECONDS = 10


def escape_formula_string(value: str) -> str:
    """Escape a value for use inside a single-quoted formula string."""
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


class RecordStoreClient:
    def __init__(
        self,
        token: str,
        base_id: str,
        base_url: str = AIRTABLE_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self._base_url = f"{base_url.rstrip('/')}/{base_id}"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_record(self, table: str, record_id: str) -> dict:
        return self._request("GET", self._url(table, record_id))

    def patch_record(self, table: str, record_id: str, fields: dict) -> dict:
        return self._request("PATCH", self._url(table, record_id), json={"fields": fields})

    def create_record(self, table: str, fields: dict) -> dict:
        return self._request("POST", self._url(table), json={"fields": fields})

    def find_record(self, table: str, formula: str) -> dict | None:
        """First record matching `formula`, or None."""
        data = self._request(
            "GET", self._url(table),
            params={"filterByFormula": formula, "maxRecords": 1},
        )
        records = data.get("records") or []
        return records[0] if records else None

    def list_records(
        self,
        table: str,
        formula: str | None = None,
        page_size: int = 50,
        max_pages: int = 10,
        max_records: int | None = None,
    ) -> list[dict]:
        """
        All records matching `formula`, following `offset` pagination.
        `max_pages` is a guard against unbounded scans.
        """
        params: dict = {"pageSize": page_size}
        if formula:
            params["filterByFormula"] = formula
        if max_records is not None:
            params["maxRecords"] = max_records

        records: list[dict] = []
        for _ in range(max_pages):
            data = self._request("GET", self._url(table), params=params)
            records.extend(data.get("records") or [])
            offset = data.get("offset")
            if not offset:
                break
            params["offset"] = offset
        else:
            logger.warning("Stopped listing %s after %d pages", table, max_pages)
        return records

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, table: str, record_id: str | None = None) -> str:
        url = f"{self._base_url}/{quote(table, safe='')}"
        if record_id:
            url = f"{url}/{quote(record_id, safe='')}"
        return url

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise RecordStoreError(f"Record store {method} failed: {e}") from e

        if not resp.ok:
            raise RecordStoreError(
                f"Record store {method} {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                detail=resp.text,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise RecordStoreError(
                f"Record store returned non-JSON body for {method}",
                status_code=resp.status_code,
                detail=resp.text,
            ) from e
