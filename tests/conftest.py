"""
Pytest configuration and shared fixtures.
Unit tests run the KV store against moto (DynamoDB in-process) and replace
the HTTP collaborators (record store, payment processor, mail relay) with
in-memory fakes. Integration tests use LocalStack.
"""
import json
import os
import re
import time

import boto3
import pytest
from moto import mock_aws

# No X-Ray daemon in tests; must be set before aws_xray_sdk is first imported
os.environ.setdefault("AWS_XRAY_SDK_ENABLED", "false")

LOCALSTACK_ENDPOINT = os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566")
USE_LOCALSTACK = os.environ.get("USE_LOCALSTACK", "false").lower() == "true"

WEBHOOK_SECRET = "whsec_test_secret"
SESSION_ID = "cs_test_1"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 doesn't error in tests."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    monkeypatch.setenv("AWS_XRAY_SDK_ENABLED", "false")
    monkeypatch.setenv("KV_TABLE", "test-kv")


def create_kv_table(client, table_name="test-kv"):
    client.create_table(
        TableName=table_name,
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        BillingMode="PAY_PER_REQUEST",
    )


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: float):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(int(time.time()))


# ---------------------------------------------------------------------------
# Shared KV store (moto)
# ---------------------------------------------------------------------------

@pytest.fixture
def kv_store(aws_env, clock):
    with mock_aws():
        create_kv_table(boto3.client("dynamodb", region_name="us-east-1"))
        from shared.kv_store import KeyValueStore
        yield KeyValueStore("test-kv", clock=clock)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

_EQ = re.compile(r"^\{(?P<field>[^}]+)\}='(?P<value>(?:\\.|[^'\\])*)'$")
_NOT_EMPTY = re.compile(r"^\{(?P<field>[^}]+)\}!=''$")
_AND_NOT = re.compile(r"^AND\((?P<left>.+), NOT\(\{(?P<flag>[^}]+)\}\)\)$")


def _matches(fields: dict, formula: str) -> bool:
    """Evaluates the handful of formula shapes the repositories emit."""
    m = _AND_NOT.match(formula)
    if m:
        return _matches(fields, m.group("left")) and not fields.get(m.group("flag"))
    m = _EQ.match(formula)
    if m:
        value = re.sub(r"\\(.)", r"\1", m.group("value"))
        return str(fields.get(m.group("field"), "")) == value
    m = _NOT_EMPTY.match(formula)
    if m:
        return str(fields.get(m.group("field")) or "") != ""
    raise AssertionError(f"Unsupported formula in fake: {formula}")


class FakeRecordStore:
    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self._seq = 0

    def add(self, table: str, fields: dict) -> str:
        self._seq += 1
        record_id = f"rec{self._seq:04d}"
        self.tables.setdefault(table, {})[record_id] = dict(fields)
        return record_id

    def fail_next(self, method: str, exc: Exception, after: int = 0) -> None:
        """Make a later call to `method` raise `exc`, letting `after` calls through first."""
        self.failures.setdefault(method, []).extend([None] * after + [exc])

    def records(self, table: str) -> list[dict]:
        return [{"id": rid, "fields": dict(f)} for rid, f in self.tables.get(table, {}).items()]

    def fields_of(self, table: str, record_id: str) -> dict:
        return self.tables[table][record_id]

    def stock(self, pin: str) -> int:
        for fields in self.tables.get("Products", {}).values():
            if fields.get("PIN Code") == pin:
                return fields["Stock"]
        raise KeyError(pin)

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            exc = pending.pop(0)
            if exc is not None:
                raise exc

    def get_record(self, table, record_id):
        self.calls.append(("get_record", table, record_id))
        self._maybe_fail("get_record")
        return {"id": record_id, "fields": dict(self.tables[table][record_id])}

    def patch_record(self, table, record_id, fields):
        self.calls.append(("patch_record", table, record_id, dict(fields)))
        self._maybe_fail("patch_record")
        self.tables[table][record_id].update(fields)
        return {"id": record_id, "fields": dict(self.tables[table][record_id])}

    def create_record(self, table, fields):
        self.calls.append(("create_record", table, dict(fields)))
        self._maybe_fail("create_record")
        record_id = self.add(table, fields)
        return {"id": record_id, "fields": dict(fields)}

    def find_record(self, table, formula):
        self.calls.append(("find_record", table, formula))
        self._maybe_fail("find_record")
        for rec in self.records(table):
            if _matches(rec["fields"], formula):
                return rec
        return None

    def list_records(self, table, formula=None, page_size=50, max_pages=10, max_records=None):
        self.calls.append(("list_records", table, formula))
        self._maybe_fail("list_records")
        found = [r for r in self.records(table) if formula is None or _matches(r["fields"], formula)]
        return found[:max_records] if max_records is not None else found


class FakePayments:
    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.payment_intents: dict[str, dict] = {}
        self.failures: list[Exception] = []
        self.requests: list[str] = []

    def get_checkout_session(self, session_id):
        from shared.errors import PaymentProcessorError
        self.requests.append(session_id)
        if self.failures:
            raise self.failures.pop(0)
        if session_id not in self.sessions:
            raise PaymentProcessorError("No such checkout session", status_code=404, detail="{}")
        return json.loads(json.dumps(self.sessions[session_id]))

    def get_payment_intent(self, payment_intent_id):
        from shared.errors import PaymentProcessorError
        if payment_intent_id not in self.payment_intents:
            raise PaymentProcessorError("No such payment intent", status_code=404, detail="{}")
        return self.payment_intents[payment_intent_id]


class FakeMailer:
    def __init__(self):
        self.sent: list[dict] = []
        self.failures: list[Exception] = []

    def send_message(self, to, subject, text_body, html_body):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({"to": to, "subject": subject, "text": text_body, "html": html_body})


@pytest.fixture
def record_store():
    store = FakeRecordStore()
    store.add("Products", {"PIN Code": "SKU1", "Stock": 5})
    store.add("Products", {"PIN Code": "SKU2", "Stock": 1})
    return store


@pytest.fixture
def payments():
    fake = FakePayments()
    fake.sessions[SESSION_ID] = {
        "id": SESSION_ID,
        "payment_status": "paid",
        "payment_intent": "pi_test_1",
        "currency": "usd",
        "amount_total": 2500,
        "customer_details": {"email": "ada@example.com", "name": "Ada Lovelace"},
        "shipping_details": {
            "name": "Ada Lovelace",
            "address": {
                "line1": "12 Analytical St", "line2": "", "city": "London",
                "postal_code": "N1 7AA", "state": "", "country": "GB",
            },
        },
    }
    return fake


@pytest.fixture
def mailer():
    return FakeMailer()


# ---------------------------------------------------------------------------
# Settings, engine, signed events
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    from shared.config import Settings
    return Settings(
        kv_table="test-kv",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key="sk_test_123",
        airtable_token="pat_test",
        airtable_base_id="appTEST",
        mail_from="support@example.com",
        lock_max_retries=3,
        lock_retry_delay_ms=0,
    )


@pytest.fixture
def reconciler(settings, kv_store, record_store, payments, mailer, clock):
    from webhook_service.reconciler import Reconciler
    return Reconciler(settings, kv_store, record_store, payments, mailer, clock=clock, sleep=lambda s: None)


def _make_event(
    event_id="evt_1",
    items=({"r": "SKU1", "qty": 2},),
    event_type="checkout.session.completed",
    payment_status="paid",
    session_id=SESSION_ID,
    **session_fields,
) -> str:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "metadata": {"items": json.dumps(list(items))} if items is not None else {},
        **session_fields,
    }
    event = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if event_id is None:
        del event["id"]
    return json.dumps(event)


@pytest.fixture
def sign(clock):
    from shared.signature import build_signature_header

    def _sign(body, secret=WEBHOOK_SECRET, timestamp=None):
        return build_signature_header(body, secret, int(clock()) if timestamp is None else timestamp)
    return _sign


@pytest.fixture
def deliver(reconciler, sign):
    """Sign and hand a body to the reconciler, as the handler would."""
    def _deliver(body):
        return reconciler.handle(body.encode("utf-8"), sign(body))
    return _deliver


@pytest.fixture
def make_event():
    """Factory for checkout notification bodies (JSON text)."""
    return _make_event
