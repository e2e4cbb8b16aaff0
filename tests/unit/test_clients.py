"""
Unit tests for the HTTP collaborators (record store, payment processor,
mail relay) against `responses`-mocked endpoints.
"""
import json
import sys
from urllib.parse import parse_qs, urlparse

import pytest
import requests
import responses

sys.path.insert(0, "services")

PRODUCTS_URL = "https://api.airtable.com/v0/appTEST/Products"


def _query(call):
    return {k: v[0] for k, v in parse_qs(urlparse(call.request.url).query).items()}


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

@responses.activate
def test_find_record_sends_formula_and_token():
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, json={"records": [{"id": "rec1", "fields": {"Stock": 4}}]})
    client = RecordStoreClient("pat_test", "appTEST")

    record = client.find_record("Products", "{PIN Code}='SKU1'")

    assert record == {"id": "rec1", "fields": {"Stock": 4}}
    call = responses.calls[0]
    assert call.request.headers["Authorization"] == "Bearer pat_test"
    assert _query(call) == {"filterByFormula": "{PIN Code}='SKU1'", "maxRecords": "1"}


@responses.activate
def test_find_record_none_when_no_match():
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, json={"records": []})
    assert RecordStoreClient("pat_test", "appTEST").find_record("Products", "x") is None


@responses.activate
def test_patch_and_create_send_fields():
    from shared.record_store import RecordStoreClient

    responses.add(responses.PATCH, f"{PRODUCTS_URL}/rec1", json={"id": "rec1", "fields": {"Stock": 3}})
    responses.add(responses.POST, "https://api.airtable.com/v0/appTEST/Orders", json={"id": "rec9", "fields": {}})
    client = RecordStoreClient("pat_test", "appTEST")

    client.patch_record("Products", "rec1", {"Stock": 3})
    created = client.create_record("Orders", {"Order ID": "MP-1"})

    assert json.loads(responses.calls[0].request.body) == {"fields": {"Stock": 3}}
    assert json.loads(responses.calls[1].request.body) == {"fields": {"Order ID": "MP-1"}}
    assert created["id"] == "rec9"


@responses.activate
def test_table_names_are_url_encoded():
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, "https://api.airtable.com/v0/appTEST/Pin%20Stock/rec1", json={"id": "rec1"})
    assert RecordStoreClient("pat_test", "appTEST").get_record("Pin Stock", "rec1") == {"id": "rec1"}


@responses.activate
def test_list_records_follows_offset():
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, json={"records": [{"id": "a"}], "offset": "page2"})
    responses.add(responses.GET, PRODUCTS_URL, json={"records": [{"id": "b"}]})

    records = RecordStoreClient("pat_test", "appTEST").list_records("Products", "TRUE()", max_records=5)

    assert [r["id"] for r in records] == ["a", "b"]
    assert "offset" not in _query(responses.calls[0])
    assert _query(responses.calls[1])["offset"] == "page2"
    assert _query(responses.calls[1])["maxRecords"] == "5"


@responses.activate
def test_list_records_stops_at_max_pages():
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, json={"records": [{"id": "a"}], "offset": "again"})
    records = RecordStoreClient("pat_test", "appTEST").list_records("Products", max_pages=3)
    assert len(records) == 3
    assert len(responses.calls) == 3


@responses.activate
def test_record_store_error_carries_status_and_body():
    from shared.errors import RecordStoreError
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, status=422, json={"error": "INVALID_FILTER_BY_FORMULA"})
    with pytest.raises(RecordStoreError) as exc:
        RecordStoreClient("pat_test", "appTEST").find_record("Products", "{bad")

    assert exc.value.status_code == 422
    assert "INVALID_FILTER_BY_FORMULA" in exc.value.detail
    assert exc.value.service == "record-store"


@responses.activate
def test_record_store_transport_failure():
    from shared.errors import RecordStoreError
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, body=requests.ConnectionError("connection refused"))
    with pytest.raises(RecordStoreError) as exc:
        RecordStoreClient("pat_test", "appTEST").find_record("Products", "x")
    assert exc.value.status_code is None


@responses.activate
def test_record_store_non_json_body():
    from shared.errors import RecordStoreError
    from shared.record_store import RecordStoreClient

    responses.add(responses.GET, PRODUCTS_URL, body="<html>gateway</html>", status=200)
    with pytest.raises(RecordStoreError):
        RecordStoreClient("pat_test", "appTEST").find_record("Products", "x")


def test_escape_formula_string():
    from shared.record_store import escape_formula_string
    assert escape_formula_string("it's") == "it\\'s"
    assert escape_formula_string("a\\b") == "a\\\\b"


# ---------------------------------------------------------------------------
# Payment processor
# ---------------------------------------------------------------------------

@responses.activate
def test_get_checkout_session():
    from shared.payment_processor import PaymentProcessorClient

    responses.add(responses.GET, "https://api.stripe.com/v1/checkout/sessions/cs_1", json={"id": "cs_1"})
    session = PaymentProcessorClient("sk_test").get_checkout_session("cs_1")

    assert session == {"id": "cs_1"}
    assert responses.calls[0].request.headers["Authorization"] == "Bearer sk_test"


@responses.activate
def test_get_payment_intent_expands_latest_charge():
    from shared.payment_processor import PaymentProcessorClient

    responses.add(responses.GET, "https://api.stripe.com/v1/payment_intents/pi_1", json={"id": "pi_1"})
    PaymentProcessorClient("sk_test").get_payment_intent("pi_1")
    assert _query(responses.calls[0]) == {"expand[]": "latest_charge"}


@responses.activate
def test_payment_processor_error():
    from shared.errors import PaymentProcessorError
    from shared.payment_processor import PaymentProcessorClient

    body = {"error": {"type": "invalid_request_error", "message": "No such checkout.session"}}
    responses.add(responses.GET, "https://api.stripe.com/v1/checkout/sessions/cs_x", status=404, json=body)
    with pytest.raises(PaymentProcessorError) as exc:
        PaymentProcessorClient("sk_test").get_checkout_session("cs_x")

    assert exc.value.status_code == 404
    assert json.loads(exc.value.detail) == body


# ---------------------------------------------------------------------------
# Mail relay
# ---------------------------------------------------------------------------

@responses.activate
def test_send_message_payload():
    from shared.mailer import MAILCHANNELS_SEND_URL, MailerClient

    responses.add(responses.POST, MAILCHANNELS_SEND_URL, status=202)
    mailer = MailerClient("shop@example.com", reply_to="help@example.com", bcc="archive@example.com", api_key="mc_key")

    mailer.send_message("ada@example.com", "Hi", "plain", "<p>html</p>")

    request = responses.calls[0].request
    assert request.headers["X-Api-Key"] == "mc_key"
    assert json.loads(request.body) == {
        "personalizations": [{"to": [{"email": "ada@example.com"}], "bcc": [{"email": "archive@example.com"}]}],
        "from": {"email": "shop@example.com"},
        "subject": "Hi",
        "content": [{"type": "text/plain", "value": "plain"}, {"type": "text/html", "value": "<p>html</p>"}],
        "reply_to": {"email": "help@example.com"},
    }


@responses.activate
def test_send_message_minimal_payload():
    from shared.mailer import MAILCHANNELS_SEND_URL, MailerClient

    responses.add(responses.POST, MAILCHANNELS_SEND_URL, status=202)
    MailerClient("shop@example.com").send_message("ada@example.com", "Hi", "plain", "")

    request = responses.calls[0].request
    payload = json.loads(request.body)
    assert "X-Api-Key" not in request.headers
    assert "reply_to" not in payload
    assert "bcc" not in payload["personalizations"][0]


@responses.activate
def test_send_message_failure():
    from shared.errors import MailerError
    from shared.mailer import MAILCHANNELS_SEND_URL, MailerClient

    responses.add(responses.POST, MAILCHANNELS_SEND_URL, status=401, body="unauthorized")
    with pytest.raises(MailerError) as exc:
        MailerClient("shop@example.com").send_message("ada@example.com", "Hi", "plain", "")
    assert exc.value.status_code == 401
    assert exc.value.detail == "unauthorized"
