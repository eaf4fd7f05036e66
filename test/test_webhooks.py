import json

import httpx
import pytest

from _helper import WEBHOOK_SECRET, gateway_event, order_checkout_completed, order_payload, sign_payload, webhook_request
from marketplace import worker
from marketplace.config import settings
from marketplace.errors import SignatureError
from marketplace.gateway import StripeGateway
from marketplace.main import app
from marketplace.routes import webhooks

URL = "/webhooks/stripe"


@pytest.fixture
def intake(monkeypatch):
    """Seen event ids and queued events, standing in for Redis."""
    state = {"seen": set(), "queued": [], "fail_queue": False}

    async def check_idempotency(key, ttl_seconds=None):
        if key in state["seen"]:
            return True
        state["seen"].add(key)
        return False

    async def release_idempotency(key):
        state["seen"].discard(key)

    async def push_to_queue(event, attempts=0):
        if state["fail_queue"]:
            raise ConnectionError("redis unavailable")
        state["queued"].append(event)

    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(webhooks, "check_idempotency", check_idempotency)
    monkeypatch.setattr(webhooks, "release_idempotency", release_idempotency)
    monkeypatch.setattr(webhooks, "push_to_queue", push_to_queue)
    return state


def test_signature_verification():
    gateway = StripeGateway()
    payload = json.dumps(gateway_event("checkout.session.completed", {"id": "cs_1"}))

    assert gateway.construct_webhook_event(payload.encode(), sign_payload(payload), WEBHOOK_SECRET)["type"] == (
        "checkout.session.completed"
    )
    with pytest.raises(SignatureError):
        gateway.construct_webhook_event(payload.encode(), sign_payload(payload, "whsec_other"), WEBHOOK_SECRET)
    with pytest.raises(SignatureError):
        gateway.construct_webhook_event(payload.encode(), None, WEBHOOK_SECRET)
    stale = sign_payload(payload, timestamp=1_000_000)
    with pytest.raises(SignatureError):
        gateway.construct_webhook_event(payload.encode(), stale, WEBHOOK_SECRET)


def test_valid_event_is_queued_and_acknowledged(client, intake):
    event = gateway_event("checkout.session.completed", {"id": "cs_1"})
    payload, headers = webhook_request(event)

    resp = client.post(URL, content=payload, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert intake["queued"] == [event]


def test_redelivery_is_acknowledged_once(client, intake):
    payload, headers = webhook_request(gateway_event("payment_intent.succeeded", {"id": "pi_1"}, event_id="evt_same"))

    client.post(URL, content=payload, headers=headers)
    resp = client.post(URL, content=payload, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["duplicate"] is True
    assert len(intake["queued"]) == 1


def test_tampered_body_is_rejected(client, intake):
    payload, headers = webhook_request(gateway_event("checkout.session.completed", {"id": "cs_1"}))
    tampered = payload.replace("cs_1", "cs_2")

    resp = client.post(URL, content=tampered, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid signature"}
    assert intake["queued"] == []


def test_missing_signature_header(client, intake):
    payload, _ = webhook_request(gateway_event("checkout.session.completed", {"id": "cs_1"}))
    resp = client.post(URL, content=payload, headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


def test_unconfigured_secret(client, intake, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)
    payload, headers = webhook_request(gateway_event("checkout.session.completed", {"id": "cs_1"}))
    resp = client.post(URL, content=payload, headers=headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Webhook secret not configured"}


def test_event_without_type_is_rejected(client, intake):
    payload, headers = webhook_request({"id": "evt_1", "data": {"object": {}}})
    assert client.post(URL, content=payload, headers=headers).status_code == 400


def test_undecodable_body_is_rejected(client, intake):
    body = b"\xff\xfe\x00garbage"
    headers = {"Stripe-Signature": sign_payload("garbage"), "Content-Type": "application/json"}

    resp = client.post(URL, content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid signature"}
    assert intake["queued"] == []


@pytest.mark.parametrize("event", [[], "evt_1", 42])
def test_signed_non_object_payload_is_rejected(client, intake, event):
    payload, headers = webhook_request(event)

    resp = client.post(URL, content=payload, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Malformed event: expected a JSON object"}
    assert intake["queued"] == []


def test_queue_failure_lets_gateway_redeliver(client, intake):
    payload, headers = webhook_request(gateway_event("checkout.session.completed", {"id": "cs_1"}))

    intake["fail_queue"] = True
    assert client.post(URL, content=payload, headers=headers).status_code == 500

    intake["fail_queue"] = False
    resp = client.post(URL, content=payload, headers=headers)
    assert resp.json() == {"received": True}
    assert len(intake["queued"]) == 1


async def test_webhook_to_reconciled_order(client, intake, orders, handler):
    order = await orders.create_order(order_payload(total=120.0), "cust-1")
    session = await orders.create_payment_session(order["id"], "cust-1")
    assert session["amount"] == 120.0

    payload, headers = webhook_request(order_checkout_completed(order["id"], "cust-1"))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as api:
        assert (await api.post(URL, content=payload, headers=headers)).status_code == 200

    for event in intake["queued"]:
        await worker.process_event(handler, event)

    reconciled = await orders.get_order(order["id"])
    assert reconciled["paymentStatus"] == "paid"
    assert reconciled["status"] == "confirmed"
