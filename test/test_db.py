import pytest

from _helper import InMemoryDocumentStore
from marketplace.db import _containment, apply_updates, get_path
from marketplace.errors import NotFound


def test_dot_path_updates_merge_nested_fields():
    doc = {"providerInfo": {"plan": {"status": "active", "name": "basic"}, "bio": "x"}, "planName": "basic"}
    merged = apply_updates(doc, {"providerInfo.plan.status": "expired", "updatedAt": "2026-10-19T00:00:00+00:00"})

    assert merged["providerInfo"] == {"plan": {"status": "expired", "name": "basic"}, "bio": "x"}
    assert merged["updatedAt"] == "2026-10-19T00:00:00+00:00"
    assert doc["providerInfo"]["plan"]["status"] == "active"


def test_dot_path_creates_missing_parents():
    assert apply_updates({}, {"payment.sessionId": "cs_1"}) == {"payment": {"sessionId": "cs_1"}}


def test_appends_extend_the_stored_list():
    doc = {"messages": [{"message": "first"}]}
    merged = apply_updates(doc, {"updatedAt": "2026-10-19T00:00:00+00:00"}, appends={"messages": {"message": "second"}})

    assert [m["message"] for m in merged["messages"]] == ["first", "second"]
    assert doc["messages"] == [{"message": "first"}]
    assert apply_updates({}, {}, appends={"order.messages": "x"}) == {"order": {"messages": ["x"]}}


def test_get_path():
    doc = {"pricing": {"totalAmount": 120.0}, "status": "pending"}
    assert get_path(doc, "pricing.totalAmount") == 120.0
    assert get_path(doc, "status.nested") is None
    assert get_path(doc, "bookingDetails.scheduledDate") is None


def test_containment_filter():
    assert _containment("status", "active") == {"status": "active"}
    assert _containment("providerInfo.plan.status", "active") == {"providerInfo": {"plan": {"status": "active"}}}


async def test_batch_is_all_or_nothing():
    store = InMemoryDocumentStore()
    await store.set("users", "u1", {"name": "A"})

    with pytest.raises(NotFound):
        async with store.batch() as batch:
            batch.update("users", "u1", {"name": "B"})
            batch.update("users", "missing", {"name": "C"})

    assert (await store.get("users", "u1"))["name"] == "A"
    assert store.batches_committed == 0
