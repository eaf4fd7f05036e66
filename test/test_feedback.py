import pytest

from _helper import order_payload
from marketplace.errors import AlreadyReviewed, CannotReview, NotFound, Unauthorized
from marketplace.services.feedback import rating_summary


async def _completed_paid_order(orders, customer_id="cust-1"):
    order = await orders.create_order(order_payload(), customer_id)
    await orders.update_payment_status(order["id"], "paid", "admin-1", "admin")
    await orders.update_order_status(order["id"], "completed", "provider-1", "provider")
    return order


def test_rating_summary():
    assert rating_summary(9, 2) == {"ratingSum": 9, "totalReviews": 2, "averageRating": 4.5}
    assert rating_summary(14, 3)["averageRating"] == 4.7
    assert rating_summary(0, 0) == {"ratingSum": 0, "totalReviews": 0, "averageRating": 0}


async def test_feedback_updates_provider_rating(orders, feedback, store, provider):
    first = await _completed_paid_order(orders)
    second = await _completed_paid_order(orders)

    created = await feedback.create_feedback("cust-1", {"orderId": first["id"], "rating": 5, "comment": "Great"})
    await feedback.create_feedback("cust-1", {"orderId": second["id"], "rating": 4})

    assert created["providerId"] == provider
    assert created["serviceId"] == "listing-1"
    assert created["serviceName"] == "Deep house cleaning"
    user = await store.get("users", provider)
    assert user["ratingSum"] == 9
    assert user["totalReviews"] == 2
    assert user["averageRating"] == 4.5


async def test_feedback_guards(orders, feedback, provider):
    with pytest.raises(NotFound):
        await feedback.create_feedback("cust-1", {"orderId": "missing", "rating": 5})

    unpaid = await orders.create_order(order_payload(), "cust-1")
    await orders.update_order_status(unpaid["id"], "completed", "provider-1", "provider")
    with pytest.raises(CannotReview, match="paid"):
        await feedback.create_feedback("cust-1", {"orderId": unpaid["id"], "rating": 5})

    in_progress = await orders.create_order(order_payload(), "cust-1")
    await orders.update_payment_status(in_progress["id"], "paid", "admin-1", "admin")
    with pytest.raises(CannotReview, match="completed"):
        await feedback.create_feedback("cust-1", {"orderId": in_progress["id"], "rating": 5})

    done = await _completed_paid_order(orders)
    with pytest.raises(Unauthorized):
        await feedback.create_feedback("cust-2", {"orderId": done["id"], "rating": 5})

    await feedback.create_feedback("cust-1", {"orderId": done["id"], "rating": 3})
    with pytest.raises(AlreadyReviewed):
        await feedback.create_feedback("cust-1", {"orderId": done["id"], "rating": 5})


async def test_delete_feedback_reverses_rating(orders, feedback, store, provider):
    first = await _completed_paid_order(orders)
    second = await _completed_paid_order(orders)
    kept = await feedback.create_feedback("cust-1", {"orderId": first["id"], "rating": 5})
    removed = await feedback.create_feedback("cust-1", {"orderId": second["id"], "rating": 2})

    with pytest.raises(Unauthorized):
        await feedback.delete_feedback(removed["id"], "cust-2", "customer")
    await feedback.delete_feedback(removed["id"], "cust-1", "customer")

    user = await store.get("users", provider)
    assert user["totalReviews"] == 1
    assert user["averageRating"] == 5.0
    assert await store.get("feedback", removed["id"]) is None

    await feedback.delete_feedback(kept["id"], "admin-1", "admin")
    user = await store.get("users", provider)
    assert user["totalReviews"] == 0
    assert user["averageRating"] == 0


async def test_list_provider_feedback_pages_newest_first(orders, feedback, store, provider):
    for rating in (3, 4, 5):
        order = await _completed_paid_order(orders)
        await feedback.create_feedback("cust-1", {"orderId": order["id"], "rating": rating})
    # Pin createdAt so ordering does not depend on clock resolution
    for i, item in enumerate(sorted(await store.query("feedback"), key=lambda f: f["rating"])):
        await store.update("feedback", item["id"], {"createdAt": f"2026-10-0{i + 1}T10:00:00+00:00"})

    page = await feedback.list_provider_feedback(provider, page=1, limit=2)
    assert [f["rating"] for f in page["data"]] == [5, 4]
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}

    rest = await feedback.list_provider_feedback(provider, page=2, limit=2)
    assert [f["rating"] for f in rest["data"]] == [3]
