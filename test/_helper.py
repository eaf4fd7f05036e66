"""
Shared helpers for the test modules: an in-memory document store with the same
get/add/set/update/query/batch surface as DocumentStore, a gateway stand-in that
keeps real webhook signature verification, a Redis stand-in, and gateway event builders.
"""
import copy
import hashlib
import hmac
import itertools
import json
import time
import uuid

from marketplace.auth import AuthenticationError
from marketplace.db import apply_updates, get_path
from marketplace.errors import GatewayError, NotFound
from marketplace.gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


class InMemoryBatch:
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._ops: list[tuple[str, str, str, dict | None]] = []

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._ops.append(("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self._ops.append(("update", collection, doc_id, fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops.append(("delete", collection, doc_id, None))

    async def commit(self) -> None:
        # All or nothing: work on a copy and swap it in only when every op applied
        staged = copy.deepcopy(self._store.collections)
        for op, collection, doc_id, data in self._ops:
            docs = staged.setdefault(collection, {})
            if op == "set":
                docs[doc_id] = copy.deepcopy({k: v for k, v in data.items() if k != "id"})
            elif op == "update":
                if doc_id not in docs:
                    raise NotFound(f"{collection}/{doc_id} not found")
                docs[doc_id] = apply_updates(docs[doc_id], data)
            else:
                docs.pop(doc_id, None)
        self._store.collections = staged
        self._store.batches_committed += 1
        self._ops.clear()

    async def __aenter__(self) -> "InMemoryBatch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()


class InMemoryDocumentStore:
    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.batches_committed = 0
        self._ids = itertools.count(1)

    def _docs(self, collection: str) -> dict[str, dict]:
        return self.collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: str) -> dict | None:
        doc = self._docs(collection).get(doc_id)
        if doc is None:
            return None
        return {"id": doc_id, **copy.deepcopy(doc)}

    async def add(self, collection: str, data: dict) -> str:
        doc_id = f"{collection}-{next(self._ids)}"
        await self.set(collection, doc_id, data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._docs(collection)[doc_id] = copy.deepcopy({k: v for k, v in data.items() if k != "id"})

    async def update(self, collection: str, doc_id: str, fields: dict, appends: dict | None = None) -> dict:
        docs = self._docs(collection)
        if doc_id not in docs:
            raise NotFound(f"{collection}/{doc_id} not found")
        docs[doc_id] = apply_updates(docs[doc_id], fields, appends)
        return {"id": doc_id, **copy.deepcopy(docs[doc_id])}

    async def delete(self, collection: str, doc_id: str) -> None:
        self._docs(collection).pop(doc_id, None)

    async def query(self, collection: str, field: str | None = None, value=None) -> list[dict]:
        return [
            {"id": doc_id, **copy.deepcopy(doc)}
            for doc_id, doc in self._docs(collection).items()
            if field is None or get_path(doc, field) == value
        ]

    def batch(self) -> InMemoryBatch:
        return InMemoryBatch(self)


class FakeGateway(StripeGateway):
    """Records checkout sessions instead of calling Stripe. Webhook verification is the real one."""

    def __init__(self, subscriptions: dict | None = None, fail: bool = False):
        super().__init__(api_key="sk_test_fake")
        self.sessions: list[dict] = []
        self.subscriptions = subscriptions or {}
        self.fail = fail

    async def create_checkout_session(self, params: dict) -> dict:
        if self.fail:
            raise GatewayError("Failed to create checkout session: Your card was declined.")
        self.sessions.append(params)
        session_id = f"cs_test_{len(self.sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        if subscription_id not in self.subscriptions:
            raise GatewayError(f"Failed to retrieve subscription: No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]


class FakeIdentityProvider:
    def __init__(self, tokens: dict[str, str]):
        self.tokens = tokens

    async def verify_token(self, token: str) -> dict:
        if token not in self.tokens:
            raise AuthenticationError("Invalid token")
        return {"uid": self.tokens[token], "claims": {}}


class FakeRedis:
    """Lists and sorted sets for the handful of redis.asyncio commands the queue and rate limiter use."""

    def __init__(self):
        self.lists: dict[str, list] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiry: dict[str, int] = {}

    async def lpush(self, key: str, *values) -> int:
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpop(self, key: str):
        items = self.lists.get(key)
        return items.pop() if items else None

    async def zremrangebyscore(self, key: str, low: float, high: float) -> int:
        zset = self.zsets.get(key, {})
        stale = [member for member, score in zset.items() if low <= score <= high]
        for member in stale:
            del zset[member]
        return len(stale)

    async def zadd(self, key: str, mapping: dict) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zrem(self, key: str, *members) -> int:
        zset = self.zsets.get(key, {})
        return sum(zset.pop(member, None) is not None for member in members)

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiry[key] = seconds
        return True

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis):
        self._client = client
        self._commands: list[tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        def queue(*args):
            self._commands.append((name, args))
            return self
        return queue

    async def execute(self) -> list:
        results = [await getattr(self._client, name)(*args) for name, args in self._commands]
        self._commands.clear()
        return results

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._commands.clear()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for payload: t=<ts>,v1=<hex hmac-sha256 of "<ts>.<payload>">."""
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def order_payload(total: float = 120.0, **overrides) -> dict:
    payload = {
        "providerId": "provider-1",
        "listingId": "listing-1",
        "serviceDetails": {
            "title": "Deep house cleaning",
            "category": "cleaning",
            "description": "Three bedroom apartment",
            "pricing": {"type": "fixed", "amount": total},
        },
        "bookingDetails": {
            "scheduledDate": "2026-11-02",
            "scheduledTime": "09:30",
            "duration": 3,
            "address": "12 Harbour Road",
        },
        "pricing": {"baseAmount": total, "totalAmount": total, "currency": "USD"},
    }
    payload.update(overrides)
    return payload


async def seed_user(store, uid: str, user_type: str, **fields) -> None:
    await store.set("users", uid, {"userType": user_type, "email": f"{uid}@example.com", "status": "active", **fields})


def gateway_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def order_metadata(order_id: str, customer_id: str) -> dict:
    return {"orderId": order_id, "customerId": customer_id, "type": "order_payment"}


def order_checkout_completed(order_id: str, customer_id: str, event_id: str | None = None) -> dict:
    return gateway_event("checkout.session.completed", {
        "id": "cs_test_1",
        "object": "checkout.session",
        "payment_intent": "pi_test_1",
        "customer": "cus_test_1",
        "metadata": order_metadata(order_id, customer_id),
    }, event_id)


def order_payment_intent(event_type: str, order_id: str, customer_id: str, event_id: str | None = None) -> dict:
    return gateway_event(event_type, {
        "id": "pi_test_1",
        "object": "payment_intent",
        "customer": "cus_test_1",
        "metadata": order_metadata(order_id, customer_id),
    }, event_id)


def plan_checkout_completed(user_id: str, plan_name: str, plan_type: str, subscription_id: str | None = None) -> dict:
    return gateway_event("checkout.session.completed", {
        "id": "cs_test_plan",
        "object": "checkout.session",
        "payment_intent": None if subscription_id else "pi_test_plan",
        "customer": "cus_test_plan",
        "subscription": subscription_id,
        "metadata": {"userId": user_id, "planName": plan_name, "planType": plan_type},
    })


def invoice_paid(subscription_id: str, invoice_id: str, billing_reason: str = "subscription_cycle") -> dict:
    return gateway_event("invoice.payment_succeeded", {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_id,
        "billing_reason": billing_reason,
    })


def subscription_event(event_type: str, subscription_id: str, user_id: str | None, status: str = "active") -> dict:
    metadata = {"userId": user_id, "planName": "basic", "planType": "monthly"} if user_id else {}
    return gateway_event(event_type, {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "metadata": metadata,
    })


def webhook_request(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[str, dict]:
    payload = json.dumps(event)
    return payload, {"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"}


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
