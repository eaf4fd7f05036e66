import pytest
from fastapi.testclient import TestClient

from _helper import FakeGateway, FakeIdentityProvider, InMemoryDocumentStore, seed_user
from marketplace.deps import build_reconciliation_handler
from marketplace.main import app
from marketplace.rate_limit import InMemoryRateLimiter
from marketplace.routes import orders as order_routes
from marketplace.services.feedback import FeedbackService
from marketplace.services.orders import OrderService
from marketplace.services.plans import PlanService


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orders(store, gateway):
    return OrderService(store, gateway)


@pytest.fixture
def plans(store, gateway):
    return PlanService(store, gateway)


@pytest.fixture
def feedback(store):
    return FeedbackService(store)


@pytest.fixture
def handler(store, gateway):
    return build_reconciliation_handler(store, gateway)


@pytest.fixture
async def provider(store):
    await seed_user(store, "provider-1", "provider")
    return "provider-1"


TOKENS = {
    "tok-cust": "cust-1",
    "tok-cust-2": "cust-2",
    "tok-provider": "provider-1",
    "tok-admin": "admin-1",
}

USER_TYPES = {"cust-1": "customer", "cust-2": "client", "provider-1": "provider", "admin-1": "admin"}


@pytest.fixture
def client(store, gateway, monkeypatch):
    """API client over the in-memory store; Redis-backed response caching is replaced by a dict."""
    users = store.collections.setdefault("users", {})
    for uid, user_type in USER_TYPES.items():
        users[uid] = {"userType": user_type, "email": f"{uid}@example.com", "status": "active"}

    cache = {}

    async def get_cached_response(key):
        return cache.get(key)

    async def cache_response(key, value, ttl_seconds=None):
        cache[key] = value

    monkeypatch.setattr(order_routes, "get_cached_response", get_cached_response)
    monkeypatch.setattr(order_routes, "cache_response", cache_response)

    app.state.store = store
    app.state.gateway = gateway
    app.state.identity = FakeIdentityProvider(TOKENS)
    app.state.rate_limiter = InMemoryRateLimiter(max_requests=1000, window_seconds=60)
    return TestClient(app)


