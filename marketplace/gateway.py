"""
Stripe adapter. The SDK is synchronous, so every call runs in a worker thread.
SDK failures surface as GatewayError; webhook authenticity failures as SignatureError.
"""
import asyncio
import json
import logging
from typing import Any

import stripe

from marketplace.config import settings
from marketplace.errors import GatewayError, SignatureError

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable."


def _plain(obj: Any) -> dict:
    """StripeObject -> plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return json.loads(str(obj))


class StripeGateway:
    def __init__(self, api_key: str | None = None):
        self._api_key = api_key

    def _require_key(self) -> str:
        if not self._api_key:
            raise GatewayError(NOT_CONFIGURED)
        return self._api_key

    async def _call(self, what: str, fn, *args, **kwargs) -> dict:
        api_key = self._require_key()
        try:
            result = await asyncio.to_thread(fn, *args, api_key=api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe error during %s: %s", what, e)
            raise GatewayError(f"Failed to {what}: {e}") from e
        return _plain(result)

    async def create_checkout_session(self, params: dict) -> dict:
        session = await self._call("create checkout session", stripe.checkout.Session.create, **params)
        return {"id": session.get("id"), "url": session.get("url")}

    async def retrieve_session(self, session_id: str) -> dict:
        return await self._call("retrieve checkout session", stripe.checkout.Session.retrieve, session_id)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return await self._call("retrieve payment intent", stripe.PaymentIntent.retrieve, payment_intent_id)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return await self._call("retrieve subscription", stripe.Subscription.retrieve, subscription_id)

    def construct_webhook_event(self, raw_body: bytes, signature: str | None, secret: str) -> dict:
        """Verify the signature over the exact request bytes, then parse the event."""
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as e:
            raise SignatureError("Webhook payload is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e)) from e
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise SignatureError(f"Malformed webhook payload: {e}") from e


def get_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key)
