"""Shared fixtures for the membersync test suite.

- store: fresh FakeMembershipStore (see factories.py)
- stripe_client: MagicMock StripeClient serving canned subscriptions/customers
- sign: builds valid Stripe-Signature headers
- client: FastAPI TestClient wired to the fakes
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any
from unittest.mock import MagicMock

import pytest
import stripe
from fastapi.testclient import TestClient

from membersync.config import Settings
from membersync.resolver import StripeResolver
from membersync.serve import build_context, create_app
from tests.factories import WEBHOOK_SECRET, FakeMembershipStore


@pytest.fixture()
def store() -> FakeMembershipStore:
    return FakeMembershipStore()


@pytest.fixture()
def stripe_client():
    """MagicMock StripeClient. Fill .subscriptions_by_id / .customers_by_id."""
    client = MagicMock()
    client.subscriptions_by_id = {}
    client.customers_by_id = {}

    def _retrieve_subscription(sub_id, params=None, options=None):
        if sub_id not in client.subscriptions_by_id:
            raise stripe.InvalidRequestError(
                f"No such subscription: '{sub_id}'", "id", code="resource_missing", http_status=404
            )
        return client.subscriptions_by_id[sub_id]

    def _retrieve_customer(customer_id, params=None, options=None):
        if customer_id not in client.customers_by_id:
            raise stripe.InvalidRequestError(
                f"No such customer: '{customer_id}'", "id", code="resource_missing", http_status=404
            )
        return client.customers_by_id[customer_id]

    client.subscriptions.retrieve.side_effect = _retrieve_subscription
    client.customers.retrieve.side_effect = _retrieve_customer
    return client


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="",
    )


@pytest.fixture()
def ctx(settings, stripe_client, store):
    return build_context(settings, resolver=StripeResolver(stripe_client), store=store)


@pytest.fixture()
def sign():
    """Factory for valid Stripe-Signature header values."""

    def _sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = timestamp or int(time.time())
        signed_payload = f"{ts}.".encode() + body
        sig = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={sig}"

    return _sign


@pytest.fixture()
def app(settings, stripe_client, store):
    return create_app(settings, resolver=StripeResolver(stripe_client), store=store)


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def post_event(client, sign):
    """POST a signed event to the webhook route."""

    def _post(event: dict[str, Any]):
        body = json.dumps(event).encode()
        return client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign(body), "Content-Type": "application/json"},
        )

    return _post
