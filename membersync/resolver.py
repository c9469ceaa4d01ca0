"""Canonical Stripe state — subscriptions and customer emails fetched from the API.

Webhook payloads are not trusted for price metadata: several event shapes
carry unexpanded price references. Subscriptions are always re-read with
items.data.price expanded.

Contract:
- resolve_subscription() raises ResolutionError on any Stripe failure
  (the invocation fails and Stripe redelivers)
- resolve_email() answers None for a missing, deleted or email-less customer;
  only transport/API faults raise ResolutionError
- No caching between calls; every lookup is an independent read
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import stripe

from membersync.errors import ConfigurationError, ResolutionError

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = ["items.data.price"]


def as_dict(obj: Any) -> dict[str, Any]:
    """Stripe objects and plain dicts -> plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def id_of(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if value is None:
        return None
    ref = value.get("id") if isinstance(value, dict) else getattr(value, "id", None)
    return str(ref) if ref else None


@dataclass(frozen=True)
class PriceRef:
    id: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "PriceRef":
        if isinstance(data, str):
            # Unexpanded price: id only, no metadata
            return cls(id=data)
        data = as_dict(data)
        metadata = data.get("metadata") or {}
        return cls(id=data.get("id"), metadata=dict(as_dict(metadata)))


@dataclass(frozen=True)
class Subscription:
    """The subset of a Stripe subscription the membership row is derived from."""

    id: str | None
    status: str | None
    customer_id: str | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    items: tuple[PriceRef, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "Subscription":
        data = as_dict(data)
        raw_items = as_dict(data.get("items")).get("data") or []
        items = [as_dict(item) for item in raw_items]

        # Newer API versions moved current_period_end onto the subscription item
        period_end = data.get("current_period_end")
        if not period_end and items:
            period_end = items[0].get("current_period_end")

        return cls(
            id=data.get("id"),
            status=data.get("status"),
            customer_id=id_of(data.get("customer")),
            current_period_end=int(period_end) if period_end else None,
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            items=tuple(PriceRef.from_dict(item.get("price")) for item in items if item.get("price")),
        )


@dataclass(frozen=True)
class Customer:
    id: str
    email: str | None = None
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "Customer":
        data = as_dict(data)
        return cls(
            id=str(data.get("id") or ""),
            email=data.get("email") or None,
            deleted=bool(data.get("deleted")),
        )


def first_resolved(strategies: Iterable[Callable[[], Any]]) -> Any:
    """Try each strategy in order; first non-empty result wins, else None.

    Strategies answer absence with None/"" and are never expected to raise
    for absence. Real faults (ResolutionError) still propagate.
    """
    for strategy in strategies:
        value = strategy()
        if value:
            return value
    return None


def build_stripe_client(api_key: str, api_version: str = "") -> stripe.StripeClient:
    """Create the process-wide Stripe client. Called once by the app factory."""
    if not api_key:
        raise ConfigurationError("STRIPE_SECRET_KEY is not set")
    if api_version:
        return stripe.StripeClient(api_key, stripe_version=api_version)
    return stripe.StripeClient(api_key)


class StripeResolver:
    """Reads canonical subscription/customer state through an injected StripeClient."""

    def __init__(self, client: Any):
        self._client = client

    def resolve_subscription(self, subscription_id: str | None) -> Subscription:
        if not subscription_id:
            raise ResolutionError("subscription", subscription_id, "missing id")
        try:
            raw = self._client.subscriptions.retrieve(
                subscription_id,
                params={"expand": SUBSCRIPTION_EXPAND},
            )
        except stripe.StripeError as e:
            logger.warning(
                "Stripe subscription lookup failed: %s (%s)",
                subscription_id,
                type(e).__name__,
            )
            raise ResolutionError("subscription", subscription_id, type(e).__name__) from e

        subscription = Subscription.from_dict(raw)
        logger.debug(
            "Resolved subscription %s status=%s items=%d",
            subscription.id,
            subscription.status,
            len(subscription.items),
        )
        return subscription

    def resolve_email(self, customer_id: str | None) -> str | None:
        if not customer_id:
            return None
        try:
            raw = self._client.customers.retrieve(customer_id)
        except stripe.InvalidRequestError as e:
            if e.http_status == 404 or e.code == "resource_missing":
                logger.info("Stripe customer %s not found, no email", customer_id)
                return None
            raise ResolutionError("customer", customer_id, type(e).__name__) from e
        except stripe.StripeError as e:
            logger.warning(
                "Stripe customer lookup failed: %s (%s)",
                customer_id,
                type(e).__name__,
            )
            raise ResolutionError("customer", customer_id, type(e).__name__) from e

        customer = Customer.from_dict(raw)
        if customer.deleted:
            logger.info("Stripe customer %s is deleted, no email", customer_id)
            return None
        return customer.email
