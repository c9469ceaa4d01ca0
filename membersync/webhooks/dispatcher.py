"""Webhook event dispatcher — routes verified Stripe events to membership writes.

Four event types change membership state; every other type is acknowledged
with no side effect so Stripe stops retrying events we deliberately ignore.

Ordering contract (Stripe may reorder and redeliver):
- subscription.updated re-derives everything from the canonical subscription,
  never from the event payload
- subscription.deleted never re-fetches (the subscription may already be gone);
  it writes a fixed terminal state from the payload's own ids
- invoice.payment_failed patches status on an existing row only
- Last write wins at the store; there is no dedup bookkeeping
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from membersync.errors import ConfigurationError
from membersync.normalize import (
    STATUS_INACTIVE,
    STATUS_PAST_DUE,
    normalize_status,
    price_id_of,
    resolve_tier,
    unix_to_iso,
)
from membersync.resolver import StripeResolver, Subscription, first_resolved, id_of
from membersync.webhooks.verification import Notification
from membersync.writer import MembershipChange, MembershipWriter, WriteOutcome

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Stripe event types that change membership state."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass
class WebhookContext:
    """Clients a dispatch needs. Built once at startup, passed to every call."""

    resolver: StripeResolver | None
    writer: MembershipWriter
    price_tiers: dict[str, str] = field(default_factory=dict)

    def require_resolver(self) -> StripeResolver:
        if self.resolver is None:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")
        return self.resolver


@dataclass
class DispatchResult:
    kind: str
    outcome: str  # written, updated, no_match, skipped, ignored
    email: str | None = None

    @property
    def handled(self) -> bool:
        return self.outcome != "ignored"


def classify(event_type: str | None) -> EventKind | None:
    """Map a Stripe event type to a handled kind, or None if we ignore it."""
    try:
        return EventKind(event_type)
    except ValueError:
        return None


def _subscription_fields(
    subscription: Subscription,
    customer_id: str | None,
    price_tiers: dict[str, str],
) -> dict[str, Any]:
    """Full set of columns derived from a canonical subscription."""
    return {
        "processor_customer_id": customer_id,
        "tier": resolve_tier(subscription, price_tiers),
        "status": normalize_status(subscription),
        "processor_subscription_id": subscription.id,
        "price_id": price_id_of(subscription),
        "current_period_end": unix_to_iso(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


def _result(kind: EventKind, outcome: WriteOutcome, email: str | None) -> DispatchResult:
    return DispatchResult(kind=kind.value, outcome=outcome.value, email=email)


# ── Branches ──────────────────────────────────────────────────────────────


def handle_checkout_completed(notification: Notification, ctx: WebhookContext) -> DispatchResult:
    session = notification.data_object
    subscription_id = id_of(session.get("subscription"))

    if session.get("mode") != "subscription" or not subscription_id:
        logger.info("checkout.session.completed (non-subscription) ignored")
        return DispatchResult(kind=EventKind.CHECKOUT_COMPLETED.value, outcome="ignored")

    resolver = ctx.require_resolver()
    subscription = resolver.resolve_subscription(subscription_id)
    customer_id = id_of(session.get("customer")) or subscription.customer_id

    # Email from the session first, then the customer record
    customer_details = session.get("customer_details") or {}
    email = first_resolved([
        lambda: customer_details.get("email"),
        lambda: session.get("customer_email"),
        lambda: resolver.resolve_email(customer_id),
    ])

    fields = _subscription_fields(subscription, customer_id, ctx.price_tiers)
    logger.info(
        "checkout.session.completed subscription=%s price=%s tier=%s status=%s",
        subscription.id,
        fields["price_id"],
        fields["tier"],
        fields["status"],
    )
    outcome = ctx.writer.upsert(MembershipChange(email, customer_id, fields))
    return _result(EventKind.CHECKOUT_COMPLETED, outcome, email)


def handle_subscription_updated(notification: Notification, ctx: WebhookContext) -> DispatchResult:
    resolver = ctx.require_resolver()
    event_sub = notification.data_object
    subscription = resolver.resolve_subscription(event_sub.get("id"))

    customer_id = subscription.customer_id or id_of(event_sub.get("customer"))
    email = resolver.resolve_email(customer_id)

    fields = _subscription_fields(subscription, customer_id, ctx.price_tiers)
    logger.info(
        "customer.subscription.updated subscription=%s price=%s tier=%s status=%s",
        subscription.id,
        fields["price_id"],
        fields["tier"],
        fields["status"],
    )
    outcome = ctx.writer.upsert(MembershipChange(email, customer_id, fields))
    return _result(EventKind.SUBSCRIPTION_UPDATED, outcome, email)


def handle_subscription_deleted(notification: Notification, ctx: WebhookContext) -> DispatchResult:
    resolver = ctx.require_resolver()
    event_sub = notification.data_object
    subscription_id = event_sub.get("id")
    customer_id = id_of(event_sub.get("customer"))
    email = resolver.resolve_email(customer_id)

    # Terminal state from the payload's own ids; tier is kept as it was
    fields = {
        "status": STATUS_INACTIVE,
        "processor_customer_id": customer_id,
        "processor_subscription_id": subscription_id,
        "price_id": None,
        "current_period_end": None,
        "cancel_at_period_end": False,
    }
    logger.info("customer.subscription.deleted subscription=%s", subscription_id)
    outcome = ctx.writer.upsert(MembershipChange(email, customer_id, fields))
    return _result(EventKind.SUBSCRIPTION_DELETED, outcome, email)


def handle_invoice_payment_failed(notification: Notification, ctx: WebhookContext) -> DispatchResult:
    resolver = ctx.require_resolver()
    invoice = notification.data_object
    customer_id = id_of(invoice.get("customer"))
    # invoice.customer_email is a snapshot from finalization; the customer record is current
    email = resolver.resolve_email(customer_id)

    logger.info("invoice.payment_failed invoice=%s", invoice.get("id"))
    change = MembershipChange(email, customer_id, {"status": STATUS_PAST_DUE}, patch=True)
    outcome = ctx.writer.upsert(change)
    return _result(EventKind.INVOICE_PAYMENT_FAILED, outcome, email)


_HANDLERS: dict[EventKind, Callable[[Notification, WebhookContext], DispatchResult]] = {
    EventKind.CHECKOUT_COMPLETED: handle_checkout_completed,
    EventKind.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
}


def dispatch(notification: Notification, ctx: WebhookContext) -> DispatchResult:
    """Run the branch for a verified notification; unknown kinds are no-ops."""
    kind = classify(notification.kind)
    if kind is None:
        logger.info("Unhandled Stripe event type %s acknowledged", notification.kind)
        return DispatchResult(kind=notification.kind, outcome="ignored")
    return _HANDLERS[kind](notification, ctx)
