"""Pure mappings from Stripe vocabulary to membership vocabulary.

No I/O here. Every function accepts missing input and answers with the
documented fallback instead of raising.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable

if TYPE_CHECKING:
    from membersync.resolver import Subscription

# Stored status vocabulary
STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_PAST_DUE = "past_due"
STATUS_UNKNOWN = "unknown"
MEMBERSHIP_STATUSES = frozenset({STATUS_ACTIVE, STATUS_INACTIVE, STATUS_PAST_DUE, STATUS_UNKNOWN})

UNKNOWN_TIER = "unknown"

# Raw Stripe statuses that grant access
_ACTIVE_STRIPE_STATUSES = {"active", "trialing"}


def normalize_email(email: Any) -> str | None:
    """Trim and lower-case an email. Empty or non-string input -> None."""
    if not isinstance(email, str):
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def normalize_status(subscription: Subscription | None) -> str:
    """Collapse a Stripe subscription status into the stored vocabulary.

    active/trialing -> active, past_due stays past_due, everything else
    (canceled, incomplete, unpaid, paused, no subscription) -> inactive.
    """
    if subscription is None:
        return STATUS_INACTIVE
    raw = (subscription.status or "").strip().lower()
    if raw in _ACTIVE_STRIPE_STATUSES:
        return STATUS_ACTIVE
    if raw == STATUS_PAST_DUE:
        return STATUS_PAST_DUE
    return STATUS_INACTIVE


def coerce_status(value: Any) -> str:
    """Force any value into the four stored statuses."""
    if isinstance(value, str) and value.strip().lower() in MEMBERSHIP_STATUSES:
        return value.strip().lower()
    return STATUS_UNKNOWN


def clean_tier(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip().lower()
    return cleaned or None


def price_id_of(subscription: Subscription | None) -> str | None:
    if subscription is None or not subscription.items:
        return None
    return subscription.items[0].id


def _tier_strategies(
    subscription: Subscription | None,
    price_tiers: dict[str, str],
) -> Iterable[Callable[[], Any]]:
    price = subscription.items[0] if subscription is not None and subscription.items else None
    metadata = price.metadata if price is not None else {}
    return (
        lambda: metadata.get("tier"),
        lambda: metadata.get("plan"),
        lambda: price_tiers.get(price.id) if price is not None and price.id else None,
    )


def resolve_tier(
    subscription: Subscription | None,
    price_tiers: dict[str, str] | None = None,
) -> str:
    """Tier from first price: metadata.tier, metadata.plan, legacy price map, "unknown"."""
    for strategy in _tier_strategies(subscription, price_tiers or {}):
        tier = clean_tier(strategy())
        if tier:
            return tier
    return UNKNOWN_TIER


def unix_to_iso(seconds: Any) -> str | None:
    """Unix seconds -> UTC ISO-8601. Falsy or unparseable input -> None."""
    if not seconds:
        return None
    try:
        return datetime.fromtimestamp(int(seconds), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return None
