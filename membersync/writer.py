"""Membership writer — idempotent, conflict-resolving writes of derived state.

Write paths, tried in order:
1. Email known        -> upsert keyed on normalized email (last write wins). Rows the
                         customer holds under an older email are folded in first;
                         a patch updates an existing row and never inserts
2. Only customer id   -> update existing row(s) for that customer, email untouched;
                         no matching row is a logged no-op
3. Neither            -> logged skip, never an error

Store failures become UpsertError; the endpoint answers 500 and Stripe's
redelivery retries the (idempotent) write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from membersync.errors import ConfigurationError, UpsertError
from membersync.normalize import UNKNOWN_TIER, clean_tier, coerce_status, normalize_email
from membersync.store import WRITABLE_COLUMNS, MembershipStore

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    WRITTEN = "written"          # upsert by email
    UPDATED = "updated"          # fallback update by customer id matched rows
    NO_MATCH = "no_match"        # no existing row to update or patch
    SKIPPED = "skipped"          # no email and no customer id


@dataclass
class MembershipChange:
    """What one event wants written.

    `fields` holds only the columns this event may overwrite; anything not
    listed stays as it is on an existing row.
    """

    email: str | None
    processor_customer_id: str | None
    fields: dict[str, Any] = field(default_factory=dict)
    patch: bool = False  # update an existing row only, never insert


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def redact_email(email: str | None) -> str:
    """Show only the domain in logs."""
    if not email or "@" not in email:
        return "-"
    return "***@" + email.split("@", 1)[1]


class MembershipWriter:
    def __init__(self, store: MembershipStore | None, clock: Callable[[], datetime] = _utc_now):
        self._store = store
        self._clock = clock

    def _prepare(self, change: MembershipChange) -> dict[str, Any]:
        unknown = set(change.fields) - set(WRITABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown membership columns: {sorted(unknown)}")

        fields = dict(change.fields)
        if "status" in fields:
            fields["status"] = coerce_status(fields["status"])
        if "tier" in fields:
            fields["tier"] = clean_tier(fields["tier"]) or UNKNOWN_TIER
        # Always stamped here, whatever the caller passed
        fields["updated_at"] = self._clock().isoformat()
        return fields

    def upsert(self, change: MembershipChange) -> WriteOutcome:
        if self._store is None:
            raise ConfigurationError("Membership store is not configured")

        email = normalize_email(change.email)
        fields = self._prepare(change)
        customer_id = change.processor_customer_id

        if email:
            try:
                if customer_id:
                    # The customer's email may have changed since their row was written
                    self._store.reassign_customer_email(customer_id, email)
                if change.patch:
                    matched = self._store.update_by_email(email, fields)
                else:
                    self._store.upsert_by_email(email, fields)
                    matched = 1
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error("Membership write failed for %s: %s", redact_email(email), e)
                raise UpsertError(f"write by email failed: {type(e).__name__}") from e
            if not matched:
                logger.warning("No membership row for %s, nothing to patch", redact_email(email))
                return WriteOutcome.NO_MATCH
            logger.info(
                "Membership upserted: %s status=%s tier=%s",
                redact_email(email),
                fields.get("status", "-"),
                fields.get("tier", "-"),
            )
            return WriteOutcome.WRITTEN

        if customer_id:
            try:
                matched = self._store.update_by_customer_id(customer_id, fields)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error("Membership update failed for customer %s: %s", customer_id, e)
                raise UpsertError(f"update_by_customer_id failed: {type(e).__name__}") from e
            if not matched:
                logger.warning(
                    "No email and no membership row for customer %s, nothing to update",
                    customer_id,
                )
                return WriteOutcome.NO_MATCH
            logger.info("Membership updated by customer id %s (%d row)", customer_id, matched)
            return WriteOutcome.UPDATED

        logger.warning("Membership write skipped: no email and no customer id")
        return WriteOutcome.SKIPPED
