"""Read-only membership lookup used by the UI for access gating."""

from __future__ import annotations

from membersync.normalize import STATUS_ACTIVE, normalize_email
from membersync.store import MembershipRecord, MembershipStore

# Rows written before statuses were normalized may still say "trialing"
_ACCESS_STATUSES = {STATUS_ACTIVE, "trialing"}


def get_membership(store: MembershipStore, email: str | None) -> MembershipRecord | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return store.get_by_email(normalized)


def has_active_membership(store: MembershipStore, email: str | None) -> bool:
    record = get_membership(store, email)
    return record is not None and record.status in _ACCESS_STATUSES
