"""Error taxonomy for webhook processing.

Each error carries the HTTP status the webhook endpoint answers with:
- 400 for anything the processor sent us that we refuse (bad signature, bad body)
- 500 for anything the processor should retry (config, lookups, store writes)
"""

from __future__ import annotations


class MembershipSyncError(Exception):
    """Base class for all membersync failures."""

    http_status = 500


class ConfigurationError(MembershipSyncError):
    """A required secret or endpoint is not configured (deployment defect)."""

    http_status = 500


class VerificationError(MembershipSyncError):
    """Signature header missing, malformed, stale or not matching."""

    http_status = 400


class PayloadError(MembershipSyncError):
    """Verified body could not be decoded or parsed into an event."""

    http_status = 400


class ResolutionError(MembershipSyncError):
    """Canonical Stripe lookup failed for a reason other than absence."""

    http_status = 500

    def __init__(self, resource: str, resource_id: str | None, reason: str):
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Failed to resolve {resource} {resource_id}: {reason}")


class UpsertError(MembershipSyncError):
    """The membership store rejected or failed a write."""

    http_status = 500
