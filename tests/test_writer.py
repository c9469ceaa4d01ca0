"""Tests for the membership writer: normalization, write paths, failures."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time
from hypothesis import given, settings
from hypothesis import strategies as st

from membersync.errors import ConfigurationError, UpsertError
from membersync.writer import MembershipChange, MembershipWriter, WriteOutcome, redact_email
from tests.factories import FakeMembershipStore


def _full_fields(**overrides):
    fields = {
        "tier": "gold",
        "status": "active",
        "processor_customer_id": "cus_1",
        "processor_subscription_id": "sub_1",
        "price_id": "price_1",
        "current_period_end": "2026-01-01T00:00:00+00:00",
        "cancel_at_period_end": False,
    }
    fields.update(overrides)
    return fields


class TestEmailPath:
    def test_inserts_new_row(self):
        store = FakeMembershipStore()
        outcome = MembershipWriter(store).upsert(MembershipChange("a@x.com", "cus_1", _full_fields()))
        assert outcome is WriteOutcome.WRITTEN
        assert store.rows["a@x.com"]["tier"] == "gold"
        assert store.rows["a@x.com"]["status"] == "active"

    def test_normalizes_email(self):
        store = FakeMembershipStore()
        MembershipWriter(store).upsert(MembershipChange("  Foo@Bar.COM ", "cus_1", _full_fields()))
        assert list(store.rows) == ["foo@bar.com"]

    def test_last_write_wins(self):
        store = FakeMembershipStore()
        writer = MembershipWriter(store)
        writer.upsert(MembershipChange("a@x.com", "cus_1", _full_fields(tier="gold")))
        writer.upsert(MembershipChange("a@x.com", "cus_1", _full_fields(tier="silver", status="inactive")))
        assert store.rows["a@x.com"]["tier"] == "silver"
        assert store.rows["a@x.com"]["status"] == "inactive"

    def test_partial_change_keeps_other_columns(self):
        store = FakeMembershipStore()
        store.seed("a@x.com", tier="gold", price_id="price_1", status="active")
        MembershipWriter(store).upsert(MembershipChange("a@x.com", "cus_1", {"status": "past_due"}))
        row = store.rows["a@x.com"]
        assert row["status"] == "past_due"
        assert row["tier"] == "gold"
        assert row["price_id"] == "price_1"

    @freeze_time("2026-03-04 05:06:07")
    def test_updated_at_always_stamped(self):
        store = FakeMembershipStore()
        change = MembershipChange("a@x.com", "cus_1", _full_fields(updated_at="1999-01-01T00:00:00"))
        MembershipWriter(store).upsert(change)
        assert store.rows["a@x.com"]["updated_at"] == "2026-03-04T05:06:07+00:00"

    def test_uses_injected_clock(self):
        store = FakeMembershipStore()
        clock = lambda: datetime(2030, 1, 1, tzinfo=timezone.utc)  # noqa: E731
        MembershipWriter(store, clock=clock).upsert(MembershipChange("a@x.com", None, {"status": "active"}))
        assert store.rows["a@x.com"]["updated_at"] == "2030-01-01T00:00:00+00:00"

    def test_raw_status_coerced_to_unknown(self):
        store = FakeMembershipStore()
        MembershipWriter(store).upsert(MembershipChange("a@x.com", None, {"status": "trialing"}))
        assert store.rows["a@x.com"]["status"] == "unknown"

    def test_empty_tier_becomes_unknown(self):
        store = FakeMembershipStore()
        MembershipWriter(store).upsert(MembershipChange("a@x.com", None, _full_fields(tier="  ")))
        assert store.rows["a@x.com"]["tier"] == "unknown"

    def test_unknown_column_rejected(self):
        with pytest.raises(ValueError):
            MembershipWriter(FakeMembershipStore()).upsert(MembershipChange("a@x.com", None, {"plan": "x"}))

    @settings(max_examples=50)
    @given(st.sampled_from(["a@x.com", "A@X.com", " a@x.COM", "a@x.com\n", "A@x.Com  "]))
    def test_variants_share_one_row(self, variant):
        store = FakeMembershipStore()
        writer = MembershipWriter(store)
        writer.upsert(MembershipChange("a@x.com", "cus_1", _full_fields()))
        writer.upsert(MembershipChange(variant, "cus_1", _full_fields(status="inactive")))
        assert list(store.rows) == ["a@x.com"]
        assert store.rows["a@x.com"]["status"] == "inactive"


class TestCustomerFallback:
    def test_updates_row_by_customer_id(self):
        store = FakeMembershipStore()
        store.seed("a@x.com", processor_customer_id="cus_1", status="active", tier="gold")
        outcome = MembershipWriter(store).upsert(MembershipChange(None, "cus_1", {"status": "inactive"}))
        assert outcome is WriteOutcome.UPDATED
        assert store.rows["a@x.com"]["status"] == "inactive"
        assert store.rows["a@x.com"]["email"] == "a@x.com"

    def test_no_matching_row_is_noop(self, caplog):
        store = FakeMembershipStore()
        outcome = MembershipWriter(store).upsert(MembershipChange(None, "cus_404", {"status": "inactive"}))
        assert outcome is WriteOutcome.NO_MATCH
        assert store.rows == {}
        assert "nothing to update" in caplog.text

    def test_blank_email_uses_fallback(self):
        store = FakeMembershipStore()
        store.seed("a@x.com", processor_customer_id="cus_1")
        outcome = MembershipWriter(store).upsert(MembershipChange("   ", "cus_1", {"status": "past_due"}))
        assert outcome is WriteOutcome.UPDATED


class TestEmailChange:
    def test_row_renamed_to_current_email(self):
        store = FakeMembershipStore()
        store.seed("old@x.com", processor_customer_id="cus_1", status="active", tier="gold")
        MembershipWriter(store).upsert(MembershipChange("new@x.com", "cus_1", {"status": "inactive"}))
        assert list(store.rows) == ["new@x.com"]
        assert store.rows["new@x.com"]["email"] == "new@x.com"
        assert store.rows["new@x.com"]["tier"] == "gold"
        assert store.rows["new@x.com"]["status"] == "inactive"

    def test_stale_row_dropped_when_current_email_has_a_row(self):
        store = FakeMembershipStore()
        store.seed("old@x.com", processor_customer_id="cus_1", status="active")
        store.seed("new@x.com", processor_customer_id="cus_1", status="active")
        MembershipWriter(store).upsert(MembershipChange("new@x.com", "cus_1", _full_fields()))
        assert list(store.rows) == ["new@x.com"]
        assert store.rows["new@x.com"]["tier"] == "gold"

    def test_other_customers_untouched(self):
        store = FakeMembershipStore()
        store.seed("b@x.com", processor_customer_id="cus_2", status="active")
        MembershipWriter(store).upsert(MembershipChange("a@x.com", "cus_1", _full_fields()))
        assert set(store.rows) == {"a@x.com", "b@x.com"}
        assert store.rows["b@x.com"]["status"] == "active"


class TestPatch:
    def test_patches_existing_row(self):
        store = FakeMembershipStore()
        store.seed("a@x.com", status="active", tier="gold", price_id="price_1")
        outcome = MembershipWriter(store).upsert(
            MembershipChange("a@x.com", None, {"status": "past_due"}, patch=True)
        )
        assert outcome is WriteOutcome.WRITTEN
        assert store.rows["a@x.com"]["status"] == "past_due"
        assert store.rows["a@x.com"]["price_id"] == "price_1"

    def test_never_inserts(self, caplog):
        store = FakeMembershipStore()
        outcome = MembershipWriter(store).upsert(
            MembershipChange("a@x.com", "cus_1", {"status": "past_due"}, patch=True)
        )
        assert outcome is WriteOutcome.NO_MATCH
        assert store.rows == {}
        assert "nothing to patch" in caplog.text


class TestSkip:
    def test_no_email_no_customer_skips(self):
        store = FakeMembershipStore()
        outcome = MembershipWriter(store).upsert(MembershipChange(None, None, {"status": "active"}))
        assert outcome is WriteOutcome.SKIPPED
        assert store.calls == []


class TestFailures:
    def test_store_failure_becomes_upsert_error(self):
        store = MagicMock()
        store.upsert_by_email.side_effect = RuntimeError("connection reset")
        with pytest.raises(UpsertError):
            MembershipWriter(store).upsert(MembershipChange("a@x.com", None, {"status": "active"}))

    def test_fallback_failure_becomes_upsert_error(self):
        store = MagicMock()
        store.update_by_customer_id.side_effect = RuntimeError("connection reset")
        with pytest.raises(UpsertError):
            MembershipWriter(store).upsert(MembershipChange(None, "cus_1", {"status": "active"}))

    def test_missing_store_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            MembershipWriter(None).upsert(MembershipChange("a@x.com", None, {"status": "active"}))

    def test_store_configuration_error_passes_through(self):
        store = MagicMock()
        store.upsert_by_email.side_effect = ConfigurationError("DATABASE_URL is not set")
        with pytest.raises(ConfigurationError):
            MembershipWriter(store).upsert(MembershipChange("a@x.com", None, {"status": "active"}))


class TestRedactEmail:
    def test_shows_domain_only(self):
        assert redact_email("john@example.com") == "***@example.com"

    def test_missing(self):
        assert redact_email(None) == "-"
        assert redact_email("nodomain") == "-"
