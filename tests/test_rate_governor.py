"""Tests for the outbound rate governor (memory counter backend)."""

from datetime import datetime, timedelta, timezone

import pytest

from unibox.domain.rate_governor import (
    DAILY_COUNTER,
    HOURLY_COUNTER,
    LimitExceeded,
    RateGovernor,
    domains_for,
    recipient_key,
)
from unibox.infra.counter_store import MemoryCounterStore
from unibox.infra.settings import LimitsConfig

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
ACCOUNT = "acc-1"


def _governor(**limits) -> tuple[RateGovernor, MemoryCounterStore]:
    store = MemoryCounterStore()
    return RateGovernor(store, LimitsConfig(**limits)), store


def _reserve(governor, recipients, now, *, is_reply=False, attachment_bytes=0, is_trial=False, domains=()):
    return governor.check_and_reserve(
        ACCOUNT, recipients, domains, attachment_bytes, is_reply, now, is_trial=is_trial
    )


def _count(store, kind, bucket) -> int:
    with store.transaction() as tx:
        return tx.read_counter(ACCOUNT, kind, bucket)


class TestStaticChecks:
    def test_no_recipients(self):
        governor, store = _governor()
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, [], T0)
        assert exc.value.kind == "NO_RECIPIENTS"
        assert store.counters == {}

    def test_blank_recipients_count_as_none(self):
        governor, _ = _governor()
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["  ", ""], T0)
        assert exc.value.kind == "NO_RECIPIENTS"

    def test_too_many_recipients(self):
        governor, store = _governor(max_recipients_per_message=2)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["a@x.io", "b@y.io", "c@z.io"], T0)
        assert exc.value.kind == "TOO_MANY_RECIPIENTS"
        assert store.counters == {}

    def test_duplicate_recipients_counted_once(self):
        governor, _ = _governor(max_recipients_per_message=1)
        reservation = _reserve(governor, ["+15551234567", "+15551234567"], T0)
        assert reservation.recipients == ("+15551234567",)

    def test_attachment_too_large(self):
        governor, store = _governor(max_attachment_bytes=1000)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15551234567"], T0, attachment_bytes=1001)
        assert exc.value.kind == "ATTACHMENT_TOO_LARGE"
        assert store.counters == {}

    def test_recipient_count_checked_before_attachment_size(self):
        governor, _ = _governor(max_recipients_per_message=1, max_attachment_bytes=1)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["a@x.io", "b@y.io"], T0, attachment_bytes=50)
        assert exc.value.kind == "TOO_MANY_RECIPIENTS"


class TestHourlyCap:
    def test_fourth_send_in_hour_fails_without_partial_increment(self):
        governor, store = _governor(max_per_hour=3)
        for i in range(3):
            _reserve(governor, [f"+1555000000{i}"], T0 + timedelta(minutes=i))

        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15550000009"], T0 + timedelta(minutes=5))

        assert exc.value.kind == "HOURLY_CAP"
        assert _count(store, HOURLY_COUNTER, "2026-03-02T10") == 3
        assert _count(store, DAILY_COUNTER, "2026-03-02") == 3
        assert (ACCOUNT, "recipient", "phone:15550000009") not in store.cooldowns

    def test_retry_after_points_at_next_hour(self):
        governor, _ = _governor(max_per_hour=1)
        _reserve(governor, ["+15550000001"], T0)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15550000002"], T0 + timedelta(minutes=59, seconds=30))
        assert exc.value.retry_after == 30

    def test_next_calendar_hour_resets(self):
        governor, _ = _governor(max_per_hour=1)
        _reserve(governor, ["+15550000001"], T0 + timedelta(minutes=59))
        reservation = _reserve(governor, ["+15550000002"], T0 + timedelta(minutes=61))
        assert reservation.hourly_count == 1
        assert reservation.hour_bucket == "2026-03-02T11"


class TestDailyCap:
    def test_daily_cap(self):
        governor, store = _governor(max_per_hour=100, max_per_day=2)
        _reserve(governor, ["+15550000001"], T0)
        _reserve(governor, ["+15550000002"], T0 + timedelta(hours=1))

        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15550000003"], T0 + timedelta(hours=2))

        assert exc.value.kind == "DAILY_CAP"
        # the hourly increment made before the daily check is rolled back
        assert _count(store, HOURLY_COUNTER, "2026-03-02T12") == 0

    def test_trial_accounts_hit_lower_ceiling(self):
        governor, _ = _governor(max_per_day=200, trial_daily_cap=2)
        _reserve(governor, ["+15550000001"], T0, is_trial=True)
        _reserve(governor, ["+15550000002"], T0, is_trial=True)

        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15550000003"], T0, is_trial=True)
        assert exc.value.kind == "DAILY_CAP"
        assert "Trial" in exc.value.message

    def test_non_trial_accounts_ignore_trial_cap(self):
        governor, _ = _governor(max_per_day=200, trial_daily_cap=2)
        for i in range(3):
            _reserve(governor, [f"+1555000000{i}"], T0)

    def test_trial_cap_never_exceeds_daily_cap(self):
        governor, _ = _governor(max_per_day=5, trial_daily_cap=20)
        assert governor.daily_cap(is_trial=True) == 5


class TestRecipientCooldown:
    def test_cooldown_window(self):
        governor, store = _governor(per_recipient_cooldown_sec=120)
        _reserve(governor, ["+15551234567"], T0)

        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15551234567"], T0 + timedelta(seconds=119))
        assert exc.value.kind == "RECIPIENT_COOLDOWN"
        assert exc.value.retry_after == 1
        assert _count(store, HOURLY_COUNTER, "2026-03-02T10") == 1

        reservation = _reserve(governor, ["+15551234567"], T0 + timedelta(seconds=121))
        assert reservation.hourly_count == 2

    def test_spelling_variants_share_cooldown(self):
        governor, _ = _governor(per_recipient_cooldown_sec=120)
        _reserve(governor, ["+1 (555) 123-4567"], T0)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["15551234567@s.whatsapp.net"], T0 + timedelta(seconds=10))
        assert exc.value.kind == "RECIPIENT_COOLDOWN"

    def test_reply_bypasses_cooldown_and_refreshes_it(self):
        governor, _ = _governor(per_recipient_cooldown_sec=120)
        _reserve(governor, ["+15551234567"], T0)
        _reserve(governor, ["+15551234567"], T0 + timedelta(seconds=10), is_reply=True)

        # window now runs from the reply, not the first send
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15551234567"], T0 + timedelta(seconds=125))
        assert exc.value.kind == "RECIPIENT_COOLDOWN"

        _reserve(governor, ["+15551234567"], T0 + timedelta(seconds=131))

    def test_failed_cooldown_leaves_other_recipients_unclaimed(self):
        governor, store = _governor(per_recipient_cooldown_sec=120)
        _reserve(governor, ["+15550000002"], T0)

        with pytest.raises(LimitExceeded):
            _reserve(governor, ["+15550000001", "+15550000002"], T0 + timedelta(seconds=5))

        assert (ACCOUNT, "recipient", "phone:15550000001") not in store.cooldowns


class TestDomainCooldown:
    def test_same_domain_blocked(self):
        governor, _ = _governor(per_recipient_cooldown_sec=120, per_domain_cooldown_sec=60)
        _reserve(governor, ["alice@client.io"], T0)

        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["bob@client.io"], T0 + timedelta(seconds=30))
        assert exc.value.kind == "DOMAIN_COOLDOWN"
        assert exc.value.retry_after == 30

        # bob's recipient cooldown was not claimed by the rejected send
        _reserve(governor, ["bob@client.io"], T0 + timedelta(seconds=61))

    def test_explicit_domains(self):
        governor, _ = _governor(per_domain_cooldown_sec=60)
        _reserve(governor, ["+15550000001"], T0, domains=["Client.IO"])
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["+15550000002"], T0 + timedelta(seconds=1), domains=["client.io"])
        assert exc.value.kind == "DOMAIN_COOLDOWN"

    def test_phone_recipients_have_no_domain(self):
        assert domains_for(["+15551234567", "ana@Client.io", "bob@client.io"]) == ("client.io",)

    def test_recipient_cooldown_checked_before_domain(self):
        governor, _ = _governor(per_recipient_cooldown_sec=120, per_domain_cooldown_sec=60)
        _reserve(governor, ["alice@client.io"], T0)
        with pytest.raises(LimitExceeded) as exc:
            _reserve(governor, ["alice@client.io"], T0 + timedelta(seconds=5))
        assert exc.value.kind == "RECIPIENT_COOLDOWN"


class TestUsage:
    def test_current_usage(self):
        governor, _ = _governor(max_per_hour=10, max_per_day=50, trial_daily_cap=5)
        _reserve(governor, ["+15550000001"], T0)
        _reserve(governor, ["+15550000002"], T0)

        usage = governor.current_usage(ACCOUNT, T0, is_trial=True)
        assert usage.hourly_count == 2
        assert usage.daily_count == 2
        assert usage.max_per_hour == 10
        assert usage.daily_cap == 5

    def test_purge_expired(self):
        governor, store = _governor(per_recipient_cooldown_sec=120)
        _reserve(governor, ["+15550000001"], T0)

        assert governor.purge_expired(T0 + timedelta(seconds=30)) == 0
        # cooldown expires after 120s, hourly bucket at 11:00, daily at midnight
        assert governor.purge_expired(T0 + timedelta(hours=1)) == 2
        assert list(store.counters) == [(ACCOUNT, DAILY_COUNTER, "2026-03-02")]

    def test_recipient_key(self):
        assert recipient_key("whatsapp:+1 555 123 4567") == "phone:15551234567"
