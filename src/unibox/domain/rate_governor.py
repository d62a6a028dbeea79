"""Outbound send governor - per-account safety limits.

Checks run in a fixed order and stop at the first failure:

1. NO_RECIPIENTS / TOO_MANY_RECIPIENTS
2. ATTACHMENT_TOO_LARGE
3. HOURLY_CAP   (UTC calendar hour)
4. DAILY_CAP    (UTC calendar day, lower ceiling for trial accounts)
5. RECIPIENT_COOLDOWN
6. DOMAIN_COOLDOWN

Counter increments and cooldown claims are single conditional writes in
the counter store, all inside one store transaction. A failing check
raises out of that transaction, so nothing a rejected send touched is kept.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Literal, Sequence

from unibox.infra.counter_store import CounterStore, CounterTransaction
from unibox.infra.settings import LimitsConfig
from unibox.infra.time import day_bucket, day_bucket_end, hour_bucket, hour_bucket_end
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context

from .identity import canonical_participant

logger = get_logger(__name__)

LimitKind = Literal[
    "NO_RECIPIENTS",
    "TOO_MANY_RECIPIENTS",
    "ATTACHMENT_TOO_LARGE",
    "HOURLY_CAP",
    "DAILY_CAP",
    "RECIPIENT_COOLDOWN",
    "DOMAIN_COOLDOWN",
]

HOURLY_COUNTER = "hourly"
DAILY_COUNTER = "daily"


class LimitExceeded(Exception):
    """Raised when a send would break one of the account's limits.

    Attributes:
        kind: Machine-readable limit kind.
        retry_after: Seconds until the limit clears, when that is knowable.
    """

    def __init__(self, kind: LimitKind, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after


@dataclass(frozen=True)
class Reservation:
    """Usage recorded for an accepted send."""

    account_id: str
    hour_bucket: str
    day_bucket: str
    hourly_count: int
    daily_count: int
    recipients: tuple[str, ...]
    domains: tuple[str, ...]


@dataclass(frozen=True)
class UsageSnapshot:
    account_id: str
    hour_bucket: str
    day_bucket: str
    hourly_count: int
    daily_count: int
    max_per_hour: int
    daily_cap: int


def _seconds_until(now: datetime, moment: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


def _cooldown_remaining(now: datetime, last_sent_at: datetime, cooldown_sec: int) -> int:
    return max(1, math.ceil(cooldown_sec - (now - last_sent_at).total_seconds()))


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        text = value.strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def recipient_key(recipient: str) -> str:
    """Cooldown key for a recipient, so spelling variants share one cooldown."""
    return canonical_participant(recipient) or recipient.strip().lower()


def domains_for(recipients: Sequence[str]) -> tuple[str, ...]:
    """Mail domains of the email recipients in a list."""
    result = []
    for recipient in recipients:
        key = canonical_participant(recipient)
        if key and key.startswith("email:"):
            result.append(key.rsplit("@", 1)[1])
    return _unique(result)


class RateGovernor:
    def __init__(self, store: CounterStore, limits: LimitsConfig) -> None:
        self._store = store
        self._limits = limits

    @property
    def limits(self) -> LimitsConfig:
        return self._limits

    def daily_cap(self, is_trial: bool) -> int:
        if is_trial:
            return min(self._limits.trial_daily_cap, self._limits.max_per_day)
        return self._limits.max_per_day

    def check_and_reserve(
        self,
        account_id: str,
        recipients: Sequence[str],
        domains: Sequence[str],
        attachment_bytes: int,
        is_reply: bool,
        now: datetime,
        *,
        is_trial: bool = False,
    ) -> Reservation:
        """Check every limit and record the send if all pass.

        `domains` may be empty, in which case they are derived from email
        recipients. Replies skip both cooldown checks but still refresh
        the cooldown timestamps.

        Raises:
            LimitExceeded: On the first failing check; no usage is recorded.
        """
        unique_recipients = _unique(recipients)
        unique_domains = _unique(d.lower() for d in domains) or domains_for(unique_recipients)

        try:
            self._check_static(unique_recipients, attachment_bytes)
            with self._store.transaction() as tx:
                hourly, daily = self._reserve_counts(tx, account_id, now, is_trial)
                self._claim_cooldowns(tx, account_id, unique_recipients, unique_domains, is_reply, now)
        except LimitExceeded as e:
            logger.info(
                "send rejected by limit",
                extra={
                    "extra_fields": safe_log_context(
                        account_id=account_id,
                        kind=e.kind,
                        retry_after=e.retry_after,
                    )
                },
            )
            raise

        return Reservation(
            account_id=account_id,
            hour_bucket=hour_bucket(now),
            day_bucket=day_bucket(now),
            hourly_count=hourly,
            daily_count=daily,
            recipients=unique_recipients,
            domains=unique_domains,
        )

    def _check_static(self, recipients: tuple[str, ...], attachment_bytes: int) -> None:
        if not recipients:
            raise LimitExceeded("NO_RECIPIENTS", "At least one recipient is required")

        max_recipients = self._limits.max_recipients_per_message
        if len(recipients) > max_recipients:
            raise LimitExceeded(
                "TOO_MANY_RECIPIENTS",
                f"Too many recipients: {len(recipients)} (max {max_recipients})",
            )

        max_bytes = self._limits.max_attachment_bytes
        if attachment_bytes > max_bytes:
            raise LimitExceeded(
                "ATTACHMENT_TOO_LARGE",
                f"Attachments too large: {attachment_bytes} bytes (max {max_bytes})",
            )

    def _reserve_counts(
        self, tx: CounterTransaction, account_id: str, now: datetime, is_trial: bool
    ) -> tuple[int, int]:
        hourly = tx.increment_if_below(
            account_id, HOURLY_COUNTER, hour_bucket(now), self._limits.max_per_hour, hour_bucket_end(now)
        )
        if hourly is None:
            raise LimitExceeded(
                "HOURLY_CAP",
                f"Hourly send limit reached ({self._limits.max_per_hour})",
                retry_after=_seconds_until(now, hour_bucket_end(now)),
            )

        cap = self.daily_cap(is_trial)
        daily = tx.increment_if_below(
            account_id, DAILY_COUNTER, day_bucket(now), cap, day_bucket_end(now)
        )
        if daily is None:
            label = "Trial daily" if is_trial and cap < self._limits.max_per_day else "Daily"
            raise LimitExceeded(
                "DAILY_CAP",
                f"{label} send limit reached ({cap})",
                retry_after=_seconds_until(now, day_bucket_end(now)),
            )
        return hourly, daily

    def _claim_cooldowns(
        self,
        tx: CounterTransaction,
        account_id: str,
        recipients: tuple[str, ...],
        domains: tuple[str, ...],
        is_reply: bool,
        now: datetime,
    ) -> None:
        recipient_cooldown = self._limits.per_recipient_cooldown_sec
        for recipient in recipients:
            blocking = tx.claim_cooldown(
                account_id, "recipient", recipient_key(recipient), now, recipient_cooldown, force=is_reply
            )
            if blocking is not None:
                raise LimitExceeded(
                    "RECIPIENT_COOLDOWN",
                    f"Recipient contacted less than {recipient_cooldown}s ago",
                    retry_after=_cooldown_remaining(now, blocking, recipient_cooldown),
                )

        domain_cooldown = self._limits.per_domain_cooldown_sec
        for domain in domains:
            blocking = tx.claim_cooldown(
                account_id, "domain", domain, now, domain_cooldown, force=is_reply
            )
            if blocking is not None:
                raise LimitExceeded(
                    "DOMAIN_COOLDOWN",
                    f"Domain contacted less than {domain_cooldown}s ago",
                    retry_after=_cooldown_remaining(now, blocking, domain_cooldown),
                )

    def current_usage(self, account_id: str, now: datetime, *, is_trial: bool = False) -> UsageSnapshot:
        """Read-only view of the account's current buckets."""
        with self._store.transaction() as tx:
            hourly = tx.read_counter(account_id, HOURLY_COUNTER, hour_bucket(now))
            daily = tx.read_counter(account_id, DAILY_COUNTER, day_bucket(now))
        return UsageSnapshot(
            account_id=account_id,
            hour_bucket=hour_bucket(now),
            day_bucket=day_bucket(now),
            hourly_count=hourly,
            daily_count=daily,
            max_per_hour=self._limits.max_per_hour,
            daily_cap=self.daily_cap(is_trial),
        )

    def purge_expired(self, now: datetime) -> int:
        """Drop counters and cooldowns whose window has closed."""
        removed = self._store.purge_expired(now)
        logger.info(
            "expired usage purged",
            extra={"extra_fields": safe_log_context(removed=removed)},
        )
        return removed
