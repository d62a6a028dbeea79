"""Entitlement gate - may this account use its channel at all.

Entitlements are granted and revoked by the billing collaborator; this
module only reads them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol

from unibox.infra.db import fetchone, txn
from unibox.infra.time import utc_now

from .models import Account


class EntitlementDenied(Exception):
    """Raised when an account may not send on its channel."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class EntitlementGate(Protocol):
    def allows(self, account: Account) -> bool: ...


class AllowAllEntitlements:
    """Grants every channel (ENTITLEMENTS_MODE=allow_all)."""

    def allows(self, account: Account) -> bool:
        return True


class StaticEntitlements:
    """Fixed (user_id, channel) grants, for tests and local seeding."""

    def __init__(self, grants: set[tuple[str, str]] | None = None) -> None:
        self._grants = set(grants or ())

    def grant(self, user_id: str, channel: str) -> None:
        self._grants.add((user_id, channel))

    def allows(self, account: Account) -> bool:
        return (account.user_id, account.channel) in self._grants


class DatabaseEntitlements:
    """Active, unexpired rows in channel_entitlements (ENTITLEMENTS_MODE=database)."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def allows(self, account: Account) -> bool:
        with txn() as cur:
            row = fetchone(
                cur,
                """
                SELECT 1 FROM channel_entitlements
                WHERE user_id = %s AND channel = %s AND is_active
                  AND (expires_at IS NULL OR expires_at > %s)
                LIMIT 1
                """,
                (account.user_id, account.channel, self._clock()),
            )
        return row is not None


def create_entitlement_gate(mode: str) -> EntitlementGate:
    if mode == "allow_all":
        return AllowAllEntitlements()
    if mode == "database":
        return DatabaseEntitlements()
    raise ValueError(f"unknown entitlements mode: {mode!r}")
