"""Usage counter and cooldown store for the rate governor.

Backends selectable via COUNTER_BACKEND env var:
- postgres (default): conditional upserts, one transaction per send check
- memory: process-local, lock-guarded, for development and tests

Every check of one send runs inside a single `transaction()`. Raising out
of the block discards every increment and cooldown claim made in it, so a
rejected send leaves no partial usage behind.
"""

from __future__ import annotations

import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Protocol

from psycopg2.extensions import cursor as PgCursor

from .db import fetchone, txn

CooldownScope = str  # "recipient" | "domain"


class CounterTransaction(Protocol):
    def increment_if_below(
        self, account_id: str, kind: str, bucket: str, limit: int, expires_at: datetime
    ) -> int | None:
        """Atomically add one if the counter is below limit.

        Returns the new count, or None when the counter is already at the
        limit (nothing written). Expiry is set only when the bucket row is
        first created.
        """
        ...

    def claim_cooldown(
        self,
        account_id: str,
        scope: CooldownScope,
        target: str,
        now: datetime,
        cooldown_sec: int,
        *,
        force: bool = False,
    ) -> datetime | None:
        """Stamp `now` as the last send to target if the cooldown has passed.

        Returns None when claimed, else the blocking last-send time.
        `force` stamps unconditionally (never moving the time backwards).
        """
        ...

    def read_counter(self, account_id: str, kind: str, bucket: str) -> int: ...


class CounterStore(Protocol):
    def transaction(self) -> AbstractContextManager[CounterTransaction]: ...

    def purge_expired(self, now: datetime) -> int: ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


class PostgresCounterTransaction:
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def increment_if_below(
        self, account_id: str, kind: str, bucket: str, limit: int, expires_at: datetime
    ) -> int | None:
        if limit <= 0:
            return None
        row = fetchone(
            self._cur,
            """
            INSERT INTO usage_counters (account_id, kind, bucket, count, expires_at)
            VALUES (%s, %s, %s, 1, %s)
            ON CONFLICT (account_id, kind, bucket) DO UPDATE
            SET count = usage_counters.count + 1
            WHERE usage_counters.count < %s
            RETURNING count
            """,
            (account_id, kind, bucket, expires_at, limit),
        )
        return row[0] if row else None

    def claim_cooldown(
        self,
        account_id: str,
        scope: CooldownScope,
        target: str,
        now: datetime,
        cooldown_sec: int,
        *,
        force: bool = False,
    ) -> datetime | None:
        expires_at = now + timedelta(seconds=cooldown_sec)
        if force:
            self._cur.execute(
                """
                INSERT INTO send_cooldowns (account_id, scope, target, last_sent_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id, scope, target) DO UPDATE
                SET last_sent_at = GREATEST(send_cooldowns.last_sent_at, EXCLUDED.last_sent_at),
                    expires_at = GREATEST(send_cooldowns.expires_at, EXCLUDED.expires_at)
                """,
                (account_id, scope, target, now, expires_at),
            )
            return None

        row = fetchone(
            self._cur,
            """
            INSERT INTO send_cooldowns (account_id, scope, target, last_sent_at, expires_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (account_id, scope, target) DO UPDATE
            SET last_sent_at = EXCLUDED.last_sent_at,
                expires_at = EXCLUDED.expires_at
            WHERE send_cooldowns.last_sent_at <= %s
            RETURNING last_sent_at
            """,
            (account_id, scope, target, now, expires_at, now - timedelta(seconds=cooldown_sec)),
        )
        if row is not None:
            return None

        blocking = fetchone(
            self._cur,
            """
            SELECT last_sent_at FROM send_cooldowns
            WHERE account_id = %s AND scope = %s AND target = %s
            """,
            (account_id, scope, target),
        )
        return blocking[0] if blocking else now

    def read_counter(self, account_id: str, kind: str, bucket: str) -> int:
        row = fetchone(
            self._cur,
            """
            SELECT count FROM usage_counters
            WHERE account_id = %s AND kind = %s AND bucket = %s
            """,
            (account_id, kind, bucket),
        )
        return row[0] if row else 0


class PostgresCounterStore:
    def __init__(self, statement_timeout_ms: int = 2000) -> None:
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def transaction(self) -> Iterator[PostgresCounterTransaction]:
        with txn() as cur:
            # Bounds lock waits on a hot counter row
            cur.execute("SET LOCAL statement_timeout = %s", (self._statement_timeout_ms,))
            yield PostgresCounterTransaction(cur)

    def purge_expired(self, now: datetime) -> int:
        with txn() as cur:
            cur.execute("DELETE FROM usage_counters WHERE expires_at <= %s", (now,))
            removed = cur.rowcount
            cur.execute("DELETE FROM send_cooldowns WHERE expires_at <= %s", (now,))
            return removed + cur.rowcount


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryCounterTransaction:
    def __init__(self, store: MemoryCounterStore) -> None:
        self._store = store

    def increment_if_below(
        self, account_id: str, kind: str, bucket: str, limit: int, expires_at: datetime
    ) -> int | None:
        key = (account_id, kind, bucket)
        count, current_expiry = self._store.counters.get(key, (0, expires_at))
        if count >= limit:
            return None
        self._store.counters[key] = (count + 1, current_expiry)
        return count + 1

    def claim_cooldown(
        self,
        account_id: str,
        scope: CooldownScope,
        target: str,
        now: datetime,
        cooldown_sec: int,
        *,
        force: bool = False,
    ) -> datetime | None:
        key = (account_id, scope, target)
        expires_at = now + timedelta(seconds=cooldown_sec)
        existing = self._store.cooldowns.get(key)

        if force:
            if existing is None or existing[0] < now:
                self._store.cooldowns[key] = (now, expires_at)
            return None

        if existing is not None and existing[0] > now - timedelta(seconds=cooldown_sec):
            return existing[0]
        self._store.cooldowns[key] = (now, expires_at)
        return None

    def read_counter(self, account_id: str, kind: str, bucket: str) -> int:
        return self._store.counters.get((account_id, kind, bucket), (0, None))[0]


class MemoryCounterStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.counters: dict[tuple[str, str, str], tuple[int, datetime]] = {}
        self.cooldowns: dict[tuple[str, str, str], tuple[datetime, datetime]] = {}

    @contextmanager
    def transaction(self) -> Iterator[MemoryCounterTransaction]:
        with self._lock:
            counters = dict(self.counters)
            cooldowns = dict(self.cooldowns)
            try:
                yield MemoryCounterTransaction(self)
            except BaseException:
                self.counters = counters
                self.cooldowns = cooldowns
                raise

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired_counters = [k for k, (_, exp) in self.counters.items() if exp <= now]
            expired_cooldowns = [k for k, (_, exp) in self.cooldowns.items() if exp <= now]
            for key in expired_counters:
                del self.counters[key]
            for key in expired_cooldowns:
                del self.cooldowns[key]
            return len(expired_counters) + len(expired_cooldowns)


def create_counter_store(backend: str, statement_timeout_ms: int = 2000) -> CounterStore:
    """Build the configured counter backend."""
    if backend == "memory":
        return MemoryCounterStore()
    if backend == "postgres":
        return PostgresCounterStore(statement_timeout_ms)
    raise ValueError(f"unknown counter backend: {backend!r}")
