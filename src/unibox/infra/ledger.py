"""Chat/message ledger store interface and backend selection.

Backends selectable via LEDGER_BACKEND env var:
- postgres (default): raw SQL over psycopg2, see postgres_ledger
- memory: process-local store for development and tests, see memory_ledger

All reads and writes of one webhook delivery or one send happen inside a
single `session()`; leaving the block commits, an exception rolls back.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from unibox.domain.models import Account, Chat, Message, NewMessage

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class LedgerSession(Protocol):
    # Accounts
    def get_account(self, account_id: str) -> Account | None: ...

    def find_account(self, provider: str, external_account_id: str) -> Account | None: ...

    def list_accounts(self, user_id: str) -> list[Account]: ...

    def update_account_status(self, account_id: str, status: str) -> None: ...

    # Chats
    def get_chat(self, chat_id: str) -> Chat | None: ...

    def get_chat_by_identity(
        self, account_id: str, identity_key: str, *, for_update: bool = False
    ) -> Chat | None: ...

    def insert_chat(
        self,
        account_id: str,
        identity_key: str,
        provider_chat_id: str | None,
        title: str,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat | None:
        """Create a chat; None when (account, identity key) already exists."""
        ...

    def update_chat(
        self,
        chat_id: str,
        *,
        title: str,
        provider_chat_id: str | None,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat: ...

    def increment_unread(self, chat_id: str) -> None: ...

    def reset_unread(self, chat_id: str) -> None: ...

    def list_chats(self, account_id: str, limit: int, offset: int) -> list[Chat]: ...

    # Messages
    def upsert_message(self, message: NewMessage) -> tuple[Message, bool]:
        """Insert keyed on (chat, external id); (row, created).

        On conflict only provider_metadata is merged.
        """
        ...

    def find_messages(self, account_id: str, external_message_id: str) -> list[Message]: ...

    def update_message_status(
        self, message_id: str, status: str, read_at: datetime | None = None
    ) -> None: ...

    def mark_chat_read(self, chat_id: str, read_at: datetime) -> int: ...

    def list_messages(self, chat_id: str, limit: int, offset: int) -> list[Message]: ...


class LedgerStore(Protocol):
    def session(self) -> AbstractContextManager[LedgerSession]: ...


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    """Bound pagination arguments."""
    size = DEFAULT_PAGE_SIZE if not limit or limit < 1 else min(limit, MAX_PAGE_SIZE)
    return size, max(offset or 0, 0)


def create_ledger_store(backend: str) -> LedgerStore:
    """Build the configured ledger backend."""
    if backend == "memory":
        from .memory_ledger import MemoryLedgerStore

        return MemoryLedgerStore()
    if backend == "postgres":
        from .postgres_ledger import PostgresLedgerStore

        return PostgresLedgerStore()
    raise ValueError(f"unknown ledger backend: {backend!r}")
