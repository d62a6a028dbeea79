"""Process-local ledger backend (LEDGER_BACKEND=memory).

Sessions are serialized by a re-entrant lock and work on the live dicts;
an exception inside a session restores the snapshot taken on entry, which
gives the same all-or-nothing outcome as a database transaction.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator

from unibox.domain.models import Account, Chat, Message, NewMessage


class MemoryLedgerStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.accounts: dict[str, Account] = {}
        self.chats: dict[str, Chat] = {}
        self.messages: dict[str, Message] = {}
        self._chat_keys: dict[tuple[str, str], str] = {}
        self._message_keys: dict[tuple[str, str], str] = {}

    def add_account(self, account: Account) -> Account:
        """Register a connected account (seeding and tests)."""
        with self._lock:
            self.accounts[account.id] = account
        return account

    def _snapshot(self) -> tuple[dict, ...]:
        return (
            dict(self.accounts),
            dict(self.chats),
            dict(self.messages),
            dict(self._chat_keys),
            dict(self._message_keys),
        )

    def _restore(self, snapshot: tuple[dict, ...]) -> None:
        (
            self.accounts,
            self.chats,
            self.messages,
            self._chat_keys,
            self._message_keys,
        ) = snapshot

    @contextmanager
    def session(self) -> Iterator[MemoryLedgerSession]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield MemoryLedgerSession(self)
            except BaseException:
                self._restore(snapshot)
                raise


class MemoryLedgerSession:
    def __init__(self, store: MemoryLedgerStore) -> None:
        self._store = store

    # Accounts

    def get_account(self, account_id: str) -> Account | None:
        return self._store.accounts.get(account_id)

    def find_account(self, provider: str, external_account_id: str) -> Account | None:
        for account in self._store.accounts.values():
            if account.provider == provider and account.external_account_id == external_account_id:
                return account
        return None

    def list_accounts(self, user_id: str) -> list[Account]:
        # Insertion order stands in for created_at
        return [a for a in self._store.accounts.values() if a.user_id == user_id]

    def update_account_status(self, account_id: str, status: str) -> None:
        account = self._store.accounts.get(account_id)
        if account is not None:
            self._store.accounts[account_id] = replace(account, status=status)

    # Chats

    def get_chat(self, chat_id: str) -> Chat | None:
        return self._store.chats.get(chat_id)

    def get_chat_by_identity(
        self, account_id: str, identity_key: str, *, for_update: bool = False
    ) -> Chat | None:
        chat_id = self._store._chat_keys.get((account_id, identity_key))
        return self._store.chats.get(chat_id) if chat_id else None

    def insert_chat(
        self,
        account_id: str,
        identity_key: str,
        provider_chat_id: str | None,
        title: str,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat | None:
        key = (account_id, identity_key)
        if key in self._store._chat_keys:
            return None
        chat = Chat(
            id=str(uuid.uuid4()),
            account_id=account_id,
            identity_key=identity_key,
            provider_chat_id=provider_chat_id,
            title=title,
            last_message_at=last_message_at,
            chat_info=dict(chat_info),
        )
        self._store.chats[chat.id] = chat
        self._store._chat_keys[key] = chat.id
        return chat

    def update_chat(
        self,
        chat_id: str,
        *,
        title: str,
        provider_chat_id: str | None,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat:
        chat = replace(
            self._store.chats[chat_id],
            title=title,
            provider_chat_id=provider_chat_id,
            last_message_at=last_message_at,
            chat_info=dict(chat_info),
        )
        self._store.chats[chat_id] = chat
        return chat

    def increment_unread(self, chat_id: str) -> None:
        chat = self._store.chats[chat_id]
        self._store.chats[chat_id] = replace(chat, unread_count=chat.unread_count + 1)

    def reset_unread(self, chat_id: str) -> None:
        chat = self._store.chats[chat_id]
        self._store.chats[chat_id] = replace(chat, unread_count=0)

    def list_chats(self, account_id: str, limit: int, offset: int) -> list[Chat]:
        chats = [c for c in self._store.chats.values() if c.account_id == account_id]
        # Most recent first, chats without messages last
        dated = sorted(
            (c for c in chats if c.last_message_at is not None),
            key=lambda c: c.last_message_at,
            reverse=True,
        )
        undated = [c for c in chats if c.last_message_at is None]
        return (dated + undated)[offset:offset + limit]

    # Messages

    def upsert_message(self, message: NewMessage) -> tuple[Message, bool]:
        key = (message.chat_id, message.external_message_id)
        existing_id = self._store._message_keys.get(key)
        if existing_id is not None:
            existing = self._store.messages[existing_id]
            merged = replace(
                existing,
                provider_metadata={**existing.provider_metadata, **message.provider_metadata},
            )
            self._store.messages[existing_id] = merged
            return merged, False

        row = Message(
            id=str(uuid.uuid4()),
            chat_id=message.chat_id,
            account_id=message.account_id,
            external_message_id=message.external_message_id,
            direction=message.direction,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            body=message.body,
            html=message.html,
            subject=message.subject,
            attachments=message.attachments,
            sent_at=message.sent_at,
            status=message.status,
            is_reply=message.is_reply,
            parent_message_id=message.parent_message_id,
            provider_metadata=dict(message.provider_metadata),
        )
        self._store.messages[row.id] = row
        self._store._message_keys[key] = row.id
        return row, True

    def find_messages(self, account_id: str, external_message_id: str) -> list[Message]:
        return [
            m
            for m in self._store.messages.values()
            if m.account_id == account_id and m.external_message_id == external_message_id
        ]

    def update_message_status(
        self, message_id: str, status: str, read_at: datetime | None = None
    ) -> None:
        message = self._store.messages[message_id]
        self._store.messages[message_id] = replace(
            message, status=status, read_at=read_at or message.read_at
        )

    def mark_chat_read(self, chat_id: str, read_at: datetime) -> int:
        count = 0
        for message in list(self._store.messages.values()):
            if message.chat_id == chat_id and message.direction == "inbound" and message.read_at is None:
                self._store.messages[message.id] = replace(message, status="read", read_at=read_at)
                count += 1
        self.reset_unread(chat_id)
        return count

    def list_messages(self, chat_id: str, limit: int, offset: int) -> list[Message]:
        messages = [m for m in self._store.messages.values() if m.chat_id == chat_id]
        messages.sort(key=lambda m: m.sent_at)
        return messages[offset:offset + limit]
