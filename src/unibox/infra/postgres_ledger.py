"""PostgreSQL ledger backend (LEDGER_BACKEND=postgres).

Idempotency is constraint-driven:
- channel_chats UNIQUE (account_id, identity_key)
- channel_messages UNIQUE (chat_id, external_message_id)

No explicit locking beyond SELECT ... FOR UPDATE on the chat row being
advanced.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json

from unibox.domain.models import Account, Chat, Message, NewMessage

from .db import fetchall, fetchone, for_update as select_for_update, txn

_ACCOUNT_COLUMNS = """
    id, user_id, provider, channel, external_account_id, status,
    self_identities, is_trial, display_name, connection_data
"""

_CHAT_COLUMNS = """
    id, account_id, identity_key, provider_chat_id, title,
    last_message_at, unread_count, chat_info, status
"""

_MESSAGE_COLUMNS = """
    id, chat_id, account_id, external_message_id, direction, sender_id,
    sender_name, body, html, subject, attachments, sent_at, status,
    is_reply, parent_message_id, read_at, provider_metadata
"""


def _account_from_row(row: tuple[Any, ...]) -> Account:
    return Account(
        id=str(row[0]),
        user_id=row[1],
        provider=row[2],
        channel=row[3],
        external_account_id=row[4],
        status=row[5],
        self_identities=frozenset(row[6] or ()),
        is_trial=bool(row[7]),
        display_name=row[8],
        connection_data=row[9] or {},
    )


def _chat_from_row(row: tuple[Any, ...]) -> Chat:
    return Chat(
        id=str(row[0]),
        account_id=str(row[1]),
        identity_key=row[2],
        provider_chat_id=row[3],
        title=row[4],
        last_message_at=row[5],
        unread_count=row[6],
        chat_info=row[7] or {},
        status=row[8],
    )


def _message_from_row(row: tuple[Any, ...]) -> Message:
    return Message(
        id=str(row[0]),
        chat_id=str(row[1]),
        account_id=str(row[2]),
        external_message_id=row[3],
        direction=row[4],
        sender_id=row[5],
        sender_name=row[6],
        body=row[7],
        html=row[8],
        subject=row[9],
        attachments=tuple(row[10] or ()),
        sent_at=row[11],
        status=row[12],
        is_reply=bool(row[13]),
        parent_message_id=row[14],
        read_at=row[15],
        provider_metadata=row[16] or {},
    )


class PostgresLedgerStore:
    @contextmanager
    def session(self) -> Iterator[PostgresLedgerSession]:
        with txn() as cur:
            yield PostgresLedgerSession(cur)


class PostgresLedgerSession:
    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    # Accounts

    def get_account(self, account_id: str) -> Account | None:
        # Compare as text so a non-uuid id is a miss, not a cast error
        row = fetchone(
            self._cur,
            f"SELECT {_ACCOUNT_COLUMNS} FROM channel_accounts WHERE id::text = %s",
            (account_id,),
        )
        return _account_from_row(row) if row else None

    def find_account(self, provider: str, external_account_id: str) -> Account | None:
        row = fetchone(
            self._cur,
            f"""
            SELECT {_ACCOUNT_COLUMNS} FROM channel_accounts
            WHERE provider = %s AND external_account_id = %s
            """,
            (provider, external_account_id),
        )
        return _account_from_row(row) if row else None

    def list_accounts(self, user_id: str) -> list[Account]:
        rows = fetchall(
            self._cur,
            f"""
            SELECT {_ACCOUNT_COLUMNS} FROM channel_accounts
            WHERE user_id = %s
            ORDER BY created_at, id
            """,
            (user_id,),
        )
        return [_account_from_row(row) for row in rows]

    def update_account_status(self, account_id: str, status: str) -> None:
        self._cur.execute(
            """
            UPDATE channel_accounts
            SET status = %s, updated_at = now()
            WHERE id = %s
            """,
            (status, account_id),
        )

    # Chats

    def get_chat(self, chat_id: str) -> Chat | None:
        row = fetchone(
            self._cur,
            f"SELECT {_CHAT_COLUMNS} FROM channel_chats WHERE id::text = %s",
            (chat_id,),
        )
        return _chat_from_row(row) if row else None

    def get_chat_by_identity(
        self, account_id: str, identity_key: str, *, for_update: bool = False
    ) -> Chat | None:
        query = f"""
            SELECT {_CHAT_COLUMNS} FROM channel_chats
            WHERE account_id = %s AND identity_key = %s
        """
        params = (account_id, identity_key)
        if for_update:
            row = select_for_update(self._cur, query, params)
        else:
            row = fetchone(self._cur, query, params)
        return _chat_from_row(row) if row else None

    def insert_chat(
        self,
        account_id: str,
        identity_key: str,
        provider_chat_id: str | None,
        title: str,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat | None:
        row = fetchone(
            self._cur,
            f"""
            INSERT INTO channel_chats
                (account_id, identity_key, provider_chat_id, title,
                 last_message_at, unread_count, chat_info)
            VALUES (%s, %s, %s, %s, %s, 0, %s)
            ON CONFLICT (account_id, identity_key) DO NOTHING
            RETURNING {_CHAT_COLUMNS}
            """,
            (account_id, identity_key, provider_chat_id, title, last_message_at, Json(chat_info)),
        )
        return _chat_from_row(row) if row else None

    def update_chat(
        self,
        chat_id: str,
        *,
        title: str,
        provider_chat_id: str | None,
        last_message_at: datetime | None,
        chat_info: dict[str, Any],
    ) -> Chat:
        row = fetchone(
            self._cur,
            f"""
            UPDATE channel_chats
            SET title = %s, provider_chat_id = %s, last_message_at = %s,
                chat_info = %s, updated_at = now()
            WHERE id = %s
            RETURNING {_CHAT_COLUMNS}
            """,
            (title, provider_chat_id, last_message_at, Json(chat_info), chat_id),
        )
        return _chat_from_row(row)

    def increment_unread(self, chat_id: str) -> None:
        self._cur.execute(
            "UPDATE channel_chats SET unread_count = unread_count + 1, updated_at = now() WHERE id = %s",
            (chat_id,),
        )

    def reset_unread(self, chat_id: str) -> None:
        self._cur.execute(
            "UPDATE channel_chats SET unread_count = 0, updated_at = now() WHERE id = %s",
            (chat_id,),
        )

    def list_chats(self, account_id: str, limit: int, offset: int) -> list[Chat]:
        rows = fetchall(
            self._cur,
            f"""
            SELECT {_CHAT_COLUMNS} FROM channel_chats
            WHERE account_id = %s
            ORDER BY last_message_at DESC NULLS LAST, id
            LIMIT %s OFFSET %s
            """,
            (account_id, limit, offset),
        )
        return [_chat_from_row(row) for row in rows]

    # Messages

    def upsert_message(self, message: NewMessage) -> tuple[Message, bool]:
        # xmax = 0 only for a freshly inserted tuple
        row = fetchone(
            self._cur,
            f"""
            INSERT INTO channel_messages
                (chat_id, account_id, external_message_id, direction, sender_id,
                 sender_name, body, html, subject, attachments, sent_at, status,
                 is_reply, parent_message_id, provider_metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (chat_id, external_message_id) DO UPDATE
            SET provider_metadata = channel_messages.provider_metadata || EXCLUDED.provider_metadata,
                updated_at = now()
            RETURNING {_MESSAGE_COLUMNS}, (xmax = 0) AS inserted
            """,
            (
                message.chat_id,
                message.account_id,
                message.external_message_id,
                message.direction,
                message.sender_id,
                message.sender_name,
                message.body,
                message.html,
                message.subject,
                Json(list(message.attachments)),
                message.sent_at,
                message.status,
                message.is_reply,
                message.parent_message_id,
                Json(message.provider_metadata),
            ),
        )
        return _message_from_row(row[:-1]), bool(row[-1])

    def find_messages(self, account_id: str, external_message_id: str) -> list[Message]:
        rows = fetchall(
            self._cur,
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM channel_messages
            WHERE account_id = %s AND external_message_id = %s
            """,
            (account_id, external_message_id),
        )
        return [_message_from_row(row) for row in rows]

    def update_message_status(
        self, message_id: str, status: str, read_at: datetime | None = None
    ) -> None:
        self._cur.execute(
            """
            UPDATE channel_messages
            SET status = %s, read_at = COALESCE(%s, read_at), updated_at = now()
            WHERE id = %s
            """,
            (status, read_at, message_id),
        )

    def mark_chat_read(self, chat_id: str, read_at: datetime) -> int:
        self._cur.execute(
            """
            UPDATE channel_messages
            SET status = 'read', read_at = %s, updated_at = now()
            WHERE chat_id = %s AND direction = 'inbound' AND read_at IS NULL
            """,
            (read_at, chat_id),
        )
        count = self._cur.rowcount
        self.reset_unread(chat_id)
        return count

    def list_messages(self, chat_id: str, limit: int, offset: int) -> list[Message]:
        rows = fetchall(
            self._cur,
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM channel_messages
            WHERE chat_id = %s
            ORDER BY sent_at, id
            LIMIT %s OFFSET %s
            """,
            (chat_id, limit, offset),
        )
        return [_message_from_row(row) for row in rows]
