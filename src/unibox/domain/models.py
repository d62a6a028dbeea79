"""Ledger records: accounts, chats and messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from unibox.providers.models import (
    Attachment,
    Direction,
    NormalizedMessage,
    ProviderTag,
    metadata_to_dict,
)

Channel = Literal["whatsapp", "instagram", "email"]
AccountStatus = Literal["connected", "needs_action", "disconnected"]
MessageStatus = Literal["pending", "sent", "delivered", "read", "failed", "received"]

# Allowed forward moves; anything else is ignored (out-of-order receipts)
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"sent", "failed"}),
    "sent": frozenset({"delivered", "read", "failed"}),
    "delivered": frozenset({"read"}),
    "received": frozenset({"read"}),
    "read": frozenset(),
    "failed": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, frozenset())


class NotFound(Exception):
    """Raised when a record does not exist or is not visible to the caller."""

    pass


@dataclass(frozen=True)
class Account:
    """One connected external identity owned by exactly one user.

    `connection_data` is the opaque credential blob owned by the auth layer.
    """

    id: str
    user_id: str
    provider: ProviderTag
    channel: Channel
    external_account_id: str
    status: AccountStatus = "connected"
    self_identities: frozenset[str] = frozenset()
    is_trial: bool = False
    display_name: str | None = None
    connection_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Chat:
    id: str
    account_id: str
    identity_key: str
    provider_chat_id: str | None
    title: str
    last_message_at: datetime | None
    unread_count: int = 0
    chat_info: dict[str, Any] = field(default_factory=dict)
    status: str = "active"


@dataclass(frozen=True)
class Message:
    id: str
    chat_id: str
    account_id: str
    external_message_id: str
    direction: Direction
    sender_id: str
    body: str
    sent_at: datetime
    status: MessageStatus
    sender_name: str | None = None
    html: str | None = None
    subject: str | None = None
    attachments: tuple[dict[str, Any], ...] = ()
    is_reply: bool = False
    parent_message_id: str | None = None
    read_at: datetime | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NewMessage:
    """Insert payload for the message upsert."""

    chat_id: str
    account_id: str
    external_message_id: str
    direction: Direction
    sender_id: str
    body: str
    sent_at: datetime
    status: MessageStatus
    sender_name: str | None = None
    html: str | None = None
    subject: str | None = None
    attachments: tuple[dict[str, Any], ...] = ()
    is_reply: bool = False
    parent_message_id: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_normalized(
        cls, chat_id: str, account_id: str, message: NormalizedMessage
    ) -> NewMessage:
        return cls(
            chat_id=chat_id,
            account_id=account_id,
            external_message_id=message.external_message_id,
            direction=message.direction,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            body=message.body,
            html=message.html,
            subject=message.subject,
            attachments=attachment_dicts(message.attachments),
            sent_at=message.sent_at,
            status="received" if message.direction == "inbound" else "sent",
            is_reply=message.is_reply,
            parent_message_id=message.parent_message_id,
            provider_metadata=metadata_to_dict(message.metadata),
        )


def attachment_dicts(attachments: tuple[Attachment, ...]) -> tuple[dict[str, Any], ...]:
    return tuple(a.to_dict() for a in attachments)
