"""Outbound send payload and receipt shared by every provider sender."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class OutboundAttachment:
    filename: str
    content: bytes
    mime_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class OutboundPayload:
    """Everything a provider needs to deliver one message.

    `credentials` is the account's opaque connection blob; email senders
    read an OAuth `access_token` from it.
    """

    external_account_id: str
    recipients: tuple[str, ...]
    body: str
    subject: str | None = None
    attachments: tuple[OutboundAttachment, ...] = ()
    provider_chat_id: str | None = None
    thread_id: str | None = None
    sender_address: str | None = None
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendReceipt:
    """Provider acknowledgement of an accepted message."""

    provider_message_id: str
    provider_chat_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
