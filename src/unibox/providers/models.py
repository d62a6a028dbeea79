"""Provider-agnostic message model and per-provider metadata variants.

`ProviderMetadata` is a tagged union: each variant carries a literal
`provider` tag, the typed fields the rest of the system reads, and `raw`,
the verbatim provider payload.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

ProviderTag = Literal["unipile", "gmail", "microsoft"]
Direction = Literal["inbound", "outbound"]

PROVIDERS: tuple[str, ...] = ("unipile", "gmail", "microsoft")
EMAIL_PROVIDERS: frozenset[str] = frozenset({"gmail", "microsoft"})


@dataclass(frozen=True)
class Attachment:
    """Attachment descriptor. Content is never fetched during ingestion."""

    filename: str
    mime_type: str | None = None
    size: int | None = None
    provider_attachment_id: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UnipileMetadata:
    """Aggregator (WhatsApp / Instagram) event fields."""

    chat_id: str | None
    account_type: str | None
    attendee_id: str | None
    attendee_name: str | None
    event: str | None
    is_group: bool = False
    raw: dict[str, Any] = field(default_factory=dict)
    provider: Literal["unipile"] = "unipile"


@dataclass(frozen=True)
class GmailMetadata:
    """Gmail API message fields."""

    thread_id: str | None
    history_id: str | None
    label_ids: tuple[str, ...]
    rfc822_message_id: str | None
    in_reply_to: str | None
    raw: dict[str, Any] = field(default_factory=dict)
    provider: Literal["gmail"] = "gmail"


@dataclass(frozen=True)
class MicrosoftMetadata:
    """Microsoft Graph message fields."""

    conversation_id: str | None
    internet_message_id: str | None
    importance: str | None
    web_link: str | None
    raw: dict[str, Any] = field(default_factory=dict)
    provider: Literal["microsoft"] = "microsoft"


ProviderMetadata = Union[UnipileMetadata, GmailMetadata, MicrosoftMetadata]

_METADATA_TYPES: dict[str, type] = {
    "unipile": UnipileMetadata,
    "gmail": GmailMetadata,
    "microsoft": MicrosoftMetadata,
}


def metadata_to_dict(metadata: ProviderMetadata) -> dict[str, Any]:
    """Serialize metadata for the JSONB column (tag included)."""
    data = asdict(metadata)
    if "label_ids" in data:
        data["label_ids"] = list(data["label_ids"])
    return data


def metadata_from_dict(data: dict[str, Any]) -> ProviderMetadata:
    """Rebuild the metadata variant named by the stored `provider` tag.

    Raises:
        ValueError: If the tag is missing or unknown.
    """
    tag = data.get("provider")
    cls = _METADATA_TYPES.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise ValueError(f"unknown provider metadata tag: {tag!r}")

    known = set(cls.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in known}
    if "label_ids" in kwargs:
        kwargs["label_ids"] = tuple(kwargs["label_ids"] or ())
    return cls(**kwargs)


@dataclass(frozen=True)
class NormalizedMessage:
    """Canonical message produced by a provider adapter.

    `sender_id` is the raw sender identity as the provider reports it
    (phone, JID, attendee id or mailbox); canonicalisation happens in the
    chat resolver. `html` is kept apart from `body` and never derived.
    `is_group` marks multi-party messaging chats, which are keyed on the
    provider chat id instead of a participant.
    """

    provider: ProviderTag
    external_message_id: str
    direction: Direction
    sender_id: str
    sent_at: datetime
    body: str
    metadata: ProviderMetadata
    sender_name: str | None = None
    recipients: tuple[str, ...] = ()
    html: str | None = None
    subject: str | None = None
    attachments: tuple[Attachment, ...] = ()
    provider_chat_id: str | None = None
    thread_id: str | None = None
    account_external_id: str | None = None
    is_reply: bool = False
    parent_message_id: str | None = None
    is_group: bool = False
