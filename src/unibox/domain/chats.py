"""Chat resolution - find or create the chat a message belongs to.

Chats are looked up by (account, identity key), never by the provider's
chat id. Creation relies on the UNIQUE (account_id, identity_key)
constraint: losing a concurrent create re-fetches the winner and applies
the update path to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers.models import EMAIL_PROVIDERS, NormalizedMessage

from .identity import counterpart, derive_identity_key
from .models import Account, Chat

if TYPE_CHECKING:
    from unibox.infra.ledger import LedgerSession

logger = get_logger(__name__)

PLACEHOLDER_TITLES = frozenset({"", "unknown", "no subject"})
PLACEHOLDER_PREFIX = "chat "

# Cap on remembered provider chat ids per chat
MAX_KNOWN_CHAT_IDS = 20


@dataclass(frozen=True)
class ChatResolution:
    chat: Chat
    created: bool


def is_placeholder_title(title: str | None) -> bool:
    if title is None:
        return True
    text = title.strip().lower()
    return text in PLACEHOLDER_TITLES or text.startswith(PLACEHOLDER_PREFIX)


def title_for(message: NormalizedMessage) -> str:
    """Best display title a single message offers."""
    if message.provider in EMAIL_PROVIDERS:
        return message.subject or "No Subject"
    if message.is_group:
        # Members are not the chat; only an explicit group subject is a title
        return message.subject or f"Chat {message.provider_chat_id or 'Unknown'}"
    if message.direction == "inbound" and message.sender_name:
        return message.sender_name
    return f"Chat {counterpart(message) or message.provider_chat_id or 'Unknown'}"


def _later(current: datetime | None, candidate: datetime) -> datetime:
    if current is None or candidate > current:
        return candidate
    return current


def merge_chat_info(info: dict[str, Any], message: NormalizedMessage) -> dict[str, Any]:
    """Record the provider chat id seen on this message, and group membership."""
    merged = dict(info)
    merged["provider"] = message.provider
    if message.is_group:
        merged["is_group"] = True
    if message.provider_chat_id:
        known = [c for c in merged.get("provider_chat_ids", []) if c != message.provider_chat_id]
        known.append(message.provider_chat_id)
        merged["provider_chat_ids"] = known[-MAX_KNOWN_CHAT_IDS:]
    return merged


def _apply_update(session: LedgerSession, chat: Chat, message: NormalizedMessage) -> Chat:
    candidate_title = title_for(message)
    title = chat.title
    if is_placeholder_title(chat.title) and not is_placeholder_title(candidate_title):
        title = candidate_title

    last_message_at = _later(chat.last_message_at, message.sent_at)
    provider_chat_id = chat.provider_chat_id
    if message.provider_chat_id and last_message_at == message.sent_at:
        # The newest message decides which provider chat id is current
        provider_chat_id = message.provider_chat_id

    chat_info = merge_chat_info(chat.chat_info, message)

    if (
        title == chat.title
        and last_message_at == chat.last_message_at
        and provider_chat_id == chat.provider_chat_id
        and chat_info == chat.chat_info
    ):
        return chat

    return session.update_chat(
        chat.id,
        title=title,
        provider_chat_id=provider_chat_id,
        last_message_at=last_message_at,
        chat_info=chat_info,
    )


def resolve_chat(
    session: LedgerSession,
    account: Account,
    message: NormalizedMessage,
) -> ChatResolution:
    """Find or create the chat for a message and fold the message into it.

    Raises:
        MalformedPayload: If no identity key can be derived.
    """
    identity_key = derive_identity_key(message)

    existing = session.get_chat_by_identity(account.id, identity_key, for_update=True)
    if existing is not None:
        return ChatResolution(_apply_update(session, existing, message), created=False)

    chat = session.insert_chat(
        account.id,
        identity_key,
        message.provider_chat_id,
        title_for(message),
        message.sent_at,
        merge_chat_info({}, message),
    )
    if chat is not None:
        logger.info(
            "chat created",
            extra={
                "extra_fields": safe_log_context(
                    chat_id=chat.id,
                    account_id=account.id,
                    key_kind=identity_key.split(":", 1)[0],
                )
            },
        )
        return ChatResolution(chat, created=True)

    # Lost the create race: the other delivery's row is now visible
    winner = session.get_chat_by_identity(account.id, identity_key, for_update=True)
    if winner is None:
        raise RuntimeError("chat insert conflicted but no row is visible")
    logger.info(
        "chat create conflict resolved",
        extra={"extra_fields": safe_log_context(chat_id=winner.id, account_id=account.id)},
    )
    return ChatResolution(_apply_update(session, winner, message), created=False)
