"""Participant canonicalisation and chat identity keys.

Providers can expose one logical conversation under several chat ids over
time (account reconnects, API version changes). Chats are therefore keyed
on a durable participant identity:

- email threads:  thread:<thread or conversation id>
- group chats:    group:<provider chat id>
- phone numbers:  phone:<digits>
- mailboxes:      email:<lower-cased address>
- other handles:  user:<lower-cased id>
- last resort:    chat:<provider chat id>
"""

import re

from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers.errors import MalformedPayload
from unibox.providers.models import EMAIL_PROVIDERS, NormalizedMessage

from .models import Account

logger = get_logger(__name__)

MIN_PHONE_DIGITS = 7

_TRANSPORT_PREFIXES = ("whatsapp:", "tel:", "sms:", "mailto:")
_PHONE_JID_DOMAINS = frozenset({"s.whatsapp.net", "c.us"})
_PHONE_CHARS = re.compile(r"^[\d\s+\-().]+$")
_NON_DIGITS = re.compile(r"\D")


def canonical_participant(value: str | None) -> str | None:
    """Canonical form of a participant identifier, or None if empty.

    "+1 (555) 123-4567", "whatsapp:+15551234567" and
    "15551234567@s.whatsapp.net" all map to "phone:15551234567".
    """
    if not value:
        return None
    text = str(value).strip().lower()
    for prefix in _TRANSPORT_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
            break
    if not text:
        return None

    if "@" in text:
        local, _, domain = text.rpartition("@")
        if domain in _PHONE_JID_DOMAINS:
            # multi-device JIDs carry a ":<device>" suffix
            text = local.split(":", 1)[0]
        elif "." in domain and local:
            return f"email:{text}"

    if _PHONE_CHARS.match(text):
        digits = _NON_DIGITS.sub("", text)
        if len(digits) >= MIN_PHONE_DIGITS:
            return f"phone:{digits}"

    return f"user:{text}"


def counterpart(message: NormalizedMessage) -> str | None:
    """The other side of the conversation: sender if inbound, else first recipient."""
    if message.direction == "inbound":
        return message.sender_id
    return message.recipients[0] if message.recipients else None


def derive_identity_key(message: NormalizedMessage) -> str:
    """Stable per-account chat key for a message.

    Raises:
        MalformedPayload: If neither a participant nor a provider chat id exists.
    """
    if message.provider in EMAIL_PROVIDERS and message.thread_id:
        return f"thread:{message.thread_id}"

    if message.is_group:
        # A member of the group is not the conversation
        if not message.provider_chat_id:
            raise MalformedPayload("group message without chat id")
        return f"group:{message.provider_chat_id}"

    participant = canonical_participant(counterpart(message))
    if participant:
        return participant

    if message.provider_chat_id:
        logger.warning(
            "identity key fell back to provider chat id",
            extra={
                "extra_fields": safe_log_context(
                    provider=message.provider,
                    external_message_id=message.external_message_id,
                )
            },
        )
        return f"chat:{message.provider_chat_id}"

    raise MalformedPayload("cannot derive chat identity")


def self_identity_keys(account: Account) -> frozenset[str]:
    keys = (canonical_participant(value) for value in account.self_identities)
    return frozenset(key for key in keys if key)


def is_self_chat(account: Account, message: NormalizedMessage) -> bool:
    """True when the counterpart of a message is the account itself.

    Both sides go through canonical_participant, so formatted and
    unformatted spellings of the same number match. Group messages are
    never self-chats: one sent from the own number is an outbound echo.
    """
    if message.is_group:
        return False
    key = canonical_participant(counterpart(message))
    return key is not None and key in self_identity_keys(account)
