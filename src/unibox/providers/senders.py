"""Provider dispatch for outbound sends."""

from unibox.infra.settings import ProviderConfig

from . import email_sender, unipile_sender
from .models import (
    GmailMetadata,
    MicrosoftMetadata,
    ProviderMetadata,
    ProviderTag,
    UnipileMetadata,
)
from .outbound import OutboundPayload, SendReceipt


def receipt_metadata(provider: ProviderTag, receipt: SendReceipt) -> ProviderMetadata:
    """Metadata variant recorded on a dispatched message."""
    if provider == "unipile":
        return UnipileMetadata(
            chat_id=receipt.provider_chat_id,
            account_type=receipt.raw.get("account_type"),
            attendee_id=None,
            attendee_name=None,
            event="message_sent",
            raw=receipt.raw,
        )
    elif provider == "gmail":
        return GmailMetadata(
            thread_id=receipt.provider_chat_id,
            history_id=None,
            label_ids=tuple(receipt.raw.get("labelIds") or ("SENT",)),
            rfc822_message_id=None,
            in_reply_to=None,
            raw=receipt.raw,
        )
    elif provider == "microsoft":
        return MicrosoftMetadata(
            conversation_id=receipt.provider_chat_id,
            internet_message_id=receipt.raw.get("internetMessageId"),
            importance=receipt.raw.get("importance"),
            web_link=receipt.raw.get("webLink"),
            raw=receipt.raw,
        )
    raise ValueError(f"unknown provider: {provider!r}")


def send(provider: ProviderTag, payload: OutboundPayload, config: ProviderConfig) -> SendReceipt:
    """Deliver one message through the account's provider.

    Raises:
        ProviderUnavailable: The provider did not accept the message.
        ValueError: If the provider tag is unknown.
    """
    if provider == "unipile":
        return unipile_sender.send(payload, config)
    elif provider == "gmail":
        return email_sender.send_gmail(payload, config)
    elif provider == "microsoft":
        return email_sender.send_microsoft(payload, config)
    raise ValueError(f"unknown provider: {provider!r}")
