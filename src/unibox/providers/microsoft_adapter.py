"""Microsoft Graph adapter - normalize Outlook message resources."""

from typing import Any

from unibox.infra.time import parse_timestamp

from .errors import MalformedPayload
from .gmail_adapter import message_resource
from .models import Attachment, MicrosoftMetadata, NormalizedMessage


def _address(recipient: Any) -> tuple[str | None, str | None]:
    if not isinstance(recipient, dict):
        return None, None
    email_address = recipient.get("emailAddress")
    if not isinstance(email_address, dict):
        return None, None
    name, address = email_address.get("name"), email_address.get("address")
    return (
        name if isinstance(name, str) and name else None,
        address if isinstance(address, str) and address else None,
    )


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _str_field(message: dict[str, Any], key: str) -> str | None:
    value = message.get(key)
    return value if isinstance(value, str) and value else None


def _internet_header(message: dict[str, Any], name: str) -> str | None:
    for header in _list(message.get("internetMessageHeaders")):
        if isinstance(header, dict) and str(header.get("name", "")).lower() == name:
            value = header.get("value")
            return value if isinstance(value, str) and value else None
    return None


def _extract_attachments(items: Any) -> tuple[Attachment, ...]:
    if not isinstance(items, list):
        return ()
    result = []
    for item in items:
        if not isinstance(item, dict):
            continue
        size = item.get("size")
        result.append(
            Attachment(
                filename=str(item.get("name") or "attachment"),
                mime_type=item.get("contentType"),
                size=int(size) if isinstance(size, (int, float)) else None,
                provider_attachment_id=item.get("id"),
            )
        )
    return tuple(result)


def normalize(payload: dict[str, Any]) -> NormalizedMessage:
    """Normalize a Graph message.

    HTML content stays in `html`; `body` then carries Graph's own plain-text
    `bodyPreview` rather than anything derived from the HTML.

    Raises:
        MalformedPayload: If id, sender, timestamp or content is missing.
    """
    message = message_resource(payload)

    message_id = message.get("id")
    if not message_id or not isinstance(message_id, str):
        raise MalformedPayload("missing or invalid message id")

    sender_name, sender_addr = _address(message.get("from"))
    if not sender_addr:
        sender_name, sender_addr = _address(message.get("sender"))
    if not sender_addr and payload.get("from"):
        sender_addr = str(payload["from"])
    if not sender_addr:
        raise MalformedPayload("missing sender identity")

    sent_at = parse_timestamp(message.get("receivedDateTime")) or parse_timestamp(
        message.get("sentDateTime")
    )
    if sent_at is None:
        raise MalformedPayload("missing or invalid timestamp")

    content = message.get("body")
    if content is not None and not isinstance(content, dict):
        raise MalformedPayload("message body must be an object")
    content = content or {}
    content_type = str(content.get("contentType") or "text").lower()
    text = content.get("content") or ""
    if not isinstance(text, str):
        raise MalformedPayload("message body content must be a string")
    if content_type == "html":
        html: str | None = text or None
        preview = message.get("bodyPreview")
        body = preview if isinstance(preview, str) else ""
    else:
        html = None
        body = text

    attachments = _extract_attachments(message.get("attachments"))
    if not body and not html and not attachments:
        raise MalformedPayload("message has no content")

    recipients = []
    for field_name in ("toRecipients", "ccRecipients"):
        for recipient in _list(message.get(field_name)):
            _, addr = _address(recipient)
            if addr:
                recipients.append(addr)

    in_reply_to = _internet_header(message, "in-reply-to")
    conversation_id = _str_field(message, "conversationId")

    return NormalizedMessage(
        provider="microsoft",
        external_message_id=message_id,
        # Graph change notifications are only subscribed for the inbox
        direction="inbound",
        sender_id=sender_addr,
        sender_name=sender_name,
        recipients=tuple(recipients),
        sent_at=sent_at,
        body=body,
        html=html,
        subject=_str_field(message, "subject"),
        attachments=attachments,
        provider_chat_id=conversation_id,
        thread_id=conversation_id,
        account_external_id=payload.get("accountId"),
        is_reply=in_reply_to is not None,
        parent_message_id=in_reply_to,
        metadata=MicrosoftMetadata(
            conversation_id=conversation_id,
            internet_message_id=_str_field(message, "internetMessageId"),
            importance=message.get("importance"),
            web_link=message.get("webLink"),
            raw=payload,
        ),
    )
