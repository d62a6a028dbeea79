"""Aggregator (WhatsApp / Instagram) adapter - normalize message events.

Accepts the flat webhook shape

    {"event": "message_received", "account_id": ..., "message_id": ...,
     "message": "text", "sender": {"attendee_provider_id": ...}, ...}

and the older envelope shape where the message is nested as a dict under
`message` next to a `connectionId` / `connection_id`.
"""

from typing import Any

from unibox.infra.time import parse_timestamp

from .errors import MalformedPayload
from .models import Attachment, NormalizedMessage, UnipileMetadata

# The aggregator labels the connected account itself this way in attendee lists
SELF_ATTENDEE_NAME = "You"


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _flatten(payload: dict[str, Any]) -> dict[str, Any]:
    """Collapse the nested envelope into the flat field layout."""
    data = payload.get("data")
    if isinstance(data, dict) and ("message" in data or "message_id" in data):
        payload = {**payload, **data}

    nested = payload.get("message")
    if not isinstance(nested, dict):
        return payload

    flat = {k: v for k, v in payload.items() if k != "message"}
    flat.update(nested)
    flat["message"] = nested.get("body", nested.get("text"))
    flat.setdefault("message_id", nested.get("id"))
    return flat


def account_external_id(payload: dict[str, Any]) -> str | None:
    """Connected account id carried by any aggregator event."""
    for source in (payload, payload.get("data") if isinstance(payload.get("data"), dict) else {}):
        for key in ("account_id", "connectionId", "connection_id"):
            value = _str_or_none(source.get(key))
            if value:
                return value
    nested = payload.get("message")
    if isinstance(nested, dict):
        return _str_or_none(nested.get("connectionId"))
    return None


def _extract_attachments(items: Any) -> tuple[Attachment, ...]:
    if not isinstance(items, list):
        return ()
    result = []
    for item in items:
        if not isinstance(item, dict):
            continue
        size = item.get("file_size", item.get("size"))
        result.append(
            Attachment(
                filename=str(item.get("file_name") or item.get("name") or item.get("type") or "attachment"),
                mime_type=_str_or_none(item.get("mimetype") or item.get("mime_type")),
                size=int(size) if isinstance(size, (int, float)) else None,
                provider_attachment_id=_str_or_none(item.get("id")),
                url=_str_or_none(item.get("url")),
            )
        )
    return tuple(result)


def _sender(flat: dict[str, Any]) -> tuple[str | None, str | None]:
    sender = flat.get("sender")
    if isinstance(sender, dict):
        sender_id = _str_or_none(sender.get("attendee_provider_id")) or _str_or_none(
            sender.get("attendee_id")
        )
        name = _str_or_none(sender.get("attendee_name"))
        if sender_id:
            return sender_id, name
    else:
        name = None
    # Envelope-level fallback
    return _str_or_none(flat.get("from")), name


def _recipients(flat: dict[str, Any], sender_id: str | None) -> tuple[str, ...]:
    result: list[str] = []
    attendees = flat.get("attendees")
    if isinstance(attendees, list):
        for attendee in attendees:
            if not isinstance(attendee, dict):
                continue
            ident = _str_or_none(attendee.get("attendee_provider_id")) or _str_or_none(
                attendee.get("attendee_id")
            )
            if ident and ident != sender_id and ident not in result:
                result.append(ident)
    # 1:1 WhatsApp chats use the peer JID as provider chat id
    to = _str_or_none(flat.get("to")) or _str_or_none(flat.get("provider_chat_id"))
    if not result and to:
        result.append(to)
    return tuple(result)


def _is_group(flat: dict[str, Any]) -> bool:
    flag = flat.get("is_group")
    if isinstance(flag, bool):
        return flag
    if isinstance(flag, (int, str)) and str(flag).strip().lower() in ("1", "true"):
        return True
    # WhatsApp group JIDs live under g.us
    provider_chat_id = _str_or_none(flat.get("provider_chat_id")) or ""
    return provider_chat_id.lower().endswith("@g.us")


def normalize(payload: dict[str, Any]) -> NormalizedMessage:
    """Normalize an aggregator message event.

    Raises:
        MalformedPayload: If message id, sender, timestamp or content is missing.
    """
    flat = _flatten(payload)

    # The aggregator id is what the send API returns, so echoes of our own
    # sends dedupe against the dispatched row
    message_id = _str_or_none(flat.get("message_id")) or _str_or_none(
        flat.get("provider_message_id")
    )
    if not message_id:
        raise MalformedPayload("missing message id")

    sender_id, sender_name = _sender(flat)
    if not sender_id:
        raise MalformedPayload("missing sender identity")

    sent_at = parse_timestamp(flat.get("timestamp"), numeric_unit="seconds")
    if sent_at is None:
        raise MalformedPayload("missing or invalid timestamp")

    raw_body = flat.get("message")
    if raw_body is None:
        raw_body = flat.get("text")
    body = raw_body if isinstance(raw_body, str) else ""
    attachments = _extract_attachments(flat.get("attachments"))
    if not body and not attachments:
        raise MalformedPayload("message has neither text nor attachments")

    is_outbound = bool(flat.get("is_sender")) or sender_name == SELF_ATTENDEE_NAME

    quoted = flat.get("quoted")
    parent_id = None
    if isinstance(quoted, dict):
        parent_id = _str_or_none(quoted.get("provider_id")) or _str_or_none(quoted.get("id"))

    sender = flat.get("sender") if isinstance(flat.get("sender"), dict) else {}
    provider_chat_id = _str_or_none(flat.get("chat_id")) or _str_or_none(flat.get("provider_chat_id"))
    is_group = _is_group(flat)

    return NormalizedMessage(
        provider="unipile",
        external_message_id=message_id,
        direction="outbound" if is_outbound else "inbound",
        sender_id=sender_id,
        sender_name=sender_name,
        recipients=_recipients(flat, sender_id),
        sent_at=sent_at,
        body=body,
        subject=_str_or_none(flat.get("subject")),
        attachments=attachments,
        provider_chat_id=provider_chat_id,
        account_external_id=account_external_id(payload),
        is_reply=bool(quoted),
        parent_message_id=parent_id,
        is_group=is_group,
        metadata=UnipileMetadata(
            chat_id=_str_or_none(flat.get("chat_id")),
            account_type=_str_or_none(flat.get("account_type")),
            attendee_id=_str_or_none(sender.get("attendee_id")),
            attendee_name=sender_name,
            event=_str_or_none(flat.get("event")),
            is_group=is_group,
            raw=payload,
        ),
    )
