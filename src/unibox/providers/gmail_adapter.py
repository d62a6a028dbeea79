"""Gmail adapter - normalize Gmail API message resources.

The push bridge delivers `{"event": ..., "accountId": ..., "message": {...}}`
where `message` is a `users.messages` resource in `full` format. Bodies are
base64url encoded MIME parts; `internalDate` is epoch millis.
"""

import base64
import binascii
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any

from unibox.infra.time import ensure_utc, parse_timestamp

from .errors import MalformedPayload
from .models import Attachment, GmailMetadata, NormalizedMessage


def message_resource(payload: dict[str, Any]) -> dict[str, Any]:
    """Unwrap the bridge envelope, if any."""
    inner = payload.get("message")
    if isinstance(inner, dict):
        return inner
    return payload


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _headers(part: dict[str, Any]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for header in _list(part.get("headers")):
        if isinstance(header, dict) and header.get("name"):
            # First occurrence wins, as in RFC 5322 readers
            headers.setdefault(str(header["name"]).lower(), str(header.get("value") or ""))
    return headers


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        raise MalformedPayload("undecodable body part") from e


def _walk(part: dict[str, Any]):
    yield part
    for child in _list(part.get("parts")):
        if isinstance(child, dict):
            yield from _walk(child)


def _extract_bodies(root: dict[str, Any]) -> tuple[str, str | None]:
    plain: str | None = None
    html: str | None = None
    for part in _walk(root):
        if part.get("filename"):
            continue
        data = _dict(part.get("body")).get("data")
        if not data or not isinstance(data, str):
            continue
        mime = str(part.get("mimeType") or "text/plain").lower()
        if mime == "text/plain" and plain is None:
            plain = _decode(data)
        elif mime == "text/html" and html is None:
            html = _decode(data)
    return plain or "", html


def _extract_attachments(root: dict[str, Any]) -> tuple[Attachment, ...]:
    result = []
    for part in _walk(root):
        body = _dict(part.get("body"))
        if part.get("filename") and body.get("attachmentId"):
            size = body.get("size")
            result.append(
                Attachment(
                    filename=str(part["filename"]),
                    mime_type=part.get("mimeType"),
                    size=int(size) if isinstance(size, (int, float)) else None,
                    provider_attachment_id=str(body["attachmentId"]),
                )
            )
    return tuple(result)


def _sent_at(message: dict[str, Any], headers: dict[str, str]):
    sent_at = parse_timestamp(message.get("internalDate"), numeric_unit="millis")
    if sent_at is not None:
        return sent_at
    date_header = headers.get("date")
    if date_header:
        try:
            return ensure_utc(parsedate_to_datetime(date_header))
        except (TypeError, ValueError):
            return None
    return None


def normalize(payload: dict[str, Any]) -> NormalizedMessage:
    """Normalize a Gmail message.

    Raises:
        MalformedPayload: If id, sender, timestamp or content is missing.
    """
    message = message_resource(payload)

    message_id = message.get("id")
    if not message_id or not isinstance(message_id, str):
        raise MalformedPayload("missing or invalid message id")

    root = message.get("payload")
    if root is not None and not isinstance(root, dict):
        raise MalformedPayload("message payload must be an object")
    root = root or {}
    headers = _headers(root)

    sender_name, sender_addr = parseaddr(headers.get("from", ""))
    if not sender_addr:
        # Envelope-level fallback
        sender_name, sender_addr = parseaddr(str(payload.get("from") or ""))
    if not sender_addr:
        raise MalformedPayload("missing sender identity")

    sent_at = _sent_at(message, headers)
    if sent_at is None:
        raise MalformedPayload("missing or invalid timestamp")

    body, html = _extract_bodies(root)
    attachments = _extract_attachments(root)
    if not body and not html and not attachments:
        raise MalformedPayload("message has no content")

    recipients = tuple(
        addr
        for _, addr in getaddresses([headers.get("to", ""), headers.get("cc", "")])
        if addr
    )
    label_ids = tuple(str(label) for label in _list(message.get("labelIds")))
    in_reply_to = headers.get("in-reply-to") or None
    thread_id = message.get("threadId")
    if not isinstance(thread_id, str) or not thread_id:
        thread_id = None

    return NormalizedMessage(
        provider="gmail",
        external_message_id=message_id,
        direction="outbound" if "SENT" in label_ids else "inbound",
        sender_id=sender_addr,
        sender_name=sender_name or None,
        recipients=recipients,
        sent_at=sent_at,
        body=body,
        html=html,
        subject=headers.get("subject") or None,
        attachments=attachments,
        provider_chat_id=thread_id,
        thread_id=thread_id,
        account_external_id=payload.get("accountId") or payload.get("emailAddress"),
        is_reply=in_reply_to is not None,
        parent_message_id=in_reply_to,
        metadata=GmailMetadata(
            thread_id=thread_id,
            history_id=str(message["historyId"]) if message.get("historyId") else None,
            label_ids=label_ids,
            rfc822_message_id=headers.get("message-id") or None,
            in_reply_to=in_reply_to,
            raw=payload,
        ),
    )
