"""Outbound email via the Gmail API and Microsoft Graph.

Both read an OAuth bearer token from the account's connection blob; token
refresh belongs to the auth collaborator.

Security: NEVER log addresses, subjects or bodies.
"""

import base64
from email.message import EmailMessage
from typing import Any

from unibox.infra.settings import ProviderConfig
from unibox.observability.logging import get_logger
from unibox.observability.redaction import hash_identifier, safe_log_context

from . import transport
from .errors import ProviderUnavailable
from .outbound import OutboundPayload, SendReceipt

logger = get_logger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


def _bearer(provider: str, payload: OutboundPayload) -> dict[str, str]:
    token = payload.credentials.get("access_token")
    if not token:
        raise ProviderUnavailable(provider, f"{provider} account has no access token")
    return {"Authorization": f"Bearer {token}"}


def build_mime(payload: OutboundPayload) -> EmailMessage:
    """RFC 5322 message for the Gmail raw upload."""
    msg = EmailMessage()
    if payload.sender_address:
        msg["From"] = payload.sender_address
    msg["To"] = ", ".join(payload.recipients)
    msg["Subject"] = payload.subject or ""
    msg.set_content(payload.body)
    for attachment in payload.attachments:
        maintype, _, subtype = (attachment.mime_type or "application/octet-stream").partition("/")
        msg.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return msg


def send_gmail(payload: OutboundPayload, config: ProviderConfig) -> SendReceipt:
    headers = _bearer("gmail", payload)
    raw = base64.urlsafe_b64encode(build_mime(payload).as_bytes()).decode("ascii").rstrip("=")
    request: dict[str, Any] = {"raw": raw}
    if payload.thread_id:
        request["threadId"] = payload.thread_id

    log_ctx = safe_log_context(
        provider="gmail",
        to_hash=hash_identifier(",".join(payload.recipients)),
        text_len=len(payload.body),
        attachments=len(payload.attachments),
    )
    logger.info("sending outbound email via gmail", extra={"extra_fields": log_ctx})

    body = transport.post(
        "gmail", GMAIL_SEND_URL, headers=headers, timeout=config.http_timeout, json=request
    )
    message_id = body.get("id")
    if not message_id:
        raise ProviderUnavailable("gmail", "gmail response carried no message id")

    logger.info("outbound email sent via gmail", extra={"extra_fields": log_ctx})
    return SendReceipt(
        provider_message_id=str(message_id),
        provider_chat_id=body.get("threadId") or payload.thread_id,
        raw=body,
    )


def _graph_message(payload: OutboundPayload) -> dict[str, Any]:
    message: dict[str, Any] = {
        "subject": payload.subject or "",
        "body": {"contentType": "Text", "content": payload.body},
        "toRecipients": [{"emailAddress": {"address": r}} for r in payload.recipients],
    }
    if payload.attachments:
        message["attachments"] = [
            {
                "@odata.type": "#microsoft.graph.fileAttachment",
                "name": a.filename,
                "contentType": a.mime_type or "application/octet-stream",
                "contentBytes": base64.b64encode(a.content).decode("ascii"),
            }
            for a in payload.attachments
        ]
    return message


def send_microsoft(payload: OutboundPayload, config: ProviderConfig) -> SendReceipt:
    """Create a draft, then send it.

    Graph's sendMail returns no id; a draft has one, and immutable ids keep
    it stable when the message moves to Sent Items.
    """
    headers = {**_bearer("microsoft", payload), "Prefer": 'IdType="ImmutableId"'}

    log_ctx = safe_log_context(
        provider="microsoft",
        to_hash=hash_identifier(",".join(payload.recipients)),
        text_len=len(payload.body),
        attachments=len(payload.attachments),
    )
    logger.info("sending outbound email via graph", extra={"extra_fields": log_ctx})

    draft = transport.post(
        "microsoft",
        f"{GRAPH_BASE_URL}/me/messages",
        headers=headers,
        timeout=config.http_timeout,
        json=_graph_message(payload),
    )
    message_id = draft.get("id")
    if not message_id:
        raise ProviderUnavailable("microsoft", "graph draft carried no message id")

    transport.post(
        "microsoft",
        f"{GRAPH_BASE_URL}/me/messages/{message_id}/send",
        headers=headers,
        timeout=config.http_timeout,
    )

    logger.info("outbound email sent via graph", extra={"extra_fields": log_ctx})
    return SendReceipt(
        provider_message_id=str(message_id),
        provider_chat_id=draft.get("conversationId") or payload.thread_id,
        raw=draft,
    )
