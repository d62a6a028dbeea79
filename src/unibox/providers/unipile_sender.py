"""Outbound WhatsApp / Instagram messaging via the aggregator API.

Security: NEVER log recipients or text. Only log hashes and lengths.
"""

from unibox.infra.settings import ProviderConfig
from unibox.observability.logging import get_logger
from unibox.observability.redaction import hash_identifier, safe_log_context

from . import transport
from .errors import ProviderUnavailable
from .outbound import OutboundPayload, SendReceipt

logger = get_logger(__name__)

PROVIDER = "unipile"


def _headers(config: ProviderConfig) -> dict[str, str]:
    if not config.unipile_api_key:
        raise ProviderUnavailable(PROVIDER, "UNIPILE_API_KEY not configured")
    return {"X-API-KEY": config.unipile_api_key, "accept": "application/json"}


def send(payload: OutboundPayload, config: ProviderConfig) -> SendReceipt:
    """Send into an existing chat, or start one when no chat id is known.

    Raises:
        ProviderUnavailable: On any failure or when no message id comes back.
    """
    headers = _headers(config)
    files = [
        ("attachments", (a.filename, a.content, a.mime_type or "application/octet-stream"))
        for a in payload.attachments
    ] or None

    if payload.provider_chat_id:
        url = f"{config.unipile_base_url}/api/v1/chats/{payload.provider_chat_id}/messages"
        data = {"text": payload.body}
        target_hash = hash_identifier(payload.provider_chat_id)
    else:
        url = f"{config.unipile_base_url}/api/v1/chats"
        data = {
            "account_id": payload.external_account_id,
            "attendees_ids": list(payload.recipients),
            "text": payload.body,
        }
        target_hash = hash_identifier(",".join(payload.recipients))

    log_ctx = safe_log_context(
        provider=PROVIDER,
        target_hash=target_hash,
        text_len=len(payload.body),
        attachments=len(payload.attachments),
        new_chat=not payload.provider_chat_id,
    )
    logger.info("sending outbound message via aggregator", extra={"extra_fields": log_ctx})

    body = transport.post(
        PROVIDER, url, headers=headers, timeout=config.http_timeout, data=data, files=files
    )

    message_id = body.get("message_id")
    if not message_id:
        raise ProviderUnavailable(PROVIDER, "aggregator response carried no message id")

    logger.info("outbound message sent via aggregator", extra={"extra_fields": log_ctx})
    return SendReceipt(
        provider_message_id=str(message_id),
        provider_chat_id=body.get("chat_id") or payload.provider_chat_id,
        raw=body,
    )
