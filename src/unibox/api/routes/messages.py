"""Outbound send endpoint."""

from __future__ import annotations

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from unibox.api.dependencies import Services, current_user_id, get_services
from unibox.domain.entitlements import EntitlementDenied
from unibox.domain.models import Message, NotFound
from unibox.domain.rate_governor import LimitExceeded
from unibox.infra.time import isoformat
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers.errors import ProviderUnavailable
from unibox.providers.outbound import OutboundAttachment
from unibox.services.dispatcher import SendRequest
from unibox.services.notifications import message_payload

router = APIRouter(prefix="/messages", tags=["messages"])

logger = get_logger(__name__)


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in value)


class AttachmentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    mime_type: str | None = Field(None, alias="mimeType")
    content_base64: str = Field(..., alias="contentBase64")

    @field_validator("filename")
    @classmethod
    def filename_single_line(cls, v: str) -> str:
        if _has_control_chars(v):
            raise ValueError("filename cannot contain control characters")
        return v


class SendMessageIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId")
    chat_id: str = Field(..., alias="chatId")
    recipients: list[str] = Field(default_factory=list)
    body: str
    subject: str | None = None
    attachments: list[AttachmentIn] = Field(default_factory=list)
    is_reply: bool = Field(False, alias="isReply")

    @field_validator("recipients")
    @classmethod
    def recipients_single_line(cls, v: list[str]) -> list[str]:
        """Reject control characters; recipients end up in mail headers."""
        for recipient in v:
            if _has_control_chars(recipient):
                raise ValueError("recipients cannot contain control characters")
        return v

    @field_validator("subject")
    @classmethod
    def subject_single_line(cls, v: str | None) -> str | None:
        if v is not None and _has_control_chars(v):
            raise ValueError("subject cannot contain control characters")
        return v


def _decode_attachments(items: list[AttachmentIn]) -> tuple[OutboundAttachment, ...]:
    result = []
    for item in items:
        try:
            content = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=422, detail=f"attachment {item.filename!r} is not valid base64"
            )
        result.append(OutboundAttachment(filename=item.filename, content=content, mime_type=item.mime_type))
    return tuple(result)


def message_summary(message: Message) -> dict:
    summary = message_payload(message)
    summary.update(
        {
            "externalMessageId": message.external_message_id,
            "subject": message.subject,
            "isReply": message.is_reply,
            "attachments": list(message.attachments),
            "readAt": isoformat(message.read_at),
        }
    )
    return summary


def _payment_required(code: str, message: str, retry_after: int | None = None) -> JSONResponse:
    content: dict = {"code": code, "message": message}
    if retry_after is not None:
        content["retryAfter"] = retry_after
    return JSONResponse(status_code=402, content=content)


@router.post("", status_code=201)
def send_message(
    req: SendMessageIn,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    """Send a message through the account's provider.

    Returns:
        201 with the message summary.
        402 with {code, message, retryAfter?} for limit or entitlement errors.
        404 if the account or chat is not the caller's.
        502 PROVIDER_UNAVAILABLE if the provider refused or was unreachable.
    """
    request = SendRequest(
        account_id=req.account_id,
        chat_id=req.chat_id,
        recipients=tuple(req.recipients),
        body=req.body,
        subject=req.subject,
        attachments=_decode_attachments(req.attachments),
        is_reply=req.is_reply,
    )

    try:
        message = services.dispatcher.send(user_id, request)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LimitExceeded as e:
        return _payment_required(e.kind, e.message, e.retry_after)
    except EntitlementDenied as e:
        return _payment_required(e.code, e.message)
    except ProviderUnavailable as e:
        logger.warning(
            "send surfaced provider failure",
            extra={"extra_fields": safe_log_context(provider=e.provider, status_code=e.status_code)},
        )
        return JSONResponse(
            status_code=502,
            content={"code": "PROVIDER_UNAVAILABLE", "message": str(e)},
        )

    return message_summary(message)
