"""Provider webhook routes.

Response codes:
- 401 when the signature check fails
- 500 when processing raised unexpectedly (logged; the next delivery is unaffected)
- 200 otherwise, with the pipeline outcome in `status`

Dropped, ignored, suppressed and duplicate deliveries answer 200 so the
provider does not redeliver them.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Header, Path, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from unibox.api.dependencies import Services, get_services
from unibox.observability.correlation import get_correlation_id
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers.models import ProviderTag
from unibox.services.ingestor import IngestResult, RawEvent

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


def _result_body(result: IngestResult) -> dict:
    body: dict = {"status": result.status}
    if result.detail:
        body["detail"] = result.detail
    if result.message_id:
        body["messageId"] = result.message_id
    if result.chat_id:
        body["chatId"] = result.chat_id
    return body


async def _handle(
    request: Request,
    provider: ProviderTag,
    signature: str | None,
    services: Services,
) -> JSONResponse:
    correlation_id = get_correlation_id()
    body = await request.body()
    raw = RawEvent(
        provider=provider,
        body=body,
        signature=signature,
        received_at=services.clock(),
    )

    try:
        result = await run_in_threadpool(services.ingestor.ingest, raw)
    except Exception:
        logger.exception(
            "webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, provider=provider)},
        )
        return JSONResponse(status_code=500, content={"status": "error"})

    if result.status == "rejected":
        return JSONResponse(status_code=401, content={"status": "rejected", "error": "Invalid signature"})

    if result.notification is not None:
        if await request.is_disconnected():
            # Rows are committed; only the publish step is abandoned
            logger.info(
                "client disconnected before publish, notification skipped",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id, message_id=result.message_id
                    )
                },
            )
        else:
            services.ingestor.notify(result)

    return JSONResponse(status_code=200, content=_result_body(result))


@router.post("/unipile")
async def unipile_webhook(
    request: Request,
    x_unipile_signature: str | None = Header(None, alias="X-Unipile-Signature"),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Receive WhatsApp / Instagram events from the aggregator."""
    return await _handle(request, "unipile", x_unipile_signature, services)


@router.post("/email/{provider}")
async def email_webhook(
    request: Request,
    provider: Literal["gmail", "microsoft"] = Path(...),
    x_signature: str | None = Header(None, alias="X-Signature"),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Receive mailbox events from the Gmail / Graph push bridge."""
    return await _handle(request, provider, x_signature, services)
