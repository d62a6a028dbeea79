"""Webhook ingestion pipeline.

Per delivery: Received -> Verified -> Normalized -> Upserted -> Notified,
or one of the terminal outcomes:

- rejected:   signature check failed
- dropped:    body could not be parsed or normalized (logged, not retried)
- ignored:    unknown account or unhandled event type
- suppressed: self-chat message (never persisted, never published)
- duplicate:  message already stored; only provider metadata is merged

`ingest()` commits the ledger work and returns the pending notification;
`notify()` publishes it. The HTTP route calls them separately so a caller
that went away before the publish step skips it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Literal

from unibox.domain.chats import resolve_chat
from unibox.domain.identity import is_self_chat
from unibox.domain.models import Account, NewMessage, can_transition
from unibox.infra.ledger import LedgerSession, LedgerStore
from unibox.infra.settings import webhook_secret
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers.errors import MalformedPayload, SignatureInvalid
from unibox.providers.models import ProviderTag
from unibox.providers.normalizer import ProviderEvent, classify_event, normalize
from unibox.providers.signature import verify_signature

from .notifications import MessageArrived, NotificationBus

logger = get_logger(__name__)

IngestStatus = Literal["processed", "duplicate", "suppressed", "dropped", "rejected", "ignored"]


@dataclass(frozen=True)
class RawEvent:
    """One webhook delivery as received. Never persisted."""

    provider: ProviderTag
    body: bytes
    signature: str | None
    received_at: datetime


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    detail: str | None = None
    event: str | None = None
    chat_id: str | None = None
    message_id: str | None = None
    notification: MessageArrived | None = None


class WebhookIngestor:
    def __init__(
        self,
        ledger: LedgerStore,
        bus: NotificationBus,
        secret_for: Callable[[ProviderTag], str] = webhook_secret,
    ) -> None:
        self._ledger = ledger
        self._bus = bus
        self._secret_for = secret_for

    def process(self, raw: RawEvent) -> IngestResult:
        """Ingest and publish in one call (non-HTTP callers)."""
        result = self.ingest(raw)
        self.notify(result)
        return result

    def notify(self, result: IngestResult) -> int:
        if result.notification is None:
            return 0
        return self._bus.publish(result.notification)

    def ingest(self, raw: RawEvent) -> IngestResult:
        """Run one delivery through the pipeline up to (not including) publish.

        Unexpected errors propagate; the caller isolates them per delivery.
        """
        log_ctx = {"provider": raw.provider, "body_len": len(raw.body)}

        # 1. Verify
        secret = self._secret_for(raw.provider)
        if secret:
            try:
                verify_signature(raw.body, raw.signature, secret)
            except SignatureInvalid as e:
                logger.warning(
                    "webhook signature rejected",
                    extra={"extra_fields": safe_log_context(**log_ctx, error=str(e))},
                )
                return IngestResult(status="rejected", detail=str(e))
        else:
            logger.warning(
                "webhook secret not configured, signature not verified",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )

        # 2. Parse
        try:
            payload = json.loads(raw.body)
        except (ValueError, UnicodeDecodeError):
            logger.warning(
                "webhook body is not valid json",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
            return IngestResult(status="dropped", detail="invalid json")
        if not isinstance(payload, dict):
            logger.warning(
                "webhook body is not a json object",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
            return IngestResult(status="dropped", detail="invalid json")

        event = classify_event(payload, raw.provider)
        log_ctx["event"] = event.name or "missing"

        if event.kind == "unknown":
            logger.info(
                "unhandled webhook event",
                extra={"extra_fields": safe_log_context(**log_ctx)},
            )
            return IngestResult(status="ignored", detail="unhandled event", event=event.name)

        # 3. Normalize before touching the ledger
        normalized = None
        if event.kind == "message":
            try:
                normalized = normalize(event.payload, raw.provider)
            except MalformedPayload as e:
                logger.warning(
                    "webhook payload dropped",
                    extra={"extra_fields": safe_log_context(**log_ctx, error=str(e))},
                )
                return IngestResult(status="dropped", detail=str(e), event=event.name)

        # 4. Upsert
        with self._ledger.session() as session:
            account = self._find_account(session, raw.provider, event.account_external_id)
            if account is None:
                logger.warning(
                    "webhook for unknown account",
                    extra={"extra_fields": safe_log_context(**log_ctx)},
                )
                return IngestResult(status="ignored", detail="unknown account", event=event.name)

            log_ctx["account_id"] = account.id

            if event.kind == "account_status":
                return self._apply_account_status(session, account, event, log_ctx)
            if event.kind == "receipt":
                return self._apply_receipt(session, account, event, raw.received_at, log_ctx)

            if is_self_chat(account, normalized):
                logger.info(
                    "self-chat message suppressed",
                    extra={"extra_fields": safe_log_context(**log_ctx)},
                )
                return IngestResult(status="suppressed", detail="self chat", event=event.name)

            try:
                resolution = resolve_chat(session, account, normalized)
            except MalformedPayload as e:
                logger.warning(
                    "webhook payload dropped",
                    extra={"extra_fields": safe_log_context(**log_ctx, error=str(e))},
                )
                return IngestResult(status="dropped", detail=str(e), event=event.name)

            chat = resolution.chat
            message, created = session.upsert_message(
                NewMessage.from_normalized(chat.id, account.id, normalized)
            )
            if created and message.direction == "inbound":
                session.increment_unread(chat.id)

        log_fields = safe_log_context(
            **log_ctx,
            chat_id=chat.id,
            message_id=message.id,
            chat_created=resolution.created,
            direction=message.direction,
        )
        if not created:
            logger.info("duplicate delivery merged", extra={"extra_fields": log_fields})
            return IngestResult(
                status="duplicate", event=event.name, chat_id=chat.id, message_id=message.id
            )

        logger.info("message ingested", extra={"extra_fields": log_fields})
        notification = None
        if message.direction == "inbound":
            notification = MessageArrived(user_id=account.user_id, message=message)
        return IngestResult(
            status="processed",
            event=event.name,
            chat_id=chat.id,
            message_id=message.id,
            notification=notification,
        )

    def _find_account(
        self, session: LedgerSession, provider: str, external_id: str | None
    ) -> Account | None:
        if not external_id:
            return None
        account = session.find_account(provider, external_id)
        if account is not None:
            return account
        # Email bridges address accounts by our own id
        account = session.get_account(external_id)
        if account is not None and account.provider == provider:
            return account
        return None

    def _apply_account_status(
        self,
        session: LedgerSession,
        account: Account,
        event: ProviderEvent,
        log_ctx: dict[str, Any],
    ) -> IngestResult:
        if event.status is None:
            return IngestResult(status="ignored", detail="no status", event=event.name)
        if event.status != account.status:
            session.update_account_status(account.id, event.status)
        logger.info(
            "account status updated",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx, old_status=account.status, new_status=event.status
                )
            },
        )
        return IngestResult(status="processed", event=event.name)

    def _apply_receipt(
        self,
        session: LedgerSession,
        account: Account,
        event: ProviderEvent,
        received_at: datetime,
        log_ctx: dict[str, Any],
    ) -> IngestResult:
        target = event.status or "read"
        updated = 0
        for external_id in event.message_ids:
            for message in session.find_messages(account.id, external_id):
                if not can_transition(message.status, target):
                    continue
                session.update_message_status(
                    message.id, target, read_at=received_at if target == "read" else None
                )
                updated += 1

        logger.info(
            "delivery receipt applied",
            extra={"extra_fields": safe_log_context(**log_ctx, status=target, updated=updated)},
        )
        if updated == 0:
            return IngestResult(status="ignored", detail="no matching message", event=event.name)
        return IngestResult(status="processed", event=event.name)
