"""Outbound send orchestration.

Order: ownership -> account connected -> entitlement -> rate governor ->
provider send -> persist -> publish. A message row is written only after
the provider hands back its message id; a provider failure writes nothing
and is not retried. Usage reserved by the governor is not refunded when
the provider then fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from unibox.domain.entitlements import EntitlementDenied, EntitlementGate
from unibox.domain.models import Account, Chat, Message, NewMessage, NotFound
from unibox.domain.rate_governor import RateGovernor
from unibox.infra.ledger import LedgerStore
from unibox.infra.settings import ProviderConfig
from unibox.infra.time import utc_now
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context
from unibox.providers import senders
from unibox.providers.errors import ProviderUnavailable
from unibox.providers.models import EMAIL_PROVIDERS, Attachment, ProviderTag, metadata_to_dict
from unibox.providers.outbound import OutboundAttachment, OutboundPayload, SendReceipt

from .notifications import MessageArrived, NotificationBus

logger = get_logger(__name__)

Sender = Callable[[ProviderTag, OutboundPayload, ProviderConfig], SendReceipt]


@dataclass(frozen=True)
class SendRequest:
    account_id: str
    chat_id: str
    recipients: tuple[str, ...]
    body: str
    subject: str | None = None
    attachments: tuple[OutboundAttachment, ...] = ()
    is_reply: bool = False

    @property
    def attachment_bytes(self) -> int:
        return sum(a.size for a in self.attachments)


def sender_identity(account: Account) -> str:
    """Identity recorded as the sender of the account's own messages."""
    if account.provider in EMAIL_PROVIDERS or not account.self_identities:
        return account.external_account_id
    return sorted(account.self_identities)[0]


def _thread_id(chat: Chat) -> str | None:
    if chat.identity_key.startswith("thread:"):
        return chat.identity_key[len("thread:"):]
    return None


class Dispatcher:
    def __init__(
        self,
        ledger: LedgerStore,
        governor: RateGovernor,
        gate: EntitlementGate,
        bus: NotificationBus,
        provider_config: ProviderConfig,
        sender: Sender = senders.send,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._governor = governor
        self._gate = gate
        self._bus = bus
        self._provider_config = provider_config
        self._sender = sender
        self._clock = clock

    def send(self, user_id: str, request: SendRequest) -> Message:
        """Send one message on behalf of a user.

        Raises:
            NotFound: Account or chat missing or not owned by the user.
            EntitlementDenied: Account disconnected or channel not entitled.
            LimitExceeded: A rate limit rejected the send.
            ProviderUnavailable: The provider did not accept the message.
        """
        with self._ledger.session() as session:
            account = session.get_account(request.account_id)
            if account is None or account.user_id != user_id:
                raise NotFound("account not found")
            chat = session.get_chat(request.chat_id)
            if chat is None or chat.account_id != account.id:
                raise NotFound("chat not found")

        if account.status != "connected":
            raise EntitlementDenied(
                "ACCOUNT_NOT_CONNECTED", f"Account is {account.status}; reconnect it to send"
            )
        if not self._gate.allows(account):
            raise EntitlementDenied(
                "ENTITLEMENT_REQUIRED", f"{account.channel} access requires an active entitlement"
            )

        now = self._clock()
        self._governor.check_and_reserve(
            account.id,
            request.recipients,
            (),
            request.attachment_bytes,
            request.is_reply,
            now,
            is_trial=account.is_trial,
        )

        payload = OutboundPayload(
            external_account_id=account.external_account_id,
            recipients=request.recipients,
            body=request.body,
            subject=request.subject,
            attachments=request.attachments,
            provider_chat_id=chat.provider_chat_id if account.provider == "unipile" else None,
            thread_id=_thread_id(chat),
            sender_address=account.external_account_id if account.provider in EMAIL_PROVIDERS else None,
            credentials=account.connection_data,
        )

        log_ctx = {"account_id": account.id, "chat_id": chat.id, "provider": account.provider}
        try:
            receipt = self._sender(account.provider, payload, self._provider_config)
        except ProviderUnavailable as e:
            logger.warning(
                "outbound send failed",
                extra={"extra_fields": safe_log_context(**log_ctx, status_code=e.status_code)},
            )
            raise

        message, created = self._record(account, chat, request, receipt, now)

        logger.info(
            "outbound message dispatched",
            extra={"extra_fields": safe_log_context(**log_ctx, message_id=message.id, created=created)},
        )
        if created:
            self._bus.publish(MessageArrived(user_id=account.user_id, message=message))
        return message

    def _record(
        self,
        account: Account,
        chat: Chat,
        request: SendRequest,
        receipt: SendReceipt,
        now: datetime,
    ) -> tuple[Message, bool]:
        attachments = tuple(
            Attachment(filename=a.filename, mime_type=a.mime_type, size=a.size).to_dict()
            for a in request.attachments
        )
        metadata = metadata_to_dict(senders.receipt_metadata(account.provider, receipt))

        with self._ledger.session() as session:
            message, created = session.upsert_message(
                NewMessage(
                    chat_id=chat.id,
                    account_id=account.id,
                    external_message_id=receipt.provider_message_id,
                    direction="outbound",
                    sender_id=sender_identity(account),
                    sender_name=account.display_name,
                    body=request.body,
                    subject=request.subject,
                    attachments=attachments,
                    sent_at=now,
                    status="sent",
                    is_reply=request.is_reply,
                    provider_metadata=metadata,
                )
            )
            current = session.get_chat(chat.id) or chat
            last_message_at = current.last_message_at
            if last_message_at is None or now > last_message_at:
                last_message_at = now
            provider_chat_id = receipt.provider_chat_id or current.provider_chat_id
            if (last_message_at, provider_chat_id) != (current.last_message_at, current.provider_chat_id):
                session.update_chat(
                    chat.id,
                    title=current.title,
                    provider_chat_id=provider_chat_id,
                    last_message_at=last_message_at,
                    chat_info=current.chat_info,
                )
        return message, created
