"""Inbox read endpoints: accounts, chats, messages, read markers and usage.

Every lookup is scoped to the caller: a chat or account owned by another
user answers 404, never 403.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from unibox.api.dependencies import Services, current_user_id, get_services
from unibox.api.routes.messages import message_summary
from unibox.domain.models import Account, Chat
from unibox.infra.ledger import LedgerSession, clamp_page
from unibox.infra.time import isoformat
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context

router = APIRouter(tags=["chats"])

logger = get_logger(__name__)


def _owned_account(session: LedgerSession, account_id: str, user_id: str) -> Account:
    account = session.get_account(account_id)
    if account is None or account.user_id != user_id:
        raise HTTPException(status_code=404, detail="account not found")
    return account


def _owned_chat(session: LedgerSession, chat_id: str, user_id: str) -> Chat:
    chat = session.get_chat(chat_id)
    if chat is not None:
        account = session.get_account(chat.account_id)
        if account is not None and account.user_id == user_id:
            return chat
    raise HTTPException(status_code=404, detail="chat not found")


def chat_summary(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "accountId": chat.account_id,
        "title": chat.title,
        "providerChatId": chat.provider_chat_id,
        "lastMessageAt": isoformat(chat.last_message_at),
        "unreadCount": chat.unread_count,
        "status": chat.status,
        "isGroup": bool(chat.chat_info.get("is_group")),
    }


def account_summary(account: Account) -> dict:
    # connection_data holds credentials and never leaves the service
    return {
        "id": account.id,
        "provider": account.provider,
        "channel": account.channel,
        "status": account.status,
        "isTrial": account.is_trial,
        "displayName": account.display_name,
    }


@router.get("/accounts")
def list_accounts(
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    """The caller's connected accounts with their connection status."""
    with services.ledger.session() as session:
        accounts = session.list_accounts(user_id)
    return {"accounts": [account_summary(a) for a in accounts]}


@router.get("/accounts/{account_id}/chats")
def list_chats(
    account_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    """Chats of one account, most recently active first."""
    size, start = clamp_page(limit, offset)
    with services.ledger.session() as session:
        _owned_account(session, account_id, user_id)
        chats = session.list_chats(account_id, size, start)
    return {"chats": [chat_summary(c) for c in chats], "limit": size, "offset": start}


@router.get("/chats/{chat_id}/messages")
def list_messages(
    chat_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    """Messages of one chat, oldest first."""
    size, start = clamp_page(limit, offset)
    with services.ledger.session() as session:
        _owned_chat(session, chat_id, user_id)
        messages = session.list_messages(chat_id, size, start)
    return {"messages": [message_summary(m) for m in messages], "limit": size, "offset": start}


@router.post("/chats/{chat_id}/read")
def mark_chat_read(
    chat_id: str,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    """Reset the unread counter and stamp read_at on inbound messages."""
    with services.ledger.session() as session:
        _owned_chat(session, chat_id, user_id)
        marked = session.mark_chat_read(chat_id, services.clock())

    logger.info(
        "chat marked read",
        extra={"extra_fields": safe_log_context(chat_id=chat_id, marked=marked)},
    )
    return {"chatId": chat_id, "marked": marked, "unreadCount": 0}


@router.get("/accounts/{account_id}/usage")
def account_usage(
    account_id: str,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    """Current hourly and daily send counts against the account's limits."""
    with services.ledger.session() as session:
        account = _owned_account(session, account_id, user_id)

    usage = services.governor.current_usage(account.id, services.clock(), is_trial=account.is_trial)
    limits = services.governor.limits
    return {
        "accountId": account.id,
        "hourly": {"bucket": usage.hour_bucket, "count": usage.hourly_count, "limit": usage.max_per_hour},
        "daily": {"bucket": usage.day_bucket, "count": usage.daily_count, "limit": usage.daily_cap},
        "isTrial": account.is_trial,
        "limits": {
            "maxRecipientsPerMessage": limits.max_recipients_per_message,
            "perRecipientCooldownSec": limits.per_recipient_cooldown_sec,
            "perDomainCooldownSec": limits.per_domain_cooldown_sec,
            "maxAttachmentBytes": limits.max_attachment_bytes,
        },
    }
