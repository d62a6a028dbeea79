"""Provider dispatch: event classification and message normalization.

One adapter module per provider; this module is the single switch over
the provider tag.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from . import gmail_adapter, microsoft_adapter, unipile_adapter
from .errors import MalformedPayload
from .models import EMAIL_PROVIDERS, NormalizedMessage, ProviderTag

EventKind = Literal["message", "account_status", "receipt", "unknown"]

UNIPILE_MESSAGE_EVENTS = frozenset({"message.new", "message_received", "message.received"})
UNIPILE_ACCOUNT_EVENTS = frozenset({"account.updated", "connection.status"})
UNIPILE_RECEIPT_EVENTS = {
    "message_delivered": "delivered",
    "message.delivered": "delivered",
    "message_read": "read",
    "message.read": "read",
}

EMAIL_MESSAGE_EVENTS = frozenset({"message.received", "message.new"})
EMAIL_RECEIPT_EVENTS = {"message.read": "read"}

# Aggregator AccountStatus codes -> account status
_UNIPILE_STATUS_CODES = {
    "OK": "connected",
    "CREATION_SUCCESS": "connected",
    "RECONNECTED": "connected",
    "SYNC_SUCCESS": "connected",
    "CONNECTING": "connected",
    "CREDENTIALS": "needs_action",
    "PERMISSIONS": "needs_action",
    "ERROR": "disconnected",
    "STOPPED": "disconnected",
    "DISCONNECTED": "disconnected",
    "DELETED": "disconnected",
}

ACCOUNT_STATUSES = frozenset({"connected", "needs_action", "disconnected"})


@dataclass(frozen=True)
class ProviderEvent:
    """A classified webhook body.

    `status` is the target account status for `account_status` events and
    the target message status for `receipt` events.
    """

    kind: EventKind
    name: str | None
    account_external_id: str | None
    payload: dict[str, Any]
    status: str | None = None
    message_ids: tuple[str, ...] = field(default_factory=tuple)


def _map_account_status(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in ACCOUNT_STATUSES:
        return text.lower()
    mapped = _UNIPILE_STATUS_CODES.get(text.upper())
    if mapped:
        return mapped
    # Anything else reported by the aggregator means the link is unusable
    return "disconnected"


def _email_envelope(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict):
        return {**payload, **data}
    return payload


def _message_ids(source: dict[str, Any], *keys: str) -> tuple[str, ...]:
    ids = []
    for key in keys:
        value = source.get(key)
        if isinstance(value, (str, int)) and str(value) and str(value) not in ids:
            ids.append(str(value))
    return tuple(ids)


def _classify_unipile(payload: dict[str, Any]) -> ProviderEvent:
    account_status = payload.get("AccountStatus")
    if isinstance(account_status, dict):
        return ProviderEvent(
            kind="account_status",
            name="AccountStatus",
            account_external_id=account_status.get("account_id"),
            payload=payload,
            status=_map_account_status(account_status.get("message")),
        )

    event = payload.get("event")
    name = str(event) if event else None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    account_id = unipile_adapter.account_external_id(payload)

    if name in UNIPILE_MESSAGE_EVENTS:
        return ProviderEvent("message", name, account_id, payload)

    if name in UNIPILE_ACCOUNT_EVENTS:
        source = data or payload
        return ProviderEvent(
            kind="account_status",
            name=name,
            account_external_id=account_id,
            payload=payload,
            status=_map_account_status(source.get("status")),
        )

    if name in UNIPILE_RECEIPT_EVENTS:
        source = {**payload, **data}
        return ProviderEvent(
            kind="receipt",
            name=name,
            account_external_id=account_id,
            payload=payload,
            status=UNIPILE_RECEIPT_EVENTS[name],
            message_ids=_message_ids(source, "provider_message_id", "message_id"),
        )

    return ProviderEvent("unknown", name, account_id, payload)


def _classify_email(payload: dict[str, Any]) -> ProviderEvent:
    flat = _email_envelope(payload)
    event = flat.get("event")
    name = str(event) if event else None
    account_id = flat.get("accountId") or flat.get("emailAddress")
    account_id = str(account_id) if account_id else None

    if name in EMAIL_MESSAGE_EVENTS:
        return ProviderEvent("message", name, account_id, flat)

    if name in EMAIL_RECEIPT_EVENTS:
        return ProviderEvent(
            kind="receipt",
            name=name,
            account_external_id=account_id,
            payload=flat,
            status=EMAIL_RECEIPT_EVENTS[name],
            message_ids=_message_ids(flat, "messageId"),
        )

    return ProviderEvent("unknown", name, account_id, flat)


def classify_event(payload: dict[str, Any], provider: ProviderTag) -> ProviderEvent:
    """Decide what a webhook body is about without normalizing it."""
    if provider == "unipile":
        return _classify_unipile(payload)
    elif provider in EMAIL_PROVIDERS:
        return _classify_email(payload)
    raise ValueError(f"unknown provider: {provider!r}")


def normalize(raw_payload: dict[str, Any], provider: ProviderTag) -> NormalizedMessage:
    """Map one provider payload to a NormalizedMessage. Pure, no I/O.

    Raises:
        MalformedPayload: If required fields are absent after fallbacks.
        ValueError: If the provider tag is unknown.
    """
    if not isinstance(raw_payload, dict):
        raise MalformedPayload("payload must be a JSON object")

    if provider == "unipile":
        return unipile_adapter.normalize(raw_payload)
    elif provider == "gmail":
        return gmail_adapter.normalize(_email_envelope(raw_payload))
    elif provider == "microsoft":
        return microsoft_adapter.normalize(_email_envelope(raw_payload))
    raise ValueError(f"unknown provider: {provider!r}")
