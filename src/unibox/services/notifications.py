"""Per-user notification bus.

The ingestion and send paths publish; the real-time transport (websocket
gateway, SSE) subscribes. Delivery is in-process and synchronous.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

from unibox.domain.models import Message
from unibox.infra.time import isoformat
from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context

logger = get_logger(__name__)

Handler = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class MessageArrived:
    """A newly persisted message, addressed to the owning user."""

    user_id: str
    message: Message

    def payload(self) -> dict[str, Any]:
        return message_payload(self.message)


def message_payload(message: Message) -> dict[str, Any]:
    """Canonical notification shape shared with the UI."""
    return {
        "id": message.id,
        "body": message.body,
        "from": message.sender_id,
        "fromName": message.sender_name or message.sender_id,
        "chatId": message.chat_id,
        "direction": message.direction,
        "status": message.status,
        "sentAt": isoformat(message.sent_at),
    }


class NotificationBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, user_id: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for one user's events. Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(user_id, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(user_id, None)

        return unsubscribe

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def publish(self, event: MessageArrived) -> int:
        """Deliver to every subscriber of the user. Returns successful deliveries.

        A failing subscriber is logged and skipped.
        """
        with self._lock:
            handlers = list(self._subscribers.get(event.user_id, []))

        payload = event.payload()
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "notification subscriber failed",
                    extra={"extra_fields": safe_log_context(message_id=event.message.id)},
                )
                continue
            delivered += 1

        logger.debug(
            "notification published",
            extra={
                "extra_fields": safe_log_context(
                    message_id=event.message.id,
                    direction=event.message.direction,
                    subscribers=len(handlers),
                    delivered=delivered,
                )
            },
        )
        return delivered
