"""Shared pytest fixtures for unibox tests.

Everything here runs on the memory backends; Postgres-backed tests skip
themselves when DATABASE_URL is unset.
"""
import sys
sys.dont_write_bytecode = True

import itertools  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from unibox.api.dependencies import build_services, get_services  # noqa: E402
from unibox.api.factory import create_app  # noqa: E402
from unibox.domain.entitlements import StaticEntitlements  # noqa: E402
from unibox.domain.models import Account  # noqa: E402
from unibox.infra.counter_store import MemoryCounterStore  # noqa: E402
from unibox.infra.memory_ledger import MemoryLedgerStore  # noqa: E402
from unibox.infra.settings import LimitsConfig, ProviderConfig, Settings  # noqa: E402
from unibox.providers.outbound import SendReceipt  # noqa: E402
from unibox.services.notifications import NotificationBus  # noqa: E402

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

PEER_JID = "17775550123@s.whatsapp.net"
PEER_KEY = "phone:17775550123"
SELF_JID = "15550001111@s.whatsapp.net"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def wa_account():
    return Account(
        id="acc-wa",
        user_id="user-1",
        provider="unipile",
        channel="whatsapp",
        external_account_id="unipile-acc-1",
        self_identities=frozenset({"+1 (555) 000-1111"}),
        display_name="Front Desk",
    )


@pytest.fixture
def gmail_account():
    return Account(
        id="acc-mail",
        user_id="user-1",
        provider="gmail",
        channel="email",
        external_account_id="owner@example.com",
        self_identities=frozenset({"owner@example.com"}),
        connection_data={"access_token": "tok-123"},
    )


@pytest.fixture
def ledger(wa_account, gmail_account):
    store = MemoryLedgerStore()
    store.add_account(wa_account)
    store.add_account(gmail_account)
    return store


@pytest.fixture
def counters():
    return MemoryCounterStore()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def gate():
    return StaticEntitlements({("user-1", "whatsapp"), ("user-1", "email")})


@pytest.fixture
def limits():
    return LimitsConfig()


@pytest.fixture
def sender():
    """Fake provider send: accepts everything, hands back out-1, out-2, ..."""
    ids = itertools.count(1)

    def _send(provider, payload, config):
        return SendReceipt(
            provider_message_id=f"out-{next(ids)}",
            provider_chat_id=payload.provider_chat_id,
            raw={"object": "MessageSent"},
        )

    return MagicMock(side_effect=_send)


@pytest.fixture
def webhook_secrets():
    """Per-provider webhook secrets; empty means signature checks are off."""
    return {}


@pytest.fixture
def services(ledger, counters, gate, limits, sender, webhook_secrets, clock):
    return build_services(
        Settings(ledger_backend="memory", counter_backend="memory", entitlements_mode="allow_all"),
        ledger=ledger,
        counters=counters,
        gate=gate,
        limits=limits,
        provider_config=ProviderConfig(unipile_api_key="test-key"),
        sender=sender,
        secret_for=lambda provider: webhook_secrets.get(provider, ""),
        clock=clock,
    )


@pytest.fixture
def client(services):
    app = create_app(role="public")
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def wa_chat(ledger, wa_account):
    """An existing WhatsApp chat with the peer."""
    with ledger.session() as session:
        return session.insert_chat(
            wa_account.id, PEER_KEY, "wa-chat-1", "Maria", T0 - timedelta(hours=1), {}
        )


@pytest.fixture
def unipile_event():
    """Build an aggregator message webhook body."""

    def _make(
        message_id: str = "m1",
        sender: str = PEER_JID,
        text: str = "hi",
        chat_id: str = "wa-chat-1",
        timestamp: datetime = T0,
        sender_name: str = "Maria",
        **extra,
    ) -> dict:
        body = {
            "event": "message_received",
            "account_id": "unipile-acc-1",
            "account_type": "WHATSAPP",
            "chat_id": chat_id,
            "message_id": message_id,
            "message": text,
            "timestamp": int(timestamp.timestamp()),
            "sender": {"attendee_provider_id": sender, "attendee_name": sender_name},
            "attendees": [
                {"attendee_provider_id": sender, "attendee_name": sender_name},
                {"attendee_provider_id": SELF_JID, "attendee_name": "You"},
            ],
        }
        body.update(extra)
        return body

    return _make
