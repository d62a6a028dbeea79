"""Service wiring for the HTTP layer.

Routes depend on `get_services`; tests swap it through
`app.dependency_overrides` with services built on the memory backends.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fastapi import Header, HTTPException

from unibox.domain.entitlements import EntitlementGate, create_entitlement_gate
from unibox.domain.rate_governor import RateGovernor
from unibox.infra.counter_store import CounterStore, create_counter_store
from unibox.infra.ledger import LedgerStore, create_ledger_store
from unibox.infra.settings import LimitsConfig, ProviderConfig, Settings, webhook_secret
from unibox.infra.time import utc_now
from unibox.providers import senders
from unibox.providers.models import ProviderTag
from unibox.services.dispatcher import Dispatcher, Sender
from unibox.services.ingestor import WebhookIngestor
from unibox.services.notifications import NotificationBus


@dataclass(frozen=True)
class Services:
    ledger: LedgerStore
    counters: CounterStore
    governor: RateGovernor
    gate: EntitlementGate
    bus: NotificationBus
    ingestor: WebhookIngestor
    dispatcher: Dispatcher
    clock: Callable[[], datetime]


def build_services(
    settings: Settings | None = None,
    *,
    ledger: LedgerStore | None = None,
    counters: CounterStore | None = None,
    gate: EntitlementGate | None = None,
    limits: LimitsConfig | None = None,
    provider_config: ProviderConfig | None = None,
    sender: Sender = senders.send,
    secret_for: Callable[[ProviderTag], str] = webhook_secret,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    """Assemble the service graph; explicit arguments win over settings."""
    settings = settings or Settings.from_env()
    ledger = ledger or create_ledger_store(settings.ledger_backend)
    counters = counters or create_counter_store(
        settings.counter_backend, settings.counter_statement_timeout_ms
    )
    gate = gate or create_entitlement_gate(settings.entitlements_mode)
    governor = RateGovernor(counters, limits or LimitsConfig.from_env())
    bus = NotificationBus()

    return Services(
        ledger=ledger,
        counters=counters,
        governor=governor,
        gate=gate,
        bus=bus,
        ingestor=WebhookIngestor(ledger, bus, secret_for=secret_for),
        dispatcher=Dispatcher(
            ledger,
            governor,
            gate,
            bus,
            provider_config or ProviderConfig.from_env(),
            sender=sender,
            clock=clock,
        ),
        clock=clock,
    )


_services: Services | None = None


def get_services() -> Services:
    """Process-wide services, built on first use (allows override in tests)."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def current_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    """User id asserted by the upstream auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id
