"""Runtime settings read from the environment.

Values are read at call time (not import time) so tests can patch
os.environ per case.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

from unibox.providers.models import ProviderTag

StoreBackend = Literal["postgres", "memory"]
EntitlementsMode = Literal["database", "allow_all"]

DEFAULT_UNIPILE_BASE_URL = "https://api.unipile.com:13443"

_SECRET_ENV: dict[str, str] = {
    "unipile": "UNIPILE_WEBHOOK_SECRET",
    "gmail": "GMAIL_WEBHOOK_SECRET",
    "microsoft": "MICROSOFT_WEBHOOK_SECRET",
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.environ.get(name, default).strip().lower() or default
    if value not in choices:
        raise RuntimeError(f"{name} must be one of {choices}, got {value!r}")
    return value


@dataclass(frozen=True)
class LimitsConfig:
    """Outbound safety limits consumed by the rate governor."""

    max_recipients_per_message: int = 10
    max_per_hour: int = 50
    max_per_day: int = 200
    trial_daily_cap: int = 20
    per_recipient_cooldown_sec: int = 120
    per_domain_cooldown_sec: int = 60
    max_attachment_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_env(cls) -> LimitsConfig:
        defaults = cls()
        return cls(
            max_recipients_per_message=_env_int(
                "LIMIT_MAX_RECIPIENTS_PER_MESSAGE", defaults.max_recipients_per_message
            ),
            max_per_hour=_env_int("LIMIT_MAX_PER_HOUR", defaults.max_per_hour),
            max_per_day=_env_int("LIMIT_MAX_PER_DAY", defaults.max_per_day),
            trial_daily_cap=_env_int("LIMIT_TRIAL_DAILY_CAP", defaults.trial_daily_cap),
            per_recipient_cooldown_sec=_env_int(
                "LIMIT_PER_RECIPIENT_COOLDOWN_SEC", defaults.per_recipient_cooldown_sec
            ),
            per_domain_cooldown_sec=_env_int(
                "LIMIT_PER_DOMAIN_COOLDOWN_SEC", defaults.per_domain_cooldown_sec
            ),
            max_attachment_bytes=_env_int(
                "LIMIT_MAX_ATTACHMENT_BYTES", defaults.max_attachment_bytes
            ),
        )


@dataclass(frozen=True)
class ProviderConfig:
    """Outbound provider API settings."""

    unipile_base_url: str = DEFAULT_UNIPILE_BASE_URL
    unipile_api_key: str = ""
    http_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> ProviderConfig:
        return cls(
            unipile_base_url=os.environ.get("UNIPILE_BASE_URL", DEFAULT_UNIPILE_BASE_URL).rstrip("/"),
            unipile_api_key=os.environ.get("UNIPILE_API_KEY", ""),
            http_timeout=_env_float("PROVIDER_HTTP_TIMEOUT", 10.0),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level service settings."""

    ledger_backend: StoreBackend = "postgres"
    counter_backend: StoreBackend = "postgres"
    entitlements_mode: EntitlementsMode = "database"
    counter_statement_timeout_ms: int = 2000

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            ledger_backend=_env_choice("LEDGER_BACKEND", "postgres", ("postgres", "memory")),  # type: ignore[arg-type]
            counter_backend=_env_choice("COUNTER_BACKEND", "postgres", ("postgres", "memory")),  # type: ignore[arg-type]
            entitlements_mode=_env_choice(
                "ENTITLEMENTS_MODE", "database", ("database", "allow_all")
            ),  # type: ignore[arg-type]
            counter_statement_timeout_ms=_env_int("COUNTER_STATEMENT_TIMEOUT_MS", 2000),
        )


def webhook_secret(provider: ProviderTag) -> str:
    """Shared HMAC secret for a provider's webhooks. Empty means testing mode."""
    return os.environ.get(_SECRET_ENV[provider], "")
