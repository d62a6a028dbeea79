"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlsplit, urlunsplit

from psycopg2.extensions import parse_dsn

_DRIVER_SCHEME = "postgresql+psycopg2"


def _with_driver(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if scheme in ("postgres", "postgresql"):
        return f"{_DRIVER_SCHEME}{sep}{rest}"
    return url


def _inject_password(url: str, password: str) -> str:
    parts = urlsplit(url)
    if parts.password or not password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote_plus(parts.username or '')}:{quote_plus(password)}@{host}"
    return urlunsplit(parts._replace(netloc=netloc))


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq key=value DSN to a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and goes into the
    query string; anything else becomes host:port.
    """
    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    user = quote_plus(params.get("user", ""))
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")
    port = params.get("port", "5432")
    credentials = f"{user}:{quote_plus(password)}"

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    return f"{_DRIVER_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def database_url() -> str:
    """SQLAlchemy URL built from DATABASE_URL, filling in DB_PASSWORD if absent."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return libpq_dsn_to_url(url)
    return _inject_password(_with_driver(url), os.environ.get("DB_PASSWORD", ""))
