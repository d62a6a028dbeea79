"""HTTP plumbing shared by the provider senders.

No retries: a failed call surfaces as ProviderUnavailable and the caller
decides whether to send again.
"""

from typing import Any

import requests

from unibox.observability.logging import get_logger
from unibox.observability.redaction import safe_log_context

from .errors import ProviderUnavailable

logger = get_logger(__name__)


def post(
    provider: str,
    url: str,
    *,
    headers: dict[str, str],
    timeout: float,
    json: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
    files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
) -> dict[str, Any]:
    """POST and return the decoded JSON body ({} for empty responses).

    Raises:
        ProviderUnavailable: On network errors, timeouts or non-2xx status.
    """
    try:
        resp = requests.post(
            url, headers=headers, json=json, data=data, files=files, timeout=timeout
        )
    except requests.RequestException as e:
        logger.warning(
            "provider request failed",
            extra={"extra_fields": safe_log_context(provider=provider, error_type=type(e).__name__)},
        )
        raise ProviderUnavailable(provider, f"{provider} request failed: {type(e).__name__}") from e

    if resp.status_code >= 400:
        logger.warning(
            "provider returned error status",
            extra={"extra_fields": safe_log_context(provider=provider, status_code=resp.status_code)},
        )
        raise ProviderUnavailable(
            provider, f"{provider} returned HTTP {resp.status_code}", status_code=resp.status_code
        )

    if not resp.content:
        return {}
    try:
        body = resp.json()
    except ValueError as e:
        raise ProviderUnavailable(provider, f"{provider} returned a non-JSON body") from e
    return body if isinstance(body, dict) else {}
