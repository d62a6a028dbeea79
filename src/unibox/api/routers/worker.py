"""Internal housekeeping routes (APP_ROLE=worker).

Meant to be hit by a scheduler, never exposed publicly.
"""

from fastapi import APIRouter, Depends

from unibox.api.dependencies import Services, get_services
from unibox.infra.time import isoformat

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/health")
def internal_health() -> dict:
    return {"status": "ok", "subsystem": "internal"}


@router.post("/purge-usage")
def purge_usage(services: Services = Depends(get_services)) -> dict:
    """Drop usage counters and cooldowns whose window has closed."""
    now = services.clock()
    removed = services.governor.purge_expired(now)
    return {"status": "ok", "removed": removed, "asOf": isoformat(now)}
