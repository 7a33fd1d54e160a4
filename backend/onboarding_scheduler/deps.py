from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from .config import get_settings
from .services.personnel import PersonnelDirectory
from .services.scheduling import SchedulingService, build_scheduling_service


@lru_cache(maxsize=1)
def get_scheduling_service() -> SchedulingService:
    """Process-wide scheduling service built from the environment.

    Tests replace it through ``app.dependency_overrides``.
    """
    return build_scheduling_service(get_settings())


def get_directory(
    service: SchedulingService = Depends(get_scheduling_service),
) -> PersonnelDirectory:
    return service.directory


async def require_admin_auth(
    x_admin_api_key: str | None = Header(default=None, alias="X-Admin-API-Key"),
) -> None:
    """Guard personnel directory writes.

    - If ADMIN_API_KEY is not set, writes are open (development mode).
    - If ADMIN_API_KEY is set, callers must send a matching X-Admin-API-Key
      header or receive 401 Unauthorized.
    """
    expected = get_settings().admin_api_key
    if not expected:
        return
    if x_admin_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
