from __future__ import annotations

import asyncio
import logging
from typing import Dict

from ..errors import IdentityNotFound
from ..metrics import metrics
from .calendar import CalendarProvider
from .oauth_tokens import CALENDAR_PROVIDER, InMemoryOAuthStore, OAuthToken

logger = logging.getLogger(__name__)


class CalendarIdentityResolver:
    """Resolve and cache the canonical calendar id for a person.

    Lookup order: process cache, the calendar id configured in the
    personnel directory, then the provider's primary calendar for the
    person's credential. Resolved ids are cached for the process lifetime.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        credentials: InMemoryOAuthStore,
        *,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._provider = provider
        self._credentials = credentials
        self._timeout = timeout_seconds
        self._cache: Dict[str, str] = {}

    def credential_for(self, person_email: str) -> OAuthToken:
        credential = self._credentials.get_tokens(CALENDAR_PROVIDER, person_email)
        if credential is None:
            metrics.identity_not_found += 1
            logger.info("identity_not_found", extra={"person_email": person_email})
            raise IdentityNotFound(person_email)
        return credential

    async def resolve(self, person_email: str, preferred: str | None = None) -> str:
        key = (person_email or "").strip().lower()
        cached = self._cache.get(key)
        if cached:
            return cached

        credential = self.credential_for(key)
        if preferred:
            calendar_id = preferred
        else:
            calendar_id = await asyncio.wait_for(
                self._provider.get_primary_calendar_id(credential),
                timeout=self._timeout,
            )
        self._cache[key] = calendar_id
        logger.info(
            "calendar_identity_resolved",
            extra={"person_email": key, "calendar_id": calendar_id},
        )
        return calendar_id

    def cached(self, person_email: str) -> str | None:
        return self._cache.get((person_email or "").strip().lower())

    def forget(self, person_email: str) -> None:
        self._cache.pop((person_email or "").strip().lower(), None)

    def clear(self) -> None:
        self._cache.clear()
