from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Optional

CALENDAR_PROVIDER = "calendar"


@dataclass
class OAuthToken:
    """Access credential a person granted for their calendar.

    How the token was obtained is outside this service. The Google adapter
    refreshes it once ``expires_at`` has passed.
    """

    subject: str  # person email
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds


def _normalize(person_email: str) -> str:
    return (person_email or "").strip().lower()


class InMemoryOAuthStore:
    """Lightweight per-provider token store keyed by person email."""

    def __init__(self) -> None:
        self._tokens: Dict[tuple[str, str], OAuthToken] = {}

    def save_tokens(
        self,
        provider: str,
        person_email: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = 3600,
    ) -> OAuthToken:
        key = _normalize(person_email)
        tok = OAuthToken(
            subject=key,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=time.time() + expires_in if expires_in else None,
        )
        self._tokens[(provider, key)] = tok
        return tok

    def get_tokens(self, provider: str, person_email: str) -> Optional[OAuthToken]:
        return self._tokens.get((provider, _normalize(person_email)))


oauth_store = InMemoryOAuthStore()
