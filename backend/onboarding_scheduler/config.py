from __future__ import annotations

import os
import re
from functools import lru_cache
import logging

from pydantic import BaseModel


_SLOT_SPEC_RE = re.compile(r"^\s*\d{1,2}:\d{2}\s*-\s*\d{1,2}:\d{2}\s*$")


class CalendarSettings(BaseModel):
    backend: str = "stub"  # "stub" or "google"
    google_client_id: str | None = None
    google_client_secret: str | None = None
    token_uri: str = "https://oauth2.googleapis.com/token"
    request_timeout_seconds: float = 8.0
    read_attempts: int = 3
    delete_attempts: int = 3
    retry_backoff_seconds: float = 0.2


class CrmSettings(BaseModel):
    backend: str = "memory"  # "memory" or "salesforce"
    instance_url: str | None = None
    access_token: str | None = None
    api_version: str = "v59.0"
    timeout_seconds: float = 10.0


class SchedulingSettings(BaseModel):
    timezone: str = "Asia/Singapore"
    training_slots: str = "10:00-11:30,13:30-15:00,16:00-17:30"
    installation_slots: str = "10:00-11:00,12:00-13:00,14:30-15:30,17:00-18:00"
    # Replaces the last training slot for merchants that bought the
    # features listed below.
    extended_slot: str = "16:00-18:00"
    extended_features: str = "membership,engage,composite,superbundle"
    max_range_days: int = 31


class DirectorySettings(BaseModel):
    path: str | None = None


class AppSettings(BaseModel):
    calendar: CalendarSettings = CalendarSettings()
    crm: CrmSettings = CrmSettings()
    scheduling: SchedulingSettings = SchedulingSettings()
    directory: DirectorySettings = DirectorySettings()
    admin_api_key: str | None = None
    environment: str = "dev"

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        raw_timeout = os.getenv("CALENDAR_TIMEOUT_SECONDS", "8")
        try:
            calendar_timeout = float(raw_timeout)
        except ValueError:
            calendar_timeout = 8.0
        raw_attempts = os.getenv("CALENDAR_READ_ATTEMPTS", "3")
        try:
            read_attempts = max(1, int(raw_attempts))
        except ValueError:
            read_attempts = 3
        raw_delete_attempts = os.getenv("CALENDAR_DELETE_ATTEMPTS", "3")
        try:
            delete_attempts = max(1, int(raw_delete_attempts))
        except ValueError:
            delete_attempts = 3

        calendar = CalendarSettings(
            backend=os.getenv("CALENDAR_BACKEND", "stub").lower(),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            token_uri=os.getenv(
                "GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token"
            ),
            request_timeout_seconds=calendar_timeout,
            read_attempts=read_attempts,
            delete_attempts=delete_attempts,
            retry_backoff_seconds=float(
                os.getenv("CALENDAR_RETRY_BACKOFF_SECONDS") or "0.2"
            ),
        )
        crm = CrmSettings(
            backend=os.getenv("CRM_BACKEND", "memory").lower(),
            instance_url=os.getenv("SALESFORCE_INSTANCE_URL"),
            access_token=os.getenv("SALESFORCE_ACCESS_TOKEN"),
            api_version=os.getenv("SALESFORCE_API_VERSION", "v59.0"),
            timeout_seconds=float(os.getenv("SALESFORCE_TIMEOUT_SECONDS") or "10"),
        )
        scheduling = SchedulingSettings(
            timezone=os.getenv("BUSINESS_TIMEZONE", "Asia/Singapore"),
            training_slots=os.getenv(
                "TRAINING_SLOTS", "10:00-11:30,13:30-15:00,16:00-17:30"
            ),
            installation_slots=os.getenv(
                "INSTALLATION_SLOTS", "10:00-11:00,12:00-13:00,14:30-15:30,17:00-18:00"
            ),
            extended_slot=os.getenv("EXTENDED_TRAINING_SLOT", "16:00-18:00"),
            extended_features=os.getenv(
                "EXTENDED_TRAINING_FEATURES", "membership,engage,composite,superbundle"
            ),
            max_range_days=int(os.getenv("AVAILABILITY_MAX_RANGE_DAYS") or "31"),
        )
        directory = DirectorySettings(path=os.getenv("PERSONNEL_DIRECTORY_PATH"))
        return cls(
            calendar=calendar,
            crm=crm,
            scheduling=scheduling,
            directory=directory,
            admin_api_key=os.getenv("ADMIN_API_KEY"),
            environment=os.getenv("ENVIRONMENT", "dev").lower(),
        )

    def validate_combinations(self) -> None:
        """Log a configuration_warning for each inconsistent or unparseable setting."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if self.calendar.backend not in {"stub", "google"}:
            warnings.append(
                f"Unknown CALENDAR_BACKEND {self.calendar.backend!r}; using stub."
            )
        if self.calendar.backend == "google" and not (
            self.calendar.google_client_id and self.calendar.google_client_secret
        ):
            warnings.append(
                "Google calendar backend requires GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
        if self.crm.backend not in {"memory", "salesforce"}:
            warnings.append(f"Unknown CRM_BACKEND {self.crm.backend!r}; using memory.")
        if self.crm.backend == "salesforce" and not (
            self.crm.instance_url and self.crm.access_token
        ):
            warnings.append(
                "Salesforce backend requires SALESFORCE_INSTANCE_URL and SALESFORCE_ACCESS_TOKEN."
            )
        if self.environment in {"prod", "production"} and not self.admin_api_key:
            warnings.append("ADMIN_API_KEY missing in prod; personnel updates are open.")
        for name in ("training_slots", "installation_slots", "extended_slot"):
            raw = getattr(self.scheduling, name)
            for part in raw.split(","):
                if part.strip() and not _SLOT_SPEC_RE.match(part):
                    warnings.append(f"Invalid slot definition {part!r} in {name}.")
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Process-wide settings, validated once on first use."""
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
