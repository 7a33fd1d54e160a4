from __future__ import annotations

from typing import Any, Dict

import pytest

from onboarding_scheduler import deps
from onboarding_scheduler.config import AppSettings, CalendarSettings, get_settings
from onboarding_scheduler.metrics import metrics
from onboarding_scheduler.models import MerchantRecord
from onboarding_scheduler.services.booking_events import booking_events
from onboarding_scheduler.services.calendar import InMemoryCalendarProvider
from onboarding_scheduler.services.crm import InMemoryCrmStore
from onboarding_scheduler.services.oauth_tokens import CALENDAR_PROVIDER, oauth_store
from onboarding_scheduler.services.personnel import PersonnelDirectory
from onboarding_scheduler.services.scheduling import build_scheduling_service


def directory_document() -> Dict[str, Any]:
    return {
        "version": 1,
        "trainers": [
            {
                "id": "alice",
                "name": "Alice Tan",
                "email": "alice@example.com",
                "locations": ["Within Klang Valley"],
                "languages": ["English", "Malay"],
            },
            {
                "id": "bob",
                "name": "Bob Lim",
                "email": "bob@example.com",
                "locations": ["Selangor"],
                "languages": ["Chinese", "English"],
            },
            {
                "id": "carol",
                "name": "Carol Ng",
                "email": "carol@example.com",
                "locations": ["Penang"],
                "languages": ["English"],
            },
        ],
        "installers": [
            {
                "id": "ivan",
                "name": "Ivan Raj",
                "email": "ivan@example.com",
                "locations": ["Klang Valley"],
            },
            {
                "id": "ian",
                "name": "Ian Goh",
                "email": "ian@example.com",
                "locations": ["Penang"],
            },
        ],
        "vendors": [
            {
                "id": "vendor-east",
                "name": "East Coast Installs",
                "email": "ops@eastcoast.example.com",
                "locations": ["Outside of Klang Valley"],
            }
        ],
        "mapping_rules": [],
    }


@pytest.fixture(autouse=True)
def _isolate_global_state():
    oauth_store._tokens.clear()  # type: ignore[attr-defined]
    metrics.reset()
    booking_events.clear()
    get_settings.cache_clear()
    deps.get_scheduling_service.cache_clear()
    yield
    oauth_store._tokens.clear()  # type: ignore[attr-defined]
    metrics.reset()
    booking_events.clear()
    get_settings.cache_clear()
    deps.get_scheduling_service.cache_clear()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(calendar=CalendarSettings(retry_backoff_seconds=0.0))


@pytest.fixture
def provider() -> InMemoryCalendarProvider:
    return InMemoryCalendarProvider()


@pytest.fixture
def crm() -> InMemoryCrmStore:
    store = InMemoryCrmStore()
    store.upsert_merchant(
        MerchantRecord(
            merchant_id="m-sel",
            name="Kopi Corner",
            address="12 Jalan SS2/24, Petaling Jaya, Selangor",
            language="English",
            services_bought="Onsite Training",
        )
    )
    store.upsert_merchant(
        MerchantRecord(
            merchant_id="m-remote",
            name="Noodle Bar",
            address="3 Lebuh Chulia, George Town, Penang",
            language="Chinese",
            services_bought="Remote Training",
        )
    )
    store.upsert_merchant(
        MerchantRecord(
            merchant_id="m-kuching",
            name="Borneo Bakes",
            address="8 Jalan Padungan, Kuching, Sarawak",
            services_bought="Onsite Training",
        )
    )
    return store


@pytest.fixture
def personnel_document() -> Dict[str, Any]:
    return directory_document()


@pytest.fixture
def directory(personnel_document) -> PersonnelDirectory:
    return PersonnelDirectory(document=personnel_document)


@pytest.fixture
def authorize():
    def _authorize(*emails: str) -> None:
        for email in emails:
            oauth_store.save_tokens(CALENDAR_PROVIDER, email, f"token-{email}")

    return _authorize


@pytest.fixture
def service(settings, provider, crm, directory):
    return build_scheduling_service(
        settings,
        provider=provider,
        crm=crm,
        directory=directory,
        credentials=oauth_store,
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
