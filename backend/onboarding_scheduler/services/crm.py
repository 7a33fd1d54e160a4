from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
import re
from typing import Any, Dict, Protocol
from zoneinfo import ZoneInfo

import httpx

from ..config import CrmSettings
from ..errors import InvalidRequest, MerchantNotFound
from ..models import BookingFields, BookingType, MerchantRecord

logger = logging.getLogger(__name__)

SOBJECT = "Onboarding_Trainer__c"

# Booking columns per booking type on the merchant's onboarding record.
BOOKING_FIELD_MAP: Dict[BookingType, Dict[str, str]] = {
    BookingType.TRAINING: {
        "date": "Training_Date__c",
        "assignee": "Trainer_Email__c",
        "event_id": "Training_Event_Id__c",
        "status": "Training_Status__c",
    },
    BookingType.INSTALLATION: {
        "date": "Installation_Date__c",
        "assignee": "Assigned_Installer__c",
        "event_id": "Installation_Event_Id__c",
        "status": "Hardware_Installation_Status__c",
    },
}

MERCHANT_FIELDS = (
    "Id",
    "Name",
    "Shipping_Street__c",
    "Shipping_City__c",
    "Shipping_State__c",
    "Preferred_Language__c",
    "Onboarding_Services_Bought__c",
    "Required_Features_by_Merchant__c",
    "Operation_Manager_Contact__r.Name",
    "Merchant_PIC_Name__c",
    "Merchant_PIC_Contact_Number__c",
    "Email__c",
)

_RECORD_ID_RE = re.compile(r"^[A-Za-z0-9]{15}(?:[A-Za-z0-9]{3})?$")


class CrmStoreError(Exception):
    """The CRM could not be read or written."""


class CrmRecordStore(Protocol):
    async def read_merchant(self, merchant_id: str) -> MerchantRecord: ...

    async def read_booking_fields(
        self, merchant_id: str, booking_type: BookingType
    ) -> BookingFields: ...

    async def write_booking_fields(
        self, merchant_id: str, booking_type: BookingType, fields: BookingFields
    ) -> None: ...


class InMemoryCrmStore:
    """CRM stand-in used in memory mode and tests."""

    def __init__(self) -> None:
        self._merchants: Dict[str, MerchantRecord] = {}
        self._fields: Dict[tuple[str, BookingType], BookingFields] = {}

    def upsert_merchant(self, merchant: MerchantRecord) -> MerchantRecord:
        self._merchants[merchant.merchant_id] = merchant
        return merchant

    def clear(self) -> None:
        self._merchants.clear()
        self._fields.clear()

    async def read_merchant(self, merchant_id: str) -> MerchantRecord:
        merchant = self._merchants.get(merchant_id)
        if merchant is None:
            raise MerchantNotFound(merchant_id)
        return merchant

    async def read_booking_fields(
        self, merchant_id: str, booking_type: BookingType
    ) -> BookingFields:
        if merchant_id not in self._merchants:
            raise MerchantNotFound(merchant_id)
        return replace(self._fields.get((merchant_id, booking_type), BookingFields()))

    async def write_booking_fields(
        self, merchant_id: str, booking_type: BookingType, fields: BookingFields
    ) -> None:
        if merchant_id not in self._merchants:
            raise MerchantNotFound(merchant_id)
        self._fields[(merchant_id, booking_type)] = replace(fields)


def _join_address(*parts: str | None) -> str | None:
    cleaned = [p.strip() for p in parts if p and p.strip()]
    return ", ".join(cleaned) if cleaned else None


class SalesforceCrmStore:
    """Salesforce REST adapter for the merchant onboarding record."""

    def __init__(
        self,
        settings: CrmSettings,
        *,
        timezone: str = "Asia/Singapore",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._tz = ZoneInfo(timezone)
        self._transport = transport

    @property
    def _base_url(self) -> str:
        instance = (self._settings.instance_url or "").rstrip("/")
        return f"{instance}/services/data/{self._settings.api_version}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._settings.timeout_seconds,
            headers={"Authorization": f"Bearer {self._settings.access_token}"},
            transport=self._transport,
        )

    @staticmethod
    def _check_id(merchant_id: str) -> str:
        if not _RECORD_ID_RE.match(merchant_id or ""):
            raise InvalidRequest(f"Invalid merchant id {merchant_id!r}")
        return merchant_id

    async def _query_one(self, merchant_id: str, fields: tuple[str, ...]) -> Dict[str, Any]:
        soql = (
            f"SELECT {', '.join(fields)} FROM {SOBJECT} "
            f"WHERE Id = '{self._check_id(merchant_id)}' LIMIT 1"
        )
        try:
            async with self._client() as client:
                resp = await client.get("/query", params={"q": soql})
        except httpx.HTTPError as exc:
            raise CrmStoreError(f"salesforce_query_failed: {exc}") from exc
        if resp.status_code != 200:
            logger.warning(
                "salesforce_query_failed",
                extra={"merchant_id": merchant_id, "status": resp.status_code},
            )
            raise CrmStoreError(f"salesforce_query_status_{resp.status_code}")
        records = resp.json().get("records") or []
        if not records:
            raise MerchantNotFound(merchant_id)
        return records[0]

    async def read_merchant(self, merchant_id: str) -> MerchantRecord:
        row = await self._query_one(merchant_id, MERCHANT_FIELDS)
        owner = row.get("Operation_Manager_Contact__r") or {}
        return MerchantRecord(
            merchant_id=row.get("Id") or merchant_id,
            name=row.get("Name") or "",
            address=_join_address(
                row.get("Shipping_Street__c"),
                row.get("Shipping_City__c"),
                row.get("Shipping_State__c"),
            ),
            language=row.get("Preferred_Language__c"),
            services_bought=row.get("Onboarding_Services_Bought__c"),
            required_features=row.get("Required_Features_by_Merchant__c"),
            account_owner=owner.get("Name"),
            contact_name=row.get("Merchant_PIC_Name__c"),
            contact_phone=row.get("Merchant_PIC_Contact_Number__c"),
            email=row.get("Email__c"),
        )

    async def read_booking_fields(
        self, merchant_id: str, booking_type: BookingType
    ) -> BookingFields:
        mapping = BOOKING_FIELD_MAP[booking_type]
        row = await self._query_one(merchant_id, ("Id", *mapping.values()))
        raw_date = row.get(mapping["date"])
        parsed = None
        if raw_date:
            try:
                parsed = datetime.fromisoformat(str(raw_date).replace("Z", "+00:00"))
            except ValueError:
                logger.warning(
                    "salesforce_date_unparseable",
                    extra={"merchant_id": merchant_id, "value": raw_date},
                )
            else:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=self._tz)
        return BookingFields(
            date=parsed,
            assignee=row.get(mapping["assignee"]),
            event_id=row.get(mapping["event_id"]),
            status=row.get(mapping["status"]),
        )

    async def write_booking_fields(
        self, merchant_id: str, booking_type: BookingType, fields: BookingFields
    ) -> None:
        mapping = BOOKING_FIELD_MAP[booking_type]
        body = {
            mapping["date"]: fields.date.isoformat() if fields.date else None,
            mapping["assignee"]: fields.assignee,
            mapping["event_id"]: fields.event_id,
            mapping["status"]: fields.status,
        }
        path = f"/sobjects/{SOBJECT}/{self._check_id(merchant_id)}"
        try:
            async with self._client() as client:
                resp = await client.patch(path, json=body)
        except httpx.HTTPError as exc:
            raise CrmStoreError(f"salesforce_update_failed: {exc}") from exc
        if resp.status_code == 404:
            raise MerchantNotFound(merchant_id)
        if resp.status_code not in (200, 204):
            logger.warning(
                "salesforce_update_failed",
                extra={
                    "merchant_id": merchant_id,
                    "status": resp.status_code,
                    "body": resp.text[:500],
                },
            )
            raise CrmStoreError(f"salesforce_update_status_{resp.status_code}")


def build_crm_store(settings: CrmSettings, timezone: str = "Asia/Singapore") -> CrmRecordStore:
    if settings.backend == "salesforce":
        return SalesforceCrmStore(settings, timezone=timezone)
    return InMemoryCrmStore()
