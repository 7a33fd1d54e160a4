from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Dict, Iterable, List, Sequence

from ..errors import DirectoryVersionConflict, InvalidRequest
from ..models import BookingType, Candidate, Role
from .assignment import MappingRule
from .candidate_filter import parse_languages
from .location import expand_location_labels

logger = logging.getLogger(__name__)

_ROLE_KEYS = {
    Role.TRAINER: "trainers",
    Role.INSTALLER: "installers",
    Role.EXTERNAL_VENDOR: "vendors",
}


def candidate_from_entry(entry: Dict[str, Any], role: Role) -> Candidate:
    email = str(entry.get("email") or "").strip().lower()
    name = str(entry.get("name") or "").strip()
    if not email or not name:
        raise InvalidRequest("personnel entries need a name and an email")
    locations = entry.get("locations")
    if locations is None:
        locations = entry.get("location") or []
    if isinstance(locations, str):
        locations = [locations]
    active = entry.get("active", entry.get("isActive", True))
    return Candidate(
        person_id=str(entry.get("id") or email),
        name=name,
        email=email,
        role=role,
        locations=expand_location_labels(locations),
        languages=parse_languages(entry.get("languages")),
        calendar_id=entry.get("calendar_id") or entry.get("calendarId") or None,
        active=bool(active),
    )


def candidate_to_entry(candidate: Candidate) -> Dict[str, Any]:
    return {
        "id": candidate.person_id,
        "name": candidate.name,
        "email": candidate.email,
        "locations": sorted(loc.value for loc in candidate.locations),
        "languages": sorted(candidate.languages),
        "calendar_id": candidate.calendar_id,
        "active": candidate.active,
    }


def rule_from_entry(entry: Dict[str, Any]) -> MappingRule:
    assignee = str(entry.get("assignee_email") or entry.get("trainerEmail") or "").strip()
    if not assignee:
        raise InvalidRequest("mapping rules need an assignee_email")
    booking_type = entry.get("booking_type")
    return MappingRule(
        assignee_email=assignee.lower(),
        merchant_id=entry.get("merchant_id") or entry.get("merchantId"),
        merchant_name=entry.get("merchant_name") or entry.get("merchantName"),
        merchant_name_pattern=entry.get("merchant_name_pattern")
        or entry.get("merchantNamePattern"),
        booking_type=BookingType(booking_type) if booking_type else None,
    )


def rule_to_entry(rule: MappingRule) -> Dict[str, Any]:
    return {
        "assignee_email": rule.assignee_email,
        "merchant_id": rule.merchant_id,
        "merchant_name": rule.merchant_name,
        "merchant_name_pattern": rule.merchant_name_pattern,
        "booking_type": rule.booking_type.value if rule.booking_type else None,
    }


@dataclass(frozen=True)
class DirectorySnapshot:
    version: int
    people: Dict[Role, tuple[Candidate, ...]]
    mapping_rules: tuple[MappingRule, ...] = ()

    def candidates(self, role: Role) -> List[Candidate]:
        return list(self.people.get(role, ()))

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"version": self.version}
        for role, key in _ROLE_KEYS.items():
            document[key] = [candidate_to_entry(c) for c in self.people.get(role, ())]
        document["mapping_rules"] = [rule_to_entry(r) for r in self.mapping_rules]
        return document


def snapshot_from_document(document: Dict[str, Any]) -> DirectorySnapshot:
    people = {
        role: tuple(candidate_from_entry(e, role) for e in document.get(key) or [])
        for role, key in _ROLE_KEYS.items()
    }
    rules = tuple(rule_from_entry(e) for e in document.get("mapping_rules") or [])
    return DirectorySnapshot(
        version=int(document.get("version") or 0), people=people, mapping_rules=rules
    )


class PersonnelDirectory:
    """Versioned, read-on-demand view of trainers, installers and vendors.

    Reads hand out immutable snapshots. The JSON file is re-read when its
    modification time changes. Writes go through ``apply_update`` which
    rejects updates made against a stale version instead of overwriting.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        document: Dict[str, Any] | None = None,
    ) -> None:
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._mtime: float | None = None
        self._snapshot = snapshot_from_document(document or {})

    def _load_locked(self) -> DirectorySnapshot:
        if self._path is None or not self._path.exists():
            return self._snapshot
        mtime = self._path.stat().st_mtime
        if self._mtime is not None and mtime == self._mtime:
            return self._snapshot
        with self._path.open("r", encoding="utf-8") as fh:
            document = json.load(fh)
        self._snapshot = snapshot_from_document(document)
        self._mtime = mtime
        logger.info(
            "personnel_directory_loaded",
            extra={"path": str(self._path), "version": self._snapshot.version},
        )
        return self._snapshot

    def snapshot(self) -> DirectorySnapshot:
        with self._lock:
            return self._load_locked()

    def list_candidates(self, role: Role) -> List[Candidate]:
        return self.snapshot().candidates(role)

    def mapping_rules(self) -> List[MappingRule]:
        return list(self.snapshot().mapping_rules)

    def apply_update(
        self,
        expected_version: int,
        *,
        people: Dict[Role, Sequence[Candidate]] | None = None,
        mapping_rules: Iterable[MappingRule] | None = None,
    ) -> DirectorySnapshot:
        """Replace roles and/or mapping rules if the version still matches."""
        with self._lock:
            current = self._load_locked()
            if current.version != expected_version:
                raise DirectoryVersionConflict(expected_version, current.version)
            merged = dict(current.people)
            for role, candidates in (people or {}).items():
                merged[role] = tuple(candidates)
            updated = DirectorySnapshot(
                version=current.version + 1,
                people=merged,
                mapping_rules=(
                    tuple(mapping_rules)
                    if mapping_rules is not None
                    else current.mapping_rules
                ),
            )
            if self._path is not None:
                self._write_locked(updated.to_document())
            self._snapshot = updated
            logger.info(
                "personnel_directory_updated", extra={"version": updated.version}
            )
            return updated

    def _write_locked(self, document: Dict[str, Any]) -> None:
        assert self._path is not None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
            os.replace(tmp_name, self._path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._mtime = self._path.stat().st_mtime
