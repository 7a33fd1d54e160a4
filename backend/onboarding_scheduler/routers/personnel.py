from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import get_directory, require_admin_auth
from ..errors import DirectoryVersionConflict, InvalidRequest
from ..models import Role
from ..services.personnel import (
    PersonnelDirectory,
    candidate_from_entry,
    rule_from_entry,
)
from .bookings import http_error


router = APIRouter()
logger = logging.getLogger(__name__)


class PersonnelUpdateRequest(BaseModel):
    expected_version: int
    trainers: List[Dict[str, Any]] | None = None
    installers: List[Dict[str, Any]] | None = None
    vendors: List[Dict[str, Any]] | None = None
    mapping_rules: List[Dict[str, Any]] | None = None


@router.get("")
def get_personnel(
    directory: PersonnelDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    return directory.snapshot().to_document()


@router.put("", dependencies=[Depends(require_admin_auth)])
def update_personnel(
    payload: PersonnelUpdateRequest,
    directory: PersonnelDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    """Replace the given sections if ``expected_version`` is still current."""
    sections = {
        Role.TRAINER: payload.trainers,
        Role.INSTALLER: payload.installers,
        Role.EXTERNAL_VENDOR: payload.vendors,
    }
    try:
        people = {
            role: [candidate_from_entry(entry, role) for entry in entries]
            for role, entries in sections.items()
            if entries is not None
        }
        rules = (
            [rule_from_entry(entry) for entry in payload.mapping_rules]
            if payload.mapping_rules is not None
            else None
        )
        snapshot = directory.apply_update(
            payload.expected_version, people=people, mapping_rules=rules
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (DirectoryVersionConflict, InvalidRequest) as exc:
        logger.info(
            "personnel_update_rejected",
            extra={"expected_version": payload.expected_version, "code": exc.code},
        )
        raise http_error(exc) from exc
    return snapshot.to_document()
