from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Pattern

from ..models import LocationCategory

logger = logging.getLogger(__name__)

# Recognized Malaysian states/territories with the aliases merchants use
# in shipping addresses (city names included where they pin the state).
STATE_ALIASES: Dict[LocationCategory, tuple[str, ...]] = {
    LocationCategory.KUALA_LUMPUR: (
        "kuala lumpur",
        "kl",
        "k.l",
        "wilayah persekutuan kuala lumpur",
        "wp kuala lumpur",
    ),
    LocationCategory.SELANGOR: (
        "selangor",
        "selangor darul ehsan",
        "petaling jaya",
        "pj",
        "subang",
        "subang jaya",
        "shah alam",
        "klang",
        "puchong",
        "ampang",
        "cheras",
    ),
    LocationCategory.PENANG: (
        "penang",
        "pulau pinang",
        "p. pinang",
        "georgetown",
        "george town",
        "butterworth",
        "balik pulau",
    ),
    LocationCategory.JOHOR: ("johor", "johor bahru", "jb", "j.b", "johor darul takzim"),
    LocationCategory.PERAK: ("perak", "perak darul ridzuan", "ipoh"),
    LocationCategory.KEDAH: ("kedah", "kedah darul aman", "alor setar"),
    LocationCategory.KELANTAN: ("kelantan", "kelantan darul naim", "kota bharu"),
    LocationCategory.TERENGGANU: (
        "terengganu",
        "terengganu darul iman",
        "kuala terengganu",
    ),
    LocationCategory.PAHANG: ("pahang", "pahang darul makmur", "kuantan"),
    LocationCategory.NEGERI_SEMBILAN: (
        "negeri sembilan",
        "n. sembilan",
        "negeri sembilan darul khusus",
        "seremban",
    ),
    LocationCategory.MELAKA: ("melaka", "malacca"),
    LocationCategory.SABAH: ("sabah", "kota kinabalu"),
    LocationCategory.SARAWAK: ("sarawak", "kuching"),
    LocationCategory.PERLIS: ("perlis", "kangar"),
    LocationCategory.PUTRAJAYA: (
        "putrajaya",
        "wilayah persekutuan putrajaya",
        "wp putrajaya",
    ),
    LocationCategory.LABUAN: ("labuan", "wilayah persekutuan labuan", "wp labuan"),
}

KLANG_VALLEY = frozenset(
    {
        LocationCategory.KUALA_LUMPUR,
        LocationCategory.SELANGOR,
        LocationCategory.PUTRAJAYA,
    }
)

_INTERNAL_STATES = frozenset(STATE_ALIASES)

# Service-region labels used by the personnel directory.
REGION_LABELS: Dict[str, frozenset[LocationCategory]] = {
    "within klang valley": KLANG_VALLEY,
    "klang valley": KLANG_VALLEY,
    "klangvalley": KLANG_VALLEY,
    "penang": frozenset({LocationCategory.PENANG}),
    "johor bahru": frozenset({LocationCategory.JOHOR}),
    "johorbahru": frozenset({LocationCategory.JOHOR}),
    "outside of klang valley": _INTERNAL_STATES - KLANG_VALLEY,
}


def _alias_pattern(alias: str) -> Pattern[str]:
    # Word boundaries stop short aliases ("kl", "pj") matching inside words.
    return re.compile(r"(?<![a-z0-9])" + re.escape(alias) + r"(?![a-z0-9])")


_PATTERNS: Dict[LocationCategory, tuple[Pattern[str], ...]] = {
    state: tuple(_alias_pattern(alias) for alias in aliases)
    for state, aliases in STATE_ALIASES.items()
}


def categorize_address(address: str | None) -> frozenset[LocationCategory]:
    """Return every state named in a free-text address.

    An address that names no recognized state yields ``{EXTERNAL}``.
    """
    text = " ".join((address or "").casefold().split())
    if not text:
        return frozenset({LocationCategory.EXTERNAL})
    matched = {
        state
        for state, patterns in _PATTERNS.items()
        if any(pattern.search(text) for pattern in patterns)
    }
    if not matched:
        return frozenset({LocationCategory.EXTERNAL})
    return frozenset(matched)


def expand_location_labels(labels: Iterable[str]) -> frozenset[LocationCategory]:
    """Map directory location labels (regions or state names) to states."""
    result: set[LocationCategory] = set()
    for label in labels:
        key = " ".join(str(label).casefold().split())
        if not key:
            continue
        if key in REGION_LABELS:
            result |= REGION_LABELS[key]
            continue
        states = categorize_address(key)
        if LocationCategory.EXTERNAL in states:
            logger.warning("unknown_location_label", extra={"label": label})
            continue
        result |= states
    return frozenset(result)
