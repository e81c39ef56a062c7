from __future__ import annotations

from typing import Dict, Optional

DEFAULT_ROOM_TYPE = "General"

# canonical key (what bed rates are stored under) -> spellings seen on room masters
_CANONICAL = {
    "General": ("general", "general ward", "gen", "gw"),
    "Semi Private": ("semi private", "semi-private", "semiprivate"),
    "Private": ("private", "private ward", "pvt"),
    "Deluxe": ("deluxe", "delux", "dlx"),
    "ICU": ("icu", "icu ward", "intensive care", "intensive care unit"),
    "NICU": ("nicu", ),
    "PICU": ("picu", ),
    "HDU": ("hdu", ),
    "Isolation": ("isolation", "isolation ward"),
}

ROOM_TYPE_ALIASES: Dict[str, str] = {
    alias: canonical
    for canonical, aliases in _CANONICAL.items() for alias in aliases
}


def normalize_room_type(raw: Optional[str]) -> str:
    """
    Map a free-text room type to its rate key. Whitespace is collapsed and
    case ignored; unknown types come back title-cased so they stay stable.
    """
    text = " ".join((raw or "").split())
    if not text:
        return DEFAULT_ROOM_TYPE
    return ROOM_TYPE_ALIASES.get(text.lower(), text.title())
