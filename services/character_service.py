"""
Character service: sanitize incoming character sheets

Every numeric field is coerced and clamped, every text field truncated.
Garbage never raises; it falls back to the field's default.
"""
from typing import Any, Dict, Optional

from models import AbilityScores, CharacterSheet, utcnow_iso
from services.naming_service import clean_text, sanitize_name

ABILITIES = ("STR", "DEX", "CON", "INT", "WIS", "CHA")


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def to_int(value: Any, default: int) -> int:
    """Lenient int coercion; garbage and booleans fall back to default"""
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return parsed


def clamped(value: Any, default: int, low: int, high: int) -> int:
    return clamp(to_int(value, default), low, high)


def sanitize_sheet(sheet: Optional[Dict[str, Any]], name: str) -> CharacterSheet:
    """
    Build a CharacterSheet from an untrusted dict

    Args:
        sheet: raw payload from the client (may be None or partial)
        name: already-resolved sheet key (the owner's name or a GM target)

    Accepts both the wire names (armorClass, hitPoints, maxHitPoints,
    proficiencies) and the short legacy names (ac, hp, maxHp, profs).
    """
    sheet = sheet or {}
    raw_abilities = sheet.get("abilities") or {}
    if not isinstance(raw_abilities, dict):
        raw_abilities = {}

    def pick(*keys):
        for key in keys:
            if key in sheet and sheet[key] is not None:
                return sheet[key]
        return None

    abilities = AbilityScores(**{
        ability: clamped(raw_abilities.get(ability), 8, 1, 30) for ability in ABILITIES
    })

    return CharacterSheet(
        name=sanitize_name(name),
        archetype=clean_text(pick("archetype"), 20),
        race=clean_text(pick("race"), 20),
        class_=clean_text(pick("class", "class_"), 24),
        level=clamped(pick("level"), 1, 1, 20),
        armor_class=clamped(pick("armorClass", "ac"), 10, 1, 30),
        hit_points=clamped(pick("hitPoints", "hp"), 10, 0, 1000),
        max_hit_points=clamped(pick("maxHitPoints", "maxHp"), 10, 1, 1000),
        speed=clamped(pick("speed"), 30, 0, 120),
        proficiencies=clean_text(pick("proficiencies", "profs"), 200),
        traits=clean_text(pick("traits"), 800),
        notes=clean_text(pick("notes"), 2000),
        abilities=abilities,
        updated_at=utcnow_iso(),
    )
