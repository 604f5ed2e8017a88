"""
Naming service: sanitize display names and resolve collisions

Pure computation, no lobby state changes.
"""
import secrets
from typing import Iterable, Optional

MAX_NAME_LENGTH = 24
MAX_LOBBY_NAME_LENGTH = 40
DEFAULT_NAME = "Anon"


def clean_text(value, max_length: int = 120) -> str:
    """str(), trim, truncate; None becomes an empty string"""
    if value is None:
        return ""
    return str(value).strip()[:max_length]


def sanitize_name(raw: Optional[str]) -> str:
    """
    Turn a user-supplied display name into a safe one

    Example:
        sanitize_name("  Rin  ")  ->  "Rin"
        sanitize_name("")         ->  "Anon"
    """
    return clean_text(raw, MAX_NAME_LENGTH) or DEFAULT_NAME


def sanitize_lobby_name(raw: Optional[str], default: str) -> str:
    return clean_text(raw, MAX_LOBBY_NAME_LENGTH) or default


def unique_display_name(taken: Iterable[str], candidate: str) -> str:
    """
    Return candidate, or candidate plus the smallest suffix >= 2 not taken

    Example:
        taken = {"Rin"}          ->  "Rin2"
        taken = {"Rin", "Rin2"}  ->  "Rin3"
    """
    taken = set(taken)
    if candidate not in taken:
        return candidate
    suffix = 2
    while f"{candidate}{suffix}" in taken:
        suffix += 1
    return f"{candidate}{suffix}"


def generate_id(prefix: str = "id") -> str:
    """
    Short random identifier for scenes, choices, tokens and quests

    Example: scn_k3j9x0a
    """
    return f"{prefix}_{secrets.token_hex(4)}"
