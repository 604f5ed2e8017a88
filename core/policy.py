"""
Authorization policy table

Every inbound action and every chat command maps to a Policy. The
dispatcher calls authorize() once, before the handler runs; handlers do
not repeat role checks. Checks that depend on the target object (token
owner, character owner, changing an existing password) stay with the
engine that owns that object.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from core.exceptions import LobbyLocked, NotAuthorized
from models import Lobby


class Role(str, Enum):
    ANY = "any"
    GM = "gm"


@dataclass(frozen=True)
class Policy:
    role: Role = Role.ANY
    # subject to the locked-until-start rule for non-GM members
    lockable: bool = False


OPEN = Policy()
GM_ONLY = Policy(role=Role.GM)
LOCKABLE = Policy(lockable=True)


ACTION_POLICIES: Dict[str, Policy] = {
    "chat": LOCKABLE,
    "roll": LOCKABLE,
    "character_upsert": OPEN,
    "character_delete": OPEN,
    "map_request": OPEN,
    "map_init": GM_ONLY,
    "map_set": GM_ONLY,
    "map_clear": GM_ONLY,
    "token_add": LOCKABLE,
    "token_move": LOCKABLE,
    "token_remove": LOCKABLE,
    "ping": LOCKABLE,
    "campaign_load": GM_ONLY,
    "campaign_get": OPEN,
    "campaign_start": GM_ONLY,
    "campaign_update_meta": GM_ONLY,
    "campaign_scene_add": GM_ONLY,
    "campaign_scene_set": GM_ONLY,
    "campaign_choice_add": GM_ONLY,
    "campaign_handout_add": GM_ONLY,
    "campaign_quest_add": GM_ONLY,
    "campaign_quest_toggle": GM_ONLY,
    "campaign_note_add": OPEN,
    "campaign_choice_request": GM_ONLY,
    "campaign_choice_ack": OPEN,
    "campaign_choice_force": GM_ONLY,
    "settings_update": GM_ONLY,
}

COMMAND_POLICIES: Dict[str, Policy] = {
    "help": OPEN,
    "me": OPEN,
    "w": OPEN,
    "roll": OPEN,
    "macro": OPEN,
    "setpass": OPEN,
    "kick": GM_ONLY,
    "ban": GM_ONLY,
    "unban": GM_ONLY,
    "startencounter": GM_ONLY,
    "setinit": GM_ONLY,
    "next": GM_ONLY,
    "endencounter": GM_ONLY,
    "camp": GM_ONLY,
    "scene": GM_ONLY,
    "start": GM_ONLY,
    "force": GM_ONLY,
    "lock": GM_ONLY,
    "load": GM_ONLY,
}


def authorize(lobby: Lobby, name: Optional[str], policy: Policy) -> None:
    """
    Raises:
        NotAuthorized: GM-only action by a non-GM
        LobbyLocked: lockable action by a non-GM before campaign start
    """
    if policy.role is Role.GM and not lobby.is_gm(name):
        raise NotAuthorized("GM only.")
    if policy.lockable and lobby.is_locked_for(name):
        raise LobbyLocked()
