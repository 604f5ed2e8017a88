"""
Lobby session model

Authoritative in-memory state of one lobby. Every model serializes with
camelCase keys through to_wire(), which is exactly what clients receive.
"""
from datetime import datetime, timezone
import threading
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

OPEN = 0
WALL = 1

DEFAULT_MAP_SIZE = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ============ Log entries ============

class ChatEntry(WireModel):
    user: str
    text: str
    ts: str = Field(default_factory=utcnow_iso)


class RollEntry(WireModel):
    user: str
    expression: str
    rolls: List[int]
    used: List[int]
    modifier: int
    total: int
    ts: str = Field(default_factory=utcnow_iso)
    lobby: str


# ============ Characters ============

class AbilityScores(BaseModel):
    STR: int = 8
    DEX: int = 8
    CON: int = 8
    INT: int = 8
    WIS: int = 8
    CHA: int = 8


class CharacterSheet(WireModel):
    name: str
    archetype: str = ""
    race: str = ""
    class_: str = Field(default="", alias="class")
    level: int = 1
    armor_class: int = 10
    hit_points: int = 10
    max_hit_points: int = 10
    speed: int = 30
    proficiencies: str = ""
    traits: str = ""
    notes: str = ""
    abilities: AbilityScores = Field(default_factory=AbilityScores)
    updated_at: str = Field(default_factory=utcnow_iso)


# ============ Map ============

class Token(WireModel):
    id: str
    name: str
    x: int
    y: int
    color: str
    owner_name: str


class MapState(WireModel):
    width: int = DEFAULT_MAP_SIZE
    height: int = DEFAULT_MAP_SIZE
    tiles: List[List[int]] = Field(default_factory=lambda: blank_tiles(DEFAULT_MAP_SIZE, DEFAULT_MAP_SIZE))
    tokens: Dict[str, Token] = Field(default_factory=dict)

    def is_wall(self, x: int, y: int) -> bool:
        return self.tiles[y][x] == WALL

    def occupied(self, x: int, y: int) -> bool:
        return any(t.x == x and t.y == y for t in self.tokens.values())


def blank_tiles(width: int, height: int) -> List[List[int]]:
    return [[OPEN] * width for _ in range(height)]


# ============ Encounter ============

class InitiativeEntry(WireModel):
    name: str
    initiative: int


class EncounterState(WireModel):
    active: bool = False
    order: List[InitiativeEntry] = Field(default_factory=list)
    turn_index: int = 0


# ============ Campaign ============

class Choice(WireModel):
    id: str
    text: str
    target_scene_id: str = ""


class Scene(WireModel):
    id: str
    title: str
    content: str = ""
    choices: List[Choice] = Field(default_factory=list)

    def find_choice(self, choice_id: str) -> Optional[Choice]:
        return next((c for c in self.choices if c.id == choice_id), None)


class Handout(WireModel):
    id: str
    title: str
    content: str = ""


class Quest(WireModel):
    id: str
    title: str
    done: bool = False


class Note(WireModel):
    by: str
    text: str
    ts: str = Field(default_factory=utcnow_iso)


class Campaign(WireModel):
    key: Optional[str] = None
    title: str = ""
    summary: str = ""
    scenes: List[Scene] = Field(default_factory=list)
    current_scene_id: Optional[str] = None
    handouts: List[Handout] = Field(default_factory=list)
    quests: List[Quest] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)

    def find_scene(self, scene_id: Optional[str]) -> Optional[Scene]:
        if not scene_id:
            return None
        return next((s for s in self.scenes if s.id == scene_id), None)

    def current_scene(self) -> Optional[Scene]:
        return self.find_scene(self.current_scene_id)


# ============ Settings / consent ============

class ConsentRequest(WireModel):
    scene_id: str
    choice_id: str
    text: str
    target_scene_id: str
    requested_by: str
    approvals: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def approve(self, name: str) -> bool:
        """Record an approval; False when the name had already approved"""
        if name in self.approvals:
            return False
        self.approvals.append(name)
        return True


class LobbySettings(WireModel):
    locked_until_start: bool = False
    campaign_started: bool = False
    require_character: bool = False
    pending_consent: Optional[ConsentRequest] = None


# ============ Lobby ============

class Lobby(WireModel):
    """
    One lobby's complete state

    members maps connection id -> display name. Macros, characters and
    token ownership are keyed by display name so they survive reconnects.
    """
    name: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    gm: Optional[str] = None
    password_hash: Optional[str] = None
    banned_names: Set[str] = Field(default_factory=set)
    members: Dict[str, str] = Field(default_factory=dict)
    macros: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    chat_log: List[ChatEntry] = Field(default_factory=list)
    roll_log: List[RollEntry] = Field(default_factory=list)
    characters: Dict[str, CharacterSheet] = Field(default_factory=dict)
    encounter: EncounterState = Field(default_factory=EncounterState)
    map: MapState = Field(default_factory=MapState)
    campaign: Campaign = Field(default_factory=Campaign)
    settings: LobbySettings = Field(default_factory=LobbySettings)

    _lock: threading.RLock = PrivateAttr(default_factory=threading.RLock)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def touch(self) -> None:
        self.updated_at = utcnow()

    def is_gm(self, name: Optional[str]) -> bool:
        return name is not None and self.gm == name

    def member_names(self) -> List[str]:
        return list(self.members.values())

    def non_gm_members(self) -> List[str]:
        return [n for n in self.members.values() if n != self.gm]

    def connection_for(self, name: str) -> Optional[str]:
        return next((cid for cid, n in self.members.items() if n == name), None)

    def is_locked_for(self, name: Optional[str]) -> bool:
        """Lock rule: non-GM members are frozen until the campaign starts"""
        return (
            self.settings.locked_until_start
            and not self.settings.campaign_started
            and not self.is_gm(name)
        )

    def members_without_character(self) -> List[str]:
        return [n for n in self.members.values() if n not in self.characters]

    def history(self, limit: int) -> dict:
        if limit <= 0:
            return {"messages": [], "rolls": []}
        return {
            "messages": [m.to_wire() for m in self.chat_log[-limit:]],
            "rolls": [r.to_wire() for r in self.roll_log[-limit:]],
        }
