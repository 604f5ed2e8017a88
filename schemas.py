"""
Inbound payload schemas

Lenient on purpose: unknown keys are ignored, numbers are accepted where
text is expected, numeric map fields stay Any and are coerced by the
engines. A payload that still fails validation is answered with an
error_message and changes nothing.
"""
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True, populate_by_name=True)


class EmptyPayload(Payload):
    pass


class IdentifyPayload(Payload):
    name: Optional[str] = None


class JoinLobbyPayload(Payload):
    lobby: Optional[str] = None
    password: Optional[str] = None


class ChatPayload(Payload):
    text: Optional[str] = None


class RollPayload(Payload):
    expression: Optional[str] = None


class CharacterUpsertPayload(Payload):
    """Accepts {"sheet": {...}} or the sheet fields at top level"""
    sheet: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def wrap_flat_sheet(cls, data):
        if isinstance(data, dict) and not isinstance(data.get("sheet"), dict):
            return {"sheet": data}
        return data


class CharacterDeletePayload(Payload):
    name: Optional[str] = None


class MapInitPayload(Payload):
    width: Any = Field(default=None, validation_alias=AliasChoices("width", "w"))
    height: Any = Field(default=None, validation_alias=AliasChoices("height", "h"))


class MapSetPayload(Payload):
    x: Any = None
    y: Any = None
    blocked: Any = Field(default=False, validation_alias=AliasChoices("blocked", "val"))


class TokenAddPayload(Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    color: Optional[str] = None


class TokenMovePayload(Payload):
    id: Optional[str] = None
    x: Any = None
    y: Any = None


class TokenRemovePayload(Payload):
    id: Optional[str] = None


class PingPayload(Payload):
    x: Any = None
    y: Any = None


class CampaignLoadPayload(Payload):
    key: Optional[str] = None


class CampaignMetaPayload(Payload):
    title: Optional[str] = None
    summary: Optional[str] = None


class SceneAddPayload(Payload):
    title: Optional[str] = None
    content: Optional[str] = None


class SceneSetPayload(Payload):
    scene_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sceneId", "scene_id"))


class ChoiceAddPayload(Payload):
    scene_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sceneId", "scene_id"))
    text: Optional[str] = None
    target: Optional[str] = Field(default=None, validation_alias=AliasChoices("target", "to", "targetSceneId"))


class HandoutAddPayload(Payload):
    title: Optional[str] = None
    content: Optional[str] = None


class QuestAddPayload(Payload):
    title: Optional[str] = None


class QuestTogglePayload(Payload):
    id: Optional[str] = None


class NoteAddPayload(Payload):
    text: Optional[str] = None


class ChoiceRequestPayload(Payload):
    choice_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("choiceId", "choice_id"))


class SettingsUpdatePayload(Payload):
    locked_until_start: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("lockedUntilStart", "locked_until_start")
    )
    require_character: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("requireCharacter", "require_character")
    )


# ============ HTTP responses ============

class HealthResponse(BaseModel):
    status: str
    lobbies: int
    mirror: bool


class CampaignSummary(BaseModel):
    key: str
    title: str
    summary: str
