"""
Campaign Graph Engine: scenes, choices and the consent protocol

Scene transitions proposed by the GM go through a ConsentRequest:

    request_choice  (GM)   -> pending request, approvals = []
    acknowledge     (any)  -> approval recorded; commits once every
                              connected non-GM member has approved
    force           (GM)   -> commits immediately

Committing moves currentSceneId to the choice's target when that scene
exists; a dangling target leaves the pointer where it is. Either way the
request is cleared. At most one request is pending per lobby; a new
request replaces the old one.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, List, Optional

from core.exceptions import InvalidStateTransition, NotFound, ValidationFailed
from models import (
    Campaign,
    Choice,
    ConsentRequest,
    Handout,
    Lobby,
    Note,
    Quest,
    Scene,
    utcnow,
)
from services.campaign_library import load_campaign as library_load
from services.naming_service import clean_text, generate_id

logger = logging.getLogger(__name__)


@dataclass
class ConsentOutcome:
    """Result of an approval or a force"""
    committed: bool
    moved: bool = False
    scene_id: Optional[str] = None
    request: Optional[ConsentRequest] = None


# ============ Lifecycle ============

def load(lobby: Lobby, key: str, loader: Callable[[str], Campaign] = library_load) -> Campaign:
    """
    Replace the whole campaign with a fresh copy of a predefined one

    Resets campaignStarted and drops any pending consent request.

    Raises:
        NotFound: unknown campaign key
    """
    campaign = loader(clean_text(key, 80))
    lobby.campaign = campaign
    lobby.settings.campaign_started = False
    lobby.settings.pending_consent = None
    lobby.touch()
    logger.info(f"Lobby {lobby.name} loaded campaign {campaign.key}")
    return campaign


def start(lobby: Lobby) -> Optional[str]:
    """
    One-way transition to started

    Returns:
        the current scene id at start

    Raises:
        InvalidStateTransition: already started
    """
    if lobby.settings.campaign_started:
        raise InvalidStateTransition("Campaign already started.")
    lobby.settings.campaign_started = True
    lobby.touch()
    logger.info(f"Lobby {lobby.name} campaign started at {lobby.campaign.current_scene_id}")
    return lobby.campaign.current_scene_id


def update_settings(
    lobby: Lobby,
    locked_until_start: Optional[bool] = None,
    require_character: Optional[bool] = None,
) -> None:
    if locked_until_start is not None:
        lobby.settings.locked_until_start = bool(locked_until_start)
    if require_character is not None:
        lobby.settings.require_character = bool(require_character)
    lobby.touch()


# ============ Consent protocol ============

def required_players(lobby: Lobby) -> List[str]:
    """Connected non-GM members whose approval a transition needs"""
    return lobby.non_gm_members()


def expire_stale(lobby: Lobby, timeout_seconds: Optional[float], now: Optional[datetime] = None) -> bool:
    """
    Drop the pending request if it is older than timeout_seconds

    No timeout configured means requests never expire.

    Returns:
        True if a request was discarded
    """
    pending = lobby.settings.pending_consent
    if pending is None or not timeout_seconds:
        return False
    now = now or utcnow()
    if now - pending.created_at < timedelta(seconds=timeout_seconds):
        return False
    logger.info(f"Lobby {lobby.name} consent request for {pending.choice_id} expired")
    lobby.settings.pending_consent = None
    return True


def request_choice(lobby: Lobby, requested_by: str, choice_id: str) -> ConsentRequest:
    """
    Open a consent request for a choice on the current scene

    Raises:
        InvalidStateTransition: campaign not started
        NotFound: no current scene or no such choice on it
    """
    if not lobby.settings.campaign_started:
        raise InvalidStateTransition("Campaign has not started yet.")

    scene = lobby.campaign.current_scene()
    if scene is None:
        raise NotFound("No current scene.")
    choice = scene.find_choice(clean_text(choice_id, 120))
    if choice is None:
        raise NotFound("Choice not found on the current scene.")

    if lobby.settings.pending_consent is not None:
        logger.info(
            f"Lobby {lobby.name} consent request {lobby.settings.pending_consent.choice_id} "
            f"superseded by {choice.id}"
        )

    request = ConsentRequest(
        scene_id=scene.id,
        choice_id=choice.id,
        text=choice.text,
        target_scene_id=choice.target_scene_id,
        requested_by=requested_by,
    )
    lobby.settings.pending_consent = request
    lobby.touch()
    return request


def quorum_met(lobby: Lobby) -> bool:
    pending = lobby.settings.pending_consent
    if pending is None:
        return False
    return set(required_players(lobby)).issubset(pending.approvals)


def acknowledge(lobby: Lobby, name: str) -> ConsentOutcome:
    """
    Record an approval; commit when the quorum is reached

    A repeated approval is ignored and never commits twice, because a
    committed request is cleared.

    Raises:
        ValidationFailed: nothing pending
    """
    pending = lobby.settings.pending_consent
    if pending is None:
        raise ValidationFailed("No pending choice to approve.")
    pending.approve(name)
    lobby.touch()
    return commit_if_quorum(lobby)


def commit_if_quorum(lobby: Lobby) -> ConsentOutcome:
    """Commit the pending request if every required player approved"""
    pending = lobby.settings.pending_consent
    if pending is None or not quorum_met(lobby):
        return ConsentOutcome(committed=False, request=pending)
    return _commit(lobby)


def force(lobby: Lobby) -> ConsentOutcome:
    """
    GM override: commit regardless of approvals

    Raises:
        ValidationFailed: nothing pending
    """
    if lobby.settings.pending_consent is None:
        raise ValidationFailed("No pending choice to force.")
    return _commit(lobby)


def _commit(lobby: Lobby) -> ConsentOutcome:
    request = lobby.settings.pending_consent
    lobby.settings.pending_consent = None
    target = lobby.campaign.find_scene(request.target_scene_id)
    if target is None:
        logger.warning(
            f"Lobby {lobby.name} choice {request.choice_id} targets missing scene "
            f"{request.target_scene_id!r}, pointer unchanged"
        )
        lobby.touch()
        return ConsentOutcome(committed=True, moved=False, scene_id=lobby.campaign.current_scene_id, request=request)

    lobby.campaign.current_scene_id = target.id
    lobby.touch()
    logger.info(f"Lobby {lobby.name} moved to scene {target.id} via {request.choice_id}")
    return ConsentOutcome(committed=True, moved=True, scene_id=target.id, request=request)


# ============ Content editing ============

def update_meta(lobby: Lobby, title: Optional[str] = None, summary: Optional[str] = None) -> Campaign:
    """Empty title is ignored; summary may be set to empty"""
    campaign = lobby.campaign
    if title:
        campaign.title = clean_text(title, 120)
    if summary is not None:
        campaign.summary = clean_text(summary, 2000)
    lobby.touch()
    return campaign


def add_scene(lobby: Lobby, title: Optional[str], content: Optional[str]) -> Scene:
    scene = Scene(
        id=generate_id("scn"),
        title=clean_text(title, 120) or "New Scene",
        content=clean_text(content, 4000),
    )
    lobby.campaign.scenes.append(scene)
    if not lobby.campaign.current_scene_id:
        lobby.campaign.current_scene_id = scene.id
    lobby.touch()
    return scene


def set_scene(lobby: Lobby, scene_id: Optional[str]) -> Scene:
    """
    Raises:
        NotFound: unknown scene id
    """
    scene = lobby.campaign.find_scene(clean_text(scene_id, 120))
    if scene is None:
        raise NotFound("Scene not found.")
    lobby.campaign.current_scene_id = scene.id
    lobby.touch()
    return scene


def add_choice(lobby: Lobby, scene_id: Optional[str], text: Optional[str], target: Optional[str]) -> Choice:
    """
    Append a choice to a scene

    The target does not have to exist yet; scenes may be authored later.

    Raises:
        NotFound: unknown source scene
    """
    scene = lobby.campaign.find_scene(clean_text(scene_id, 120))
    if scene is None:
        raise NotFound("Scene not found.")
    choice = Choice(
        id=generate_id("ch"),
        text=clean_text(text, 200) or "Choice",
        target_scene_id=clean_text(target, 120),
    )
    scene.choices.append(choice)
    lobby.touch()
    return choice


def add_handout(lobby: Lobby, title: Optional[str], content: Optional[str]) -> Handout:
    handout = Handout(
        id=generate_id("hd"),
        title=clean_text(title, 120) or "Handout",
        content=clean_text(content, 4000),
    )
    lobby.campaign.handouts.append(handout)
    lobby.touch()
    return handout


def add_quest(lobby: Lobby, title: Optional[str]) -> Quest:
    quest = Quest(id=generate_id("q"), title=clean_text(title, 200) or "Quest")
    lobby.campaign.quests.append(quest)
    lobby.touch()
    return quest


def toggle_quest(lobby: Lobby, quest_id: Optional[str]) -> Quest:
    """
    Raises:
        NotFound: unknown quest id
    """
    quest = next((q for q in lobby.campaign.quests if q.id == quest_id), None)
    if quest is None:
        raise NotFound("Quest not found.")
    quest.done = not quest.done
    lobby.touch()
    return quest


def add_note(lobby: Lobby, author: str, text: Optional[str]) -> Note:
    """
    Raises:
        ValidationFailed: empty note
    """
    body = clean_text(text, 1000)
    if not body:
        raise ValidationFailed("Note is empty.")
    note = Note(by=author, text=body)
    lobby.campaign.notes.append(note)
    lobby.touch()
    return note
