"""
Session Broadcaster: composition root of the lobby server

Responsibilities:
1. Own the per-connection ConnectionSession records
2. Validate inbound payloads and check the policy table once per message
3. Route each message to the engine that owns the state
4. Push the resulting views to one connection, one lobby or everyone

Every inbound message is handled synchronously while the target lobby's
lock is held, and outbound messages are only enqueued (never awaited), so
for any lobby the broadcast order equals the commit order. Each connection
drains its own outbox in a separate writer task (see api/websocket.py).
"""
import asyncio
from dataclasses import dataclass, field
import logging
import random
from typing import Any, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from core import campaign_engine, map_engine, membership
from core.commands import CommandInterpreter
from core.exceptions import (
    NotAuthorized,
    NotFound,
    RateExceeded,
    TabletopException,
    ValidationFailed,
)
from core.locks import with_lobby_lock
from core.policy import ACTION_POLICIES, authorize
from core.registry import LobbyRegistry
from database import Settings, get_settings
from models import ChatEntry, Lobby, RollEntry
from schemas import (
    CampaignLoadPayload,
    CampaignMetaPayload,
    CharacterDeletePayload,
    CharacterUpsertPayload,
    ChatPayload,
    ChoiceAddPayload,
    ChoiceRequestPayload,
    EmptyPayload,
    HandoutAddPayload,
    IdentifyPayload,
    JoinLobbyPayload,
    MapInitPayload,
    MapSetPayload,
    NoteAddPayload,
    PingPayload,
    QuestAddPayload,
    QuestTogglePayload,
    RollPayload,
    SceneAddPayload,
    SceneSetPayload,
    SettingsUpdatePayload,
    TokenAddPayload,
    TokenMovePayload,
    TokenRemovePayload,
)
from services import dice_service
from services.character_service import sanitize_sheet
from services.mirror_service import MirrorService
from services.naming_service import (
    DEFAULT_NAME,
    clean_text,
    generate_id,
    sanitize_lobby_name,
    sanitize_name,
)
from services.rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)

MAX_CHAT_LENGTH = 500
DEFAULT_OUTBOX_LIMIT = 1000

CHARACTER_REQUIRED_REASON = "This lobby requires a character sheet before you play."


@dataclass
class ConnectionSession:
    """
    Explicit per-connection record

    requested_name is what identify asked for; name and lobby are only set
    once a join succeeds. outbox holds {"type", "data"} envelopes, with
    None as the close sentinel.

    When the session belongs to a running event loop every enqueue goes
    through call_soon_threadsafe, so senders on other threads keep their
    order. Without a loop (unit tests) the queue is filled directly.

    A full outbox means the client stopped reading: everything queued is
    discarded, the close sentinel goes in, and later sends are dropped.
    """
    connection_id: str
    requested_name: str = DEFAULT_NAME
    name: Optional[str] = None
    lobby: Optional[str] = None
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_OUTBOX_LIMIT))
    loop: Optional[asyncio.AbstractEventLoop] = None
    overflowed: bool = False

    def send(self, event: str, data: Any) -> None:
        self._enqueue({"type": event, "data": data})

    def close(self) -> None:
        self._enqueue(None)

    def _enqueue(self, message: Optional[dict]) -> None:
        if self.loop is None:
            self._put(message)
            return
        try:
            self.loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            # loop already closed: the socket is gone
            logger.debug(f"Dropped message for closed connection {self.connection_id}")

    def _put(self, message: Optional[dict]) -> None:
        if self.overflowed:
            return
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self.overflowed = True
            logger.warning(f"Outbox full for connection {self.connection_id}, dropping client")
            while not self.outbox.empty():
                self.outbox.get_nowait()
            self.outbox.put_nowait(None)

    def detach(self) -> None:
        self.name = None
        self.lobby = None


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


SessionHandler = Callable[[ConnectionSession, Lobby, str, Any], None]


class SessionBroadcaster:
    """Routes inbound messages and fans out the resulting views"""

    def __init__(
        self,
        registry: LobbyRegistry,
        settings: Optional[Settings] = None,
        mirror: Optional[MirrorService] = None,
        rate_limiter: Optional[RateLimitService] = None,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.settings = settings or get_settings()
        self.mirror = mirror or MirrorService()
        self.rate_limiter = rate_limiter or RateLimitService()
        self.rng = rng
        self.commands = CommandInterpreter(self)
        self.sessions: Dict[str, ConnectionSession] = {}

        # messages accepted before joining a lobby
        self._session_handlers: Dict[str, Tuple[Type[BaseModel], Callable]] = {
            "identify": (IdentifyPayload, self._on_identify),
            "join_lobby": (JoinLobbyPayload, self._on_join_lobby),
        }
        self._lobby_handlers: Dict[str, Tuple[Type[BaseModel], SessionHandler]] = {
            "chat": (ChatPayload, self._on_chat),
            "roll": (RollPayload, self._on_roll),
            "character_upsert": (CharacterUpsertPayload, self._on_character_upsert),
            "character_delete": (CharacterDeletePayload, self._on_character_delete),
            "map_request": (EmptyPayload, self._on_map_request),
            "map_init": (MapInitPayload, self._on_map_init),
            "map_set": (MapSetPayload, self._on_map_set),
            "map_clear": (EmptyPayload, self._on_map_clear),
            "token_add": (TokenAddPayload, self._on_token_add),
            "token_move": (TokenMovePayload, self._on_token_move),
            "token_remove": (TokenRemovePayload, self._on_token_remove),
            "ping": (PingPayload, self._on_ping),
            "campaign_load": (CampaignLoadPayload, self._on_campaign_load),
            "campaign_get": (EmptyPayload, self._on_campaign_get),
            "campaign_start": (EmptyPayload, self._on_campaign_start),
            "campaign_update_meta": (CampaignMetaPayload, self._on_campaign_update_meta),
            "campaign_scene_add": (SceneAddPayload, self._on_scene_add),
            "campaign_scene_set": (SceneSetPayload, self._on_scene_set),
            "campaign_choice_add": (ChoiceAddPayload, self._on_choice_add),
            "campaign_handout_add": (HandoutAddPayload, self._on_handout_add),
            "campaign_quest_add": (QuestAddPayload, self._on_quest_add),
            "campaign_quest_toggle": (QuestTogglePayload, self._on_quest_toggle),
            "campaign_note_add": (NoteAddPayload, self._on_note_add),
            "campaign_choice_request": (ChoiceRequestPayload, self._on_choice_request),
            "campaign_choice_ack": (EmptyPayload, self._on_choice_ack),
            "campaign_choice_force": (EmptyPayload, self._on_choice_force),
            "settings_update": (SettingsUpdatePayload, self._on_settings_update),
        }

    # ============ Connection lifecycle ============

    def connect(self) -> ConnectionSession:
        session = ConnectionSession(
            connection_id=generate_id("c"),
            outbox=asyncio.Queue(maxsize=self.settings.outbox_limit),
            loop=_running_loop(),
        )
        self.sessions[session.connection_id] = session
        session.send("lobbies", {"names": self.registry.names()})
        logger.info(f"Connection {session.connection_id} opened")
        return session

    def disconnect(self, session: ConnectionSession) -> None:
        lobby = self.registry.find(session.lobby)
        if lobby is not None:
            with with_lobby_lock(lobby):
                self._depart(lobby, session.connection_id)
        session.detach()
        self.sessions.pop(session.connection_id, None)
        self.rate_limiter.reset(session.connection_id)
        session.close()
        logger.info(f"Connection {session.connection_id} closed")

    # ============ Dispatch ============

    def handle(self, session: ConnectionSession, event: str, data: Any = None) -> None:
        """
        Process one inbound envelope

        Every failure ends here: TabletopException and payload validation
        errors become a unicast error_message, anything else is logged with
        its traceback. Neither the connection nor the lobby is torn down.
        """
        try:
            self._dispatch(session, event, data if isinstance(data, dict) else {})
        except RateExceeded as e:
            logger.warning(f"Rate limit hit by {session.connection_id}: retry in {e.retry_after:.1f}s")
            session.send("error_message", {"text": str(e), "retryAfter": round(e.retry_after, 2)})
        except TabletopException as e:
            session.send("error_message", {"text": str(e)})
        except ValidationError as e:
            logger.debug(f"Malformed {event} payload from {session.connection_id}: {e}")
            session.send("error_message", {"text": "Malformed payload."})
        except Exception:
            logger.exception(f"Unhandled error processing {event} from {session.connection_id}")
            session.send("error_message", {"text": "Internal error."})

    def _dispatch(self, session: ConnectionSession, event: str, data: dict) -> None:
        if self.settings.rate_limit_enabled:
            decision = self.rate_limiter.check(
                session.connection_id,
                self.settings.rate_limit_events,
                self.settings.rate_limit_window_seconds,
            )
            if not decision.allowed:
                raise RateExceeded(decision.retry_after)

        if event in self._session_handlers:
            schema, handler = self._session_handlers[event]
            handler(session, schema.model_validate(data))
            return

        if event not in self._lobby_handlers:
            raise ValidationFailed(f"Unknown message type: {event}")
        schema, handler = self._lobby_handlers[event]

        lobby = self.registry.find(session.lobby)
        if lobby is None:
            logger.debug(f"Ignoring {event} from {session.connection_id}: not in a lobby")
            return

        payload = schema.model_validate(data)
        with with_lobby_lock(lobby):
            actor = lobby.members.get(session.connection_id)
            if actor is None:
                # kicked between the lookup and the lock
                return
            authorize(lobby, actor, ACTION_POLICIES[event])
            handler(session, lobby, actor, payload)

    # ============ Emit helpers ============

    def send_to(self, connection_id: str, event: str, data: Any) -> None:
        session = self.sessions.get(connection_id)
        if session is not None:
            session.send(event, data)

    def broadcast(self, lobby: Lobby, event: str, data: Any) -> None:
        for connection_id in list(lobby.members):
            self.send_to(connection_id, event, data)

    def broadcast_all(self, event: str, data: Any) -> None:
        for session in list(self.sessions.values()):
            session.send(event, data)

    def system(self, lobby: Lobby, text: str) -> None:
        self.broadcast(lobby, "system", {"text": text})

    def state_view(self, lobby: Lobby) -> dict:
        return {
            "users": lobby.member_names(),
            "gm": lobby.gm,
            "hasPassword": lobby.password_hash is not None,
            "characters": {name: sheet.to_wire() for name, sheet in lobby.characters.items()},
            "encounter": lobby.encounter.to_wire(),
            "campaign": lobby.campaign.to_wire(),
            "settings": lobby.settings.to_wire(),
            "characterNeeded": (
                lobby.members_without_character() if lobby.settings.require_character else []
            ),
        }

    def emit_state(self, lobby: Lobby) -> None:
        self.broadcast(lobby, "state", self.state_view(lobby))

    def emit_map(self, lobby: Lobby) -> None:
        self.broadcast(lobby, "map_state", lobby.map.to_wire())

    def emit_characters(self, lobby: Lobby) -> None:
        self.broadcast(lobby, "characters", {n: s.to_wire() for n, s in lobby.characters.items()})

    def campaign_changed(self, lobby: Lobby) -> None:
        self.broadcast(lobby, "campaign_state", lobby.campaign.to_wire())
        self.emit_state(lobby)

    def require_characters(self, lobby: Lobby) -> None:
        for name in lobby.members_without_character():
            connection_id = lobby.connection_for(name)
            if connection_id is not None:
                self.send_to(connection_id, "character_required", {"reason": CHARACTER_REQUIRED_REASON})

    # ============ Identity and membership ============

    def _on_identify(self, session: ConnectionSession, payload: IdentifyPayload) -> None:
        session.requested_name = sanitize_name(payload.name)
        session.send("identified", {"username": session.requested_name})

    def _on_join_lobby(self, session: ConnectionSession, payload: JoinLobbyPayload) -> None:
        """
        Join (or re-join) a lobby

        1. Get or create the lobby and admit the connection under its lock
        2. Send the private snapshot, then broadcast the new state
        3. Leave the previous lobby, if any, under that lobby's lock
        4. Announce a newly created lobby to every connection
        """
        lobby_name = sanitize_lobby_name(payload.lobby, self.settings.default_lobby)
        previous = session.lobby
        lobby, created = self.registry.get_or_create(lobby_name)

        # 1. Admission
        with with_lobby_lock(lobby):
            final_name = membership.join(
                lobby, session.connection_id, session.requested_name, payload.password
            )
            session.name = final_name
            session.lobby = lobby.name

            # 2. Views
            session.send("joined", {
                "lobby": lobby.name,
                "history": lobby.history(self.settings.history_limit),
                "gm": lobby.gm,
                "settings": lobby.settings.to_wire(),
                "username": final_name,
            })
            self.system(lobby, f"{final_name} joined {lobby.name}.")
            self.emit_state(lobby)
            session.send("map_state", lobby.map.to_wire())
            if lobby.settings.require_character and final_name not in lobby.characters:
                session.send("character_required", {"reason": CHARACTER_REQUIRED_REASON})
            self.mirror.record_lobby(lobby)

        logger.info(f"{final_name} ({session.connection_id}) joined lobby {lobby.name}")

        # 3. Previous lobby
        if previous and previous != lobby.name:
            old = self.registry.find(previous)
            if old is not None:
                with with_lobby_lock(old):
                    self._depart(old, session.connection_id)

        # 4. Global lobby list
        if created:
            self.broadcast_all("lobbies", {"names": self.registry.names()})

    def _depart(self, lobby: Lobby, connection_id: str) -> Optional[str]:
        """Drop a membership, tell the lobby, and re-check any pending quorum"""
        name = membership.leave(lobby, connection_id)
        if name is None:
            return None
        logger.info(f"{name} left lobby {lobby.name}")
        self.system(lobby, f"{name} left.")
        self.emit_state(lobby)
        self._recheck_quorum(lobby)
        return name

    def kick(self, lobby: Lobby, target: str) -> None:
        connection_id = membership.kick(lobby, target)
        kicked = self.sessions.get(connection_id)
        if kicked is not None:
            kicked.send("system", {"text": f"You were kicked from {lobby.name}."})
            kicked.detach()
        logger.info(f"{target} kicked from lobby {lobby.name}")
        self.system(lobby, f"{target} was kicked.")
        self.emit_state(lobby)
        self._recheck_quorum(lobby)

    # ============ Chat and dice ============

    def _on_chat(self, session, lobby, actor, payload: ChatPayload):
        text = clean_text(payload.text, MAX_CHAT_LENGTH)
        if not text:
            return
        if text.startswith("/"):
            self.commands.execute(session, lobby, actor, text)
        else:
            self.post_chat(lobby, actor, text)

    def post_chat(self, lobby: Lobby, user: str, text: str) -> ChatEntry:
        entry = ChatEntry(user=user, text=text)
        lobby.chat_log.append(entry)
        lobby.touch()
        self.broadcast(lobby, "chat", entry.to_wire())
        self.mirror.record_chat(lobby.name, entry)
        return entry

    def whisper(self, session: ConnectionSession, lobby: Lobby, actor: str, target: str, text: str) -> None:
        connection_id = lobby.connection_for(target)
        if connection_id is None:
            raise NotFound("User not found")
        text = clean_text(text, MAX_CHAT_LENGTH)
        self.send_to(connection_id, "system", {"text": f"(whisper) {actor}: {text}"})
        if connection_id != session.connection_id:
            session.send("system", {"text": f"(whisper to {target}) {text}"})

    def _on_roll(self, session, lobby, actor, payload: RollPayload):
        self.roll(lobby, actor, payload.expression)

    def roll(self, lobby: Lobby, actor: str, expression: Optional[str]) -> RollEntry:
        """
        Evaluate and publish a roll; a bare macro name expands to its expression

        Raises:
            InvalidExpression: bad notation, nothing is recorded
        """
        expression = (expression or "").strip()
        expression = lobby.macros.get(actor, {}).get(expression, expression)
        result = dice_service.evaluate(expression, self.rng)
        entry = RollEntry(
            user=actor,
            expression=result.expression,
            rolls=result.rolls,
            used=result.used,
            modifier=result.modifier,
            total=result.total,
            lobby=lobby.name,
        )
        lobby.roll_log.append(entry)
        lobby.touch()
        self.broadcast(lobby, "roll", entry.to_wire())
        self.mirror.record_roll(entry)
        return entry

    # ============ Characters ============

    def _character_key(self, lobby: Lobby, actor: str, requested: Any) -> str:
        key = sanitize_name(requested) if requested else actor
        if key != actor and not lobby.is_gm(actor):
            raise NotAuthorized("You can only edit your own character.")
        return key

    def _on_character_upsert(self, session, lobby, actor, payload: CharacterUpsertPayload):
        key = self._character_key(lobby, actor, payload.sheet.get("name"))
        lobby.characters[key] = sanitize_sheet(payload.sheet, key)
        lobby.touch()
        self.emit_characters(lobby)
        self.emit_state(lobby)

    def _on_character_delete(self, session, lobby, actor, payload: CharacterDeletePayload):
        key = self._character_key(lobby, actor, payload.name)
        if lobby.characters.pop(key, None) is None:
            raise NotFound("Character not found.")
        lobby.touch()
        self.emit_characters(lobby)
        self.emit_state(lobby)

    # ============ Map ============

    def _on_map_request(self, session, lobby, actor, payload):
        session.send("map_state", lobby.map.to_wire())

    def _on_map_init(self, session, lobby, actor, payload: MapInitPayload):
        board = map_engine.init_map(lobby, payload.width, payload.height)
        self.system(lobby, f"Map reset to {board.width}x{board.height}.")
        self.emit_map(lobby)

    def _on_map_set(self, session, lobby, actor, payload: MapSetPayload):
        map_engine.set_tile(lobby, payload.x, payload.y, payload.blocked)
        self.emit_map(lobby)

    def _on_map_clear(self, session, lobby, actor, payload):
        map_engine.clear_walls(lobby)
        self.emit_map(lobby)

    def _on_token_add(self, session, lobby, actor, payload: TokenAddPayload):
        map_engine.add_token(lobby, actor, payload.id, payload.name, payload.color)
        self.emit_map(lobby)

    def _on_token_move(self, session, lobby, actor, payload: TokenMovePayload):
        if map_engine.move_token(lobby, actor, payload.id, payload.x, payload.y):
            self.emit_map(lobby)

    def _on_token_remove(self, session, lobby, actor, payload: TokenRemovePayload):
        map_engine.remove_token(lobby, actor, payload.id)
        self.emit_map(lobby)

    def _on_ping(self, session, lobby, actor, payload: PingPayload):
        self.broadcast(lobby, "map_ping", map_engine.ping(lobby, actor, payload.x, payload.y))

    # ============ Campaign ============

    def load_campaign(self, lobby: Lobby, key: Optional[str]) -> None:
        if not key:
            raise ValidationFailed("Campaign key is required.")
        campaign = campaign_engine.load(lobby, key, self.registry.campaign_loader)
        self.system(lobby, f"Campaign loaded: {campaign.title}")
        self.campaign_changed(lobby)

    def start_campaign(self, lobby: Lobby) -> None:
        """
        Emit campaign_started exactly once per transition

        A second start raises before anything is sent.
        """
        scene_id = campaign_engine.start(lobby)
        self.broadcast(lobby, "campaign_started", {"sceneId": scene_id})
        self.system(lobby, "The campaign has begun.")
        self.require_characters(lobby)
        self.campaign_changed(lobby)

    def update_settings(
        self,
        lobby: Lobby,
        locked_until_start: Optional[bool] = None,
        require_character: Optional[bool] = None,
    ) -> None:
        campaign_engine.update_settings(lobby, locked_until_start, require_character)
        self.system(lobby, "Lobby settings updated.")
        self.emit_state(lobby)
        if require_character:
            self.require_characters(lobby)

    def request_choice(self, lobby: Lobby, actor: str, choice_id: Optional[str]) -> None:
        if campaign_engine.expire_stale(lobby, self.settings.consent_timeout_seconds):
            self.emit_state(lobby)
        request = campaign_engine.request_choice(lobby, actor, choice_id)
        self.broadcast(lobby, "campaign_choice_requested", {
            "sceneId": request.scene_id,
            "choiceId": request.choice_id,
            "text": request.text,
            "target": request.target_scene_id,
            "requestedBy": request.requested_by,
            "players": campaign_engine.required_players(lobby),
        })
        self.emit_state(lobby)
        self._recheck_quorum(lobby)

    def acknowledge(self, lobby: Lobby, actor: str) -> None:
        if campaign_engine.expire_stale(lobby, self.settings.consent_timeout_seconds):
            self.emit_state(lobby)
        outcome = campaign_engine.acknowledge(lobby, actor)
        if outcome.committed:
            self._announce_commit(lobby, outcome)
            return
        required = campaign_engine.required_players(lobby)
        approved = [n for n in outcome.request.approvals if n in required]
        self.system(lobby, f"{actor} agreed ({len(approved)}/{len(required)}).")
        self.emit_state(lobby)

    def force_choice(self, lobby: Lobby, actor: str) -> None:
        if campaign_engine.expire_stale(lobby, self.settings.consent_timeout_seconds):
            self.emit_state(lobby)
        outcome = campaign_engine.force(lobby)
        self.system(lobby, f"{actor} forced the choice.")
        self._announce_commit(lobby, outcome)

    def _recheck_quorum(self, lobby: Lobby) -> None:
        outcome = campaign_engine.commit_if_quorum(lobby)
        if outcome.committed:
            self._announce_commit(lobby, outcome)

    def _announce_commit(self, lobby: Lobby, outcome: campaign_engine.ConsentOutcome) -> None:
        if outcome.moved:
            scene = lobby.campaign.find_scene(outcome.scene_id)
            self.system(lobby, f"The party chose: {outcome.request.text}. Now: {scene.title}")
        else:
            self.system(lobby, f"The party chose: {outcome.request.text}. The path ahead is not written yet.")
        self.campaign_changed(lobby)

    def _on_campaign_load(self, session, lobby, actor, payload: CampaignLoadPayload):
        self.load_campaign(lobby, payload.key)

    def _on_campaign_get(self, session, lobby, actor, payload):
        session.send("campaign_state", lobby.campaign.to_wire())

    def _on_campaign_start(self, session, lobby, actor, payload):
        self.start_campaign(lobby)

    def _on_campaign_update_meta(self, session, lobby, actor, payload: CampaignMetaPayload):
        campaign_engine.update_meta(lobby, payload.title, payload.summary)
        self.campaign_changed(lobby)

    def _on_scene_add(self, session, lobby, actor, payload: SceneAddPayload):
        campaign_engine.add_scene(lobby, payload.title, payload.content)
        self.campaign_changed(lobby)

    def _on_scene_set(self, session, lobby, actor, payload: SceneSetPayload):
        campaign_engine.set_scene(lobby, payload.scene_id)
        self.campaign_changed(lobby)

    def _on_choice_add(self, session, lobby, actor, payload: ChoiceAddPayload):
        campaign_engine.add_choice(lobby, payload.scene_id, payload.text, payload.target)
        self.campaign_changed(lobby)

    def _on_handout_add(self, session, lobby, actor, payload: HandoutAddPayload):
        campaign_engine.add_handout(lobby, payload.title, payload.content)
        self.campaign_changed(lobby)

    def _on_quest_add(self, session, lobby, actor, payload: QuestAddPayload):
        campaign_engine.add_quest(lobby, payload.title)
        self.campaign_changed(lobby)

    def _on_quest_toggle(self, session, lobby, actor, payload: QuestTogglePayload):
        campaign_engine.toggle_quest(lobby, payload.id)
        self.campaign_changed(lobby)

    def _on_note_add(self, session, lobby, actor, payload: NoteAddPayload):
        campaign_engine.add_note(lobby, actor, payload.text)
        self.campaign_changed(lobby)

    def _on_choice_request(self, session, lobby, actor, payload: ChoiceRequestPayload):
        self.request_choice(lobby, actor, payload.choice_id)

    def _on_choice_ack(self, session, lobby, actor, payload):
        self.acknowledge(lobby, actor)

    def _on_choice_force(self, session, lobby, actor, payload):
        self.force_choice(lobby, actor)

    def _on_settings_update(self, session, lobby, actor, payload: SettingsUpdatePayload):
        self.update_settings(lobby, payload.locked_until_start, payload.require_character)
