"""
Dispatch-level tests: inbound envelopes in, queued views out.
"""

import asyncio
from datetime import timedelta

import pytest

from core import map_engine
from core.broadcaster import ConnectionSession, SessionBroadcaster
from core.registry import LobbyRegistry
from database import Settings
from models import utcnow
from services.mirror_service import MirrorService
from tests.helpers import drain, last_error, of_type


@pytest.fixture
def table(broadcaster, join):
    """GM plus two players in the tavern, outboxes drained."""
    gm = join("GM")
    rin = join("Rin")
    kael = join("Kael")
    for session in (gm, rin, kael):
        drain(session)
    return gm, rin, kael


def tavern(broadcaster):
    return broadcaster.registry.get("tavern")


class TestJoin:

    def test_new_lobby_makes_joiner_gm(self, broadcaster, join):
        gm = join("GM")
        messages = drain(gm)
        joined = of_type(messages, "joined")[0]
        assert joined["lobby"] == "tavern"
        assert joined["gm"] == "GM"
        assert joined["username"] == "GM"
        assert of_type(messages, "lobbies")[-1] == {"names": ["tavern"]}
        assert tavern(broadcaster).gm == "GM"

    def test_identified(self, broadcaster):
        session = broadcaster.connect()
        broadcaster.handle(session, "identify", {"name": "  Rin  "})
        assert of_type(drain(session), "identified") == [{"username": "Rin"}]

    def test_duplicate_names(self, broadcaster, join):
        first = join("Rin")
        second = join("Rin")
        assert of_type(drain(first), "joined")[0]["username"] == "Rin"
        assert of_type(drain(second), "joined")[0]["username"] == "Rin2"
        assert tavern(broadcaster).member_names() == ["Rin", "Rin2"]

    def test_join_broadcasts_state(self, table, join):
        gm, rin, kael = table
        join("Ash")
        state = of_type(drain(rin), "state")[-1]
        assert state["users"] == ["GM", "Rin", "Kael", "Ash"]
        assert state["gm"] == "GM"
        assert "characterNeeded" in state

    def test_password_join(self, broadcaster, join):
        owner = join("Ash", lobby="crypt", password="pw")
        assert of_type(drain(owner), "joined")[0]["gm"] == "Ash"

        intruder = join("Mallory", lobby="crypt", password="wrong")
        assert last_error(intruder) == "Lobby is locked (wrong password)."
        assert broadcaster.registry.get("crypt").member_names() == ["Ash"]

        friend = join("Rin", lobby="crypt", password="pw")
        assert of_type(drain(friend), "joined")[0]["username"] == "Rin"

    def test_history_in_snapshot(self, broadcaster, table, join):
        gm, rin, kael = table
        broadcaster.handle(rin, "chat", {"text": "hello"})
        broadcaster.handle(rin, "roll", {"expression": "d6"})
        late = join("Ash")
        history = of_type(drain(late), "joined")[0]["history"]
        assert [m["text"] for m in history["messages"]] == ["hello"]
        assert history["rolls"][0]["expression"] == "d6"

    def test_switching_lobby_leaves_previous(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "join_lobby", {"lobby": "crypt"})
        assert tavern(broadcaster).member_names() == ["GM", "Kael"]
        assert {"text": "Rin left."} in of_type(drain(gm), "system")
        assert rin.lobby == "crypt"

    def test_disconnect(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.disconnect(kael)
        assert tavern(broadcaster).member_names() == ["GM", "Rin"]
        assert of_type(drain(gm), "state")[-1]["users"] == ["GM", "Rin"]
        assert kael.connection_id not in broadcaster.sessions


class TestErrors:

    def test_messages_before_join_are_ignored(self, broadcaster):
        session = broadcaster.connect()
        drain(session)
        broadcaster.handle(session, "chat", {"text": "hi"})
        assert drain(session) == []

    def test_unknown_type(self, table, broadcaster):
        gm, rin, kael = table
        broadcaster.handle(rin, "teleport", {})
        assert "Unknown message type" in last_error(rin)

    def test_malformed_payload(self, broadcaster):
        session = broadcaster.connect()
        broadcaster.handle(session, "identify", {"name": ["not", "a", "name"]})
        assert last_error(session) == "Malformed payload."

    def test_non_dict_data_is_defaulted(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "map_init", "garbage")
        assert tavern(broadcaster).map.width == 20
        assert of_type(drain(gm), "error_message") == []

    def test_internal_error_is_contained(self, broadcaster, table, monkeypatch):
        gm, rin, kael = table

        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(map_engine, "ping", boom)
        broadcaster.handle(rin, "ping", {"x": 1, "y": 1})
        assert last_error(rin) == "Internal error."
        assert of_type(drain(gm), "map_ping") == []

        broadcaster.handle(rin, "chat", {"text": "still here"})
        assert of_type(drain(gm), "chat")[0]["text"] == "still here"

    def test_errors_are_unicast(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "map_clear", {})
        assert last_error(rin) == "GM only."
        assert drain(gm) == []
        assert drain(kael) == []

    def test_rate_limit(self):
        settings = Settings(
            _env_file=None,
            rate_limit_enabled=True,
            rate_limit_events=2,
            rate_limit_window_seconds=60,
        )
        broadcaster = SessionBroadcaster(LobbyRegistry(), settings=settings, mirror=MirrorService())
        session = broadcaster.connect()
        for _ in range(3):
            broadcaster.handle(session, "identify", {"name": "Rin"})
        messages = drain(session)
        assert len(of_type(messages, "identified")) == 2
        error = of_type(messages, "error_message")[0]
        assert error["retryAfter"] > 0


class TestChatAndDice:

    def test_chat_fans_out_in_order(self, broadcaster, table):
        gm, rin, kael = table
        for text in ("one", "two", "three"):
            broadcaster.handle(rin, "chat", {"text": text})
        assert [c["text"] for c in of_type(drain(kael), "chat")] == ["one", "two", "three"]

    def test_empty_chat_ignored(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "chat", {"text": "   "})
        assert drain(kael) == []

    def test_roll(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "roll", {"expression": "3d6+1"})
        roll = of_type(drain(gm), "roll")[0]
        assert roll["user"] == "Rin"
        assert roll["lobby"] == "tavern"
        assert len(roll["rolls"]) == 3
        assert roll["total"] == sum(roll["used"]) + 1

    def test_logs_keep_every_entry(self, broadcaster, table):
        gm, rin, kael = table
        lobby = tavern(broadcaster)
        for i in range(510):
            broadcaster.post_chat(lobby, "Rin", f"line {i}")
        assert len(lobby.chat_log) == 510
        assert lobby.chat_log[0].text == "line 0"
        history = lobby.history(broadcaster.settings.history_limit)
        assert len(history["messages"]) == 40
        assert history["messages"][-1]["text"] == "line 509"

    def test_bad_roll_is_unicast(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "roll", {"expression": "200d6"})
        assert "Too big" in last_error(rin)
        assert of_type(drain(gm), "roll") == []
        assert tavern(broadcaster).roll_log == []


class TestMap:

    def test_non_gm_map_init_rejected(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "map_init", {"width": 8, "height": 8})
        assert last_error(rin) == "GM only."
        assert tavern(broadcaster).map.width == 20

    def test_gm_map_init_clamps(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "map_init", {"width": 100, "height": 10})
        board = of_type(drain(rin), "map_state")[-1]
        assert (board["width"], board["height"]) == (60, 10)

    def test_token_cannot_enter_wall(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "map_set", {"x": 1, "y": 0, "blocked": True})
        broadcaster.handle(rin, "token_add", {"name": "Rin", "color": "#a00"})
        token = next(iter(tavern(broadcaster).map.tokens.values()))
        assert (token.x, token.y) == (0, 0)
        drain(kael)

        broadcaster.handle(rin, "token_move", {"id": token.id, "x": 1, "y": 0})
        assert (token.x, token.y) == (0, 0)
        assert of_type(drain(kael), "map_state") == []

    def test_token_ownership(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "token_add", {"id": "rin_tok"})
        broadcaster.handle(kael, "token_move", {"id": "rin_tok", "x": 5, "y": 5})
        assert "Only owner or GM" in last_error(kael)
        broadcaster.handle(kael, "token_remove", {"id": "rin_tok"})
        assert "Only owner or GM" in last_error(kael)
        broadcaster.handle(gm, "token_remove", {"id": "rin_tok"})
        assert tavern(broadcaster).map.tokens == {}

    def test_ping(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "ping", {"x": 3, "y": 4})
        ping = of_type(drain(kael), "map_ping")[0]
        assert (ping["x"], ping["y"], ping["by"]) == (3, 4, "Rin")

    def test_map_request_is_private(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "map_request", {})
        assert len(of_type(drain(rin), "map_state")) == 1
        assert drain(kael) == []


class TestCharacters:

    def test_upsert_own(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "character_upsert", {"sheet": {"class": "Rogue", "level": 3}})
        sheets = of_type(drain(kael), "characters")[-1]
        assert sheets["Rin"]["class"] == "Rogue"
        assert sheets["Rin"]["level"] == 3

    def test_flat_payload(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "character_upsert", {"name": "Rin", "race": "Elf"})
        assert tavern(broadcaster).characters["Rin"].race == "Elf"

    def test_cannot_edit_others(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "character_upsert", {"sheet": {"name": "Kael"}})
        assert last_error(rin) == "You can only edit your own character."
        broadcaster.handle(gm, "character_upsert", {"sheet": {"name": "Goblin Boss"}})
        assert "Goblin Boss" in tavern(broadcaster).characters

    def test_delete(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "character_upsert", {"sheet": {}})
        broadcaster.handle(kael, "character_delete", {"name": "Rin"})
        assert "Rin" in tavern(broadcaster).characters
        broadcaster.handle(rin, "character_delete", {})
        assert "Rin" not in tavern(broadcaster).characters
        broadcaster.handle(rin, "character_delete", {})
        assert last_error(rin) == "Character not found."


class TestCampaign:

    def test_started_emitted_exactly_once(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_start", {})
        assert of_type(drain(rin), "campaign_started") == [{"sceneId": "s_intro"}]
        gm_messages = drain(gm)
        assert len(of_type(gm_messages, "campaign_started")) == 1
        assert of_type(gm_messages, "error_message")[-1]["text"] == "Campaign already started."

    def test_start_asks_for_missing_characters(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "character_upsert", {"sheet": {}})
        drain(rin)
        broadcaster.handle(gm, "campaign_start", {})
        assert of_type(drain(rin), "character_required") == []
        assert len(of_type(drain(kael), "character_required")) == 1

    def test_consent_quorum(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "c_intro_tavern"})
        request = of_type(drain(rin), "campaign_choice_requested")[0]
        assert request["players"] == ["Rin", "Kael"]
        assert request["target"] == "s_tavern"
        assert request["requestedBy"] == "GM"

        broadcaster.handle(rin, "campaign_choice_ack", {})
        assert tavern(broadcaster).campaign.current_scene_id == "s_intro"
        broadcaster.handle(kael, "campaign_choice_ack", {})
        assert tavern(broadcaster).campaign.current_scene_id == "s_tavern"
        states = of_type(drain(gm), "campaign_state")
        assert states[-1]["currentSceneId"] == "s_tavern"

        broadcaster.handle(kael, "campaign_choice_ack", {})
        assert last_error(kael) == "No pending choice to approve."
        assert tavern(broadcaster).campaign.current_scene_id == "s_tavern"

    def test_request_needs_gm(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(rin, "campaign_choice_request", {"choiceId": "c_intro_tavern"})
        assert last_error(rin) == "GM only."

    def test_force(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "c_intro_board"})
        broadcaster.handle(gm, "campaign_choice_force", {})
        lobby = tavern(broadcaster)
        assert lobby.campaign.current_scene_id == "s_board"
        assert lobby.settings.pending_consent is None

    def test_gm_alone_commits_immediately(self, broadcaster, join):
        gm = join("GM")
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "c_intro_tavern"})
        assert tavern(broadcaster).campaign.current_scene_id == "s_tavern"

    def test_leaving_player_completes_quorum(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "c_intro_tavern"})
        broadcaster.handle(rin, "campaign_choice_ack", {})
        broadcaster.disconnect(kael)
        assert tavern(broadcaster).campaign.current_scene_id == "s_tavern"

    def test_content_edits_broadcast(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_scene_add", {"title": "Vault", "content": "Cold air."})
        scene = tavern(broadcaster).campaign.scenes[-1]
        broadcaster.handle(gm, "campaign_choice_add", {"sceneId": "s_intro", "text": "Dig", "target": scene.id})
        broadcaster.handle(gm, "campaign_handout_add", {"title": "Letter", "content": "..."})
        broadcaster.handle(gm, "campaign_quest_add", {"title": "Open the vault"})
        broadcaster.handle(rin, "campaign_note_add", {"text": "Bring rope"})
        states = of_type(drain(kael), "campaign_state")
        assert len(states) == 5
        final = states[-1]
        assert final["scenes"][0]["choices"][-1]["targetSceneId"] == scene.id
        assert final["notes"][-1] == {"by": "Rin", "text": "Bring rope", "ts": final["notes"][-1]["ts"]}

    def test_campaign_get_is_private(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(rin, "campaign_get", {})
        assert of_type(drain(rin), "campaign_state")[0]["key"] == "embers_of_argeth"
        assert drain(kael) == []

    def test_expired_request_is_broadcast_before_a_failed_request(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.settings.consent_timeout_seconds = 60
        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "c_intro_tavern"})
        lobby = tavern(broadcaster)
        lobby.settings.pending_consent.created_at = utcnow() - timedelta(minutes=5)
        drain(rin)

        broadcaster.handle(gm, "campaign_choice_request", {"choiceId": "nope"})
        assert last_error(gm) == "Choice not found on the current scene."
        assert lobby.settings.pending_consent is None
        states = of_type(drain(rin), "state")
        assert len(states) == 1
        assert states[0]["settings"]["pendingConsent"] is None

    def test_load(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "campaign_load", {"key": "the_drowned_bell"})
        assert tavern(broadcaster).campaign.key == "the_drowned_bell"
        broadcaster.handle(gm, "campaign_load", {"key": "nope"})
        assert last_error(gm) == "Unknown campaign: nope"


class TestLockRule:

    def test_locked_until_start(self, broadcaster, table):
        gm, rin, kael = table
        broadcaster.handle(gm, "settings_update", {"lockedUntilStart": True})
        broadcaster.handle(rin, "chat", {"text": "can I talk?"})
        assert "locked" in last_error(rin)
        broadcaster.handle(rin, "token_add", {})
        assert "locked" in last_error(rin)

        broadcaster.handle(gm, "chat", {"text": "GM may"})
        assert of_type(drain(kael), "chat")[0]["text"] == "GM may"

        broadcaster.handle(gm, "campaign_start", {})
        broadcaster.handle(rin, "chat", {"text": "now?"})
        assert of_type(drain(kael), "chat")[-1]["text"] == "now?"

    def test_require_character_on_join(self, broadcaster, table, join):
        gm, rin, kael = table
        broadcaster.handle(gm, "settings_update", {"requireCharacter": True})
        assert len(of_type(drain(rin), "character_required")) == 1
        late = join("Ash")
        messages = drain(late)
        assert len(of_type(messages, "character_required")) == 1
        assert "Ash" in of_type(messages, "state")[-1]["characterNeeded"]


class TestOutbox:

    def test_overflow_drops_backlog_and_queues_close(self):
        session = ConnectionSession(connection_id="c1", outbox=asyncio.Queue(maxsize=2))
        session.send("system", {"text": "one"})
        session.send("system", {"text": "two"})
        assert not session.overflowed

        session.send("system", {"text": "three"})
        assert session.overflowed
        assert session.outbox.qsize() == 1
        assert session.outbox.get_nowait() is None

        session.send("system", {"text": "four"})
        session.close()
        assert session.outbox.empty()

    def test_stalled_client_is_cut_off(self):
        settings = Settings(_env_file=None, database_url=None, outbox_limit=8)
        broadcaster = SessionBroadcaster(LobbyRegistry(), settings=settings, mirror=MirrorService())
        reader = broadcaster.connect()
        broadcaster.handle(reader, "join_lobby", {"lobby": "tavern"})
        drain(reader)
        stalled = broadcaster.connect()
        broadcaster.handle(stalled, "identify", {"name": "Slow"})
        broadcaster.handle(stalled, "join_lobby", {"lobby": "tavern"})

        for i in range(10):
            broadcaster.handle(reader, "chat", {"text": f"line {i}"})
            drain(reader)
        assert stalled.overflowed
        assert drain(stalled) == []
        assert not reader.overflowed

        broadcaster.disconnect(stalled)
        assert broadcaster.registry.get("tavern").member_names() == ["Anon"]
