"""
Unit tests for the grid map and tokens.
"""

import pytest

from core import map_engine
from core.exceptions import NotAuthorized, NotFound
from models import WALL


@pytest.fixture
def board_lobby(lobby):
    lobby.gm = "GM"
    map_engine.init_map(lobby, 10, 10)
    return lobby


class TestInitMap:

    def test_clamps_dimensions(self, lobby):
        board = map_engine.init_map(lobby, 100, 2)
        assert (board.width, board.height) == (60, 5)
        assert len(board.tiles) == 5
        assert all(len(row) == 60 for row in board.tiles)

    def test_non_numeric_defaults(self, lobby):
        board = map_engine.init_map(lobby, "wide", None)
        assert (board.width, board.height) == (20, 20)

    def test_resize_clears_tokens(self, board_lobby):
        map_engine.add_token(board_lobby, "Rin")
        map_engine.init_map(board_lobby, 12, 12)
        assert board_lobby.map.tokens == {}


class TestTiles:

    def test_set_tile_clamps(self, board_lobby):
        assert map_engine.set_tile(board_lobby, 50, -3, True) == (9, 0)
        assert board_lobby.map.tiles[0][9] == WALL

    def test_clear_walls_keeps_tokens(self, board_lobby):
        map_engine.set_tile(board_lobby, 3, 3, True)
        token = map_engine.add_token(board_lobby, "Rin")
        map_engine.clear_walls(board_lobby)
        assert not board_lobby.map.is_wall(3, 3)
        assert token.id in board_lobby.map.tokens


class TestTokens:

    def test_placement_skips_walls_and_tokens(self, board_lobby):
        map_engine.set_tile(board_lobby, 0, 0, True)
        first = map_engine.add_token(board_lobby, "Rin")
        second = map_engine.add_token(board_lobby, "Kael")
        assert (first.x, first.y) == (1, 0)
        assert (second.x, second.y) == (2, 0)

    def test_full_grid_falls_back_to_origin(self, lobby):
        map_engine.init_map(lobby, 5, 5)
        for y in range(5):
            for x in range(5):
                map_engine.set_tile(lobby, x, y, True)
        token = map_engine.add_token(lobby, "Rin")
        assert (token.x, token.y) == (0, 0)

    def test_defaults(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        assert token.name == "Rin"
        assert token.owner_name == "Rin"
        assert token.color == map_engine.DEFAULT_TOKEN_COLOR
        assert token.id.startswith("t_")

    def test_readd_by_owner_updates(self, board_lobby):
        map_engine.add_token(board_lobby, "Rin", "tok1", "Rin", "#f00")
        updated = map_engine.add_token(board_lobby, "Rin", "tok1", "Rin the Bold", "#0f0")
        assert updated.name == "Rin the Bold"
        assert len(board_lobby.map.tokens) == 1

    def test_readd_by_stranger_refused(self, board_lobby):
        map_engine.add_token(board_lobby, "Rin", "tok1")
        with pytest.raises(NotAuthorized):
            map_engine.add_token(board_lobby, "Kael", "tok1", "Mine")

    def test_move(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        assert map_engine.move_token(board_lobby, "Rin", token.id, 4, 5)
        assert (token.x, token.y) == (4, 5)

    def test_move_onto_wall_is_silent_noop(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        map_engine.set_tile(board_lobby, 4, 4, True)
        assert not map_engine.move_token(board_lobby, "Rin", token.id, 4, 4)
        assert (token.x, token.y) == (0, 0)

    def test_move_clamps(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        map_engine.move_token(board_lobby, "Rin", token.id, 99, 99)
        assert (token.x, token.y) == (9, 9)

    def test_move_unknown_is_noop(self, board_lobby):
        assert not map_engine.move_token(board_lobby, "Rin", "ghost", 1, 1)

    def test_move_by_stranger_refused(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        with pytest.raises(NotAuthorized):
            map_engine.move_token(board_lobby, "Kael", token.id, 1, 1)

    def test_gm_moves_any_token(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        assert map_engine.move_token(board_lobby, "GM", token.id, 2, 2)

    def test_remove(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        with pytest.raises(NotAuthorized):
            map_engine.remove_token(board_lobby, "Kael", token.id)
        map_engine.remove_token(board_lobby, "Rin", token.id)
        assert board_lobby.map.tokens == {}

    def test_remove_unknown(self, board_lobby):
        with pytest.raises(NotFound):
            map_engine.remove_token(board_lobby, "GM", "ghost")

    def test_wall_edit_does_not_evict(self, board_lobby):
        token = map_engine.add_token(board_lobby, "Rin")
        map_engine.set_tile(board_lobby, token.x, token.y, True)
        assert (token.x, token.y) == (0, 0)


def test_ping_is_clamped_and_not_stored(board_lobby):
    data = map_engine.ping(board_lobby, "Rin", -1, 42)
    assert (data["x"], data["y"], data["by"]) == (0, 9, "Rin")
    assert "ts" in data
