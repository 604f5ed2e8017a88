"""
Map Engine: grid of open/wall cells plus movable tokens

Role checks (GM-only operations, the lobby lock rule) happen in the
dispatcher's policy table before these functions are called. Token
ownership depends on the token itself, so it is checked here.
"""
import logging
from typing import Any, Optional, Tuple

from core.exceptions import NotAuthorized, NotFound
from models import MapState, Lobby, Token, OPEN, WALL, blank_tiles, utcnow_iso
from services.character_service import clamp, to_int
from services.naming_service import clean_text, generate_id, sanitize_name

logger = logging.getLogger(__name__)

MIN_MAP_SIZE = 5
MAX_MAP_SIZE = 60
DEFAULT_TOKEN_COLOR = "#222"


def clamp_point(board: MapState, x: Any, y: Any) -> Tuple[int, int]:
    """Coerce to int (garbage -> 0) and clamp into the grid"""
    return (
        clamp(to_int(x, 0), 0, board.width - 1),
        clamp(to_int(y, 0), 0, board.height - 1),
    )


def init_map(lobby: Lobby, width: Any, height: Any) -> MapState:
    """
    Replace the map with a fresh all-open grid

    width/height are clamped to [5, 60]; tokens are cleared.
    """
    width = clamp(to_int(width, 20), MIN_MAP_SIZE, MAX_MAP_SIZE)
    height = clamp(to_int(height, 20), MIN_MAP_SIZE, MAX_MAP_SIZE)
    lobby.map = MapState(width=width, height=height, tiles=blank_tiles(width, height), tokens={})
    lobby.touch()
    return lobby.map


def set_tile(lobby: Lobby, x: Any, y: Any, blocked: Any) -> Tuple[int, int]:
    """
    Mark one cell as wall or open

    Out-of-range coordinates are clamped onto the nearest edge cell.
    Tokens already standing on the cell stay where they are.
    """
    board = lobby.map
    x, y = clamp_point(board, x, y)
    board.tiles[y][x] = WALL if blocked else OPEN
    lobby.touch()
    return x, y


def clear_walls(lobby: Lobby) -> None:
    board = lobby.map
    board.tiles = blank_tiles(board.width, board.height)
    lobby.touch()


def first_free_cell(board: MapState) -> Tuple[int, int]:
    """
    Row-major scan for the first open cell without a token

    A completely full grid falls back to (0, 0); the token then shares
    the origin cell.
    """
    for y in range(board.height):
        for x in range(board.width):
            if board.tiles[y][x] == OPEN and not board.occupied(x, y):
                return x, y
    return 0, 0


def can_control(lobby: Lobby, token: Token, name: str) -> bool:
    return lobby.is_gm(name) or token.owner_name == name


def add_token(
    lobby: Lobby,
    owner: str,
    token_id: Optional[str] = None,
    name: Optional[str] = None,
    color: Optional[str] = None,
) -> Token:
    """
    Place a new token on the first free cell

    Re-adding an existing id only updates name and color, and only for
    the token's owner or the GM.

    Raises:
        NotAuthorized: the id belongs to someone else's token
    """
    board = lobby.map
    token_id = clean_text(token_id, 40) or generate_id("t")
    token_name = sanitize_name(name or owner)
    token_color = clean_text(color, 16) or DEFAULT_TOKEN_COLOR

    existing = board.tokens.get(token_id)
    if existing is not None:
        if not can_control(lobby, existing, owner):
            raise NotAuthorized("Only owner or GM can change this token.")
        existing.name = token_name
        existing.color = token_color
        lobby.touch()
        return existing

    x, y = first_free_cell(board)
    token = Token(id=token_id, name=token_name, x=x, y=y, color=token_color, owner_name=owner)
    board.tokens[token_id] = token
    lobby.touch()
    logger.debug(f"Token {token_id} placed at ({x}, {y}) in lobby {lobby.name}")
    return token


def move_token(lobby: Lobby, actor: str, token_id: Any, x: Any, y: Any) -> bool:
    """
    Move a token; clamped destination, walls refuse silently

    Returns:
        True if the token moved, False for unknown id or wall destination

    Raises:
        NotAuthorized: actor is neither owner nor GM
    """
    board = lobby.map
    token = board.tokens.get(str(token_id)) if token_id is not None else None
    if token is None:
        return False
    if not can_control(lobby, token, actor):
        raise NotAuthorized("Only owner or GM can move this token.")
    x, y = clamp_point(board, x, y)
    if board.is_wall(x, y):
        return False
    token.x, token.y = x, y
    lobby.touch()
    return True


def remove_token(lobby: Lobby, actor: str, token_id: Any) -> Token:
    """
    Raises:
        NotFound: unknown token id
        NotAuthorized: actor is neither owner nor GM
    """
    token = lobby.map.tokens.get(str(token_id)) if token_id is not None else None
    if token is None:
        raise NotFound("Token not found.")
    if not can_control(lobby, token, actor):
        raise NotAuthorized("Only owner or GM can remove this token.")
    del lobby.map.tokens[token.id]
    lobby.touch()
    return token


def ping(lobby: Lobby, actor: str, x: Any, y: Any) -> dict:
    """Ephemeral ping payload; nothing is stored"""
    x, y = clamp_point(lobby.map, x, y)
    return {"x": x, "y": y, "by": actor, "ts": utcnow_iso()}
