"""
Membership: join, leave, kick, ban

Join rules, in order:
1. Case-folded name on the ban list -> rejected (banned)
2. Lobby has a password -> caller must supply a matching one
3. No password yet but caller supplies one -> it becomes the password,
   caller becomes GM if the lobby has none
4. Otherwise the first joiner of a GM-less lobby becomes GM
5. Name collisions are resolved with the smallest free numeric suffix
"""
import logging
from typing import Callable, Optional

from core.exceptions import JoinRejected, NotAuthorized, NotFound, ValidationFailed
from models import Lobby
from services.credential_service import hash_password, verify_password
from services.naming_service import sanitize_name, unique_display_name

logger = logging.getLogger(__name__)


def is_banned(lobby: Lobby, name: str) -> bool:
    return name.casefold() in lobby.banned_names


def join(
    lobby: Lobby,
    connection_id: str,
    candidate: str,
    password: Optional[str] = None,
    hasher: Callable[[str], str] = hash_password,
    verifier: Callable[[str, str], bool] = verify_password,
) -> str:
    """
    Admit a connection into a lobby

    Args:
        lobby: target lobby (caller holds its lock)
        connection_id: the joining connection
        candidate: requested display name (already sanitized)
        password: optional lobby password

    Returns:
        the final, unique display name

    Raises:
        JoinRejected(BANNED): name is banned
        JoinRejected(WRONG_PASSWORD): password missing or wrong
    """
    candidate = sanitize_name(candidate)

    # 1. Ban list
    if is_banned(lobby, candidate):
        logger.info(f"Rejected banned name {candidate} from lobby {lobby.name}")
        raise JoinRejected(JoinRejected.BANNED)

    # 2. Resolve the final name first; GM is recorded under it
    taken = [n for cid, n in lobby.members.items() if cid != connection_id]
    final_name = unique_display_name(taken, candidate)

    # 3. Credential gate
    if lobby.password_hash:
        if not password or not verifier(password, lobby.password_hash):
            logger.info(f"Rejected {candidate} from lobby {lobby.name}: wrong password")
            raise JoinRejected(JoinRejected.WRONG_PASSWORD)
    elif password:
        lobby.password_hash = hasher(password)
        if not lobby.gm:
            lobby.gm = final_name
        logger.info(f"Lobby {lobby.name} password established by {final_name}")
    elif not lobby.gm:
        lobby.gm = final_name

    # 4. Record membership
    lobby.members[connection_id] = final_name
    lobby.touch()
    return final_name


def leave(lobby: Lobby, connection_id: str) -> Optional[str]:
    """
    Drop a connection's membership

    Tokens, characters and macros stay: they are keyed by display name
    and come back when the same name reconnects.

    Returns:
        the name that left, or None if the connection was not a member
    """
    name = lobby.members.pop(connection_id, None)
    if name is not None:
        lobby.touch()
    return name


def kick(lobby: Lobby, target: str) -> str:
    """
    Remove the member named target

    Returns:
        the kicked connection id

    Raises:
        NotFound: nobody with that name is connected
    """
    connection_id = lobby.connection_for(target)
    if connection_id is None:
        raise NotFound("User not found")
    leave(lobby, connection_id)
    return connection_id


def ban(lobby: Lobby, name: str) -> str:
    folded = sanitize_name(name).casefold()
    lobby.banned_names.add(folded)
    lobby.touch()
    return folded


def unban(lobby: Lobby, name: str) -> str:
    folded = sanitize_name(name).casefold()
    lobby.banned_names.discard(folded)
    lobby.touch()
    return folded


def set_password(lobby: Lobby, name: str, password: str, hasher: Callable[[str], str] = hash_password) -> None:
    """
    Set or change the lobby password

    Anyone may set the first password; only the GM may change it.
    """
    if lobby.password_hash and not lobby.is_gm(name):
        raise NotAuthorized("Only GM can change password.")
    if not password:
        raise ValidationFailed("Usage: /setpass <password>")
    lobby.password_hash = hasher(password)
    if not lobby.gm:
        lobby.gm = name
    lobby.touch()
