"""
Concurrency control helpers

Every Lobby carries its own re-entrant lock. All mutations of one lobby,
together with enqueueing the views they produce, happen while that lock is
held, so the broadcast order always matches the commit order.

Different lobbies never share a lock and proceed independently.
"""
from contextlib import contextmanager
from typing import Iterator

from models import Lobby


@contextmanager
def with_lobby_lock(lobby: Lobby) -> Iterator[Lobby]:
    """
    Hold a lobby's lock for the duration of the block

    Example:
        with with_lobby_lock(lobby) as locked:
            locked.encounter.active = True
            broadcaster.emit_state(locked)

    Note:
        - the block must not await; enqueueing outbound messages is
          synchronous so ordering is preserved without yielding
    """
    with lobby.lock:
        yield lobby
