"""
Pytest fixtures for the lobby server test suite.

Every test gets its own registry and broadcaster, so lobbies never leak
between tests. Dice use a seeded random source.
"""

import random

import pytest

from core.broadcaster import SessionBroadcaster
from core.registry import LobbyRegistry
from database import Settings
from models import Lobby
from services.mirror_service import MirrorService


@pytest.fixture
def settings():
    """Settings without .env; mirror and rate limiting off."""
    return Settings(_env_file=None, database_url=None, rate_limit_enabled=False)


@pytest.fixture
def registry():
    return LobbyRegistry()


@pytest.fixture
def seeded_rng():
    return random.Random(1234)


@pytest.fixture
def broadcaster(registry, settings, seeded_rng):
    return SessionBroadcaster(registry, settings=settings, mirror=MirrorService(), rng=seeded_rng)


@pytest.fixture
def lobby():
    """A bare lobby with an empty campaign."""
    return Lobby(name="tavern")


@pytest.fixture
def join(broadcaster):
    """Connect, identify and join; returns the ConnectionSession."""
    def _join(name, lobby="tavern", password=None):
        session = broadcaster.connect()
        broadcaster.handle(session, "identify", {"name": name})
        data = {"lobby": lobby}
        if password is not None:
            data["password"] = password
        broadcaster.handle(session, "join_lobby", data)
        return session
    return _join
