"""
Lobby Registry: owns every Lobby for the lifetime of the process

Responsibilities:
1. Create a lobby on first reference (default map, default campaign)
2. Look lobbies up by name
3. List lobby names for the HTTP surface

The registry is an explicit object built once at startup and injected
wherever it is needed; tests build as many isolated registries as they like.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from core.exceptions import LobbyNotFound, NotFound
from models import Campaign, Lobby
from services.campaign_library import load_campaign

logger = logging.getLogger(__name__)


class LobbyRegistry:
    """Lobby lifecycle manager"""

    def __init__(
        self,
        default_campaign: Optional[str] = "embers_of_argeth",
        campaign_loader: Callable[[str], Campaign] = load_campaign,
    ):
        self._lobbies: Dict[str, Lobby] = {}
        self._lock = threading.Lock()
        self._default_campaign = default_campaign
        self._campaign_loader = campaign_loader

    @property
    def campaign_loader(self) -> Callable[[str], Campaign]:
        return self._campaign_loader

    def get_or_create(self, name: str) -> Tuple[Lobby, bool]:
        """
        Return the lobby for name, creating it if needed

        Two concurrent first references always receive the same Lobby:
        the check and the insert happen under one lock.

        Returns:
            (Lobby, created) tuple
        """
        with self._lock:
            lobby = self._lobbies.get(name)
            if lobby is not None:
                return lobby, False
            lobby = self._new_lobby(name)
            self._lobbies[name] = lobby

        logger.info(f"Created lobby {name}")
        return lobby, True

    def get(self, name: str) -> Lobby:
        """
        Raises:
            LobbyNotFound: no lobby with that name exists
        """
        lobby = self._lobbies.get(name)
        if lobby is None:
            raise LobbyNotFound(name)
        return lobby

    def find(self, name: Optional[str]) -> Optional[Lobby]:
        if not name:
            return None
        return self._lobbies.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._lobbies.keys())

    def _new_lobby(self, name: str) -> Lobby:
        lobby = Lobby(name=name)
        if self._default_campaign:
            try:
                lobby.campaign = self._campaign_loader(self._default_campaign)
            except NotFound:
                logger.warning(f"Default campaign {self._default_campaign} missing, lobby {name} starts empty")
        return lobby
