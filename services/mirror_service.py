"""
Mirror service: best-effort persistence of lobby activity

Writes are submitted to a single-worker thread pool so they keep their
order and never delay the in-memory update or the broadcast. A failed
write is logged as a PersistenceFailure and otherwise ignored.
"""
from concurrent.futures import Future, ThreadPoolExecutor
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from core.exceptions import PersistenceFailure
from database import get_session_factory, transactional
from db_models import ChatMessageRecord, DiceRollRecord, LobbyRecord
from models import ChatEntry, Lobby, RollEntry, utcnow

logger = logging.getLogger(__name__)


@transactional
def write_chat(db: Session, lobby: str, entry: dict) -> None:
    db.add(ChatMessageRecord(lobby=lobby, user=entry["user"], text=entry["text"], ts=entry["ts"]))


@transactional
def write_roll(db: Session, entry: dict) -> None:
    db.add(DiceRollRecord(
        lobby=entry["lobby"],
        user=entry["user"],
        expression=entry["expression"],
        rolls=entry["rolls"],
        used=entry["used"],
        modifier=entry["modifier"],
        total=entry["total"],
        ts=entry["ts"],
    ))


@transactional
def upsert_lobby(db: Session, name: str, has_password: bool, gm: Optional[str]) -> None:
    record = db.get(LobbyRecord, name)
    if record is None:
        record = LobbyRecord(name=name)
        db.add(record)
    record.has_password = has_password
    record.gm = gm
    record.updated_at = utcnow()


class MirrorService:
    """
    Fire-and-forget front for the write_* functions

    With no session factory (database_url unset) every call is a no-op.
    Arguments are snapshotted to plain dicts on the caller's thread so
    the worker never touches live lobby state.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory
        self._executor: Optional[ThreadPoolExecutor] = None
        if session_factory is not None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mirror")

    @classmethod
    def from_settings(cls) -> "MirrorService":
        return cls(get_session_factory())

    @property
    def enabled(self) -> bool:
        return self._executor is not None

    def record_chat(self, lobby: str, entry: ChatEntry) -> Optional[Future]:
        return self._submit(write_chat, lobby, entry.to_wire())

    def record_roll(self, entry: RollEntry) -> Optional[Future]:
        return self._submit(write_roll, entry.to_wire())

    def record_lobby(self, lobby: Lobby) -> Optional[Future]:
        return self._submit(upsert_lobby, lobby.name, lobby.password_hash is not None, lobby.gm)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def _submit(self, func: Callable, *args) -> Optional[Future]:
        if self._executor is None:
            return None
        return self._executor.submit(self._run, func, *args)

    def _run(self, func: Callable, *args) -> None:
        db = self._session_factory()
        try:
            func(db, *args)
        except Exception as e:
            failure = PersistenceFailure(f"{func.__name__} failed: {e}")
            logger.error(f"Mirror write dropped: {failure}", exc_info=True)
        finally:
            db.close()
