from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache, wraps
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Process configuration (environment variables or .env)

    database_url left unset keeps the server purely in-memory; the
    persistence mirror is skipped entirely in that case.
    """
    database_url: Optional[str] = None
    history_limit: int = 40
    default_lobby: str = "tavern"
    default_campaign: str = "embers_of_argeth"
    consent_timeout_seconds: Optional[float] = None
    outbox_limit: int = 1000
    rate_limit_enabled: bool = False
    rate_limit_events: int = 20
    rate_limit_window_seconds: float = 5.0
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


Base = declarative_base()


@lru_cache()
def get_engine() -> Optional[Engine]:
    """
    Build the mirror engine once, or None when no database is configured

    SQLite needs check_same_thread=False because mirror writes run on a
    worker thread, not the thread that created the connection.
    """
    url = get_settings().database_url
    if not url:
        return None
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True
    )


@lru_cache()
def get_session_factory() -> Optional[sessionmaker]:
    engine = get_engine()
    if engine is None:
        return None
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables() -> None:
    engine = get_engine()
    if engine is None:
        logger.info("No database_url configured, persistence mirror disabled")
        return
    import db_models  # noqa: F401  registers tables on Base.metadata
    Base.metadata.create_all(bind=engine)
    logger.info("Persistence mirror tables ready")


def transactional(func):
    """
    Transaction decorator: commit on success, rollback on failure

    Usage:
        @transactional
        def record_chat(db: Session, ...):
            db.add(ChatMessageRecord(...))
            # no manual commit, the decorator handles it

    On exception:
        - rollback
        - re-raise so the caller decides what to do with it

    Note:
        - the first positional argument (or the `db` keyword) must be a Session
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
