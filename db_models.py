"""
Persistence mirror tables

Best-effort copy of lobby activity. The in-memory registry stays
authoritative; nothing is ever read back from these tables.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ChatMessageRecord(Base):
    """One row per chat line broadcast to a lobby"""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby = Column(String(40), index=True, nullable=False)
    user = Column(String(64), nullable=False)
    text = Column(Text, nullable=False)
    ts = Column(String(40), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class DiceRollRecord(Base):
    """One row per dice roll broadcast to a lobby"""
    __tablename__ = "dice_rolls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby = Column(String(40), index=True, nullable=False)
    user = Column(String(64), nullable=False)
    expression = Column(String(40), nullable=False)
    rolls = Column(JSON, nullable=False)
    used = Column(JSON, nullable=False)
    modifier = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)
    ts = Column(String(40), nullable=False)


class LobbyRecord(Base):
    """Upserted lobby metadata: never stores the credential itself"""
    __tablename__ = "lobbies"

    name = Column(String(40), primary_key=True)
    has_password = Column(Boolean, nullable=False, default=False)
    gm = Column(String(24), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
