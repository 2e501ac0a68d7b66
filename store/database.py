"""
SQLite persistence (SQLAlchemy).

Tables:
- games: one row per generated game (code, guild, host, output filename, active)
- players: each player's default config code
- yaml: each config in a player's library
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import config


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GameRow(Base):
    __tablename__ = "games"

    code = Column(String(4), primary_key=True)
    guild_id = Column(String(20), nullable=False)
    user_id = Column(String(20), nullable=False)
    filename = Column(String(64), nullable=False)
    active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PlayerRow(Base):
    __tablename__ = "players"

    user_id = Column(String(20), primary_key=True)
    default_code = Column(String(4), nullable=True, default=None)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ConfigRow(Base):
    __tablename__ = "yaml"

    code = Column(String(4), primary_key=True)
    user_id = Column(String(20), nullable=False, index=True)
    filename = Column(String(64), nullable=False)
    description = Column(String(255), nullable=False, default="No description provided")
    player_names = Column(JSON, nullable=False, default=list)
    games = Column(JSON, nullable=False, default=list)
    version = Column(String(16), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Database:
    def __init__(self, url: str = None) -> None:
        self.url = url or config.DATABASE_URL
        connect_args = {"check_same_thread": False} if self.url.startswith("sqlite") else {}
        self.engine = create_engine(self.url, connect_args=connect_args)
        self.session = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
