"""
Persisted game records.

A record is created once generation succeeds. `active` is True only while a server
process for the game is live, so active codes are never handed out again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Set

from .database import Database, GameRow, utcnow


@dataclass(frozen=True)
class GameRecord:
    code: str
    guild_id: int
    host_id: int
    filename: str
    active: bool
    created_at: datetime
    updated_at: datetime


def _to_record(row: GameRow) -> GameRecord:
    return GameRecord(
        code=row.code,
        guild_id=int(row.guild_id),
        host_id=int(row.user_id),
        filename=row.filename,
        active=bool(row.active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class GameStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, code: str, guild_id: int, host_id: int, filename: str, active: bool = False) -> GameRecord:
        with self.db.session() as s:
            row = GameRow(
                code=code,
                guild_id=str(guild_id),
                user_id=str(host_id),
                filename=filename,
                active=active,
            )
            s.add(row)
            s.commit()
            return _to_record(row)

    def get(self, code: str) -> Optional[GameRecord]:
        with self.db.session() as s:
            row = s.get(GameRow, code)
            return _to_record(row) if row else None

    def set_active(self, code: str, active: bool) -> bool:
        with self.db.session() as s:
            row = s.get(GameRow, code)
            if row is None:
                return False
            row.active = active
            row.updated_at = utcnow()
            s.commit()
            return True

    def codes(self) -> Set[str]:
        with self.db.session() as s:
            return {code for (code,) in s.query(GameRow.code).all()}

    def stale_codes(self, updated_before: datetime) -> Set[str]:
        """Inactive games not touched since `updated_before`."""
        with self.db.session() as s:
            rows = (
                s.query(GameRow.code)
                .filter(GameRow.active.is_(False), GameRow.updated_at < updated_before)
                .all()
            )
            return {code for (code,) in rows}

    def delete(self, codes: Iterable[str]) -> int:
        codes = list(codes)
        if not codes:
            return 0
        with self.db.session() as s:
            n = s.query(GameRow).filter(GameRow.code.in_(codes)).delete(synchronize_session=False)
            s.commit()
            return n
