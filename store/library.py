"""
Personal config library: every player's stored YAMLs and their default pick.

Files live at `<yaml_dir>/<user_id>/<filename>.yaml`; metadata lives in the `yaml`
table so listings never have to re-parse the documents.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import config
from allocators import generate_letter_code
from catalog import FunctionState, GameCatalog, VersionSpec
from config_artifact import ConfigData, format_version, parse_version, worst_state

from .database import ConfigRow, Database, PlayerRow


_UNSAFE_FILENAME_RE = re.compile(r"[^0-9A-Za-z_\-]+")


@dataclass(frozen=True)
class ConfigRecord:
    code: str
    user_id: int
    filename: str
    description: str
    player_names: Tuple[str, ...]
    games: Tuple[str, ...]
    version: Optional[VersionSpec] = None

    def state(self, catalog: GameCatalog) -> FunctionState:
        return worst_state(self.games, catalog)

    def label(self) -> str:
        return f"{self.code}: {', '.join(self.player_names) or 'Who?'}"


def _to_record(row: ConfigRow) -> ConfigRecord:
    return ConfigRecord(
        code=row.code,
        user_id=int(row.user_id),
        filename=row.filename,
        description=row.description,
        player_names=tuple(row.player_names or ()),
        games=tuple(row.games or ()),
        version=parse_version(row.version),
    )


class ConfigLibrary:
    def __init__(self, db: Database, yaml_dir: Optional[str] = None) -> None:
        self.db = db
        self.yaml_dir = Path(yaml_dir or getattr(config, "YAML_DIR", "./yamls"))

    # ---------------------------
    # Defaults
    # ---------------------------
    def get_default(self, user_id: int) -> Optional[str]:
        with self.db.session() as s:
            row = s.get(PlayerRow, str(user_id))
            return row.default_code if row else None

    def set_default(self, user_id: int, code: Optional[str]) -> None:
        with self.db.session() as s:
            row = s.get(PlayerRow, str(user_id))
            if row is None:
                row = PlayerRow(user_id=str(user_id))
                s.add(row)
            row.default_code = code
            s.commit()

    # ---------------------------
    # Lookups
    # ---------------------------
    def get(self, code: str) -> Optional[ConfigRecord]:
        with self.db.session() as s:
            row = s.get(ConfigRow, code)
            return _to_record(row) if row else None

    def get_many(self, codes: Iterable[str]) -> Dict[str, ConfigRecord]:
        codes = list(dict.fromkeys(codes))
        if not codes:
            return {}
        with self.db.session() as s:
            rows = s.query(ConfigRow).filter(ConfigRow.code.in_(codes)).all()
            return {row.code: _to_record(row) for row in rows}

    def list_for_user(
        self,
        user_id: int,
        catalog: Optional[GameCatalog] = None,
        states: Optional[FrozenSet[FunctionState]] = None,
    ) -> List[ConfigRecord]:
        with self.db.session() as s:
            rows = (
                s.query(ConfigRow)
                .filter(ConfigRow.user_id == str(user_id))
                .order_by(ConfigRow.created_at)
                .all()
            )
            records = [_to_record(row) for row in rows]
        if catalog is not None and states is not None:
            records = [r for r in records if r.state(catalog) in states]
        return records

    def path_for(self, record: ConfigRecord) -> Path:
        return self.yaml_dir / str(record.user_id) / f"{record.filename}.yaml"

    # ---------------------------
    # Mutations
    # ---------------------------
    def add_config(self, user_id: int, data: ConfigData, make_default: bool = False) -> ConfigRecord:
        with self.db.session() as s:
            taken = {code for (code,) in s.query(ConfigRow.code).all()}
            code = generate_letter_code(taken, getattr(config, "CODE_LENGTH", 4))
            stem = _UNSAFE_FILENAME_RE.sub("_", data.names[0])[:32] if data.names else "config"
            filename = f"{code}_{stem}"

            path = self.yaml_dir / str(user_id) / f"{filename}.yaml"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(data.data, encoding="utf-8")

            row = ConfigRow(
                code=code,
                user_id=str(user_id),
                filename=filename,
                description=data.description[:255],
                player_names=list(data.names),
                games=list(data.games),
                version=format_version(data.version) if data.version else None,
            )
            s.add(row)
            s.commit()
            record = _to_record(row)

        if make_default:
            self.set_default(user_id, code)
        return record
