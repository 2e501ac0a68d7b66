"""
Game catalog: which games the installed Archipelago knows, and how well each works.

The catalog also carries the engine version, which every config is compared against.
"""

from __future__ import annotations

import json
from enum import IntEnum
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

import config
from logger import setup_logger


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

VersionSpec = Tuple[int, int, int]


class FunctionState(IntEnum):
    """Ordered from best to worst; a config is as good as its worst game."""

    PLAYABLE = 0
    SUPPORT = 1
    TESTING = 2
    BROKEN = 3

    @classmethod
    def parse(cls, value) -> "FunctionState":
        if isinstance(value, FunctionState):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


class GameCatalog(BaseModel):
    version: VersionSpec = Field(..., description="Engine (Archipelago) version")
    games: Dict[str, FunctionState] = Field(default_factory=dict)

    @field_validator("games", mode="before")
    @classmethod
    def _parse_states(cls, value):
        return {str(k): FunctionState.parse(v) for k, v in (value or {}).items()}

    def state_of(self, game: str) -> Optional[FunctionState]:
        return self.games.get(game)

    def knows(self, game: str) -> bool:
        return game in self.games


DEFAULT_CATALOG = GameCatalog(
    version=(0, 4, 2),
    games={
        "Archipelago": FunctionState.SUPPORT,
        "A Link to the Past": FunctionState.PLAYABLE,
        "Clique": FunctionState.PLAYABLE,
        "Hollow Knight": FunctionState.PLAYABLE,
        "Ocarina of Time": FunctionState.PLAYABLE,
        "Super Metroid": FunctionState.PLAYABLE,
        "Timespinner": FunctionState.PLAYABLE,
        "Factorio": FunctionState.PLAYABLE,
        "Minecraft": FunctionState.PLAYABLE,
        "Pokemon Red and Blue": FunctionState.TESTING,
    },
)


def load_catalog(path: Optional[str] = None) -> GameCatalog:
    """Load the catalog JSON; fall back to the built-in list when the file is absent."""
    catalog_path = Path(path or getattr(config, "GAME_CATALOG_PATH", "./gamelist.json"))
    if not catalog_path.exists():
        logger.warning(f"Game catalog {catalog_path} not found; using built-in catalog")
        return DEFAULT_CATALOG

    data = json.loads(catalog_path.read_text(encoding="utf-8"))
    catalog = GameCatalog.model_validate(data)
    logger.info(
        f"Loaded {len(catalog.games)} games for Archipelago {'.'.join(map(str, catalog.version))}"
    )
    return catalog
