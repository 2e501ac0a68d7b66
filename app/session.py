from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, NamedTuple, NewType, Optional, Set, Tuple

from allocators import PortAllocator
from attachments import AttachmentFetcher
from catalog import GameCatalog
from store.game_store import GameStore
from store.library import ConfigLibrary

from app.router import InteractionRouter


PlayerId = NewType("PlayerId", int)

# (player, config code) pairs, in join order. Immutable once a game launches.
Roster = Tuple[Tuple[PlayerId, str], ...]


class GameState(IntEnum):
    READY = 0
    ASSEMBLING = 1
    GENERATING = 2
    RUNNING = 3
    STOPPED = 4
    GENERATION_FAILED = 5
    CANCELLED = 6


TERMINAL_STATES = frozenset({GameState.STOPPED, GameState.GENERATION_FAILED, GameState.CANCELLED})

ALLOWED_TRANSITIONS: Dict[GameState, frozenset] = {
    GameState.READY: frozenset({GameState.ASSEMBLING, GameState.RUNNING}),
    GameState.ASSEMBLING: frozenset({GameState.GENERATING, GameState.CANCELLED}),
    GameState.GENERATING: frozenset({GameState.RUNNING, GameState.GENERATION_FAILED}),
    GameState.RUNNING: frozenset({GameState.STOPPED}),
    GameState.STOPPED: frozenset(),
    GameState.GENERATION_FAILED: frozenset(),
    GameState.CANCELLED: frozenset(),
}


class ActionResult(NamedTuple):
    ok: bool
    message: str = ""


@dataclass
class GameServices:
    """Long-lived collaborators shared by every game on this bot."""

    bot: Any
    router: InteractionRouter
    store: GameStore
    library: ConfigLibrary
    catalog: GameCatalog
    fetcher: AttachmentFetcher
    ports: PortAllocator
    # Codes held by games that are still live in this process.
    live_codes: Callable[[], Set[str]] = set


@dataclass
class Session:
    code: str
    guild_id: Optional[int] = None
    channel_id: Optional[int] = None
    host_id: Optional[int] = None
    test_game: bool = False
    filename: Optional[str] = None
    state: GameState = GameState.READY
    players: Dict[PlayerId, List[str]] = field(default_factory=dict)
    roster: Roster = ()

    @property
    def player_count(self) -> int:
        return sum(1 for codes in self.players.values() if codes)

    @property
    def config_count(self) -> int:
        return sum(len(codes) for codes in self.players.values())

    def has_config(self, player_id: PlayerId, code: str) -> bool:
        return code in self.players.get(player_id, [])

    def add_config(self, player_id: PlayerId, code: str) -> None:
        if self.state != GameState.ASSEMBLING:
            raise RuntimeError(f"Game {self.code} is not accepting players")
        self.players.setdefault(player_id, []).append(code)

    def freeze(self) -> Roster:
        self.roster = tuple(
            (player_id, code) for player_id, codes in self.players.items() for code in codes
        )
        return self.roster
