from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
import shutil
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

import config
from allocators import generate_letter_code
from config_artifact import permitted_states
from errors import (
    GameNotFoundError,
    InvalidTransitionError,
    MultiworldError,
    PreconditionMissingError,
)
from logger import session_logger, setup_logger
from store.database import utcnow
from store.game_store import GameStore

from app.recruitment import RecruitmentLoop
from app.session import (
    ALLOWED_TRANSITIONS,
    ActionResult,
    GameServices,
    GameState,
    Roster,
    Session,
)
from services.generation import GenerationSupervisor
from services.server import ServerSupervisor


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

StateListener = Callable[["GameController", GameState, GameState], Any]


class GameController:
    """
    게임 한 판의 수명주기 (애플리케이션 레이어).

    READY -> ASSEMBLING -> GENERATING -> RUNNING -> STOPPED
               |              `-> GENERATION_FAILED
               `-> CANCELLED
    A game loaded from storage may also go READY -> RUNNING (resume).
    """

    def __init__(self, services: GameServices, code: str, test_game: bool = False, record: Any = None):
        self.services = services
        self.session = Session(code=code, test_game=test_game)
        if record is not None:
            self.session.guild_id = record.guild_id
            self.session.host_id = record.host_id
            self.session.filename = record.filename
            if record.active:
                self.session.state = GameState.RUNNING

        self.permitted = permitted_states(test_game)
        self.channel: Any = None
        self.recruitment: Optional[RecruitmentLoop] = None
        self.server: Optional[ServerSupervisor] = None
        self.task: Optional[asyncio.Task] = None
        self._listeners: List[StateListener] = []
        self.log = session_logger(logger, code)

    @property
    def code(self) -> str:
        return self.session.code

    @property
    def state(self) -> GameState:
        return self.session.state

    @property
    def host_id(self) -> Optional[int]:
        return self.session.host_id

    # ---------------------------
    # Construction
    # ---------------------------
    @classmethod
    def new_game(cls, services: GameServices, test_game: bool = False) -> "GameController":
        taken = services.store.codes() | set(services.live_codes())
        code = generate_letter_code(taken, getattr(config, "CODE_LENGTH", 4))
        return cls(services, code, test_game=test_game)

    @classmethod
    def from_code(cls, services: GameServices, code: str) -> "GameController":
        """
        Raises:
            GameNotFoundError: no persisted game has this code
        """
        record = services.store.get(code.upper())
        if record is None:
            raise GameNotFoundError(code)
        return cls(services, record.code, record=record)

    @staticmethod
    def get_creation_metadata(store: GameStore, code: str) -> Optional[Tuple[int, int]]:
        """(guild_id, host_id) of a persisted game, or None."""
        record = store.get(code.upper())
        if record is None:
            return None
        return record.guild_id, record.host_id

    # ---------------------------
    # State
    # ---------------------------
    def on_change_state(self, listener: StateListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def off_change_state(self, listener: Optional[StateListener] = None) -> bool:
        if listener is None:
            had_any = bool(self._listeners)
            self._listeners.clear()
            return had_any
        if listener in self._listeners:
            self._listeners.remove(listener)
            return True
        return False

    def _set_state(self, new_state: GameState) -> None:
        old_state = self.session.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(f"Game {self.code}: {old_state.name} -> {new_state.name} is not allowed")
        self.session.state = new_state
        self.log.info(f"State {old_state.name} -> {new_state.name}")
        for listener in list(self._listeners):
            try:
                listener(self, old_state, new_state)
            except Exception as e:
                self.log.error(f"State listener error: {e}", exc_info=True)

    # ---------------------------
    # Recruitment
    # ---------------------------
    async def start_recruitment(self, origin: Any) -> None:
        """
        Post the recruitment message in the origin's channel.

        Raises:
            MultiworldError: the game has already been generated
            PreconditionMissingError: origin has no guild/channel/author
        """
        if self.session.filename:
            raise MultiworldError("Game has already been generated")
        guild = getattr(origin, "guild", None)
        channel = getattr(origin, "channel", None)
        author = getattr(origin, "author", None)
        if guild is None:
            raise PreconditionMissingError("No guild associated to this game")
        if channel is None:
            raise PreconditionMissingError("No channel associated to this game")
        if author is None:
            raise PreconditionMissingError("No host associated to this game")
        if self.state != GameState.READY:
            raise InvalidTransitionError(f"Game {self.code} is {self.state.name}, not READY")

        self.session.guild_id = int(guild.id)
        self.session.channel_id = int(channel.id)
        self.session.host_id = int(author.id)
        self.channel = channel

        self.recruitment = RecruitmentLoop(self)
        await self.recruitment.open(channel)
        self._set_state(GameState.ASSEMBLING)

    async def cancel(self, requester_id: int) -> ActionResult:
        if self.state != GameState.ASSEMBLING:
            return ActionResult(False, "This game can no longer be cancelled.")
        if int(requester_id) != self.session.host_id:
            return ActionResult(False, "Only the game's host may cancel the game.")

        self._set_state(GameState.CANCELLED)
        await self.recruitment.close(
            "The game has been cancelled.",
            "This request has been closed because the game was cancelled.",
        )
        return ActionResult(True)

    async def launch(self, requester_id: int) -> ActionResult:
        if self.state != GameState.ASSEMBLING:
            return ActionResult(False, "This game is not open for launching.")
        if int(requester_id) != self.session.host_id:
            return ActionResult(False, "Only the game's host may launch the game.")
        if self.session.config_count == 0:
            return ActionResult(False, "At least one YAML has to join before the game can launch.")

        roster = self.session.freeze()
        self._set_state(GameState.GENERATING)
        status = f"Game {self.code} is now closed to new players and is being generated."
        await self.recruitment.close(
            status,
            "This request has been closed because the game has already launched.",
        )
        self.task = asyncio.create_task(self._pipeline(roster, status))
        return ActionResult(True)

    # ---------------------------
    # Generation -> server
    # ---------------------------
    async def _pipeline(self, roster: Roster, status: str) -> None:
        generation = GenerationSupervisor(
            self.services,
            self.session,
            self.channel,
            status_message=self.recruitment.message if self.recruitment else None,
            status_text=status,
        )
        try:
            outcome = await generation.run(roster)
        except Exception as e:
            if not isinstance(e, MultiworldError):
                self.log.error(f"Unexpected generation error: {e}", exc_info=True)
            try:
                await generation.report_failure(e)
            finally:
                self._set_state(GameState.GENERATION_FAILED)
            return

        self.session.roster = outcome.roster
        self._set_state(GameState.RUNNING)
        await self._serve()

    async def _serve(self) -> None:
        self.server = ServerSupervisor(self.services, self.session, self.channel)
        try:
            await self.server.run()
        except Exception as e:
            self.log.error(f"Server error: {e}", exc_info=not isinstance(e, MultiworldError))
            if self.server.message is None:
                await self.channel.send(content=f"The server for game {self.code} could not be started: {e}")
        finally:
            self._set_state(GameState.STOPPED)

    async def resume(self, channel: Any) -> ActionResult:
        """Restart the server of a game loaded with `from_code`."""
        if not self.session.filename:
            raise MultiworldError(f"Game {self.code} has not been generated")
        if self.state != GameState.READY:
            return ActionResult(False, f"Game {self.code} is already running.")

        self.channel = channel
        self.session.channel_id = int(channel.id)
        self._set_state(GameState.RUNNING)
        self.task = asyncio.create_task(self._serve())
        return ActionResult(True)

    def stop(self) -> None:
        if self.server is not None:
            self.server.stop()

    def kill(self) -> None:
        if self.server is not None:
            self.server.kill()

    # ---------------------------
    # Cleanup
    # ---------------------------
    @staticmethod
    def cleanup_games(
        store: GameStore,
        games_dir: Optional[str] = None,
        now: Optional[datetime] = None,
        max_age: Optional[timedelta] = None,
        exclude: Iterable[str] = (),
    ) -> Set[str]:
        """
        Purge games that are inactive and untouched for `max_age` (14 days by
        default), plus game directories with no persisted record. Codes in
        `exclude` (live games) are never touched.
        """
        now = now or utcnow()
        max_age = max_age or timedelta(days=getattr(config, "CLEANUP_MAX_AGE_DAYS", 14))
        root = Path(games_dir or getattr(config, "GAMES_DIR", "./games"))
        exclude = set(exclude)

        stale = store.stale_codes(now - max_age) - exclude
        known = store.codes()
        orphans: Set[str] = set()
        if root.is_dir():
            orphans = {p.name for p in root.iterdir() if p.is_dir() and p.name not in known} - exclude

        purge = stale | orphans
        logger.info(f"Purging games: {sorted(purge)}")
        for code in purge:
            shutil.rmtree(root / code, ignore_errors=True)
        store.delete(stale)
        return purge
