"""
Config request (DM): ask one player for exactly one usable config.

The DM carries a select of the player's eligible configs, a Withdraw button and a
relative deadline. The player can also reply to the DM with a new config file.
All of these feed one queue consumed by a single task:

- select / submission that fails validation or compatibility: reason is shown and
  the request keeps waiting against the same deadline
- accepted select / submission: done (with a warning for older-engine configs)
- withdraw, deadline: done without a config
- `cancel(reason)`: done as CANCELLED (the game went away)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import time
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import discord

import config
from attachments import is_config_attachment
from catalog import FunctionState
from config_artifact import check_compatibility, permitted_states, validate_config, worst_state
from errors import ArtifactValidationError, AttachmentError, IncompatibleConfigError
from logger import session_logger, setup_logger
from store.library import ConfigRecord

from app.router import RoutedView, custom_id_of, selected_values
from app.session import GameServices, PlayerId


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

SELECT_CUSTOM_ID = "selectYaml"
WITHDRAW_CUSTOM_ID = "withdraw"
NO_CONFIG_VALUE = "noyaml"

NOT_A_CONFIG_MESSAGE = "That doesn't look like a valid YAML. Please check your submission and try again."


class RequestOutcome(str, Enum):
    SELECTED = "selected"
    SUBMITTED = "submitted"
    WITHDRAWN = "withdrawn"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class RequestResult:
    player_id: PlayerId
    outcome: RequestOutcome
    config_code: Optional[str] = None
    warning: Optional[str] = None

    @property
    def has_config(self) -> bool:
        return self.config_code is not None


_FINAL_MESSAGES = {
    RequestOutcome.SELECTED: "Thanks! That YAML will be used in your upcoming game.",
    RequestOutcome.SUBMITTED: "Thanks! Your new YAML has been added to your library and will be used in your upcoming game.",
    RequestOutcome.WITHDRAWN: "Sorry to hear that. Your request has been withdrawn.",
    RequestOutcome.TIMED_OUT: "Sorry, this YAML request has timed out.",
    RequestOutcome.CANCELLED: "This request has been closed because the game was cancelled.",
}


# ---------------------------
# Shared config acceptance (DM requests and recruitment replies)
# ---------------------------
def config_select_options(records: Sequence[ConfigRecord], limit: Optional[int] = None) -> List[discord.SelectOption]:
    limit = int(limit if limit is not None else getattr(config, "CONFIG_SELECT_MAX_OPTIONS", 24))
    return [
        discord.SelectOption(label=r.label()[:100], value=r.code, description=(r.description or "")[:100] or None)
        for r in list(records)[:limit]
    ]


def resolve_selection(
    services: GameServices,
    player_id: int,
    code: str,
    permitted: FrozenSet[FunctionState],
) -> Tuple[ConfigRecord, Optional[str]]:
    """
    Raises:
        ArtifactValidationError: the code isn't one of the player's configs
        IncompatibleConfigError: the config can't be used in this game
    """
    record = services.library.get(code)
    if record is None or record.user_id != int(player_id):
        raise ArtifactValidationError("I couldn't find that YAML in your library.")
    warning = check_compatibility(
        record.version, record.state(services.catalog), services.catalog.version, permitted
    )
    return record, warning


async def accept_submission(
    services: GameServices,
    player_id: int,
    attachments: Iterable[Any],
    permitted: FrozenSet[FunctionState],
) -> Tuple[ConfigRecord, Optional[str]]:
    """
    Download, validate and store a config sent as an attachment.

    Raises:
        ArtifactValidationError: no config attachment, or it failed validation
        AttachmentError: the file could not be downloaded
        IncompatibleConfigError: the config can't be used in this game
    """
    candidates = [a for a in attachments if is_config_attachment(a)]
    if not candidates:
        raise ArtifactValidationError(NOT_A_CONFIG_MESSAGE)

    text = await services.fetcher.fetch_attachment(candidates[0])
    data = validate_config(text, services.catalog)
    warning = check_compatibility(
        data.version, worst_state(data.games, services.catalog), services.catalog.version, permitted
    )
    record = services.library.add_config(int(player_id), data)
    return record, warning


def rejection_message(error: Exception) -> str:
    if isinstance(error, IncompatibleConfigError):
        return f"{error} Please select or submit a different YAML."
    if isinstance(error, AttachmentError):
        return f"I couldn't download that file ({error}). Please try again."
    if isinstance(error, ArtifactValidationError) and str(error) != NOT_A_CONFIG_MESSAGE:
        return f"There was a problem parsing the YAML: `{error}`\nPlease review the error and try again."
    return str(error)


# ---------------------------
# Request
# ---------------------------
@dataclass
class _Event:
    kind: str  # "select" | "submit" | "withdraw"
    interaction: Any = None
    message: Any = None
    value: Optional[str] = None


class ConfigRequest:
    def __init__(
        self,
        services: GameServices,
        player_id: PlayerId,
        game_code: str,
        test_game: bool = False,
        guild_name: Optional[str] = None,
        missing_default: bool = False,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.services = services
        self.player_id = player_id
        self.game_code = game_code
        self.guild_name = guild_name
        self.missing_default = missing_default
        self.permitted = permitted_states(test_game)
        self.timeout_seconds = float(
            timeout_seconds
            if timeout_seconds is not None
            else getattr(config, "CONFIG_REQUEST_TIMEOUT_SECONDS", 30 * 60)
        )
        self._clock = clock
        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._cancel_reason: Optional[str] = None
        self._expires_at = 0
        self.message: Any = None
        self.task: Optional[asyncio.Task] = None
        self.log = session_logger(logger, game_code)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def start(self) -> asyncio.Task:
        if self.task is None:
            self.task = asyncio.create_task(self.run())
        return self.task

    def cancel(self, reason: str = "cancelled") -> None:
        if self.task is None or self.task.done():
            return
        self._cancel_reason = reason
        self.task.cancel()

    async def run(self) -> RequestResult:
        pending: Optional[_Event] = None
        try:
            user = await self._resolve_user()
            if user is None:
                self.log.warning(f"Player {self.player_id} is unreachable; skipping config request")
                return RequestResult(self.player_id, RequestOutcome.UNREACHABLE)

            records = self.services.library.list_for_user(self.player_id, self.services.catalog, self.permitted)
            self._expires_at = int(time.time() + self.timeout_seconds)
            deadline = self._clock() + self.timeout_seconds
            try:
                self.message = await user.send(content=self._prompt(), view=self._build_view(records))
            except discord.HTTPException as e:
                self.log.warning(f"Could not DM player {self.player_id}: {e}")
                return RequestResult(self.player_id, RequestOutcome.UNREACHABLE)

            self.services.router.register(
                self.message.id,
                on_interaction=self._on_interaction,
                on_reply=self._on_reply,
                owner=f"config request {self.game_code}/{self.player_id}",
            )
            result, pending = await self._wait_for_result(deadline)
        except asyncio.CancelledError:
            if self._cancel_reason is None:
                raise
            result = RequestResult(self.player_id, RequestOutcome.CANCELLED)
        finally:
            # registered iff the DM went out
            if self.message is not None:
                self.services.router.unregister(self.message.id)

        self.log.info(f"Config request for {self.player_id} finished: {result.outcome.value} ({result.config_code})")
        if self.message is not None:
            await self._finalize(result, pending)
        return result

    async def _resolve_user(self) -> Any:
        bot = self.services.bot
        user = bot.get_user(int(self.player_id))
        if user is not None:
            return user
        try:
            return await bot.fetch_user(int(self.player_id))
        except discord.HTTPException:
            return None

    # ---------------------------
    # Event loop
    # ---------------------------
    async def _wait_for_result(self, deadline: float) -> Tuple[RequestResult, Optional[_Event]]:
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return RequestResult(self.player_id, RequestOutcome.TIMED_OUT), None
            try:
                event = await asyncio.wait_for(self._events.get(), timeout=remaining)
            except asyncio.TimeoutError:
                return RequestResult(self.player_id, RequestOutcome.TIMED_OUT), None

            if self._clock() >= deadline:
                return RequestResult(self.player_id, RequestOutcome.TIMED_OUT), event

            result = await self._handle(event)
            if result is not None:
                return result, event

    async def _handle(self, event: _Event) -> Optional[RequestResult]:
        if event.kind == "withdraw":
            return RequestResult(self.player_id, RequestOutcome.WITHDRAWN)

        if event.kind == "select":
            if event.value == NO_CONFIG_VALUE:
                await self._reject(
                    event,
                    "You don't seem to have any YAMLs assigned to you. "
                    "Please submit one by replying to this message with an attachment.",
                )
                return None
            try:
                record, warning = resolve_selection(self.services, self.player_id, event.value or "", self.permitted)
            except (ArtifactValidationError, IncompatibleConfigError) as e:
                await self._reject(event, rejection_message(e))
                return None
            return RequestResult(self.player_id, RequestOutcome.SELECTED, record.code, warning)

        if event.kind == "submit":
            try:
                record, warning = await accept_submission(
                    self.services, self.player_id, event.message.attachments, self.permitted
                )
            except (ArtifactValidationError, AttachmentError, IncompatibleConfigError) as e:
                await self._reject(event, rejection_message(e))
                return None
            return RequestResult(self.player_id, RequestOutcome.SUBMITTED, record.code, warning)

        self.log.warning(f"Unknown config request event: {event.kind}")
        return None

    async def _reject(self, event: _Event, text: str) -> None:
        text = f"{text} {self._deadline_note()}"
        if event.interaction is not None:
            await event.interaction.response.send_message(content=text, ephemeral=True)
        elif event.message is not None:
            await event.message.reply(content=text)

    async def _finalize(self, result: RequestResult, event: Optional[_Event]) -> None:
        content = _FINAL_MESSAGES.get(result.outcome, "This request has been closed.")
        if result.outcome == RequestOutcome.CANCELLED and self._cancel_reason:
            content = self._cancel_reason
        if result.warning:
            content = f"{content} {result.warning}"
        try:
            interaction = event.interaction if event is not None else None
            if interaction is not None and not interaction.response.is_done():
                await interaction.response.edit_message(content=content, view=None)
            else:
                await self.message.edit(content=content, view=None)
        except discord.HTTPException as e:
            self.log.warning(f"Could not close config request message: {e}")

    # ---------------------------
    # Router callbacks
    # ---------------------------
    async def _on_interaction(self, interaction: Any) -> None:
        if int(interaction.user.id) != int(self.player_id):
            await interaction.response.send_message(content="This request isn't for you.", ephemeral=True)
            return

        custom_id = custom_id_of(interaction)
        if custom_id == WITHDRAW_CUSTOM_ID:
            self._events.put_nowait(_Event("withdraw", interaction=interaction))
        elif custom_id == SELECT_CUSTOM_ID:
            values = selected_values(interaction)
            self._events.put_nowait(_Event("select", interaction=interaction, value=values[0] if values else None))
        else:
            self.log.warning(f"Unrecognized component on config request: {custom_id}")
            await interaction.response.send_message(
                content=f'I don\'t know what "{custom_id}" means. This is probably a bug.', ephemeral=True
            )

    async def _on_reply(self, message: Any) -> None:
        if int(message.author.id) != int(self.player_id):
            return
        self._events.put_nowait(_Event("submit", message=message))

    # ---------------------------
    # Rendering
    # ---------------------------
    def _deadline_note(self) -> str:
        return f"This request will time out <t:{self._expires_at}:R>."

    def _prompt(self) -> str:
        where = f" for game {self.game_code}" + (f" in {self.guild_name}" if self.guild_name else "")
        if self.missing_default:
            head = (
                "Looks like you don't have a default YAML set up. "
                f"Please select one{where} from the list, or reply to this message with a new one."
            )
        else:
            head = (
                f"Please select the YAML you wish to use{where} from the dropdown box, "
                "or, alternatively, submit a new one by replying to this message with an attachment."
            )
        return f'{head} If you\'ve changed your mind, you can click on "Withdraw". {self._deadline_note()}'

    def _build_view(self, records: Sequence[ConfigRecord]) -> RoutedView:
        options = config_select_options(records)
        if not options:
            options = [discord.SelectOption(label="No YAMLs available", value=NO_CONFIG_VALUE)]
        return RoutedView(
            discord.ui.Select(custom_id=SELECT_CUSTOM_ID, placeholder="Select a YAML", options=options),
            discord.ui.Button(
                custom_id=WITHDRAW_CUSTOM_ID,
                label="Withdraw from this game",
                style=discord.ButtonStyle.danger,
                row=1,
            ),
        )
