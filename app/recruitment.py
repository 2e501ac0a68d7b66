"""
Recruitment message for a game that is assembling players.

Buttons (on the recruitment message):
- default: join with your default config
- select:  ephemeral menu of your usable configs ("yaml-<message id>"), plus an
           entry that asks for a new config in DMs
- launch:  host only, enabled once at least one config joined
- cancel:  host only

Replying to the recruitment message with a config attachment adds that config to
your library and to the game.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import discord

import config
from errors import ArtifactValidationError, AttachmentError, IncompatibleConfigError
from logger import session_logger, setup_logger

from app.config_request import (
    ConfigRequest,
    RequestResult,
    accept_submission,
    config_select_options,
    rejection_message,
    resolve_selection,
)
from app.router import RoutedView, anchored_id, custom_id_of, selected_values, split_anchored_id
from app.session import GameState, PlayerId


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

NEW_CONFIG_VALUE = "__new__"

JOIN_EMOJI = "⚔️"
JOIN_WITH_EMOJI = "🛡️"
LAUNCH_EMOJI = "🚀"
CANCEL_EMOJI = "🚪"


class RecruitmentLoop:
    def __init__(self, controller: Any) -> None:
        self.controller = controller
        self.services = controller.services
        self.session = controller.session
        self.message: Any = None
        self.guild_name: Optional[str] = None
        self.requests: Dict[PlayerId, ConfigRequest] = {}
        self._request_tasks: Set[asyncio.Task] = set()
        self.log = session_logger(logger, self.session.code)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def open(self, channel: Any) -> Any:
        guild = getattr(channel, "guild", None)
        self.guild_name = getattr(guild, "name", None)
        kind = "testing " if self.session.test_game else ""
        self.message = await channel.send(
            content=f"<@{self.session.host_id}> is starting a {kind}game!",
            embed=self._build_embed(),
            view=self._build_view(),
        )
        self.services.router.register(
            self.message.id,
            on_interaction=self._on_interaction,
            on_reply=self._on_reply,
            owner=f"recruitment {self.session.code}",
        )
        self.log.info(f"Recruitment opened (message {self.message.id})")
        return self.message

    async def close(self, content: str, request_notice: str) -> None:
        """Detach from the router, close pending DM requests and finalize the message."""
        if self.message is not None:
            self.services.router.unregister(self.message.id)
        for request in list(self.requests.values()):
            request.cancel(request_notice)
        self.requests.clear()
        if self.message is not None:
            try:
                await self.message.edit(content=content, embed=None, view=None)
            except discord.HTTPException as e:
                self.log.warning(f"Could not finalize recruitment message: {e}")

    # ---------------------------
    # Router callbacks
    # ---------------------------
    async def _on_interaction(self, interaction: Any) -> None:
        custom_id = custom_id_of(interaction)
        event, _anchor = split_anchored_id(custom_id)
        user_id = PlayerId(int(interaction.user.id))

        if event == "yaml":
            await self._on_config_selected(interaction, user_id)
        elif custom_id == "default":
            await self._join_default(interaction, user_id)
        elif custom_id == "select":
            await self._join_with(interaction, user_id)
        elif custom_id == "launch":
            result = await self.controller.launch(user_id)
            await self._acknowledge(interaction, result)
        elif custom_id == "cancel":
            result = await self.controller.cancel(user_id)
            await self._acknowledge(interaction, result)
        else:
            self.log.warning(f"Unrecognized component on recruitment message: {custom_id}")
            await interaction.response.send_message(
                content=f'I don\'t know what "{custom_id}" means. This is probably a bug.', ephemeral=True
            )

    async def _on_reply(self, message: Any) -> None:
        if getattr(message.author, "bot", False) or not message.attachments:
            return
        player_id = PlayerId(int(message.author.id))
        where = f"game {self.session.code}" + (f" in {self.guild_name}" if self.guild_name else "")
        try:
            record, warning = await accept_submission(
                self.services, player_id, message.attachments, self.controller.permitted
            )
        except (ArtifactValidationError, AttachmentError, IncompatibleConfigError) as e:
            self.log.info(f"Rejected reply config from {player_id}: {e}")
            await self._notify(message.author, f"The YAML you sent for {where} was not added. {rejection_message(e)}")
            return

        if self.session.state != GameState.ASSEMBLING:
            return
        self.session.add_config(player_id, record.code)
        self.log.info(f"Added submitted config {record.code} for {player_id}")
        text = f"The YAML you sent for {where} has been added to your library and will be used in that game."
        if warning:
            text = f"{text} {warning}"
        await self._notify(message.author, text)
        await self.refresh()

    async def _acknowledge(self, interaction: Any, result: Any) -> None:
        if result.ok:
            await interaction.response.defer()
        else:
            await interaction.response.send_message(content=result.message, ephemeral=True)

    # ---------------------------
    # Joining
    # ---------------------------
    async def _join_default(self, interaction: Any, user_id: PlayerId) -> None:
        default_code = self.services.library.get_default(user_id)
        if not default_code:
            await interaction.response.send_message(
                content=(
                    "You do not have a default YAML selected. Reply to this message with a YAML to submit one, "
                    f'or use the "{JOIN_WITH_EMOJI} Join with..." button instead.'
                ),
                ephemeral=True,
            )
            return
        if self.session.has_config(user_id, default_code):
            await interaction.response.send_message(
                content=(
                    f'You may only use the "{JOIN_EMOJI} Join" button once. To add your default YAML again, '
                    f'use the "{JOIN_WITH_EMOJI} Join with..." button. This is to prevent accidental double-clicks.'
                ),
                ephemeral=True,
            )
            return
        await self._add_checked(interaction, user_id, default_code, is_default=True)

    async def _join_with(self, interaction: Any, user_id: PlayerId) -> None:
        records = self.services.library.list_for_user(user_id, self.services.catalog, self.controller.permitted)
        if not records:
            started = self.request_config(user_id)
            await interaction.response.send_message(
                content=(
                    "You don't have any YAMLs that can be used in this game. "
                    + ("I've sent you a DM where you can submit one." if started else "Check your DMs to submit one.")
                ),
                ephemeral=True,
            )
            return

        options = config_select_options(records)
        options.append(discord.SelectOption(label="Submit a new YAML...", value=NEW_CONFIG_VALUE))
        self.log.debug(f"{user_id} is requesting the YAML list")
        await interaction.response.send_message(
            content="Select a YAML to play.",
            view=RoutedView(
                discord.ui.Select(
                    custom_id=anchored_id("yaml", self.message.id),
                    placeholder="Select your YAML",
                    options=options,
                )
            ),
            ephemeral=True,
        )

    async def _on_config_selected(self, interaction: Any, user_id: PlayerId) -> None:
        values = selected_values(interaction)
        if not values:
            await interaction.response.defer()
            return
        if values[0] == NEW_CONFIG_VALUE:
            started = self.request_config(user_id)
            await interaction.response.send_message(
                content=(
                    "I've sent you a DM where you can submit a new YAML."
                    if started
                    else "You already have a YAML request waiting in your DMs."
                ),
                ephemeral=True,
            )
            return
        await self._add_checked(interaction, user_id, values[0])

    async def _add_checked(self, interaction: Any, user_id: PlayerId, code: str, is_default: bool = False) -> None:
        try:
            record, warning = resolve_selection(self.services, user_id, code, self.controller.permitted)
        except (ArtifactValidationError, IncompatibleConfigError) as e:
            await interaction.response.send_message(content=rejection_message(e), ephemeral=True)
            return

        self.session.add_config(user_id, record.code)
        self.log.info(f"Adding {'default ' if is_default else ''}YAML {record.code} for {user_id}")
        text = "You joined with your default YAML." if is_default else f"You joined with YAML code {record.code}."
        if warning:
            text = f"{text} {warning}"
        await interaction.response.send_message(content=text, ephemeral=True)
        await self.refresh()

    # ---------------------------
    # DM requests
    # ---------------------------
    def request_config(self, player_id: PlayerId) -> bool:
        """Start a DM config request unless one is already pending for this player."""
        if player_id in self.requests:
            return False
        request = ConfigRequest(
            self.services,
            player_id,
            self.session.code,
            test_game=self.session.test_game,
            guild_name=self.guild_name,
        )
        self.requests[player_id] = request
        task = asyncio.create_task(self._run_request(request))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)
        return True

    async def _run_request(self, request: ConfigRequest) -> Optional[RequestResult]:
        try:
            result = await request.start()
        except Exception as e:
            self.log.error(f"Config request for {request.player_id} failed: {e}", exc_info=True)
            return None
        finally:
            if self.requests.get(request.player_id) is request:
                del self.requests[request.player_id]

        if result.has_config and self.session.state == GameState.ASSEMBLING:
            self.session.add_config(result.player_id, result.config_code)
            self.log.info(f"Added requested config {result.config_code} for {result.player_id}")
            await self.refresh()
        return result

    async def wait_requests(self) -> None:
        if self._request_tasks:
            await asyncio.gather(*list(self._request_tasks), return_exceptions=True)

    # ---------------------------
    # Rendering
    # ---------------------------
    async def refresh(self) -> None:
        if self.message is None:
            return
        try:
            await self.message.edit(embed=self._build_embed(), view=self._build_view())
        except discord.HTTPException as e:
            self.log.warning(f"Could not update recruitment message: {e}")

    def players_field(self) -> str:
        lines = [f"<@{player_id}> ×{len(codes)}" for player_id, codes in self.session.players.items() if codes]
        return "\n".join(lines) or "None yet"

    def _build_embed(self) -> discord.Embed:
        description = (
            f'Click "{JOIN_EMOJI} Join" to join this game with your default YAML.\n'
            f'Click "{JOIN_WITH_EMOJI} Join with..." to join with a different YAML, '
            "or reply to this message with a new one.\n"
            f'The host can then click "{LAUNCH_EMOJI} Launch" to start, or "{CANCEL_EMOJI} Cancel" to cancel.'
        )
        if self.session.test_game:
            description = (
                "This is a testing game. Expect things to go wrong and/or implode. "
                "Game may end prematurely for any reason.\n"
                "Testing YAMLs are available for this game.\n\n" + description
            )
        embed = discord.Embed(
            title="Testing Game Call" if self.session.test_game else "Multiworld Game Call",
            description=description,
            color=discord.Color.gold(),
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field(name="Players", value=self.players_field(), inline=False)
        embed.set_footer(text=f"Game code: {self.session.code}")
        return embed

    def _build_view(self) -> RoutedView:
        return RoutedView(
            discord.ui.Button(custom_id="default", label="Join", emoji=JOIN_EMOJI, style=discord.ButtonStyle.secondary),
            discord.ui.Button(
                custom_id="select", label="Join with...", emoji=JOIN_WITH_EMOJI, style=discord.ButtonStyle.secondary
            ),
            discord.ui.Button(
                custom_id="launch",
                label="Launch",
                emoji=LAUNCH_EMOJI,
                style=discord.ButtonStyle.primary,
                disabled=self.session.config_count == 0,
            ),
            discord.ui.Button(custom_id="cancel", label="Cancel", emoji=CANCEL_EMOJI, style=discord.ButtonStyle.danger),
        )

    async def _notify(self, user: Any, text: str) -> None:
        try:
            await user.send(content=text)
        except discord.HTTPException as e:
            self.log.warning(f"Could not DM {getattr(user, 'id', '?')}: {e}")
