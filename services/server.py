"""
Live server supervisor (MultiServer.py).

- one status message per running server: rolling output tail, address, host
- command select (release / collect / hint / send / exit) and modals for targets
- host replies to the status message are relayed to the server console
- the status message is edited at most once per SERVER_STATUS_MIN_INTERVAL_SECONDS;
  item transfers skip the debounce wait
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
import time
from typing import Any, Awaitable, Callable, Deque, List, Optional

import discord

import config
from errors import ConfigurationMissingError
from logger import session_logger, setup_logger
from server_protocol import (
    COMMAND_MENU,
    ServerCommand,
    command_spec,
    format_command,
    is_item_transfer,
    relay_text,
    split_output,
)

from app.router import (
    RoutedModal,
    RoutedView,
    anchored_id,
    custom_id_of,
    modal_values,
    selected_values,
    split_anchored_id,
)
from app.session import GameServices, Session
from services.generation import match_prompt
from services.process_channel import ProcessChannel, open_channel, read_chunks


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

COMMAND_SELECT_ID = "cmd"
EMBED_FIELD_LIMIT = 1024


class OutputThrottle:
    """
    Coalesces update requests into flushes spaced at least `interval` apart.

    A normal request waits `debounce` so bursts land in one flush; a priority
    request only waits for the interval window.
    """

    def __init__(
        self,
        flush: Callable[[], Awaitable[None]],
        interval: float = 1.0,
        debounce: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._flush = flush
        self.interval = float(interval)
        self.debounce = float(debounce)
        self._clock = clock
        self._last_flush = float("-inf")
        self._priority = False
        self._wake = asyncio.Event()
        self._pending: Optional[asyncio.Task] = None
        self.flush_count = 0

    def _interval_left(self) -> float:
        return max(0.0, self.interval - (self._clock() - self._last_flush))

    def notify(self, priority: bool = False) -> None:
        if priority:
            self._priority = True
            self._wake.set()
        if self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self._run())

    async def _run(self) -> None:
        wait = self._interval_left() if self._priority else max(self.debounce, self._interval_left())
        deadline = self._clock() + wait
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            deadline = min(deadline, self._clock() + self._interval_left())

        self._priority = False
        self._last_flush = self._clock()
        self._pending = None
        self.flush_count += 1
        try:
            await self._flush()
        except Exception as e:
            logger.warning(f"Status flush failed: {e}")

    async def close(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        self._pending = None


class ServerSupervisor:
    def __init__(
        self,
        services: GameServices,
        session: Session,
        channel: Any,
        python_path: Optional[str] = None,
        ap_path: Optional[str] = None,
        script: Optional[str] = None,
        games_dir: Optional[str] = None,
        host_domain: Optional[str] = None,
        stdio_mode: Optional[str] = None,
        min_interval: Optional[float] = None,
        debounce: Optional[float] = None,
    ) -> None:
        self.services = services
        self.session = session
        self.channel = channel
        self.python_path = python_path or getattr(config, "PYTHON_PATH", None)
        self.ap_path = ap_path or getattr(config, "AP_PATH", None)
        self.script = script or getattr(config, "SERVER_SCRIPT", "MultiServer.py")
        self.game_dir = Path(games_dir or getattr(config, "GAMES_DIR", "./games")) / session.code
        self.host_domain = host_domain or getattr(config, "HOST_DOMAIN", "localhost")
        self.stdio_mode = stdio_mode
        self.command_prefix = getattr(config, "SERVER_COMMAND_PREFIX", "/")
        self.log = session_logger(logger, session.code)

        self.port: Optional[int] = None
        self.io: Optional[ProcessChannel] = None
        self.message: Any = None
        self.tail: Deque[str] = deque(maxlen=int(getattr(config, "SERVER_OUTPUT_TAIL_LINES", 5)))
        self.throttle = OutputThrottle(
            self._flush_status,
            interval=min_interval if min_interval is not None else getattr(config, "SERVER_STATUS_MIN_INTERVAL_SECONDS", 1.0),
            debounce=debounce if debounce is not None else getattr(config, "SERVER_STATUS_DEBOUNCE_SECONDS", 0.5),
        )
        self._pumps: List[asyncio.Task] = []
        self._out_log = None
        self._err_log = None

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def run(self) -> int:
        await self.start()
        return await self.wait()

    async def start(self) -> None:
        """
        Raises:
            ConfigurationMissingError: paths not configured or no generated game
            PortUnavailableError: no free port after PORT_MAX_ATTEMPTS tries
        """
        if not self.python_path:
            raise ConfigurationMissingError("Python path has not been defined")
        if not self.ap_path:
            raise ConfigurationMissingError("Archipelago path has not been defined")
        if not self.session.filename:
            raise ConfigurationMissingError(f"Game {self.session.code} has not been generated")

        self.port = self.services.ports.allocate()
        archive = self.game_dir / f"{self.session.filename}.archipelago"
        args = [
            str(self.python_path),
            self.script,
            "--port",
            str(self.port),
            "--use_embedded_options",
            str(archive.resolve()),
        ]
        self.game_dir.mkdir(parents=True, exist_ok=True)
        self.io = await open_channel(
            args,
            cwd=str(self.ap_path),
            fifo_prefix=self.game_dir / f"{self.session.code}-std",
            mode=self.stdio_mode,
        )
        self.log.info(f"Server started on port {self.port} (pid {self.io.pid})")
        self.services.store.set_active(self.session.code, True)

        self._out_log = open(self.game_dir / f"{self.session.filename}.stdout.log", "ab")
        self._err_log = open(self.game_dir / f"{self.session.filename}.stderr.log", "ab")
        try:
            await self._announce()
        except Exception:
            self.io.terminate()
            await self.io.wait()
            await self._finalize()
            raise
        self._pumps = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]

    async def _announce(self) -> None:
        self.message = await self.channel.send(
            content=(
                f"Game {self.session.code} is live!\n"
                "The host can send commands to the server either by selecting them from the list, "
                "or replying to this message. To send a slash command, precede it with a period instead "
                "of a slash so that it doesn't get intercepted by Discord. For instance: `.release player`"
            ),
            embed=self._build_embed(),
            view=self._build_view(),
        )
        self.services.router.register(
            self.message.id,
            on_interaction=self._on_interaction,
            on_reply=self._on_reply,
            owner=f"server {self.session.code}",
        )

    async def wait(self) -> int:
        assert self.io is not None
        try:
            exit_code = await self.io.wait()
            await asyncio.gather(*self._pumps, return_exceptions=True)
        finally:
            await self._finalize()
        return exit_code

    def stop(self) -> None:
        if self.io is not None:
            self.io.terminate()

    def kill(self) -> None:
        if self.io is not None:
            self.io.kill()

    async def _finalize(self) -> None:
        exit_code = self.io.returncode if self.io is not None else None
        await self.throttle.close()
        if self.message is not None:
            self.services.router.unregister(self.message.id)
            how = "normally" if exit_code == 0 else f"with error code {exit_code}"
            prefix = getattr(config, "COMMAND_PREFIX", "!")
            try:
                await self.message.edit(
                    content=(
                        f"Server for game {self.session.code} closed {how}. "
                        f"It can be resumed later with the command `{prefix}apresume {self.session.code}`."
                    ),
                    embed=None,
                    view=None,
                )
            except discord.HTTPException as e:
                self.log.warning(f"Could not finalize server message: {e}")
        self.services.store.set_active(self.session.code, False)
        if self.io is not None:
            await self.io.close()
        for log_file in (self._out_log, self._err_log):
            if log_file is not None:
                log_file.close()
        self.log.info(f"Server exited with code {exit_code}")

    # ---------------------------
    # Output
    # ---------------------------
    async def _pump_stdout(self) -> None:
        async for data in read_chunks(self.io.stdout):
            self._out_log.write(data)
            self._out_log.flush()
            text = data.decode("utf-8", errors="replace")
            lines = split_output(text)
            self.tail.extend(lines)
            self.throttle.notify(priority=any(is_item_transfer(line) for line in lines))
            if match_prompt(text) is not None:
                await self.io.write_line("")

    async def _pump_stderr(self) -> None:
        async for data in read_chunks(self.io.stderr):
            self._err_log.write(data)
            self._err_log.flush()

    async def write(self, text: str) -> bool:
        ok = await self.io.write_line(text) if self.io is not None else False
        if ok:
            self.tail.append(f"← {text}")
            self.throttle.notify()
        return ok

    def output_text(self) -> str:
        value = "\n".join(self.tail) or "Wait..."
        if len(value) > EMBED_FIELD_LIMIT:
            value = value[: EMBED_FIELD_LIMIT - 1] + "…"
        return value

    async def _flush_status(self) -> None:
        if self.message is None:
            return
        await self.message.edit(embed=self._build_embed())

    # ---------------------------
    # Router callbacks
    # ---------------------------
    async def _on_interaction(self, interaction: Any) -> None:
        if int(interaction.user.id) != int(self.session.host_id):
            await interaction.response.send_message(
                content="Only the game host can perform that action.", ephemeral=True
            )
            return

        custom_id = custom_id_of(interaction)
        if custom_id == COMMAND_SELECT_ID:
            values = selected_values(interaction)
            await self._on_command_selected(interaction, values[0] if values else "")
            return

        event, _anchor = split_anchored_id(custom_id)
        spec = command_spec(event or "")
        if spec is None:
            self.log.warning(f"Unrecognized component on server message: {custom_id}")
            await interaction.response.send_message(
                content=f'I don\'t know what "{custom_id}" means. This is probably a bug.', ephemeral=True
            )
            return

        values = modal_values(interaction)
        target = values.get("target", "").strip()
        item = values.get("item", "").strip()
        if spec.command == ServerCommand.HINT:
            reply = f"Sending hint for {item} to {target}."
        elif spec.command == ServerCommand.SEND:
            reply = f"Sending item {item} to {target}."
        else:
            reply = f"Sending command to {spec.command.value} {target}."
        await interaction.response.send_message(content=reply, ephemeral=True)
        await self.write(format_command(spec.command, target, item or None, prefix=self.command_prefix))

    async def _on_command_selected(self, interaction: Any, value: str) -> None:
        spec = command_spec(value)
        if spec is None:
            await interaction.response.send_message(content=f"I don't know what {value} means.", ephemeral=True)
            return

        if spec.command == ServerCommand.EXIT:
            await interaction.response.send_message(content="The game is now being closed.", ephemeral=True)
            await self.write(format_command(ServerCommand.EXIT, prefix=self.command_prefix))
            return

        inputs = [
            discord.ui.TextInput(label=spec.target_prompt, custom_id="target", required=True, style=discord.TextStyle.short)
        ]
        if spec.needs_item:
            inputs.append(
                discord.ui.TextInput(label=spec.item_prompt, custom_id="item", required=True, style=discord.TextStyle.short)
            )
        await interaction.response.send_modal(
            RoutedModal(
                "Specify user/item" if spec.needs_item else "Specify user",
                anchored_id(spec.command.value, self.message.id),
                *inputs,
            )
        )

    async def _on_reply(self, message: Any) -> None:
        if int(message.author.id) != int(self.session.host_id):
            return
        text = relay_text(message.content, prefix=self.command_prefix)
        if not text:
            return
        if not await self.write(text):
            await message.add_reaction("❌")
            return
        try:
            await message.delete()
        except discord.HTTPException:
            await message.add_reaction("⌨️")

    # ---------------------------
    # Rendering
    # ---------------------------
    def _build_embed(self) -> discord.Embed:
        embed = discord.Embed(
            title="Archipelago Server",
            color=discord.Color.green(),
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field(name="Server output", value=self.output_text(), inline=False)
        embed.add_field(name="Server", value=f"{self.host_domain}:{self.port}", inline=True)
        embed.add_field(name="Host", value=f"<@{self.session.host_id}>", inline=True)
        embed.set_footer(text=f"Game code: {self.session.code}")
        return embed

    def _build_view(self) -> RoutedView:
        return RoutedView(
            discord.ui.Select(
                custom_id=COMMAND_SELECT_ID,
                placeholder="Select a command",
                options=[
                    discord.SelectOption(value=spec.command.value, label=spec.label, description=spec.description)
                    for spec in COMMAND_MENU
                ],
            )
        )
