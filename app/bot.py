import asyncio
import sys
from typing import Dict, Optional

import discord
from discord.ext import commands

import config
from allocators import PortAllocator
from attachments import AttachmentFetcher
from catalog import load_catalog
from errors import MultiworldError
from logger import quiet_library_loggers, setup_logger
from store.database import Database
from store.game_store import GameStore
from store.library import ConfigLibrary

from app.controller import GameController
from app.router import InteractionRouter
from app.session import TERMINAL_STATES, GameServices, GameState


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

# Suppress verbose logs
quiet_library_loggers()

ROUTED_INTERACTIONS = (discord.InteractionType.component, discord.InteractionType.modal_submit)


class BotRuntime:
    """
    Discord bot + 저장소/라우터 wiring (인프라 레이어).
    게임마다 GameController를 만들고, 살아있는 게임 목록을 관리합니다.
    """

    def __init__(self, db: Optional[Database] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True

        self.bot = commands.Bot(command_prefix=config.COMMAND_PREFIX, intents=intents)
        self.db = db or Database()
        self.router = InteractionRouter()
        self.games: Dict[str, GameController] = {}
        self.services = GameServices(
            bot=self.bot,
            router=self.router,
            store=GameStore(self.db),
            library=ConfigLibrary(self.db),
            catalog=load_catalog(),
            fetcher=AttachmentFetcher(),
            ports=PortAllocator(),
            live_codes=lambda: set(self.games),
        )

        # lifecycle
        self._shutdown = False
        self._cleanup_task: Optional[asyncio.Task] = None

        self._register_handlers()

    # ---------------------------
    # Live games
    # ---------------------------
    def track(self, controller: GameController) -> None:
        self.games[controller.code] = controller
        controller.on_change_state(self._on_game_state)

    def untrack(self, controller: GameController) -> None:
        controller.off_change_state(self._on_game_state)
        if self.games.get(controller.code) is controller:
            del self.games[controller.code]

    def _on_game_state(self, controller: GameController, old: GameState, new: GameState) -> None:
        if new in TERMINAL_STATES:
            logger.info(f"Game {controller.code} finished ({new.name})")
            self.untrack(controller)

    async def cleanup_games(self):
        # snapshot on the loop thread; the worker never reads self.games
        live = frozenset(self.games)
        return await asyncio.to_thread(GameController.cleanup_games, self.services.store, exclude=live)

    async def _cleanup_loop(self) -> None:
        interval = float(getattr(config, "CLEANUP_INTERVAL_HOURS", 24)) * 3600
        logger.info(f"Cleanup loop started (interval={interval:.0f}s)")
        while not self._shutdown and not self.bot.is_closed():
            try:
                purged = await self.cleanup_games()
                if purged:
                    logger.info(f"Purged {len(purged)} game(s)")
            except Exception as e:
                logger.error(f"Cleanup failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    # ---------------------------
    # Discord handlers
    # ---------------------------
    def _register_handlers(self):
        @self.bot.event
        async def on_ready():
            logger.info(f"Bot started: {self.bot.user}")
            if self._cleanup_task is None or self._cleanup_task.done():
                self._cleanup_task = self.bot.loop.create_task(self._cleanup_loop())

        @self.bot.listen("on_interaction")
        async def route_interaction(interaction: discord.Interaction):
            if interaction.type not in ROUTED_INTERACTIONS:
                return
            handled = await self.router.dispatch_interaction(interaction)
            if not handled and not interaction.response.is_done():
                await interaction.response.send_message(
                    content="Hm, I can't seem to identify this message.", ephemeral=True
                )

        @self.bot.listen("on_message")
        async def route_reply(message: discord.Message):
            if message.author.bot or message.reference is None:
                return
            await self.router.dispatch_message(message)

        @self.bot.command(name="apgame")
        async def apgame(ctx, mode: str = ""):
            """Start recruiting for a new game (`apgame test` for a testing game)."""
            if ctx.guild is None:
                await ctx.send("Games can only be started in a server channel.")
                return
            controller = GameController.new_game(self.services, test_game=mode.lower() == "test")
            self.track(controller)
            try:
                await controller.start_recruitment(ctx)
            except MultiworldError as e:
                self.untrack(controller)
                await ctx.send(str(e))

        @self.bot.command(name="apresume")
        async def apresume(ctx, code: str):
            """Restart the server of a previously generated game."""
            code = code.upper()
            if code in self.games:
                await ctx.send(f"Game {code} is already running.")
                return
            meta = GameController.get_creation_metadata(self.services.store, code)
            if meta is None:
                await ctx.send(f"Game {code} not found.")
                return
            guild_id, host_id = meta
            if ctx.guild is None or ctx.guild.id != guild_id:
                await ctx.send("That game was not created in this server.")
                return
            if ctx.author.id != host_id:
                await ctx.send("Only the game's host may resume it.")
                return

            controller = GameController.from_code(self.services, code)
            self.track(controller)
            result = await controller.resume(ctx.channel)
            if not result.ok:
                self.untrack(controller)
                await ctx.send(result.message)

        @self.bot.command(name="apcleanup")
        @commands.has_permissions(manage_guild=True)
        async def apcleanup(ctx):
            """Purge stale and orphaned games now."""
            purged = await self.cleanup_games()
            await ctx.send(f"Cleanup finished: {len(purged)} game(s) purged.")

        @self.bot.event
        async def on_command_error(ctx, error):
            if isinstance(error, commands.MissingRequiredArgument):
                await ctx.send(f"Usage: `{config.COMMAND_PREFIX}{ctx.command.qualified_name} {ctx.command.signature}`")
            elif isinstance(error, commands.CheckFailure):
                await ctx.send("You don't have permission to do that.")
            elif isinstance(error, commands.CommandNotFound):
                return
            else:
                logger.error(f"Command error in {ctx.command}: {error}", exc_info=error)

    def run(self):
        token = config.DISCORD_TOKEN
        if not token:
            logger.error("DISCORD_TOKEN not found")
            sys.exit(1)

        try:
            self.bot.run(token, log_handler=None)
        except KeyboardInterrupt:
            pass
        finally:
            self._shutdown = True
            logger.info("Shutting down...")
            # the loop is gone by now; kill server trees directly
            for controller in list(self.games.values()):
                controller.kill()
            self.db.dispose()


def run_bot():
    runtime = BotRuntime()
    runtime.run()
