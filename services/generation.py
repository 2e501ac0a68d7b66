"""
Generation supervisor: turns a launched roster into a playable multiworld.

Flow:
1) re-resolve every roster entry; vanished or no-longer-usable configs are
   re-requested from their players over DM (all players at once)
2) copy the configs into ./games/<code>/yamls/
3) run Generate.py, logging stdout/stderr to <code>-gen.stdout.log / .stderr.log,
   answering console prompts (see PROMPT_ACKNOWLEDGEMENTS)
4) success = exit code 0 and "AP_<n>.zip" printed on stdout
5) unpack the .archipelago file, post the spoiler + "Who's Playing What", DM each
   player their patch files, persist the game record
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import io
from pathlib import Path
import re
import shutil
from typing import Any, Dict, List, Optional, Tuple
import zipfile

import discord

import config
from config_artifact import check_compatibility, permitted_states, split_names
from errors import ConfigurationMissingError, EngineProcessFailure, IncompatibleConfigError, MultiworldError
from logger import session_logger, setup_logger
from store.library import ConfigRecord

from app.config_request import ConfigRequest
from app.session import GameServices, PlayerId, Roster, Session
from services.process_channel import DirectChannel, ProcessChannel, read_chunks


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

# Console prompts Generate.py may block on, and the line to answer them with.
# Checked on both streams; best-effort, a prompt missing here falls back to the
# stderr silence timer.
PROMPT_ACKNOWLEDGEMENTS: Dict[str, str] = {
    "press enter to install it": "",  # missing Python module
    "Press enter to close": "",  # generation finished (usually after an error)
}

_ARCHIVE_RE = re.compile(r"(AP_\d+\.zip)")
_ITEM_COUNT_RE = re.compile(r"Filling the world with (\d+) items\.")
_PLAYER_COUNT_RE = re.compile(r"Players:\s+(\d+)")
_SINGLE_GAME_RE = re.compile(r"Game:\s+(.*)")
_PLAYER_LISTING_RE = re.compile(r"^Player (\d+): (.+)[\r\n]+Game:\s+(.*)$", re.MULTILINE)


def match_prompt(text: str) -> Optional[str]:
    for prompt, answer in PROMPT_ACKNOWLEDGEMENTS.items():
        if prompt in text:
            return answer
    return None


@dataclass(frozen=True)
class SpoilerPlayer:
    slot: int
    name: str
    game: str


def parse_spoiler(text: str) -> List[SpoilerPlayer]:
    m = _PLAYER_COUNT_RE.search(text)
    count = int(m.group(1)) if m else 2
    if count == 1:
        g = _SINGLE_GAME_RE.search(text)
        return [SpoilerPlayer(1, "", g.group(1).strip())] if g else []
    return [
        SpoilerPlayer(int(slot), name.strip(), game.strip())
        for slot, name, game in _PLAYER_LISTING_RE.findall(text)
    ]


def describe_players(players: List[SpoilerPlayer]) -> str:
    if len(players) == 1:
        return f"It's only you for this one, and you'll be playing **{players[0].game}**."
    return "\n".join(f"{p.name} → **{p.game}**" for p in players)


@dataclass
class GenerationOutcome:
    filename: str
    roster: Roster
    item_count: Optional[int] = None
    players: List[SpoilerPlayer] = field(default_factory=list)


class GenerationSupervisor:
    def __init__(
        self,
        services: GameServices,
        session: Session,
        channel: Any,
        status_message: Any = None,
        status_text: Optional[str] = None,
        python_path: Optional[str] = None,
        ap_path: Optional[str] = None,
        script: Optional[str] = None,
        games_dir: Optional[str] = None,
        silence_seconds: Optional[float] = None,
    ) -> None:
        self.services = services
        self.session = session
        self.channel = channel
        self.status_message = status_message
        self.python_path = python_path or getattr(config, "PYTHON_PATH", None)
        self.ap_path = ap_path or getattr(config, "AP_PATH", None)
        self.script = script or getattr(config, "GENERATE_SCRIPT", "Generate.py")
        self.game_dir = Path(games_dir or getattr(config, "GAMES_DIR", "./games")) / session.code
        self.silence_seconds = float(
            silence_seconds
            if silence_seconds is not None
            else getattr(config, "GENERATION_PROMPT_SILENCE_SECONDS", 3.0)
        )
        self.log = session_logger(logger, session.code)

        self._fallback_task: Optional[asyncio.Task] = None
        self._item_count: Optional[int] = None
        self._status_text: Optional[str] = status_text

    # ---------------------------
    # Entry
    # ---------------------------
    async def run(self, roster: Roster) -> GenerationOutcome:
        """
        Raises:
            ConfigurationMissingError: PYTHON_PATH / AP_PATH not configured
            EngineProcessFailure: Generate.py failed or produced no archive
            MultiworldError: nobody with a usable config is left
        """
        if not self.python_path:
            raise ConfigurationMissingError("Python path has not been defined")
        if not self.ap_path:
            raise ConfigurationMissingError("Archipelago path has not been defined")

        entries = await self.resolve_roster(roster)
        if not entries:
            raise MultiworldError("Nobody with a usable YAML is left in this game.")
        final_roster: Roster = tuple((player_id, record.code) for player_id, record in entries)

        yaml_dir = self.materialize(entries)
        archive_name = await self.generate(yaml_dir)
        outcome = await self.finish(archive_name, entries)
        outcome.roster = final_roster
        return outcome

    # ---------------------------
    # 1) Roster re-resolution
    # ---------------------------
    def _usable(self, record: Optional[ConfigRecord]) -> bool:
        if record is None or not self.services.library.path_for(record).exists():
            return False
        try:
            check_compatibility(
                record.version,
                record.state(self.services.catalog),
                self.services.catalog.version,
                self._permitted(),
            )
        except IncompatibleConfigError:
            return False
        return True

    def _permitted(self):
        return permitted_states(self.session.test_game)

    async def resolve_roster(self, roster: Roster) -> List[Tuple[PlayerId, ConfigRecord]]:
        records = self.services.library.get_many(code for _player, code in roster)
        resolved: List[Optional[Tuple[PlayerId, ConfigRecord]]] = []
        missing: Dict[PlayerId, List[int]] = {}
        for index, (player_id, code) in enumerate(roster):
            record = records.get(code)
            if self._usable(record):
                resolved.append((player_id, record))
            else:
                resolved.append(None)
                missing.setdefault(player_id, []).append(index)

        if missing:
            self.log.info(f"Re-requesting configs from {len(missing)} player(s)")
            await self._set_status(
                f"Game {self.session.code} is waiting on {len(missing)} player(s) to replace a YAML that can no longer be used."
            )
            replacements = await asyncio.gather(
                *(self._replace(player_id, len(slots)) for player_id, slots in missing.items())
            )
            for (player_id, slots), found in zip(missing.items(), replacements):
                for index, record in zip(slots, found):
                    resolved[index] = (player_id, record)

        return [entry for entry in resolved if entry is not None]

    async def _replace(self, player_id: PlayerId, count: int) -> List[ConfigRecord]:
        found: List[ConfigRecord] = []
        guild = getattr(self.channel, "guild", None)
        for _ in range(count):
            request = ConfigRequest(
                self.services,
                player_id,
                self.session.code,
                test_game=self.session.test_game,
                guild_name=getattr(guild, "name", None),
            )
            result = await request.start()
            if not result.has_config:
                self.log.info(f"Dropping {player_id} from the roster ({result.outcome.value})")
                break
            record = self.services.library.get(result.config_code)
            if record is not None:
                found.append(record)
        return found

    # ---------------------------
    # 2) Materialize
    # ---------------------------
    def materialize(self, entries: List[Tuple[PlayerId, ConfigRecord]]) -> Path:
        yaml_dir = self.game_dir / "yamls"
        yaml_dir.mkdir(parents=True, exist_ok=True)
        for _player_id, record in entries:
            shutil.copyfile(self.services.library.path_for(record), yaml_dir / f"{record.filename}.yaml")
        return yaml_dir

    # ---------------------------
    # 3-4) Engine run
    # ---------------------------
    async def generate(self, yaml_dir: Path) -> str:
        args = [
            str(self.python_path),
            self.script,
            "--player_files_path",
            str(yaml_dir.resolve()),
            "--outputpath",
            str(self.game_dir.resolve()),
        ]
        self.log.info("Starting generation")
        channel = await DirectChannel.spawn(args, cwd=str(self.ap_path))

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        code = self.session.code
        try:
            with open(self.game_dir / f"{code}-gen.stdout.log", "wb") as out_log, open(
                self.game_dir / f"{code}-gen.stderr.log", "wb"
            ) as err_log:
                await asyncio.gather(
                    self._pump_stdout(channel, out_log, stdout_parts),
                    self._pump_stderr(channel, err_log, stderr_parts),
                )
                exit_code = await channel.wait()
        finally:
            self._disarm_fallback()
            await channel.close()

        stdout_text = "".join(stdout_parts)
        stderr_text = "".join(stderr_parts)
        if exit_code != 0:
            self.log.warning(f"Generate.py exited with code {exit_code}")
            raise EngineProcessFailure(
                f"Generate.py exited with code {exit_code}",
                diagnostics=stderr_text or f"Generate.py exited with code {exit_code}",
                exit_code=exit_code,
            )
        m = _ARCHIVE_RE.search(stdout_text)
        if not m:
            raise EngineProcessFailure(
                "Unable to identify output file",
                diagnostics=f"Unable to identify output file\n\n{stderr_text}".strip(),
                exit_code=exit_code,
            )
        self.log.info(f"Generation produced {m.group(1)}")
        return m.group(1)

    async def _pump_stdout(self, channel: ProcessChannel, log_file, parts: List[str]) -> None:
        async for data in read_chunks(channel.stdout):
            log_file.write(data)
            text = data.decode("utf-8", errors="replace")
            parts.append(text)
            self._disarm_fallback()

            count = _ITEM_COUNT_RE.search(text)
            if count and self._item_count is None:
                self._item_count = int(count.group(1))
                await self._append_status(f" This multiworld will have **{self._item_count} items**.")

            answer = match_prompt(text)
            if answer is not None:
                await channel.write_line(answer)

    async def _pump_stderr(self, channel: ProcessChannel, log_file, parts: List[str]) -> None:
        async for data in read_chunks(channel.stderr):
            log_file.write(data)
            text = data.decode("utf-8", errors="replace")
            parts.append(text)

            answer = match_prompt(text)
            if answer is not None:
                await channel.write_line(answer)
            else:
                self._arm_fallback(channel)

    def _arm_fallback(self, channel: ProcessChannel) -> None:
        self._disarm_fallback()
        self._fallback_task = asyncio.create_task(self._fallback_enter(channel))

    def _disarm_fallback(self) -> None:
        if self._fallback_task is not None and not self._fallback_task.done():
            self._fallback_task.cancel()
        self._fallback_task = None

    async def _fallback_enter(self, channel: ProcessChannel) -> None:
        await asyncio.sleep(self.silence_seconds)
        self.log.debug("No output after stderr; sending enter")
        await channel.write_line("")

    # ---------------------------
    # 5-6) Results
    # ---------------------------
    async def finish(self, archive_name: str, entries: List[Tuple[PlayerId, ConfigRecord]]) -> GenerationOutcome:
        archive_path = self.game_dir / archive_name
        spoilers: List[discord.File] = []
        players: List[SpoilerPlayer] = []
        entry_data: Dict[str, bytes] = {}

        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                name = Path(info.filename).name
                data = archive.read(info)
                entry_data[name] = data
                if name.endswith(".archipelago"):
                    (self.game_dir / name).write_bytes(data)
                elif name.endswith("_Spoiler.txt"):
                    players.extend(parse_spoiler(data.decode("utf-8", errors="replace")))
                    spoilers.append(discord.File(io.BytesIO(data), filename=name, spoiler=True))

        mentions = ", ".join(f"<@{player_id}>" for player_id in dict.fromkeys(p for p, _r in entries))
        embeds = []
        if players:
            embeds.append(discord.Embed(title="Who's Playing What", description=describe_players(players)))
        await self.channel.send(
            content=f"Game {self.session.code} has been generated. Players: {mentions}",
            files=spoilers,
            embeds=embeds,
        )

        await self._send_player_files(entries, entry_data)

        filename = Path(archive_name).stem
        self.session.filename = filename
        self.services.store.create(
            self.session.code,
            guild_id=self.session.guild_id,
            host_id=self.session.host_id,
            filename=filename,
            active=False,
        )
        return GenerationOutcome(filename=filename, roster=(), item_count=self._item_count, players=players)

    async def _send_player_files(self, entries: List[Tuple[PlayerId, ConfigRecord]], entry_data: Dict[str, bytes]) -> None:
        names_by_player: Dict[PlayerId, List[str]] = {}
        for player_id, record in entries:
            names_by_player.setdefault(player_id, []).extend(split_names(record.player_names))

        for player_id, names in names_by_player.items():
            matches = [
                (entry, data)
                for entry, data in entry_data.items()
                if not entry.endswith((".archipelago", "_Spoiler.txt")) and any(n in entry for n in names)
            ]
            if not matches:
                continue
            try:
                user = self.services.bot.get_user(int(player_id)) or await self.services.bot.fetch_user(int(player_id))
                await user.send(
                    content=(
                        f"Here is your data file for game {self.session.code}. If you're not sure how to use this, "
                        "please refer to the Archipelago setup guide for your game, or ask someone for help."
                    ),
                    files=[discord.File(io.BytesIO(data), filename=entry) for entry, data in matches],
                )
            except discord.HTTPException as e:
                self.log.warning(f"Could not DM data files to {player_id}: {e}")

    async def report_failure(self, error: Exception) -> None:
        diagnostics = getattr(error, "diagnostics", None) or str(error)
        self.log.error(f"Generation failed: {error}")
        await self._set_status(f"Game {self.session.code} could not be generated.")
        try:
            await self.channel.send(
                content="An error occurred during game generation.",
                file=discord.File(io.BytesIO(diagnostics.encode("utf-8")), filename="Generation Error.txt"),
            )
        except discord.HTTPException as e:
            self.log.warning(f"Could not post generation error report: {e}")

    # ---------------------------
    # Status message
    # ---------------------------
    async def _set_status(self, content: str) -> None:
        if self.status_message is None:
            return
        self._status_text = content
        try:
            await self.status_message.edit(content=content)
        except discord.HTTPException as e:
            self.log.warning(f"Could not update status message: {e}")

    async def _append_status(self, suffix: str) -> None:
        if self.status_message is None:
            return
        current = self._status_text if self._status_text is not None else (self.status_message.content or "")
        await self._set_status(f"{current}{suffix}")
