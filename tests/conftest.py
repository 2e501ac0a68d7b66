"""Shared fakes for Discord objects and a throwaway storage stack."""

import asyncio
import itertools
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
from allocators import PortAllocator
from catalog import FunctionState, GameCatalog
from config_artifact import validate_config
from store.database import Database
from store.game_store import GameStore
from store.library import ConfigLibrary

from app.router import InteractionRouter
from app.session import GameServices


_ids = itertools.count(1000)

ENGINE_VERSION = (0, 4, 2)


def next_id() -> int:
    return next(_ids)


def config_text(name: str, game: str = "Clique", version: str = "0.4.2") -> str:
    return (
        f"name: {name}\n"
        f"game: {game}\n"
        f"description: {name}'s settings\n"
        f"requires:\n"
        f"  version: {version}\n"
        f"{game}:\n"
        f"  progression_balancing: 50\n"
    )


def make_message(message_id=None, content="", author=None, reference_id=None, attachments=()):
    message = MagicMock()
    message.id = message_id if message_id is not None else next_id()
    message.content = content
    message.author = author
    message.attachments = list(attachments)
    message.reference = SimpleNamespace(message_id=reference_id) if reference_id is not None else None
    message.edit = AsyncMock()
    message.reply = AsyncMock()
    message.delete = AsyncMock()
    message.add_reaction = AsyncMock()
    return message


def make_user(user_id=None, bot=False):
    user = MagicMock()
    user.id = user_id if user_id is not None else next_id()
    user.bot = bot
    user.sent = []

    async def send(**kwargs):
        message = make_message(content=kwargs.get("content", ""), author=SimpleNamespace(id=1, bot=True))
        user.sent.append((kwargs, message))
        return message

    user.send = AsyncMock(side_effect=send)
    return user


def make_channel(channel_id=None, guild_name="Test Guild"):
    channel = MagicMock()
    channel.id = channel_id if channel_id is not None else next_id()
    channel.guild = SimpleNamespace(id=next_id(), name=guild_name)
    channel.sent = []

    async def send(**kwargs):
        message = make_message(content=kwargs.get("content", ""))
        channel.sent.append((kwargs, message))
        return message

    channel.send = AsyncMock(side_effect=send)
    return channel


def make_interaction(user_id, custom_id, message_id=None, values=None, components=None):
    interaction = MagicMock()
    interaction.user = SimpleNamespace(id=user_id)
    data = {"custom_id": custom_id}
    if values is not None:
        data["values"] = list(values)
    if components is not None:
        data["components"] = components
    interaction.data = data
    interaction.message = SimpleNamespace(id=message_id) if message_id is not None else None

    response = MagicMock()
    state = {"done": False}

    def _responder(name):
        async def respond(*args, **kwargs):
            state["done"] = True
        return AsyncMock(side_effect=respond, name=name)

    response.send_message = _responder("send_message")
    response.edit_message = _responder("edit_message")
    response.defer = _responder("defer")
    response.send_modal = _responder("send_modal")
    response.is_done = MagicMock(side_effect=lambda: state["done"])
    interaction.response = response
    return interaction


def make_attachment(text: str, filename: str = "player.yaml"):
    return SimpleNamespace(filename=filename, url=f"https://cdn.example.invalid/{filename}", size=len(text), text=text)


def make_bot(*users):
    bot = MagicMock()
    by_id = {u.id: u for u in users}
    bot.users = by_id
    bot.get_user = MagicMock(side_effect=lambda uid: by_id.get(int(uid)))
    bot.fetch_user = AsyncMock(side_effect=lambda uid: by_id.get(int(uid)))
    return bot


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def catalog():
    return GameCatalog(
        version=ENGINE_VERSION,
        games={
            "Clique": FunctionState.PLAYABLE,
            "Hollow Knight": FunctionState.PLAYABLE,
            "Archipelago": FunctionState.SUPPORT,
            "Pokemon Red and Blue": FunctionState.TESTING,
            "Broken Game": FunctionState.BROKEN,
        },
    )


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'test.sqlite'}")
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return GameStore(db)


@pytest.fixture
def library(db, tmp_path):
    return ConfigLibrary(db, yaml_dir=str(tmp_path / "yamls"))


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.fetch_attachment = AsyncMock(side_effect=lambda attachment: attachment.text)
    return fetcher


@pytest.fixture
def make_services(store, library, catalog, fetcher):
    def factory(*users):
        return GameServices(
            bot=make_bot(*users),
            router=InteractionRouter(),
            store=store,
            library=library,
            catalog=catalog,
            fetcher=fetcher,
            ports=PortAllocator(in_use=set, can_bind=lambda port: True),
        )
    return factory


@pytest.fixture
def add_config(library, catalog):
    def factory(user_id, name, game="Clique", version="0.4.2", make_default=False):
        data = validate_config(config_text(name, game, version), catalog)
        return library.add_config(user_id, data, make_default=make_default)
    return factory


# ---------------------------
# Fake Archipelago install
# ---------------------------
FAKE_GENERATE = '''
import argparse
import os
import zipfile

parser = argparse.ArgumentParser()
parser.add_argument("--player_files_path")
parser.add_argument("--outputpath")
args = parser.parse_args()

with open("generate_calls.txt", "a") as calls:
    calls.write(args.player_files_path + "\\n")

players = []
for filename in sorted(os.listdir(args.player_files_path)):
    name = game = None
    with open(os.path.join(args.player_files_path, filename), encoding="utf-8") as f:
        for line in f:
            if line.startswith("name:"):
                name = line.split(":", 1)[1].strip()
            elif line.startswith("game:"):
                game = line.split(":", 1)[1].strip()
    players.append((name, game))

seed = "AP_12345"
print("Filling the world with 42 items.", flush=True)
spoiler = "Players: %d\\n\\n" % len(players)
for slot, (name, game) in enumerate(players, 1):
    spoiler += "Player %d: %s\\nGame: %s\\n\\n" % (slot, name, game)
with zipfile.ZipFile(os.path.join(args.outputpath, seed + ".zip"), "w") as archive:
    archive.writestr(seed + ".archipelago", b"multidata")
    archive.writestr(seed + "_Spoiler.txt", spoiler)
    for slot, (name, game) in enumerate(players, 1):
        archive.writestr("%s_P%d_%s.apfake" % (seed, slot, name), "patch for " + name)
print("Creating final archive at " + seed + ".zip", flush=True)
'''

FAILING_GENERATE = '''
import sys
sys.stderr.write("Traceback (most recent call last):\\nValueError: bad yaml for Alice\\n")
sys.exit(1)
'''

FAKE_SERVER = '''
import sys
port = sys.argv[sys.argv.index("--port") + 1]
print("Hosting game at 0.0.0.0:" + port, flush=True)
for line in sys.stdin:
    line = line.strip()
    if line == "/exit":
        print("Shutting down", flush=True)
        sys.exit(0)
    print("Received: " + line, flush=True)
'''


@pytest.fixture
def fake_archipelago(tmp_path, monkeypatch):
    """Write stand-in engine scripts and point the config at them."""

    def install(generate=FAKE_GENERATE, server=FAKE_SERVER):
        ap = tmp_path / "ap"
        ap.mkdir(exist_ok=True)
        (ap / "Generate.py").write_text(generate, encoding="utf-8")
        (ap / "MultiServer.py").write_text(server, encoding="utf-8")
        monkeypatch.setattr(config, "PYTHON_PATH", sys.executable)
        monkeypatch.setattr(config, "AP_PATH", str(ap))
        monkeypatch.setattr(config, "GAMES_DIR", str(tmp_path / "games"))
        monkeypatch.setattr(config, "SERVER_STDIO_MODE", "direct")
        monkeypatch.setattr(config, "SERVER_STATUS_MIN_INTERVAL_SECONDS", 0.01)
        monkeypatch.setattr(config, "SERVER_STATUS_DEBOUNCE_SECONDS", 0.01)
        return ap

    return install
