"""Tests for spoiler parsing, prompt handling, roster re-resolution and full generation runs."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import discord
import pytest

from app.config_request import SELECT_CUSTOM_ID, WITHDRAW_CUSTOM_ID
from app.controller import GameController
from app.session import GameState, Session
from errors import EngineProcessFailure, MultiworldError
from services.generation import (
    GenerationSupervisor,
    SpoilerPlayer,
    describe_players,
    match_prompt,
    parse_spoiler,
)

from conftest import FAILING_GENERATE, make_channel, make_interaction, make_user, wait_until


SPOILER = """Archipelago Version 0.4.2  -  Seed: 12345

Players: 2

Player 1: Alice
Game:                            Clique

Player 2: Bob
Game:                            Hollow Knight
"""


def test_parse_spoiler_multiplayer():
    assert parse_spoiler(SPOILER) == [
        SpoilerPlayer(1, "Alice", "Clique"),
        SpoilerPlayer(2, "Bob", "Hollow Knight"),
    ]


def test_parse_spoiler_single_player():
    text = "Players: 1\n\nGame:                            Clique\n"
    assert parse_spoiler(text) == [SpoilerPlayer(1, "", "Clique")]


def test_describe_players():
    assert describe_players([SpoilerPlayer(1, "", "Clique")]) == (
        "It's only you for this one, and you'll be playing **Clique**."
    )
    assert describe_players(parse_spoiler(SPOILER)) == "Alice → **Clique**\nBob → **Hollow Knight**"


def test_match_prompt():
    assert match_prompt("Module foo is missing, press enter to install it") == ""
    assert match_prompt("Press enter to close") == ""
    assert match_prompt("Filling the world with 10 items.") is None


async def _launched(services, host, players):
    channel = make_channel()
    controller = GameController.new_game(services)
    await controller.start_recruitment(SimpleNamespace(guild=channel.guild, channel=channel, author=host))
    for player in players:
        await services.router.dispatch_interaction(
            make_interaction(player.id, "default", message_id=controller.recruitment.message.id)
        )
    result = await controller.launch(host.id)
    assert result.ok
    return controller, channel


@pytest.mark.asyncio
async def test_full_generation_and_delivery(make_services, add_config, fake_archipelago, store):
    host, alice, bob = make_user(), make_user(), make_user()
    services = make_services(host, alice, bob)
    add_config(alice.id, "Alice", make_default=True)
    add_config(bob.id, "Bob", game="Hollow Knight", make_default=True)
    ap = fake_archipelago()

    controller, channel = await _launched(services, host, [alice, bob])
    await wait_until(lambda: controller.state == GameState.RUNNING, timeout=10)
    await wait_until(lambda: controller.server is not None and controller.server.message is not None, timeout=10)

    # engine ran exactly once
    assert len((ap / "generate_calls.txt").read_text().splitlines()) == 1

    announcement = next(kwargs for kwargs, _m in channel.sent if "has been generated" in kwargs.get("content", ""))
    assert f"<@{alice.id}>" in announcement["content"] and f"<@{bob.id}>" in announcement["content"]
    lines = announcement["embeds"][0].description.splitlines()
    assert sorted(lines) == ["Alice → **Clique**", "Bob → **Hollow Knight**"]
    assert len(announcement["files"]) == 1
    assert announcement["files"][0].filename.endswith("AP_12345_Spoiler.txt")

    for user, name in ((alice, "Alice"), (bob, "Bob")):
        delivered = [f.filename for kwargs, _m in user.sent for f in kwargs.get("files", [])]
        assert len(delivered) == 1
        assert name in delivered[0]

    record = store.get(controller.code)
    assert record.filename == "AP_12345"
    assert record.host_id == host.id
    status = controller.recruitment.message.edit.call_args_list
    assert any("42 items" in c.kwargs.get("content", "") for c in status)

    await controller.server.write("/exit")
    await asyncio.wait_for(controller.task, 10)
    assert controller.state == GameState.STOPPED


@pytest.mark.asyncio
async def test_engine_failure_reports_and_skips_server(make_services, add_config, fake_archipelago, store):
    host, alice = make_user(), make_user()
    services = make_services(host, alice)
    add_config(alice.id, "Alice", make_default=True)
    fake_archipelago(generate=FAILING_GENERATE)
    services.ports = MagicMock()

    controller, channel = await _launched(services, host, [alice])
    await asyncio.wait_for(controller.task, 10)

    assert controller.state == GameState.GENERATION_FAILED
    assert controller.server is None
    services.ports.allocate.assert_not_called()
    assert store.get(controller.code) is None

    failure = channel.sent[-1][0]
    assert failure["content"] == "An error occurred during game generation."
    assert failure["file"].filename == "Generation Error.txt"
    assert "bad yaml for Alice" in failure["file"].fp.getvalue().decode("utf-8")


@pytest.mark.asyncio
async def test_failed_error_upload_still_ends_generation(make_services, add_config, fake_archipelago, store):
    host, alice = make_user(), make_user()
    services = make_services(host, alice)
    add_config(alice.id, "Alice", make_default=True)
    fake_archipelago(generate=FAILING_GENERATE)

    controller, channel = await _launched(services, host, [alice])
    original_send = channel.send.side_effect

    async def send(**kwargs):
        if "file" in kwargs:
            raise discord.HTTPException(MagicMock(status=413, reason="Payload Too Large"), "too large")
        return await original_send(**kwargs)

    channel.send.side_effect = send
    await asyncio.wait_for(controller.task, 10)

    assert controller.state == GameState.GENERATION_FAILED
    assert controller.task.exception() is None
    assert store.get(controller.code) is None


@pytest.mark.asyncio
async def test_broken_failure_report_still_ends_generation(make_services, add_config, fake_archipelago, monkeypatch):
    host, alice = make_user(), make_user()
    services = make_services(host, alice)
    add_config(alice.id, "Alice", make_default=True)
    fake_archipelago(generate=FAILING_GENERATE)

    async def report_failure(self, error):
        raise RuntimeError("report exploded")

    monkeypatch.setattr(GenerationSupervisor, "report_failure", report_failure)
    controller, _channel = await _launched(services, host, [alice])
    with pytest.raises(RuntimeError, match="report exploded"):
        await asyncio.wait_for(controller.task, 10)
    assert controller.state == GameState.GENERATION_FAILED


@pytest.mark.asyncio
async def test_missing_archive_is_a_failure(make_services, add_config, fake_archipelago, tmp_path):
    host = make_user()
    services = make_services(host)
    record = add_config(host.id, "Alice")
    fake_archipelago(generate="print('done, but nothing written')\n")

    session = Session(code="GENX", host_id=host.id, state=GameState.GENERATING)
    supervisor = GenerationSupervisor(services, session, make_channel())
    with pytest.raises(EngineProcessFailure, match="Unable to identify output file"):
        await supervisor.run(((host.id, record.code),))
    assert (tmp_path / "games" / "GENX" / "GENX-gen.stdout.log").read_text() == "done, but nothing written\n"


@pytest.mark.asyncio
async def test_prompts_are_acknowledged(make_services, fake_archipelago, tmp_path):
    services = make_services()
    fake_archipelago()
    script = (
        "import sys\n"
        "print('Module foo is missing, press enter to install it', flush=True)\n"
        "sys.stdin.readline()\n"
        "sys.stderr.write('Warning: something odd\\n')\n"
        "sys.stderr.flush()\n"
        "sys.stdin.readline()\n"
        "print('AP_777.zip', flush=True)\n"
    )
    (tmp_path / "ap" / "Generate.py").write_text(script, encoding="utf-8")

    session = Session(code="PRMT", state=GameState.GENERATING)
    supervisor = GenerationSupervisor(services, session, make_channel(), silence_seconds=0.1)
    yaml_dir = supervisor.game_dir / "yamls"
    yaml_dir.mkdir(parents=True)

    assert await asyncio.wait_for(supervisor.generate(yaml_dir), 10) == "AP_777.zip"


@pytest.mark.asyncio
async def test_vanished_config_is_re_requested(make_services, add_config, library):
    alice = make_user()
    services = make_services(alice)
    gone = add_config(alice.id, "Alice")
    spare = add_config(alice.id, "Spare")
    library.path_for(gone).unlink()

    session = Session(code="RROL", state=GameState.GENERATING)
    supervisor = GenerationSupervisor(services, session, make_channel(), python_path="py", ap_path="ap")
    resolving = asyncio.create_task(supervisor.resolve_roster(((alice.id, gone.code),)))

    await wait_until(lambda: alice.sent and len(services.router) == 1)
    dm = alice.sent[0][1]
    await services.router.dispatch_interaction(
        make_interaction(alice.id, SELECT_CUSTOM_ID, message_id=dm.id, values=[spare.code])
    )
    entries = await asyncio.wait_for(resolving, 2)
    assert [(p, r.code) for p, r in entries] == [(alice.id, spare.code)]


@pytest.mark.asyncio
async def test_nobody_left_after_withdrawal(make_services, add_config, library):
    alice = make_user()
    services = make_services(alice)
    gone = add_config(alice.id, "Alice")
    library.path_for(gone).unlink()

    session = Session(code="EMPT", state=GameState.GENERATING)
    supervisor = GenerationSupervisor(services, session, make_channel(), python_path="py", ap_path="ap")
    running = asyncio.create_task(supervisor.run(((alice.id, gone.code),)))

    await wait_until(lambda: alice.sent and len(services.router) == 1)
    dm = alice.sent[0][1]
    await services.router.dispatch_interaction(make_interaction(alice.id, WITHDRAW_CUSTOM_ID, message_id=dm.id))
    with pytest.raises(MultiworldError, match="Nobody with a usable YAML"):
        await asyncio.wait_for(running, 2)


@pytest.mark.asyncio
async def test_data_files_reach_uncached_players(make_services, add_config):
    alice = make_user()
    services = make_services(alice)
    record = add_config(alice.id, "Alice")
    services.bot.get_user.side_effect = lambda uid: None

    session = Session(code="DLVR", state=GameState.GENERATING)
    supervisor = GenerationSupervisor(services, session, make_channel(), python_path="py", ap_path="ap")
    await supervisor._send_player_files(
        [(alice.id, record)],
        {"AP_1_P1_Alice.apfake": b"data", "AP_1.archipelago": b"multi", "AP_1_Spoiler.txt": b"spoiler"},
    )

    services.bot.fetch_user.assert_awaited_once_with(alice.id)
    assert [f.filename for f in alice.sent[0][0]["files"]] == ["AP_1_P1_Alice.apfake"]
