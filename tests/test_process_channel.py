"""Tests for child process channels (direct pipes and named pipes)."""

import asyncio
import subprocess
import sys
import time

import psutil
import pytest

from services.process_channel import DirectChannel, FifoChannel, fifo_supported, kill_tree, open_channel, read_chunks


ECHO = (
    "import sys\n"
    "for line in sys.stdin:\n"
    "    line = line.strip()\n"
    "    if line == 'quit':\n"
    "        break\n"
    "    print('echo:' + line, flush=True)\n"
    "    sys.stderr.write('err:' + line + '\\n')\n"
    "    sys.stderr.flush()\n"
)


async def _read_until(stream, needle: bytes) -> bytes:
    seen = b""
    async for data in read_chunks(stream):
        seen += data
        if needle in seen:
            break
    return seen


@pytest.mark.asyncio
async def test_direct_channel_roundtrip():
    channel = await DirectChannel.spawn([sys.executable, "-c", ECHO])
    try:
        assert await channel.write_line("hello")
        assert b"echo:hello" in await asyncio.wait_for(_read_until(channel.stdout, b"echo:hello"), 5)
        assert b"err:hello" in await asyncio.wait_for(_read_until(channel.stderr, b"err:hello"), 5)
        await channel.write_line("quit")
        assert await asyncio.wait_for(channel.wait(), 5) == 0
    finally:
        await channel.close()
    assert not await channel.write_line("late")


@pytest.mark.asyncio
@pytest.mark.skipif(not fifo_supported(), reason="named pipes not available")
async def test_fifo_channel_roundtrip(tmp_path):
    prefix = tmp_path / "GAME-std"
    channel = await open_channel([sys.executable, "-c", ECHO], fifo_prefix=prefix, mode="fifo")
    assert isinstance(channel, FifoChannel)
    assert all(p.exists() for p in FifoChannel.paths_for(prefix))
    try:
        assert await channel.write_line("hello")
        assert b"echo:hello" in await asyncio.wait_for(_read_until(channel.stdout, b"echo:hello"), 5)
        await channel.write_line("quit")
        assert await asyncio.wait_for(channel.wait(), 5) == 0
    finally:
        await channel.close()
    assert not any(p.exists() for p in FifoChannel.paths_for(prefix))


@pytest.mark.asyncio
async def test_direct_mode_and_missing_prefix_use_pipes(tmp_path):
    for kwargs in ({"mode": "direct", "fifo_prefix": tmp_path / "X-std"}, {"mode": "auto"}):
        channel = await open_channel([sys.executable, "-c", "pass"], **kwargs)
        assert isinstance(channel, DirectChannel)
        await channel.wait()
        await channel.close()


@pytest.mark.asyncio
async def test_unknown_mode():
    with pytest.raises(ValueError):
        await open_channel([sys.executable, "-c", "pass"], mode="telepathy")


@pytest.mark.asyncio
async def test_terminate_stops_child():
    channel = await DirectChannel.spawn([sys.executable, "-c", "import time; time.sleep(30)"])
    channel.terminate()
    assert await asyncio.wait_for(channel.wait(), 5) != 0
    channel.terminate()
    await channel.close()


def test_kill_tree_takes_children_down():
    script = "import subprocess, sys, time; subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']); time.sleep(30)"
    parent = subprocess.Popen([sys.executable, "-c", script])
    try:
        proc = psutil.Process(parent.pid)
        for _ in range(50):
            if proc.children():
                break
            time.sleep(0.1)
        children = proc.children(recursive=True)
        assert children

        kill_tree(parent.pid, timeout=3)
        parent.wait(timeout=5)
        assert not any(c.is_running() and c.status() != psutil.STATUS_ZOMBIE for c in children)
    finally:
        if parent.poll() is None:
            parent.kill()
