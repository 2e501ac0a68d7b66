"""
Child process stdio channels.

- DirectChannel: plain asyncio subprocess pipes
- FifoChannel:   stdin/stdout/stderr go through named pipes under the game
                 directory, so the server can be inspected or fed from a shell
                 while it runs

`open_channel()` picks one based on SERVER_STDIO_MODE ("auto", "direct", "fifo").
"""

from __future__ import annotations

import asyncio
import functools
import os
from pathlib import Path
import tempfile
from typing import List, Optional, Sequence

import psutil

import config
from logger import setup_logger


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

READ_CHUNK_BYTES = 4096
FIFO_SUFFIXES = ("in", "out", "err")


@functools.lru_cache(maxsize=1)
def fifo_supported() -> bool:
    """Probe once per process whether named pipes can be created here."""
    if not hasattr(os, "mkfifo"):
        return False
    try:
        with tempfile.TemporaryDirectory() as tmp:
            os.mkfifo(os.path.join(tmp, "probe"), 0o600)
        return True
    except OSError as e:
        logger.info(f"Named pipes unavailable: {e}")
        return False


def kill_tree(pid: int, timeout: float = 3.0) -> None:
    """Terminate a process and all its children, force-killing stragglers."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    # children first, then parent
    for proc in [*children, parent]:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _gone, alive = psutil.wait_procs([*children, parent], timeout=timeout)
    for proc in alive:
        logger.warning(f"[pid {proc.pid}] did not exit, killing")
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


class ProcessChannel:
    """A running child process plus the streams used to talk to it."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self.stdout: Optional[asyncio.StreamReader] = None
        self.stderr: Optional[asyncio.StreamReader] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def write_line(self, text: str) -> bool:
        raise NotImplementedError

    async def wait(self) -> int:
        return await self.process.wait()

    def terminate(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        """Terminate the process tree without the event loop (used at shutdown)."""
        if self.process.returncode is None:
            kill_tree(self.pid)

    async def close(self) -> None:
        """Release stream handles and any files the channel created."""


class DirectChannel(ProcessChannel):
    @classmethod
    async def spawn(cls, args: Sequence[str], cwd: Optional[str] = None) -> "DirectChannel":
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        channel = cls(process)
        channel.stdout = process.stdout
        channel.stderr = process.stderr
        return channel

    async def write_line(self, text: str) -> bool:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(f"{text}\n".encode("utf-8"))
            await stdin.drain()
            return True
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"[pid {self.pid}] stdin closed: {e}")
            return False

    async def close(self) -> None:
        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()


class FifoChannel(ProcessChannel):
    """
    Named-pipe trio `<prefix>in`, `<prefix>out`, `<prefix>err`.

    The child's ends are opened read-write so neither side blocks on open; the
    parent keeps non-blocking ends wrapped in asyncio pipe transports.
    """

    def __init__(self, process: asyncio.subprocess.Process, paths: List[Path]) -> None:
        super().__init__(process)
        self.paths = paths
        self._stdin_transport: Optional[asyncio.WriteTransport] = None
        self._read_transports: List[asyncio.BaseTransport] = []

    @staticmethod
    def paths_for(prefix: Path) -> List[Path]:
        return [Path(f"{prefix}{suffix}") for suffix in FIFO_SUFFIXES]

    @classmethod
    async def spawn(cls, args: Sequence[str], prefix: Path, cwd: Optional[str] = None) -> "FifoChannel":
        paths = cls.paths_for(prefix)
        for path in paths:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                path.unlink()
            os.mkfifo(path, 0o600)

        child_fds: List[int] = []
        parent_fds: List[int] = []
        try:
            child_fds = [os.open(p, os.O_RDWR) for p in paths]
            parent_fds = [
                os.open(paths[0], os.O_WRONLY | os.O_NONBLOCK),
                os.open(paths[1], os.O_RDONLY | os.O_NONBLOCK),
                os.open(paths[2], os.O_RDONLY | os.O_NONBLOCK),
            ]
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdin=child_fds[0],
                stdout=child_fds[1],
                stderr=child_fds[2],
            )
        except Exception:
            for fd in parent_fds:
                os.close(fd)
            for path in paths:
                path.unlink(missing_ok=True)
            raise
        finally:
            for fd in child_fds:
                os.close(fd)

        channel = cls(process, paths)
        await channel._attach(*parent_fds)
        return channel

    async def _attach(self, in_fd: int, out_fd: int, err_fd: int) -> None:
        loop = asyncio.get_running_loop()

        transport, _ = await loop.connect_write_pipe(asyncio.Protocol, os.fdopen(in_fd, "wb", buffering=0))
        self._stdin_transport = transport

        readers = []
        for fd in (out_fd, err_fd):
            reader = asyncio.StreamReader()
            transport, _ = await loop.connect_read_pipe(
                lambda r=reader: asyncio.StreamReaderProtocol(r),
                os.fdopen(fd, "rb", buffering=0),
            )
            self._read_transports.append(transport)
            readers.append(reader)
        self.stdout, self.stderr = readers

    async def write_line(self, text: str) -> bool:
        transport = self._stdin_transport
        if transport is None or transport.is_closing() or self.returncode is not None:
            return False
        transport.write(f"{text}\n".encode("utf-8"))
        return True

    async def close(self) -> None:
        if self._stdin_transport is not None:
            self._stdin_transport.close()
            self._stdin_transport = None
        for transport in self._read_transports:
            transport.close()
        self._read_transports.clear()
        for path in self.paths:
            path.unlink(missing_ok=True)


async def open_channel(
    args: Sequence[str],
    cwd: Optional[str] = None,
    fifo_prefix: Optional[Path] = None,
    mode: Optional[str] = None,
) -> ProcessChannel:
    mode = (mode or getattr(config, "SERVER_STDIO_MODE", "auto") or "auto").lower()
    if mode not in ("auto", "direct", "fifo"):
        raise ValueError(f"Unknown stdio mode: {mode}")

    use_fifo = fifo_prefix is not None and (mode == "fifo" or (mode == "auto" and fifo_supported()))
    if mode == "fifo" and not use_fifo:
        raise ValueError("Named pipes were requested but are not available")

    if use_fifo:
        logger.debug(f"Spawning with named pipes at {fifo_prefix}*: {' '.join(args)}")
        return await FifoChannel.spawn(args, fifo_prefix, cwd=cwd)
    logger.debug(f"Spawning with direct pipes: {' '.join(args)}")
    return await DirectChannel.spawn(args, cwd=cwd)


async def read_chunks(stream: Optional[asyncio.StreamReader]):
    """Yield raw output chunks as they arrive (prompts may not end in a newline)."""
    if stream is None:
        return
    while True:
        data = await stream.read(READ_CHUNK_BYTES)
        if not data:
            return
        yield data
