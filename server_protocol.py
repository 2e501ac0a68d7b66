"""
Server protocol (MultiServer.py console): command lines in, status lines out.

Command line format:
- Commands are single lines starting with "/" (e.g. "/release Alice", "/exit").
- Discord swallows messages starting with "/", so the host types "." instead; a
  single leading "." is rewritten to the server's prefix before relaying.
- Anything else is relayed verbatim (the server treats it as chat).

Output handling:
- "(Team #1) Alice sent Boots to Bob (Forest)" marks an item transfer, which
  the status message shows as soon as the throttle allows.
- "Now that you are connected" notices are noise and are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import List, Optional


class ServerCommand(str, Enum):
    RELEASE = "release"
    COLLECT = "collect"
    HINT = "hint"
    SEND = "send"
    EXIT = "exit"


@dataclass(frozen=True)
class CommandSpec:
    command: ServerCommand
    label: str
    description: str
    # Modal prompts; empty for commands that need no input.
    target_prompt: str = ""
    item_prompt: str = ""

    @property
    def needs_target(self) -> bool:
        return bool(self.target_prompt)

    @property
    def needs_item(self) -> bool:
        return bool(self.item_prompt)


COMMAND_MENU: List[CommandSpec] = [
    CommandSpec(
        ServerCommand.RELEASE,
        "Release (forfeit)",
        "Sends a player's world's items to their respective players.",
        target_prompt="Who would you like to release?",
    ),
    CommandSpec(
        ServerCommand.COLLECT,
        "Collect",
        "Gathers a player's items from everyone else's worlds.",
        target_prompt="Who would you like to collect?",
    ),
    CommandSpec(
        ServerCommand.HINT,
        "Request hint",
        "Send a player a hint about an item.",
        target_prompt="Who would like a hint?",
        item_prompt="Which item is it for?",
    ),
    CommandSpec(
        ServerCommand.SEND,
        "Send an item",
        "Send a player an item.",
        target_prompt="Who would like an item?",
        item_prompt="Which item will they receive?",
    ),
    CommandSpec(ServerCommand.EXIT, "Close server", "Closes the server."),
]


def command_spec(value: str) -> Optional[CommandSpec]:
    for spec in COMMAND_MENU:
        if spec.command.value == value:
            return spec
    return None


_ITEM_SENT_RE = re.compile(r"^\(Team #\d+\) .* sent .* to .*")
_CONNECT_NOTICE_RE = re.compile(r"^Notice \(Player .* in team \d+\): Now that you are connected,")


def is_item_transfer(line: str) -> bool:
    return bool(_ITEM_SENT_RE.match(line or ""))


def split_output(chunk: str) -> List[str]:
    """Split a chunk of server output into display lines, dropping noise."""
    lines = []
    for line in (chunk or "").strip().splitlines():
        line = line.rstrip()
        if not line or _CONNECT_NOTICE_RE.match(line):
            continue
        lines.append(line)
    return lines


def relay_text(text: str, prefix: str = "/") -> str:
    """Host reply → server input line. Only a leading "." is rewritten."""
    text = (text or "").strip()
    if text.startswith("."):
        return prefix + text[1:]
    return text


def format_command(
    command: ServerCommand,
    target: Optional[str] = None,
    item: Optional[str] = None,
    prefix: str = "/",
) -> str:
    parts = [f"{prefix}{command.value}"]
    if target:
        parts.append(target.strip())
    if item:
        parts.append(item.strip())
    return " ".join(parts)
