"""
Interaction routing (main core).

Every live surface (recruitment message, DM config request, server status
message) registers exactly one handler under its anchor message ID. Discord events
are dispatched once against that map:

- component interactions: the anchor is the message the component sits on, unless
  the custom ID carries one ("<event>-<anchor id>", used by ephemeral menus and
  modals, whose own message is not the anchor)
- modal submits: anchor from the custom ID
- message replies: the referenced message ID
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import discord

import config
from logger import setup_logger


logger = setup_logger(__name__, config.LOG_FILE, config.LOG_LEVEL)

InteractionHandler = Callable[[Any], Awaitable[None]]
ReplyHandler = Callable[[Any], Awaitable[None]]

_ANCHORED_ID_RE = re.compile(r"^(?P<event>[a-z_]+)-(?P<anchor>\d+)$")


def anchored_id(event: str, anchor_id: int) -> str:
    return f"{event}-{anchor_id}"


def split_anchored_id(custom_id: str) -> tuple[Optional[str], Optional[int]]:
    m = _ANCHORED_ID_RE.match(custom_id or "")
    if not m:
        return None, None
    return m.group("event"), int(m.group("anchor"))


def custom_id_of(interaction: Any) -> str:
    data = getattr(interaction, "data", None) or {}
    return str(data.get("custom_id") or "")


def selected_values(interaction: Any) -> List[str]:
    data = getattr(interaction, "data", None) or {}
    return [str(v) for v in (data.get("values") or [])]


def modal_values(interaction: Any) -> Dict[str, str]:
    """Flatten a modal submit payload into {text input custom_id: value}."""
    data = getattr(interaction, "data", None) or {}
    values: Dict[str, str] = {}
    for row in data.get("components") or []:
        for component in row.get("components") or []:
            cid = component.get("custom_id")
            if cid:
                values[str(cid)] = str(component.get("value") or "")
    return values


class RoutedView(discord.ui.View):
    """Layout-only view: components are rendered, the router handles every click."""

    def __init__(self, *items: discord.ui.Item) -> None:
        super().__init__(timeout=None)
        for item in items:
            self.add_item(item)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return False


class RoutedModal(discord.ui.Modal):
    def __init__(self, title: str, custom_id: str, *inputs: discord.ui.TextInput) -> None:
        super().__init__(title=title, custom_id=custom_id, timeout=None)
        for text_input in inputs:
            self.add_item(text_input)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        return False


@dataclass
class _Route:
    on_interaction: Optional[InteractionHandler] = None
    on_reply: Optional[ReplyHandler] = None
    owner: str = ""


class InteractionRouter:
    def __init__(self) -> None:
        self._routes: Dict[int, _Route] = {}

    def register(
        self,
        anchor_id: int,
        on_interaction: Optional[InteractionHandler] = None,
        on_reply: Optional[ReplyHandler] = None,
        owner: str = "",
    ) -> None:
        anchor_id = int(anchor_id)
        if anchor_id in self._routes:
            raise ValueError(f"Anchor {anchor_id} is already routed to {self._routes[anchor_id].owner or 'a handler'}")
        self._routes[anchor_id] = _Route(on_interaction=on_interaction, on_reply=on_reply, owner=owner)
        logger.debug(f"Routed anchor {anchor_id} -> {owner or 'handler'}")

    def unregister(self, anchor_id: Optional[int]) -> bool:
        if anchor_id is None:
            return False
        route = self._routes.pop(int(anchor_id), None)
        if route:
            logger.debug(f"Unrouted anchor {anchor_id} ({route.owner or 'handler'})")
        return route is not None

    def is_registered(self, anchor_id: int) -> bool:
        return int(anchor_id) in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    @staticmethod
    def anchor_of(interaction: Any) -> Optional[int]:
        _event, anchor = split_anchored_id(custom_id_of(interaction))
        if anchor is not None:
            return anchor
        message = getattr(interaction, "message", None)
        if message is not None and getattr(message, "id", None) is not None:
            return int(message.id)
        return None

    async def dispatch_interaction(self, interaction: Any) -> bool:
        anchor = self.anchor_of(interaction)
        if anchor is None:
            return False
        route = self._routes.get(anchor)
        if route is None or route.on_interaction is None:
            return False
        try:
            await route.on_interaction(interaction)
        except Exception as e:
            logger.error(f"Interaction handler error ({route.owner}): {e}", exc_info=True)
        return True

    async def dispatch_message(self, message: Any) -> bool:
        reference = getattr(message, "reference", None)
        anchor = getattr(reference, "message_id", None) if reference else None
        if anchor is None:
            return False
        route = self._routes.get(int(anchor))
        if route is None or route.on_reply is None:
            return False
        try:
            await route.on_reply(message)
        except Exception as e:
            logger.error(f"Reply handler error ({route.owner}): {e}", exc_info=True)
        return True
