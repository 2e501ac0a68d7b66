"""
Attachment download (HTTP).

Players submit configs as Discord attachments; the bot fetches the file from the
attachment URL and hands the text to the validator.
"""
from __future__ import annotations

from typing import Any, Optional

import aiohttp
import asyncio

import config
from errors import AttachmentError


CONFIG_EXTENSIONS = (".yaml", ".yml", ".json", ".txt")


def is_config_attachment(attachment: Any) -> bool:
    filename = str(getattr(attachment, "filename", "") or "").lower()
    return filename.endswith(CONFIG_EXTENSIONS)


class AttachmentFetcher:
    def __init__(
        self,
        timeout_total_seconds: float = config.ATTACHMENT_HTTP_TIMEOUT_TOTAL_SECONDS,
        timeout_connect_seconds: float = config.ATTACHMENT_HTTP_TIMEOUT_CONNECT_SECONDS,
        max_bytes: int = config.ATTACHMENT_MAX_BYTES,
    ) -> None:
        self.timeout_total_seconds = float(timeout_total_seconds)
        self.timeout_connect_seconds = float(timeout_connect_seconds)
        self.max_bytes = int(max_bytes)

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.timeout_total_seconds,
            connect=self.timeout_connect_seconds,
        )

    async def fetch_text(self, url: str, size: Optional[int] = None) -> str:
        if not url:
            raise AttachmentError("Attachment has no URL")
        if size is not None and size > self.max_bytes:
            raise AttachmentError(f"Attachment is too large ({size} bytes)")

        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(url) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise AttachmentError(f"Attachment download failed: HTTP {resp.status}")
                    body = await resp.content.read(self.max_bytes + 1)
        except asyncio.TimeoutError as e:
            raise AttachmentError("Attachment download timed out") from e
        except aiohttp.ClientError as e:
            raise AttachmentError("Attachment download failed: connection error") from e

        if len(body) > self.max_bytes:
            raise AttachmentError("Attachment is too large")
        return body.decode("utf-8", errors="replace")

    async def fetch_attachment(self, attachment: Any) -> str:
        return await self.fetch_text(
            str(getattr(attachment, "url", "") or ""),
            size=getattr(attachment, "size", None),
        )
