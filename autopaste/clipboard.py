"""System clipboard access."""

from __future__ import annotations

import asyncio
import logging

import pyperclip

from autopaste.errors import ClipboardError

logger = logging.getLogger(__name__)


class ClipboardWriter:
    """Writes and reads the system clipboard without blocking the event loop."""

    async def write(self, text: str) -> None:
        """
        Replace the clipboard content with ``text``.

        Raises:
            ClipboardError: If the underlying clipboard API fails.
        """
        try:
            await asyncio.to_thread(pyperclip.copy, text)
        except Exception as e:
            raise ClipboardError(str(e) or type(e).__name__) from e

    async def read(self) -> str:
        """Return the clipboard text, or an empty string if it cannot be read."""
        try:
            text = await asyncio.to_thread(pyperclip.paste)
        except Exception as e:
            logger.warning("Failed to read clipboard: %s", e)
            return ""
        return text or ""
