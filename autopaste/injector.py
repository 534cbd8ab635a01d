"""
Keystroke injection for delivering clipboard content.

The injector simulates "select-all" followed by "paste" in the focused
window. Several strategies exist; they are tried in rank order until one
completes:

* ``NativeInjection`` - global input injection through pynput.
* ``XdotoolWindowInjection`` - X11 key events sent to the focused window id.
* ``Win32WindowInjection`` - WM_KEYDOWN/WM_KEYUP posted to the foreground HWND.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from autopaste.config import InjectorConfig
from autopaste.errors import InjectionError

if TYPE_CHECKING:
    from autopaste.clipboard import ClipboardWriter

logger = logging.getLogger(__name__)

# (modifier, key) pairs; modifier is "ctrl" or "cmd"
Chord = tuple[str, str]

SELECT_ALL_KEY = "a"
PASTE_KEY = "v"

_XDOTOOL_MODIFIERS = {"ctrl": "ctrl", "cmd": "super"}

WM_KEYDOWN = 0x0100
WM_KEYUP = 0x0101
VK_CONTROL = 0x11
_WIN32_MODIFIERS = {"ctrl": VK_CONTROL}


class InjectionStrategy(ABC):
    """One way of getting a key sequence into the focused window."""

    name = "strategy"

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if this strategy can run on the current system."""
        ...

    @abstractmethod
    def inject(self, chords: Sequence[Chord], key_delay: float) -> None:
        """
        Send each chord in order, pausing ``key_delay`` seconds between them.

        Raises:
            InjectionError: If the key events cannot be delivered.
        """
        ...


class NativeInjection(InjectionStrategy):
    """Global keystroke injection through the pynput keyboard controller."""

    name = "native"

    def __init__(self) -> None:
        self._controller = None

    def is_available(self) -> bool:
        return True

    def _get_controller(self):
        if self._controller is None:
            # pynput binds to the display server on import
            from pynput.keyboard import Controller as KeyboardController

            self._controller = KeyboardController()
        return self._controller

    def inject(self, chords: Sequence[Chord], key_delay: float) -> None:
        from pynput.keyboard import Key

        controller = self._get_controller()
        for index, (modifier, key) in enumerate(chords):
            if index:
                time.sleep(key_delay)
            with controller.pressed(Key[modifier]):
                controller.press(key)
                controller.release(key)


class XdotoolWindowInjection(InjectionStrategy):
    """Sends key events to the focused X11 window with ``xdotool key --window``."""

    name = "xdotool"

    def is_available(self) -> bool:
        return sys.platform.startswith("linux") and shutil.which("xdotool") is not None

    def _run(self, cmd: list[str]) -> str:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
        except subprocess.TimeoutExpired:
            raise InjectionError("xdotool timed out")
        except FileNotFoundError:
            raise InjectionError("xdotool not found")

        if result.returncode != 0:
            raise InjectionError(f"xdotool failed: {result.stderr.strip()}")
        return result.stdout.strip()

    def inject(self, chords: Sequence[Chord], key_delay: float) -> None:
        window_id = self._run(["xdotool", "getactivewindow"])
        if not window_id:
            raise InjectionError("No focused window")

        for index, (modifier, key) in enumerate(chords):
            if index:
                time.sleep(key_delay)
            combo = f"{_XDOTOOL_MODIFIERS[modifier]}+{key}"
            self._run(["xdotool", "key", "--clearmodifiers", "--window", window_id, combo])


class Win32WindowInjection(InjectionStrategy):
    """Posts key messages directly to the foreground window handle."""

    name = "win32"

    def is_available(self) -> bool:
        return sys.platform == "win32"

    def inject(self, chords: Sequence[Chord], key_delay: float) -> None:
        """Send each chord; only the Control modifier is supported."""
        try:
            codes = [(_WIN32_MODIFIERS[modifier], ord(key.upper())) for modifier, key in chords]
        except KeyError as e:
            raise InjectionError(f"Unsupported modifier for win32: {e.args[0]}") from e

        import ctypes

        user32 = ctypes.windll.user32
        hwnd = user32.GetForegroundWindow()
        if not hwnd:
            raise InjectionError("No foreground window handle")

        for index, (modifier_vk, vk) in enumerate(codes):
            if index:
                time.sleep(key_delay)
            for message, code in (
                (WM_KEYDOWN, modifier_vk),
                (WM_KEYDOWN, vk),
                (WM_KEYUP, vk),
                (WM_KEYUP, modifier_vk),
            ):
                if not user32.PostMessageW(hwnd, message, code, 0):
                    raise InjectionError(f"PostMessageW failed for window {hwnd}")


def default_strategies() -> list[InjectionStrategy]:
    """Strategies in the order they should be attempted."""
    return [NativeInjection(), XdotoolWindowInjection(), Win32WindowInjection()]


class PasteInjector:
    """
    Pastes the current clipboard content into the focused window.

    The clipboard is expected to already hold the text; the injector only
    reads it to make sure there is something to paste.
    """

    def __init__(
        self,
        clipboard: "ClipboardWriter",
        config: InjectorConfig | None = None,
        strategies: Sequence[InjectionStrategy] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clipboard = clipboard
        self._config = config or InjectorConfig()
        self._strategies = list(strategies) if strategies is not None else default_strategies()
        self._sleep = sleep

    @property
    def strategies(self) -> list[InjectionStrategy]:
        return list(self._strategies)

    @property
    def sequence(self) -> list[Chord]:
        modifier = "cmd" if self._config.use_command_key else "ctrl"
        return [(modifier, SELECT_ALL_KEY), (modifier, PASTE_KEY)]

    async def paste(self) -> bool:
        """
        Select all and paste into the focused window.

        Returns:
            True if a strategy completed, False if the clipboard is empty,
            no strategy is available, or every strategy raised.
        """
        text = await self._clipboard.read()
        if not text:
            logger.warning("Clipboard is empty, nothing to paste")
            return False

        # Let window focus settle before sending keys
        await self._sleep(self._config.settle_delay_s)

        sequence = self.sequence
        for strategy in self._strategies:
            if not strategy.is_available():
                continue
            try:
                await asyncio.to_thread(strategy.inject, sequence, self._config.key_delay_s)
            except Exception as e:
                logger.warning("Injection strategy %s failed: %s", strategy.name, e)
                continue
            logger.debug("Pasted %d characters via %s", len(text), strategy.name)
            return True

        logger.error("No injection strategy succeeded")
        return False
