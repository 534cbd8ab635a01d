"""The paste service: one owned object wiring tracker, queues and settings."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from autopaste.clipboard import ClipboardWriter
from autopaste.clock import timestamp_ms
from autopaste.config import Config, Settings, SettingsStore
from autopaste.injector import PasteInjector
from autopaste.operations import ClipboardQueue, OperationQueue, PasteQueue
from autopaste.types import OperationReply, RecognitionReply
from autopaste.window import ActiveTargetTracker, TargetWindow, create_window_source

logger = logging.getLogger(__name__)

NO_TEXT = "No text provided"
REPLY_TIMED_OUT = "Timed out waiting for reply"
TEXT_UNCHANGED = "Text unchanged"
COPY_COOLDOWN = "Copy cooldown in effect"


class TextAggregator:
    """Aggregates recognized text from successive recognition events."""

    def __init__(self, separator: str = "\n") -> None:
        self._separator = separator
        self._full_text = ""

    @property
    def full_text(self) -> str:
        """Get the complete aggregated text."""
        return self._full_text

    def append(self, text: str) -> str:
        """
        Append text to the aggregated output.

        Args:
            text: Newly recognized text.

        Returns:
            The complete aggregated text.
        """
        text = text.strip()
        if not text:
            return self._full_text
        if self._full_text:
            self._full_text = self._full_text.rstrip() + self._separator + text
        else:
            self._full_text = text
        return self._full_text

    def clear(self) -> None:
        """Clear the aggregated text."""
        self._full_text = ""


class PasteService:
    """
    Single owner of the auto-paste pipeline state.

    Create one per process and hand it to whatever needs to copy or paste.
    Call :meth:`start` on the running loop to begin window tracking and the
    liveness watchdog, and :meth:`stop` on shutdown.
    """

    def __init__(
        self,
        config: Config,
        tracker: ActiveTargetTracker,
        clipboard: ClipboardWriter,
        injector: PasteInjector,
        settings_store: SettingsStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._clock = clock
        self._settings_store = settings_store
        self._settings = settings_store.load() if settings_store else Settings()
        self._clipboard_queue = ClipboardQueue(clipboard, config.queue, sleep=sleep, clock=clock)
        self._paste_queue = PasteQueue(tracker, clipboard, injector, config.queue, sleep=sleep, clock=clock)
        self._transcript = TextAggregator(config.transcript_separator)
        self._last_copy_at: float | None = None
        self._watchdog: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: Config) -> "PasteService":
        """Build a service wired to the real OS collaborators."""
        clipboard = ClipboardWriter()
        tracker = ActiveTargetTracker(create_window_source(config.tracker), config.tracker)
        injector = PasteInjector(clipboard, config.injector)
        return cls(config, tracker, clipboard, injector, SettingsStore(config.settings_file))

    @property
    def config(self) -> Config:
        return self._config

    @property
    def tracker(self) -> ActiveTargetTracker:
        return self._tracker

    @property
    def clipboard_queue(self) -> ClipboardQueue:
        return self._clipboard_queue

    @property
    def paste_queue(self) -> PasteQueue:
        return self._paste_queue

    @property
    def auto_paste_enabled(self) -> bool:
        return self._settings.auto_paste_enabled

    @property
    def transcript(self) -> str:
        return self._transcript.full_text

    @property
    def running(self) -> bool:
        return self._watchdog is not None and not self._watchdog.done()

    # Lifecycle

    def start(self) -> None:
        self._tracker.start()
        if not self.running:
            self._watchdog = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        await self._tracker.stop()
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        for queue in self._queues():
            queue.reset("Service stopped")
            await queue.close()

    def _queues(self) -> tuple[OperationQueue, OperationQueue]:
        return (self._clipboard_queue, self._paste_queue)

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self._config.queue.watchdog_interval_s)
            self.check_watchdog()

    def check_watchdog(self) -> bool:
        """
        Recover queues stuck in flight past the stale threshold.

        Returns:
            True if a recovery was performed.
        """
        threshold = self._config.queue.stale_threshold_s
        stale = [queue for queue in self._queues() if queue.is_stale(threshold)]
        if not stale:
            return False

        logger.warning("Recovering stuck %s queue(s)", ", ".join(queue.kind for queue in stale))
        for queue in stale:
            queue.recover()
        for queue in self._queues():
            queue.schedule_drain()
        return True

    # Requests from the UI

    async def _await_reply(self, queue: OperationQueue, text: str) -> OperationReply:
        reply = queue.enqueue(text)
        try:
            return await asyncio.wait_for(reply, self._config.queue.reply_timeout_s)
        except asyncio.TimeoutError:
            queue.abandon(reply)
            return {"success": False, "error": REPLY_TIMED_OUT, "timestamp": timestamp_ms()}

    async def copy(self, text: str) -> OperationReply:
        """Copy ``text`` to the clipboard through the clipboard queue."""
        if not text:
            return {"success": False, "error": NO_TEXT, "timestamp": timestamp_ms()}

        reply = await self._await_reply(self._clipboard_queue, text)
        if reply.get("success"):
            self._last_copy_at = self._clock()
        return reply

    async def auto_paste(self, text: str) -> OperationReply:
        """Paste ``text`` into the current target window, skipping unchanged text."""
        if not text:
            return {"success": False, "error": NO_TEXT, "timestamp": timestamp_ms()}

        if text == self._paste_queue.last_pasted_text:
            logger.debug("Skipping paste, text unchanged")
            return {
                "success": True,
                "skipped": True,
                "reason": TEXT_UNCHANGED,
                "timestamp": timestamp_ms(),
            }

        return await self._await_reply(self._paste_queue, text)

    def current_target(self) -> TargetWindow | None:
        return self._tracker.current

    async def refresh_target(self) -> TargetWindow | None:
        return await self._tracker.check_and_notify()

    def set_auto_paste(self, enabled: bool) -> bool:
        self._settings.auto_paste_enabled = enabled
        if self._settings_store is not None:
            self._settings_store.save(self._settings)
        logger.info("Auto-paste %s", "enabled" if enabled else "disabled")
        return enabled

    def reset(self) -> dict:
        """Empty both queues, clear their flags and forget the last pasted text."""
        dropped = sum(queue.reset() for queue in self._queues())
        self._paste_queue.last_pasted_text = None
        logger.warning("Clipboard state reset (%d pending operations dropped)", dropped)
        return {"success": True, "reset": True, "dropped": dropped, "timestamp": timestamp_ms()}

    # Recognition events

    def _in_copy_cooldown(self) -> bool:
        cooldown = self._config.copy_cooldown_s
        if not cooldown or self._last_copy_at is None:
            return False
        return self._clock() - self._last_copy_at < cooldown

    async def handle_recognized(self, text: str) -> RecognitionReply:
        """
        Take newly recognized text: add it to the transcript, copy the
        transcript and paste it when auto-paste is enabled.
        """
        full_text = self._transcript.append(text)

        if not full_text:
            return {
                "text": "",
                "copy": {"success": False, "error": NO_TEXT, "timestamp": timestamp_ms()},
                "paste": None,
            }

        if self._in_copy_cooldown():
            logger.debug("Copy cooldown in effect")
            copy_reply: OperationReply = {
                "success": False,
                "skipped": True,
                "reason": COPY_COOLDOWN,
                "timestamp": timestamp_ms(),
            }
        else:
            copy_reply = await self.copy(full_text)

        paste_reply = None
        if self.auto_paste_enabled and copy_reply.get("success"):
            paste_reply = await self.auto_paste(full_text)

        return {"text": full_text, "copy": copy_reply, "paste": paste_reply}

    def clear_transcript(self) -> None:
        self._transcript.clear()
