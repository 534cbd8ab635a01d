"""
Tracking of the external window that should receive pasted text.

A window source answers two questions: which window has focus, and which
windows are open. The tracker polls a source, skips windows that belong to
this application, and keeps a single current :class:`TargetWindow`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from autopaste.clock import timestamp_ms
from autopaste.config import TrackerConfig, WindowBackend
from autopaste.errors import WindowQueryError
from autopaste.types import TargetWindowPayload

logger = logging.getLogger(__name__)

WindowRecord = dict[str, Any]
TargetListener = Callable[["TargetWindow | None"], None]

DEFAULT_BINARY = "active-window"


@dataclass
class TargetWindow:
    """A focusable window owned by another process."""

    title: str
    id: int
    process_id: int
    path: str | None = None
    owner: str | None = None
    timestamp: int = field(default_factory=timestamp_ms)

    @classmethod
    def from_record(cls, record: WindowRecord) -> "TargetWindow | None":
        """Build a target from a window record; None if the record has no usable id."""
        try:
            window_id = int(record["id"])
        except (KeyError, TypeError, ValueError):
            return None

        owner = record.get("owner") or {}
        try:
            process_id = int(owner.get("processId") or 0)
        except (TypeError, ValueError):
            process_id = 0

        return cls(
            title=str(record.get("title") or ""),
            id=window_id,
            process_id=process_id,
            path=owner.get("path"),
            owner=owner.get("name"),
        )

    def same_window(self, other: "TargetWindow | None") -> bool:
        return other is not None and (self.id, self.title) == (other.id, other.title)

    def to_payload(self) -> TargetWindowPayload:
        return {
            "title": self.title,
            "id": self.id,
            "processId": self.process_id,
            "path": self.path,
            "owner": self.owner,
            "timestamp": self.timestamp,
        }


class WindowSource(ABC):
    """Operating system facility for enumerating windows."""

    @abstractmethod
    async def focused_window(self) -> WindowRecord | None:
        ...

    @abstractmethod
    async def open_windows(self) -> list[WindowRecord]:
        ...


class ActiveWinBinary(WindowSource):
    """
    Queries a bundled native helper that prints window data as JSON.

    The helper prints the focused window by default and the full window list
    when passed ``--open-windows-list``. Records look like::

        {"title": "...", "id": 42, "owner": {"name": "...", "processId": 7, "path": "..."}}
    """

    def __init__(
        self,
        binary: str,
        accessibility_permission: bool = True,
        screen_recording_permission: bool = True,
    ) -> None:
        self._binary = binary
        self._accessibility_permission = accessibility_permission
        self._screen_recording_permission = screen_recording_permission

    def _arguments(self) -> list[str]:
        args = []
        if not self._accessibility_permission:
            args.append("--no-accessibility-permission")
        if not self._screen_recording_permission:
            args.append("--no-screen-recording-permission")
        return args

    async def _execute(self, *extra: str) -> Any:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *self._arguments(),
                *extra,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WindowQueryError(f"Cannot run {self._binary}: {e}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise WindowQueryError(
                f"{self._binary} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return self._parse(stdout.decode(errors="replace"))

    @staticmethod
    def _parse(stdout: str) -> Any:
        if not stdout.strip():
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            logger.error("Invalid window data: %s", e)
            raise WindowQueryError("Error parsing window data") from e

    async def focused_window(self) -> WindowRecord | None:
        data = await self._execute()
        return data if isinstance(data, dict) else None

    async def open_windows(self) -> list[WindowRecord]:
        data = await self._execute("--open-windows-list")
        if not isinstance(data, list):
            return []
        return [record for record in data if isinstance(record, dict)]


class XdotoolWindowQuery(WindowSource):
    """X11 window queries through ``xdotool``; owner details come from /proc."""

    async def _xdotool(self, *args: str, allow_empty: bool = False) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "xdotool",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WindowQueryError(f"Cannot run xdotool: {e}") from e

        stdout, stderr = await proc.communicate()
        output = stdout.decode(errors="replace").strip()
        if proc.returncode != 0:
            # `xdotool search` exits 1 when nothing matches
            if allow_empty and not output:
                return ""
            raise WindowQueryError(f"xdotool {args[0]} failed: {stderr.decode(errors='replace').strip()}")
        return output

    async def _describe(self, window_id: str) -> WindowRecord:
        title = await self._xdotool("getwindowname", window_id)
        try:
            pid = int(await self._xdotool("getwindowpid", window_id))
        except (WindowQueryError, ValueError):
            pid = 0

        owner: dict[str, Any] = {"processId": pid, "name": None, "path": None}
        if pid:
            proc_dir = Path("/proc") / str(pid)
            try:
                owner["name"] = (proc_dir / "comm").read_text().strip()
                owner["path"] = os.readlink(proc_dir / "exe")
            except OSError:
                pass

        return {"title": title, "id": int(window_id), "owner": owner}

    async def focused_window(self) -> WindowRecord | None:
        window_id = await self._xdotool("getactivewindow", allow_empty=True)
        if not window_id:
            return None
        return await self._describe(window_id)

    async def open_windows(self) -> list[WindowRecord]:
        output = await self._xdotool("search", "--onlyvisible", "--name", ".", allow_empty=True)
        records = []
        # Stacking order lists the topmost window last
        for window_id in reversed(output.split()):
            try:
                records.append(await self._describe(window_id))
            except WindowQueryError as e:
                logger.debug("Skipping window %s: %s", window_id, e)
        return records


class Win32WindowQuery(WindowSource):
    """Window queries through user32 on Windows."""

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000

    def _describe(self, hwnd: int) -> WindowRecord:
        import ctypes

        user32 = ctypes.windll.user32
        kernel32 = ctypes.windll.kernel32

        length = user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        user32.GetWindowTextW(hwnd, buffer, length + 1)

        pid = ctypes.c_ulong()
        user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))

        path = None
        handle = kernel32.OpenProcess(self.PROCESS_QUERY_LIMITED_INFORMATION, False, pid.value)
        if handle:
            try:
                size = ctypes.c_ulong(1024)
                path_buffer = ctypes.create_unicode_buffer(size.value)
                if kernel32.QueryFullProcessImageNameW(handle, 0, path_buffer, ctypes.byref(size)):
                    path = path_buffer.value
            finally:
                kernel32.CloseHandle(handle)

        return {
            "title": buffer.value,
            "id": int(hwnd),
            "owner": {
                "name": Path(path).stem if path else None,
                "processId": pid.value,
                "path": path,
            },
        }

    def _focused(self) -> WindowRecord | None:
        import ctypes

        hwnd = ctypes.windll.user32.GetForegroundWindow()
        return self._describe(hwnd) if hwnd else None

    def _enumerate(self) -> list[WindowRecord]:
        import ctypes

        user32 = ctypes.windll.user32
        handles: list[int] = []

        @ctypes.WINFUNCTYPE(ctypes.c_bool, ctypes.c_void_p, ctypes.c_void_p)
        def collect(hwnd, _lparam):
            if user32.IsWindowVisible(hwnd) and user32.GetWindowTextLengthW(hwnd) > 0:
                handles.append(hwnd)
            return True

        user32.EnumWindows(collect, 0)
        return [self._describe(hwnd) for hwnd in handles]

    async def focused_window(self) -> WindowRecord | None:
        return await asyncio.to_thread(self._focused)

    async def open_windows(self) -> list[WindowRecord]:
        return await asyncio.to_thread(self._enumerate)


def create_window_source(config: TrackerConfig) -> WindowSource:
    """Pick the window source for the configured backend and platform."""
    backend = config.backend
    if backend == WindowBackend.AUTO:
        if config.binary_path:
            backend = WindowBackend.BINARY
        elif sys.platform == "win32":
            backend = WindowBackend.WIN32
        elif sys.platform.startswith("linux") and shutil.which("xdotool"):
            backend = WindowBackend.XDOTOOL
        else:
            backend = WindowBackend.BINARY

    if backend == WindowBackend.WIN32:
        return Win32WindowQuery()
    if backend == WindowBackend.XDOTOOL:
        return XdotoolWindowQuery()
    return ActiveWinBinary(config.binary_path or DEFAULT_BINARY)


class ActiveTargetTracker:
    """
    Keeps the best current guess of which foreign window should receive paste.

    ``check_and_notify`` is driven by a periodic task started with
    :meth:`start`, and can also be called directly whenever the UI gains or
    loses focus.
    """

    def __init__(self, source: WindowSource, config: TrackerConfig | None = None) -> None:
        self._source = source
        self._config = config or TrackerConfig()
        self._current: TargetWindow | None = None
        self._listeners: list[TargetListener] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def current(self) -> TargetWindow | None:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: TargetListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _is_own(self, window: TargetWindow) -> bool:
        if window.process_id and window.process_id in self._config.exclude_pids:
            return True
        owner = (window.owner or "").lower()
        return any(owner == name.lower() for name in self._config.exclude_owners)

    def _qualify(self, record: WindowRecord | None) -> TargetWindow | None:
        if not record:
            return None
        window = TargetWindow.from_record(record)
        if window is None or self._is_own(window):
            return None
        return window

    async def poll(self) -> TargetWindow | None:
        """Query the OS for the window that should receive paste; never raises."""
        try:
            focused = self._qualify(await self._source.focused_window())
            if focused is not None:
                return focused

            for record in await self._source.open_windows():
                window = self._qualify(record)
                if window is not None:
                    return window
        except Exception as e:
            logger.warning("Window query failed: %s", e)
        return None

    async def check_and_notify(self) -> TargetWindow | None:
        window = await self.poll()

        if window is None:
            if self._current is not None:
                logger.info("Target window lost")
                self._current = None
                self._notify(None)
            return None

        if window.same_window(self._current):
            self._current = replace(self._current, timestamp=window.timestamp)
            return self._current

        logger.info("Target window changed: %r (id=%s)", window.title, window.id)
        self._current = window
        self._notify(window)
        return window

    def _notify(self, window: TargetWindow | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(window)
            except Exception:
                logger.exception("Target listener failed")

    async def _run(self) -> None:
        while True:
            await self.check_and_notify()
            await asyncio.sleep(self._config.poll_interval_s)

    def start(self) -> None:
        """Start periodic polling on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
