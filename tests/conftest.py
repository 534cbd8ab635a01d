"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Generator

import pytest

from autopaste.config import Config, QueueConfig, SettingsStore, TrackerConfig
from autopaste.errors import ClipboardError
from autopaste.window import ActiveTargetTracker, WindowSource


async def settle(rounds: int = 10) -> None:
    """Let pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClipboard:
    """In-memory clipboard that can fail a number of times or hang on given texts."""

    def __init__(self, fail_times: int = 0, error: str = "clipboard busy", hang_on: tuple[str, ...] = ()) -> None:
        self.writes: list[str] = []
        self.attempts: list[str] = []
        self.content = ""
        self._fail_times = fail_times
        self._error = error
        self._hang_on = hang_on
        self.gate: asyncio.Event | None = None

    async def write(self, text: str) -> None:
        self.attempts.append(text)
        if text in self._hang_on:
            await asyncio.Event().wait()
        if self.gate is not None:
            await self.gate.wait()
        if self._fail_times:
            self._fail_times -= 1
            raise ClipboardError(self._error)
        self.writes.append(text)
        self.content = text

    async def read(self) -> str:
        return self.content


class FakeInjector:
    """Injector returning scripted outcomes; exceptions in the script are raised."""

    def __init__(
        self,
        outcomes: list[object] | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.calls = 0
        self._outcomes = list(outcomes or [])
        self._delay = delay
        self.gate = gate

    async def paste(self) -> bool:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self._delay:
            await asyncio.sleep(self._delay)
        outcome = self._outcomes.pop(0) if self._outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return bool(outcome)


class FakeTracker:
    """Stands in for the tracker where only ``current`` matters."""

    def __init__(self, current=None) -> None:
        self.current = current


class FakeWindowSource(WindowSource):
    """Window source returning preset records."""

    def __init__(self, focused=None, windows=None, error: Exception | None = None) -> None:
        self.focused = focused
        self.windows = list(windows or [])
        self.error = error
        self.focused_calls = 0

    async def focused_window(self):
        self.focused_calls += 1
        if self.error is not None:
            raise self.error
        return self.focused

    async def open_windows(self):
        if self.error is not None:
            raise self.error
        return self.windows


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class HeldSleep:
    """Replacement for asyncio.sleep that records delays and blocks until released."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._released = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._released.wait()

    def release(self) -> None:
        self._released.set()


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def window_record(title: str = "Editor", window_id: int = 101, pid: int = 4242, name: str = "gedit") -> dict:
    return {
        "title": title,
        "id": window_id,
        "owner": {"name": name, "processId": pid, "path": f"/usr/bin/{name}"},
    }


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with no cooldown and a temporary settings file."""
    cfg = Config(
        queue=QueueConfig(),
        tracker=TrackerConfig(poll_interval_s=0.01, exclude_owners=("autopaste",)),
        copy_cooldown_s=0.0,
        settings_file=tmp_path / "settings.json",
    )
    return cfg


@pytest.fixture
def settings_store(config: Config) -> SettingsStore:
    return SettingsStore(config.settings_file)


@pytest.fixture
def window_source() -> FakeWindowSource:
    return FakeWindowSource(focused=window_record())


@pytest.fixture
def tracker(window_source: FakeWindowSource, config: Config) -> ActiveTargetTracker:
    return ActiveTargetTracker(window_source, config.tracker)


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Fixture to clean environment variables before/after tests."""
    env_vars = [
        "AUTOPASTE_MAX_RETRIES",
        "AUTOPASTE_PASTE_TIMEOUT",
        "AUTOPASTE_INTER_OP_DELAY",
        "AUTOPASTE_POLL_INTERVAL",
        "AUTOPASTE_WINDOW_BACKEND",
        "AUTOPASTE_WINDOW_BINARY",
        "AUTOPASTE_EXCLUDE_OWNERS",
        "AUTOPASTE_HOST",
        "AUTOPASTE_PORT",
        "AUTOPASTE_SETTINGS_FILE",
        "AUTOPASTE_VERBOSE",
    ]
    original_values = {var: os.environ.get(var) for var in env_vars}

    for var in env_vars:
        os.environ.pop(var, None)

    yield

    for var, value in original_values.items():
        if value is not None:
            os.environ[var] = value
        else:
            os.environ.pop(var, None)
