"""Configuration for the autopaste service."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "autopaste"
SETTINGS_FILE = CONFIG_DIR / "settings.json"


class WindowBackend(str, Enum):
    AUTO = "auto"
    BINARY = "binary"
    XDOTOOL = "xdotool"
    WIN32 = "win32"


@dataclass
class QueueConfig:
    max_retries: int = 3
    paste_timeout_s: float = 3.0
    inter_operation_delay_s: float = 0.2
    paste_backoff_s: float = 0.5
    clipboard_backoff_s: float = 0.1
    watchdog_interval_s: float = 5.0
    stale_threshold_s: float = 5.0
    reply_timeout_s: float = 15.0

    def paste_backoff(self, retry_count: int) -> float:
        """Linear backoff for paste retries."""
        return self.paste_backoff_s * retry_count

    def clipboard_backoff(self, retry_count: int) -> float:
        """Exponential backoff for clipboard retries."""
        return self.clipboard_backoff_s * (2 ** retry_count)


@dataclass
class InjectorConfig:
    settle_delay_s: float = 0.1
    key_delay_s: float = 0.05
    use_command_key: bool = field(default_factory=lambda: sys.platform == "darwin")


@dataclass
class TrackerConfig:
    poll_interval_s: float = 0.5
    backend: WindowBackend = WindowBackend.AUTO
    binary_path: str | None = None
    exclude_owners: tuple[str, ...] = ("autopaste",)
    exclude_pids: frozenset[int] = field(default_factory=lambda: frozenset({os.getpid()}))


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class Config:
    queue: QueueConfig = field(default_factory=QueueConfig)
    injector: InjectorConfig = field(default_factory=InjectorConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    copy_cooldown_s: float = 0.35
    transcript_separator: str = "\n\n\n "
    settings_file: Path = SETTINGS_FILE
    verbose: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if retries := os.environ.get("AUTOPASTE_MAX_RETRIES"):
            try:
                config.queue.max_retries = max(0, int(retries))
            except ValueError:
                logger.warning("Ignoring invalid AUTOPASTE_MAX_RETRIES=%r", retries)

        if timeout := os.environ.get("AUTOPASTE_PASTE_TIMEOUT"):
            config.queue.paste_timeout_s = _float_or(timeout, config.queue.paste_timeout_s)

        if delay := os.environ.get("AUTOPASTE_INTER_OP_DELAY"):
            config.queue.inter_operation_delay_s = _float_or(
                delay, config.queue.inter_operation_delay_s
            )

        if interval := os.environ.get("AUTOPASTE_POLL_INTERVAL"):
            config.tracker.poll_interval_s = _float_or(interval, config.tracker.poll_interval_s)

        if backend := os.environ.get("AUTOPASTE_WINDOW_BACKEND"):
            try:
                config.tracker.backend = WindowBackend(backend.lower())
            except ValueError:
                pass  # Keep default if invalid value

        if binary := os.environ.get("AUTOPASTE_WINDOW_BINARY"):
            config.tracker.binary_path = binary

        if owners := os.environ.get("AUTOPASTE_EXCLUDE_OWNERS"):
            config.tracker.exclude_owners = tuple(
                name.strip() for name in owners.split(",") if name.strip()
            )

        if host := os.environ.get("AUTOPASTE_HOST"):
            config.server.host = host

        if port := os.environ.get("AUTOPASTE_PORT"):
            try:
                config.server.port = int(port)
            except ValueError:
                logger.warning("Ignoring invalid AUTOPASTE_PORT=%r", port)

        if settings := os.environ.get("AUTOPASTE_SETTINGS_FILE"):
            config.settings_file = Path(settings).expanduser()

        if verbose := os.environ.get("AUTOPASTE_VERBOSE"):
            config.verbose = verbose.lower() in ("1", "true", "yes")

        return config


def _float_or(value: str, default: float) -> float:
    try:
        parsed = float(value)
    except ValueError:
        logger.warning("Ignoring invalid numeric setting %r", value)
        return default
    return parsed if parsed >= 0 else default


@dataclass
class Settings:
    """User settings that survive restarts."""

    auto_paste_enabled: bool = True


class SettingsStore:
    """Loads and saves :class:`Settings` as JSON."""

    def __init__(self, path: Path = SETTINGS_FILE) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Settings:
        if not self._path.exists():
            return Settings()

        try:
            data = json.loads(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read settings from %s: %s", self._path, e)
            return Settings()

        if not isinstance(data, dict):
            return Settings()
        return Settings(auto_paste_enabled=bool(data.get("auto_paste_enabled", True)))

    def save(self, settings: Settings) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(asdict(settings), indent=2), encoding="utf-8")
        except OSError as e:
            logger.error("Could not save settings to %s: %s", self._path, e)
