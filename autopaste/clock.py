"""Timestamp helpers."""

import time


def timestamp_ms() -> int:
    """Wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)
