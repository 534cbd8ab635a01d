"""Type definitions for the autopaste service."""

from __future__ import annotations

from typing import Literal, TypedDict


class TargetWindowPayload(TypedDict):
    """Target window as sent to the UI."""

    title: str
    id: int
    processId: int
    path: str | None
    owner: str | None
    timestamp: int


class OperationReply(TypedDict, total=False):
    """Reply delivered to the caller of a copy or paste request."""

    success: bool
    skipped: bool
    reason: str
    target: str
    error: str
    timestamp: int


class RecognitionReply(TypedDict):
    """Reply for a recognized-text event."""

    text: str
    copy: OperationReply
    paste: OperationReply | None


class TargetChangedMessage(TypedDict):
    """Notification pushed over the events WebSocket."""

    type: Literal["target-window-changed"]
    window: TargetWindowPayload | None


class HealthCheck(TypedDict):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    tracking: bool
