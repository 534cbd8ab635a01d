"""
Serialized clipboard and paste pipelines.

Each queue processes its operations strictly in FIFO order with at most one
operation in flight. An operation moves through::

    Pending -> InFlight -> Succeeded
                        -> Failed (retryable) -> Pending, retry_count + 1
                        -> Failed (terminal)

Every operation carries an ``asyncio.Future`` that receives exactly one
reply. A caller that stops waiting (its future cancelled) withdraws its
operation, or has the in-flight result dropped. A generation counter guards
against results that arrive after the queue has been released or reset:
such results are discarded.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from autopaste.clock import timestamp_ms
from autopaste.config import QueueConfig
from autopaste.errors import ClipboardError
from autopaste.types import OperationReply

if TYPE_CHECKING:
    from autopaste.clipboard import ClipboardWriter
    from autopaste.injector import PasteInjector
    from autopaste.window import ActiveTargetTracker

logger = logging.getLogger(__name__)

NO_ACTIVE_WINDOW = "No active window detected"
PASTE_TIMED_OUT = "Paste operation timed out"
PASTE_FAILED = "Paste simulation failed"
OPERATION_STALLED = "Operation stalled"
OPERATION_ABANDONED = "Operation abandoned"

_operation_ids = itertools.count(1)


class RetryableFailure(Exception):
    """A transient fault; the operation may be attempted again."""


class PreconditionFailure(Exception):
    """The operation cannot succeed as things stand; retrying will not help."""


@dataclass(eq=False)
class Operation:
    text: str
    reply: asyncio.Future[OperationReply]
    retry_count: int = 0
    abandoned: bool = False
    id: int = field(default_factory=lambda: next(_operation_ids))


class OperationQueue(ABC):
    """Base FIFO queue with a single in-flight operation and bounded retries."""

    kind = "operation"

    def __init__(
        self,
        config: QueueConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or QueueConfig()
        self._sleep = sleep
        self._clock = clock
        self._pending: deque[Operation] = deque()
        self._processing = False
        self._processing_since: float | None = None
        self._generation = 0
        self._timer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def waiting(self) -> bool:
        """True while a delayed drain (backoff or inter-operation gap) is pending."""
        return self._timer is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def head(self) -> Operation | None:
        return self._pending[0] if self._pending else None

    @abstractmethod
    async def _execute(self, op: Operation) -> OperationReply:
        """
        Run one attempt of ``op`` and return the success reply.

        Raises:
            RetryableFailure: For transient faults.
            PreconditionFailure: When retrying cannot help.
        """
        ...

    @abstractmethod
    def _backoff(self, retry_count: int) -> float:
        ...

    def _on_success(self, op: Operation, reply: OperationReply) -> None:
        """Hook for subclasses; called after a successful attempt."""

    def enqueue(self, text: str) -> asyncio.Future[OperationReply]:
        """Append an operation and start draining if the queue is idle."""
        loop = asyncio.get_running_loop()
        op = Operation(text=text, reply=loop.create_future())
        op.reply.add_done_callback(lambda reply: self._abandon(op) if reply.cancelled() else None)
        self._pending.append(op)
        logger.debug("Queued %s operation %d (%d pending)", self.kind, op.id, len(self._pending))
        if not self._processing and self._timer is None:
            self.schedule_drain()
        return op.reply

    async def submit(self, text: str) -> OperationReply:
        """Enqueue ``text`` and wait for its reply."""
        return await self.enqueue(text)

    def abandon(self, reply: asyncio.Future[OperationReply]) -> None:
        """
        Withdraw the operation owning ``reply``; its caller stopped waiting.

        A queued operation is removed. The in-flight one is marked so that its
        outcome is dropped instead of applied.
        """
        for op in self._pending:
            if op.reply is reply:
                self._abandon(op)
                return

    def _abandon(self, op: Operation) -> None:
        index = next((i for i, queued in enumerate(self._pending) if queued is op), None)
        if index is None or op.abandoned:
            return
        if self._processing and index == 0:
            op.abandoned = True
            logger.info("Abandoning in-flight %s operation %d", self.kind, op.id)
        else:
            del self._pending[index]
            logger.info("Withdrew %s operation %d before it ran", self.kind, op.id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_drain(self) -> None:
        """Start a drain attempt in the background."""
        self._spawn(self.drain_once())

    def _schedule_drain(self, delay: float) -> None:
        """Drain after ``delay``; until then no other trigger starts a drain."""
        if self._timer is not None:
            self._timer.cancel()

        async def later() -> None:
            await self._sleep(delay)
            if self._timer is asyncio.current_task():
                self._timer = None
            await self.drain_once()

        self._timer = self._spawn(later())

    async def drain_once(self) -> None:
        """Process the head operation to one outcome; no-op if busy, waiting or empty."""
        if self._processing or self._timer is not None or not self._pending:
            return

        self._processing = True
        self._processing_since = self._clock()
        generation = self._generation
        op = self._pending[0]

        reply: OperationReply | None = None
        error = ""
        retryable = True
        try:
            try:
                reply = await self._execute(op)
            except PreconditionFailure as e:
                error, retryable = str(e), False
            except RetryableFailure as e:
                error = str(e)
            except Exception as e:
                logger.exception("Unexpected error in %s operation %d", self.kind, op.id)
                error = str(e) or type(e).__name__

            if generation != self._generation:
                logger.info("Discarding stale result of %s operation %d", self.kind, op.id)
                return
            if op.abandoned:
                logger.info("Dropping result of abandoned %s operation %d", self.kind, op.id)
                self._finish(op, None)
                return
            if reply is not None:
                self._on_success(op, reply)
                self._finish(op, reply)
                return

            if not retryable:
                logger.warning("%s operation %d failed: %s", self.kind.capitalize(), op.id, error)
                self._finish(op, self._failure(error))
            elif op.retry_count < self._config.max_retries:
                op.retry_count += 1
                delay = self._backoff(op.retry_count)
                logger.warning(
                    "%s operation %d failed (%s), retry %d/%d in %.2fs",
                    self.kind.capitalize(),
                    op.id,
                    error,
                    op.retry_count,
                    self._config.max_retries,
                    delay,
                )
                self._schedule_drain(delay)
            else:
                logger.error(
                    "%s operation %d failed after %d retries: %s",
                    self.kind.capitalize(),
                    op.id,
                    op.retry_count,
                    error,
                )
                self._finish(op, self._failure(error))
        finally:
            if generation == self._generation:
                self._processing = False
                self._processing_since = None

    def _finish(self, op: Operation, reply: OperationReply | None) -> None:
        if self._pending and self._pending[0] is op:
            self._pending.popleft()
        if reply is not None and not op.reply.done():
            op.reply.set_result(reply)
        self._schedule_drain(self._config.inter_operation_delay_s)

    @staticmethod
    def _failure(error: str) -> OperationReply:
        return {"success": False, "error": error, "timestamp": timestamp_ms()}

    def is_stale(self, threshold: float) -> bool:
        """True if one operation has been in flight for longer than ``threshold`` seconds."""
        if not self._processing or self._processing_since is None:
            return False
        return self._clock() - self._processing_since > threshold

    def release(self) -> None:
        """Forget the in-flight attempt so the queue can drain again."""
        self._generation += 1
        self._processing = False
        self._processing_since = None

    def recover(self) -> None:
        """
        Release a stuck attempt and charge it to the head's retry budget.

        The head is re-attempted after its backoff, or failed with
        ``OPERATION_STALLED`` once its retries are used up.
        """
        op = self.head if self._processing else None
        self.release()
        if op is None:
            return
        if op.abandoned:
            self._finish(op, None)
        elif op.retry_count < self._config.max_retries:
            op.retry_count += 1
            logger.warning(
                "%s operation %d stalled, retry %d/%d",
                self.kind.capitalize(),
                op.id,
                op.retry_count,
                self._config.max_retries,
            )
            self._schedule_drain(self._backoff(op.retry_count))
        else:
            logger.error("%s operation %d stalled after %d retries", self.kind.capitalize(), op.id, op.retry_count)
            self._finish(op, self._failure(OPERATION_STALLED))

    def reset(self, reason: str = "Queue reset") -> int:
        """Release the queue and fail every pending operation; returns how many were dropped."""
        self.release()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        dropped = 0
        while self._pending:
            op = self._pending.popleft()
            if not op.reply.done():
                op.reply.set_result(self._failure(reason))
            dropped += 1
        return dropped

    async def close(self) -> None:
        """Cancel scheduled drains."""
        self._timer = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class ClipboardQueue(OperationQueue):
    """Writes text to the clipboard; retries back off exponentially."""

    kind = "clipboard"

    def __init__(self, clipboard: "ClipboardWriter", config: QueueConfig | None = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._clipboard = clipboard

    def _backoff(self, retry_count: int) -> float:
        return self._config.clipboard_backoff(retry_count)

    async def _execute(self, op: Operation) -> OperationReply:
        try:
            await self._clipboard.write(op.text)
        except ClipboardError as e:
            raise RetryableFailure(str(e)) from e
        return {"success": True, "timestamp": timestamp_ms()}


class PasteQueue(OperationQueue):
    """
    Delivers text into the current target window.

    Each attempt writes the clipboard first, then races the injector against
    ``paste_timeout_s``. A timed-out injection keeps running in the
    background; its eventual result is only logged.
    """

    kind = "paste"

    def __init__(
        self,
        tracker: "ActiveTargetTracker",
        clipboard: "ClipboardWriter",
        injector: "PasteInjector",
        config: QueueConfig | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._tracker = tracker
        self._clipboard = clipboard
        self._injector = injector
        self.last_pasted_text: str | None = None

    def _backoff(self, retry_count: int) -> float:
        return self._config.paste_backoff(retry_count)

    async def _execute(self, op: Operation) -> OperationReply:
        target = self._tracker.current
        if target is None:
            raise PreconditionFailure(NO_ACTIVE_WINDOW)

        try:
            await self._clipboard.write(op.text)
        except ClipboardError as e:
            raise RetryableFailure(str(e)) from e
        if op.abandoned:
            raise PreconditionFailure(OPERATION_ABANDONED)

        injection = asyncio.ensure_future(self._injector.paste())
        done, _ = await asyncio.wait({injection}, timeout=self._config.paste_timeout_s)
        if not done:
            injection.add_done_callback(self._late_result(op))
            raise RetryableFailure(PASTE_TIMED_OUT)

        try:
            pasted = injection.result()
        except Exception as e:
            raise RetryableFailure(str(e) or type(e).__name__) from e
        if not pasted:
            raise RetryableFailure(PASTE_FAILED)

        logger.info("Pasted %d characters into %r", len(op.text), target.title)
        return {"success": True, "target": target.title, "timestamp": timestamp_ms()}

    def _late_result(self, op: Operation) -> Callable[[asyncio.Future[bool]], None]:
        def discard(future: asyncio.Future[bool]) -> None:
            if future.cancelled():
                return
            error = future.exception()
            logger.info(
                "Ignoring late paste result for operation %d: %s",
                op.id,
                error if error is not None else future.result(),
            )

        return discard

    def _on_success(self, op: Operation, reply: OperationReply) -> None:
        self.last_pasted_text = op.text
