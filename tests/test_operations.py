"""Tests for the operations module."""

from __future__ import annotations

import asyncio

import pytest

from autopaste.config import QueueConfig
from autopaste.operations import (
    NO_ACTIVE_WINDOW,
    OPERATION_STALLED,
    PASTE_FAILED,
    PASTE_TIMED_OUT,
    ClipboardQueue,
    PasteQueue,
)
from autopaste.window import TargetWindow
from conftest import FakeClipboard, FakeClock, FakeInjector, FakeTracker, HeldSleep, RecordingSleep, settle


def target() -> TargetWindow:
    return TargetWindow(title="Notes", id=7, process_id=99)


class TestClipboardQueue:
    """Tests for ClipboardQueue."""

    def test_single_write_succeeds(self) -> None:
        """Test a clipboard write replies success and leaves the queue empty."""
        clipboard = FakeClipboard()

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(), sleep=RecordingSleep())
            reply = await queue.submit("hello")
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is True
        assert "timestamp" in reply
        assert clipboard.writes == ["hello"]
        assert queue.pending == 0
        assert queue.processing is False

    def test_replies_in_enqueue_order(self) -> None:
        """Test replies arrive in the same order operations were enqueued."""
        clipboard = FakeClipboard()
        texts = [f"chunk {i}" for i in range(5)]

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(), sleep=RecordingSleep())
            completed: list[int] = []
            futures = [queue.enqueue(text) for text in texts]
            for index, future in enumerate(futures):
                future.add_done_callback(lambda _f, i=index: completed.append(i))
            await asyncio.gather(*futures)
            return completed

        completed = asyncio.run(scenario())

        assert completed == list(range(5))
        assert clipboard.writes == texts

    def test_retries_with_exponential_backoff(self) -> None:
        """Test failed writes are retried with doubling delays."""
        clipboard = FakeClipboard(fail_times=2)
        sleep = RecordingSleep()

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(clipboard_backoff_s=0.1), sleep=sleep)
            return await queue.submit("retry me")

        reply = asyncio.run(scenario())

        assert reply["success"] is True
        assert clipboard.writes == ["retry me"]
        assert sleep.delays[:2] == [pytest.approx(0.2), pytest.approx(0.4)]

    def test_terminal_failure_carries_last_error(self) -> None:
        """Test exhausting retries reports the clipboard error."""
        clipboard = FakeClipboard(fail_times=10, error="clipboard locked")

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(max_retries=2), sleep=RecordingSleep())
            reply = await queue.submit("nope")
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is False
        assert reply["error"] == "clipboard locked"
        assert queue.pending == 0
        assert clipboard.writes == []


class TestPasteQueue:
    """Tests for PasteQueue."""

    def test_paste_success_updates_dedup_marker(self) -> None:
        """Test a successful paste reports the target and records the text."""
        clipboard = FakeClipboard()
        injector = FakeInjector()

        async def scenario():
            queue = PasteQueue(FakeTracker(target()), clipboard, injector, QueueConfig(), sleep=RecordingSleep())
            reply = await queue.submit("world")
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is True
        assert reply["target"] == "Notes"
        assert queue.last_pasted_text == "world"
        assert clipboard.writes == ["world"]
        assert injector.calls == 1

    def test_no_target_fails_without_retry(self) -> None:
        """Test a missing target fails at once without touching the clipboard."""
        clipboard = FakeClipboard()
        injector = FakeInjector()
        sleep = RecordingSleep()

        async def scenario():
            queue = PasteQueue(FakeTracker(None), clipboard, injector, QueueConfig(), sleep=sleep)
            reply = await queue.submit("world")
            await settle()
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is False
        assert reply["error"] == NO_ACTIVE_WINDOW
        assert clipboard.writes == []
        assert injector.calls == 0
        assert queue.pending == 0
        # Only the inter-operation delay, no backoff
        assert all(delay == pytest.approx(0.2) for delay in sleep.delays)

    def test_injector_recovers_on_third_attempt(self) -> None:
        """Test two injector errors followed by success with linear backoff."""
        injector = FakeInjector([RuntimeError("uinput busy"), RuntimeError("uinput busy"), True])
        sleep = RecordingSleep()

        async def scenario():
            queue = PasteQueue(
                FakeTracker(target()), FakeClipboard(), injector,
                QueueConfig(max_retries=3, paste_backoff_s=0.5), sleep=sleep,
            )
            return await queue.submit("abc")

        reply = asyncio.run(scenario())

        assert reply["success"] is True
        assert injector.calls == 3
        assert sleep.delays[:2] == [pytest.approx(0.5), pytest.approx(1.0)]

    def test_retry_bound(self) -> None:
        """Test an always-failing paste is attempted max_retries + 1 times."""
        injector = FakeInjector([False] * 10)
        sleep = RecordingSleep()

        async def scenario():
            queue = PasteQueue(
                FakeTracker(target()), FakeClipboard(), injector,
                QueueConfig(max_retries=3, paste_backoff_s=0.5), sleep=sleep,
            )
            reply = await queue.submit("abc")
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is False
        assert reply["error"] == PASTE_FAILED
        assert injector.calls == 4
        assert sleep.delays[:3] == [pytest.approx(0.5), pytest.approx(1.0), pytest.approx(1.5)]
        assert queue.last_pasted_text is None

    def test_timeout_discards_late_result(self) -> None:
        """Test a slow injection times out and its late success changes nothing."""
        injector = FakeInjector([True], delay=0.2)

        async def scenario():
            queue = PasteQueue(
                FakeTracker(target()), FakeClipboard(), injector,
                QueueConfig(max_retries=0, paste_timeout_s=0.05), sleep=RecordingSleep(),
            )
            reply = await queue.submit("slow")
            await asyncio.sleep(0.3)
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is False
        assert reply["error"] == PASTE_TIMED_OUT
        assert queue.pending == 0
        assert queue.processing is False
        assert queue.last_pasted_text is None

    def test_second_drain_while_processing_is_noop(self) -> None:
        """Test only one operation is in flight at a time."""
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), FakeClipboard(), injector, QueueConfig(), sleep=RecordingSleep())
            first = queue.enqueue("one")
            second = queue.enqueue("two")
            await settle()

            assert queue.processing is True
            await queue.drain_once()
            assert injector.calls == 1
            assert queue.pending == 2

            injector.gate.set()
            return await first, await second

        first, second = asyncio.run(scenario())

        assert first["success"] is True
        assert second["success"] is True
        assert injector.calls == 2

    def test_release_discards_in_flight_result(self) -> None:
        """Test a result from before release() is ignored and the head is retried."""
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), FakeClipboard(), injector, QueueConfig(), sleep=RecordingSleep())
            reply = queue.enqueue("stuck")
            await settle()

            queue.release()
            assert queue.processing is False
            injector.gate.set()
            await settle()
            assert not reply.done()
            assert queue.pending == 1

            queue.schedule_drain()
            return queue, await reply

        queue, reply = asyncio.run(scenario())

        assert reply["success"] is True
        assert injector.calls == 2
        assert queue.pending == 0


class TestDelayedDrains:
    """Tests that a pending backoff or inter-operation delay is honoured."""

    def test_enqueue_during_backoff_waits_for_retry(self) -> None:
        """Test a new operation does not cut a retry backoff short."""
        injector = FakeInjector([RuntimeError("uinput busy"), True, True])
        sleep = HeldSleep()

        async def scenario():
            queue = PasteQueue(
                FakeTracker(target()), FakeClipboard(), injector,
                QueueConfig(paste_backoff_s=1.0), sleep=sleep,
            )
            first = queue.enqueue("one")
            await settle()
            assert queue.waiting is True

            second = queue.enqueue("two")
            await settle()
            calls_during_backoff = injector.calls

            sleep.release()
            return calls_during_backoff, await first, await second

        calls_during_backoff, first, second = asyncio.run(scenario())

        assert calls_during_backoff == 1
        assert sleep.delays[0] == pytest.approx(1.0)
        assert first["success"] is True
        assert second["success"] is True
        assert injector.calls == 3

    def test_enqueue_during_inter_operation_delay(self) -> None:
        """Test an operation arriving in the gap after a finish waits for the gap."""
        clipboard = FakeClipboard()
        sleep = HeldSleep()

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(inter_operation_delay_s=0.2), sleep=sleep)
            first = await queue.submit("a")
            second = queue.enqueue("b")
            await settle()
            writes_during_gap = list(clipboard.writes)

            sleep.release()
            return first, writes_during_gap, await second

        first, writes_during_gap, second = asyncio.run(scenario())

        assert first["success"] is True
        assert writes_during_gap == ["a"]
        assert sleep.delays[0] == pytest.approx(0.2)
        assert second["success"] is True
        assert clipboard.writes == ["a", "b"]


class TestAbandonedOperations:
    """Tests for operations whose caller stopped waiting."""

    def test_cancelled_queued_operation_is_withdrawn(self) -> None:
        """Test a cancelled operation behind the head never runs."""
        clipboard = FakeClipboard()
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), clipboard, injector, QueueConfig(), sleep=RecordingSleep())
            first = queue.enqueue("one")
            second = queue.enqueue("two")
            await settle()

            second.cancel()
            await settle()
            pending_after_cancel = queue.pending

            injector.gate.set()
            reply = await first
            await settle()
            return queue, pending_after_cancel, reply

        queue, pending_after_cancel, reply = asyncio.run(scenario())

        assert pending_after_cancel == 1
        assert reply["success"] is True
        assert clipboard.writes == ["one"]
        assert injector.calls == 1
        assert queue.pending == 0

    def test_late_success_of_abandoned_paste_is_dropped(self) -> None:
        """Test a paste finishing after its caller gave up leaves the dedup marker alone."""
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), FakeClipboard(), injector, QueueConfig(), sleep=RecordingSleep())
            reply = queue.enqueue("secret")
            await settle()
            assert queue.processing is True

            reply.cancel()
            injector.gate.set()
            await settle()
            marker = queue.last_pasted_text
            pending = queue.pending

            again = await queue.submit("secret")
            return queue, marker, pending, again

        queue, marker, pending, again = asyncio.run(scenario())

        assert marker is None
        assert pending == 0
        assert again["success"] is True
        assert injector.calls == 2
        assert queue.last_pasted_text == "secret"

    def test_abandoned_before_injection_skips_keystrokes(self) -> None:
        """Test an operation abandoned during its clipboard write is never pasted."""
        clipboard = FakeClipboard()
        injector = FakeInjector()

        async def scenario():
            clipboard.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), clipboard, injector, QueueConfig(), sleep=RecordingSleep())
            reply = queue.enqueue("slow")
            await settle()

            queue.abandon(reply)
            assert queue.head is not None and queue.head.abandoned is True
            clipboard.gate.set()
            await settle()
            return queue, reply

        queue, reply = asyncio.run(scenario())

        assert not reply.done()
        assert clipboard.writes == ["slow"]
        assert injector.calls == 0
        assert queue.pending == 0


class TestQueueMaintenance:
    """Tests for staleness detection and reset."""

    def test_is_stale_after_threshold(self) -> None:
        """Test a queue is stale only once processing outlives the threshold."""
        clock = FakeClock()
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(
                FakeTracker(target()), FakeClipboard(), injector,
                QueueConfig(paste_timeout_s=30), sleep=RecordingSleep(), clock=clock,
            )
            queue.enqueue("x")
            await settle()
            fresh = queue.is_stale(5.0)
            clock.advance(6)
            stale = queue.is_stale(5.0)
            queue.reset()
            return fresh, stale

        fresh, stale = asyncio.run(scenario())

        assert fresh is False
        assert stale is True

    def test_idle_queue_is_never_stale(self) -> None:
        """Test an idle queue is not stale."""
        queue = ClipboardQueue(FakeClipboard(), QueueConfig())
        assert queue.is_stale(0.0) is False

    def test_reset_fails_pending_operations(self) -> None:
        """Test reset replies to every pending operation and clears the flag."""
        injector = FakeInjector()

        async def scenario():
            injector.gate = asyncio.Event()
            queue = PasteQueue(FakeTracker(target()), FakeClipboard(), injector, QueueConfig(), sleep=RecordingSleep())
            futures = [queue.enqueue(t) for t in ("a", "b", "c")]
            await settle()
            dropped = queue.reset()
            replies = await asyncio.gather(*futures)
            return queue, dropped, replies

        queue, dropped, replies = asyncio.run(scenario())

        assert dropped == 3
        assert all(reply["success"] is False for reply in replies)
        assert all(reply["error"] == "Queue reset" for reply in replies)
        assert queue.pending == 0
        assert queue.processing is False

    def test_recover_counts_against_retry_budget(self) -> None:
        """Test each recovery uses one retry and the last one fails the head."""
        clock = FakeClock()
        clipboard = FakeClipboard(hang_on=("hang",))

        async def scenario():
            queue = ClipboardQueue(clipboard, QueueConfig(max_retries=1), sleep=RecordingSleep(), clock=clock)
            hung = queue.enqueue("hang")
            after = queue.enqueue("after")
            await settle()

            queue.recover()
            await settle()
            retries = queue.head.retry_count
            queue.recover()
            return retries, await hung, await after

        retries, hung, after = asyncio.run(scenario())

        assert retries == 1
        assert hung["success"] is False
        assert hung["error"] == OPERATION_STALLED
        assert after["success"] is True
        assert clipboard.attempts == ["hang", "hang", "after"]
