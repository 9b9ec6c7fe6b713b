"""
Tests for the dispatch queue.

Coverage:
  Lanes:     concurrency cap, per-lane FIFO, completion for every message
  Faults:    invalid messages skipped, forwarder faults contained, lane restart
  Overflow:  unbounded default, reject and drop_oldest policies
  Lifecycle: start idempotent, stop cancels without draining
"""
import asyncio

import pytest

from config.settings import RelayConfig, Settings
from job_queue.dispatch_queue import DispatchQueue, create_dispatch_queue
from models.schemas import AttemptOutcome, Message

from conftest import RecordingForwarder, make_message


# ══════════════════════════════════════════════════════════════
#  Lanes
# ══════════════════════════════════════════════════════════════

class TestLanes:
    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_concurrency(self):
        fwd = RecordingForwarder(delay=0.02)
        queue = DispatchQueue(fwd, concurrency=3)
        await queue.start()
        for i in range(12):
            queue.enqueue(make_message(body=str(i)))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()

        assert fwd.max_active == 3
        assert queue.peak_in_flight == 3
        assert queue.completed == 12
        assert queue.succeeded == 12
        assert len(fwd.messages) == 12

    @pytest.mark.asyncio
    async def test_single_lane_is_fifo(self):
        fwd = RecordingForwarder(delay=0.001)
        queue = DispatchQueue(fwd)
        await queue.start()
        bodies = [f"m{i}" for i in range(20)]
        for body in bodies:
            queue.enqueue(make_message(body=body))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()

        assert [m.body for m in fwd.messages] == bodies
        assert fwd.max_active == 1

    @pytest.mark.asyncio
    async def test_lane_waits_for_completion_before_next(self):
        fwd = RecordingForwarder(delay=0.05)
        queue = DispatchQueue(fwd, concurrency=1)
        await queue.start()
        queue.enqueue(make_message(body="first"))
        queue.enqueue(make_message(body="second"))
        await asyncio.sleep(0.02)

        assert queue.in_flight == 1
        assert queue.depth == 1

        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()
        assert queue.in_flight == 0

    @pytest.mark.asyncio
    async def test_failed_deliveries_still_complete(self):
        fwd = RecordingForwarder(outcome=AttemptOutcome.RESPONSE_TIMEOUT)
        queue = DispatchQueue(fwd, concurrency=2)
        await queue.start()
        for i in range(4):
            queue.enqueue(make_message(body=str(i)))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()

        assert queue.completed == 4
        assert queue.failed == 4
        assert queue.succeeded == 0

    @pytest.mark.asyncio
    async def test_enqueue_does_not_block_on_slow_delivery(self):
        fwd = RecordingForwarder(delay=1.0)
        queue = DispatchQueue(fwd)
        await queue.start()
        loop = asyncio.get_running_loop()
        start = loop.time()
        for i in range(100):
            assert queue.enqueue(make_message(body=str(i))) is True
        assert loop.time() - start < 0.5
        await queue.stop()


# ══════════════════════════════════════════════════════════════
#  Faults
# ══════════════════════════════════════════════════════════════

class TestFaults:
    @pytest.mark.asyncio
    async def test_invalid_messages_are_discarded(self):
        fwd = RecordingForwarder()
        queue = DispatchQueue(fwd)
        await queue.start()
        queue.enqueue(Message(target="", body="x"))
        queue.enqueue(Message(target="https://sink.example/hook", body=""))
        queue.enqueue({"target": "https://sink.example/hook"})
        queue.enqueue(make_message(body="ok"))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()

        assert [m.body for m in fwd.messages] == ["ok"]
        assert queue.invalid == 3
        assert queue.completed == 4
        assert queue.peak_in_flight == 1

    @pytest.mark.asyncio
    async def test_forwarder_fault_is_contained(self):
        fwd = RecordingForwarder(raise_on={"explode"})
        queue = DispatchQueue(fwd)
        await queue.start()
        queue.enqueue(make_message(body="explode"))
        queue.enqueue(make_message(body="after"))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        assert queue.failed == 1
        assert queue.succeeded == 1
        assert [m.body for m in fwd.messages] == ["after"]
        assert queue.lanes == 1
        assert queue.lane_restarts == 0
        await queue.stop()

    @pytest.mark.asyncio
    async def test_process_returns_internal_error_attempt(self):
        import structlog

        fwd = RecordingForwarder(raise_on={"explode"})
        queue = DispatchQueue(fwd)
        attempt = await queue._process(structlog.get_logger(), make_message(body="explode"))
        assert attempt.outcome == AttemptOutcome.INTERNAL_ERROR
        assert "boom" in attempt.error
        assert queue.in_flight == 0

    @pytest.mark.asyncio
    async def test_unfinished_attempt_becomes_internal_error(self):
        import structlog

        class Unfinished(RecordingForwarder):
            async def _do_forward(self, message, attempt):
                return attempt

        queue = DispatchQueue(Unfinished())
        attempt = await queue._process(structlog.get_logger(), make_message())
        assert attempt.is_complete
        assert attempt.outcome == AttemptOutcome.INTERNAL_ERROR
        assert queue.failed == 1

    @pytest.mark.asyncio
    async def test_crashed_lane_is_replaced(self):
        fwd = RecordingForwarder()
        queue = DispatchQueue(fwd)
        original = queue._process
        calls = {"n": 0}

        async def flaky(log, message):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("lane corrupted")
            return await original(log, message)

        queue._process = flaky
        await queue.start()
        queue.enqueue(make_message(body="lost"))
        queue.enqueue(make_message(body="kept"))
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        assert queue.lane_restarts == 1
        assert queue.lanes == 1
        assert [m.body for m in fwd.messages] == ["kept"]
        await queue.stop()


# ══════════════════════════════════════════════════════════════
#  Overflow
# ══════════════════════════════════════════════════════════════

class TestOverflow:
    def test_unbounded_by_default(self):
        queue = DispatchQueue(RecordingForwarder())
        for i in range(1000):
            assert queue.enqueue(make_message(body=str(i)))
        assert queue.depth == 1000
        assert queue.rejected == 0

    def test_reject_policy(self):
        queue = DispatchQueue(RecordingForwarder(), max_depth=2, overflow_policy="reject")
        assert queue.enqueue(make_message(body="a"))
        assert queue.enqueue(make_message(body="b"))
        assert not queue.enqueue(make_message(body="c"))
        assert queue.depth == 2
        assert queue.rejected == 1
        assert queue.enqueued == 2

    @pytest.mark.asyncio
    async def test_drop_oldest_policy(self):
        fwd = RecordingForwarder()
        queue = DispatchQueue(fwd, max_depth=2, overflow_policy="drop_oldest")
        for body in ("a", "b", "c"):
            assert queue.enqueue(make_message(body=body))
        assert queue.dropped == 1
        assert queue.depth == 2

        await queue.start()
        await asyncio.wait_for(queue.wait_idle(), timeout=5)
        await queue.stop()
        assert [m.body for m in fwd.messages] == ["b", "c"]

    @pytest.mark.parametrize("kwargs", [
        {"concurrency": 0},
        {"max_depth": -1},
        {"overflow_policy": "block"},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            DispatchQueue(RecordingForwarder(), **kwargs)


# ══════════════════════════════════════════════════════════════
#  Lifecycle
# ══════════════════════════════════════════════════════════════

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        queue = DispatchQueue(RecordingForwarder(), concurrency=4)
        await queue.start()
        await queue.start()
        assert queue.lanes == 4
        assert queue.running
        await queue.stop()
        assert queue.lanes == 0
        assert not queue.running

    @pytest.mark.asyncio
    async def test_stop_abandons_queued_and_in_flight(self):
        fwd = RecordingForwarder(delay=10)
        queue = DispatchQueue(fwd)
        await queue.start()
        for i in range(3):
            queue.enqueue(make_message(body=str(i)))
        await asyncio.sleep(0.01)

        await asyncio.wait_for(queue.stop(), timeout=1)
        assert fwd.messages == []
        assert queue.completed == 0
        assert queue.depth == 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        queue = DispatchQueue(RecordingForwarder())
        await queue.stop()
        assert not queue.running

    def test_stats(self):
        queue = DispatchQueue(RecordingForwarder(), concurrency=2, max_depth=5)
        queue.enqueue(make_message())
        stats = queue.stats()
        assert stats["concurrency"] == 2
        assert stats["depth"] == 1
        assert stats["enqueued"] == 1
        assert stats["max_depth"] == 5
        assert stats["delivery"]["delivered"] == 0

    def test_factory_reads_relay_settings(self):
        settings = Settings(relay=RelayConfig(concurrency=3, queue_max_depth=7, overflow_policy="drop_oldest"))
        queue = create_dispatch_queue(RecordingForwarder(), settings)
        assert queue.concurrency == 3
        assert queue.max_depth == 7
        assert queue.overflow_policy == "drop_oldest"
