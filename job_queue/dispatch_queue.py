"""
Dispatch Queue: decouples ingress rate from delivery rate.

Topology:
  ┌──────────┐  enqueue   ┌──────────────────┐   lane 0   ┌───────────┐
  │ Ingress  │──────────▶│ FIFO (asyncio)    │──────────▶│ Forwarder │──▶ target
  └──────────┘  O(1)      │ unbounded or      │   lane 1   │ (shared   │
                          │ max_depth + policy│──────────▶│  client)  │──▶ target
                          └──────────────────┘   ...      └───────────┘

Each lane takes one message, runs exactly one attempt to completion and
only then takes the next, so at most ``concurrency`` attempts are in flight.
Order is FIFO per lane; with more than one lane global order is not kept.
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Optional

import structlog

from config.settings import OVERFLOW_POLICIES, Settings, get_settings
from delivery.base import Forwarder
from models.schemas import AttemptOutcome, DeliveryAttempt, Message

logger = structlog.get_logger()


class DispatchQueue:
    """
    Bounded-concurrency work queue driving messages through a Forwarder.

    Usage:
        queue = DispatchQueue(forwarder, concurrency=4)
        await queue.start()          # spawns the lanes, returns immediately
        queue.enqueue(message)       # never blocks
        await queue.stop()           # cancels lanes, no drain
    """

    def __init__(
        self,
        forwarder: Forwarder,
        concurrency: int = 1,
        max_depth: int = 0,
        overflow_policy: str = "reject",
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"unknown overflow policy {overflow_policy!r}")

        self.forwarder = forwarder
        self.concurrency = concurrency
        self.max_depth = max_depth
        self.overflow_policy = overflow_policy
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_depth)
        self._lanes: dict[int, asyncio.Task] = {}
        self._running = False

        self._in_flight = 0
        self.peak_in_flight = 0
        self.enqueued = 0
        self.rejected = 0
        self.dropped = 0
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self.invalid = 0
        self.lane_restarts = 0

    # ── Properties ────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def lanes(self) -> int:
        return len(self._lanes)

    # ── Admission ─────────────────────────────────────────────

    def enqueue(self, message: Message) -> bool:
        """Append a message. Returns False only when a bounded queue rejects it."""
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            if self.overflow_policy != "drop_oldest":
                self.rejected += 1
                logger.warning("queue_full_message_rejected",
                               message_id=getattr(message, "message_id", ""),
                               max_depth=self.max_depth)
                return False
            oldest = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("queue_full_oldest_dropped",
                           dropped_message_id=getattr(oldest, "message_id", ""),
                           max_depth=self.max_depth)
            self._queue.put_nowait(message)

        self.enqueued += 1
        logger.debug("message_enqueued",
                     message_id=getattr(message, "message_id", ""),
                     depth=self._queue.qsize())
        return True

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the delivery lanes. Calling it twice is a no-op."""
        if self._running:
            return
        self._running = True
        for lane_id in range(self.concurrency):
            self._spawn_lane(lane_id)
        logger.info("dispatch_queue_started",
                    lanes=self.concurrency,
                    max_depth=self.max_depth or "unbounded",
                    overflow_policy=self.overflow_policy)

    async def stop(self) -> None:
        """Cancel all lanes. Queued and in-flight messages are abandoned."""
        if not self._running:
            return
        self._running = False
        tasks = list(self._lanes.values())
        self._lanes.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("dispatch_queue_stopped",
                    abandoned=self._queue.qsize(),
                    completed=self.completed)

    async def wait_idle(self) -> None:
        """Wait until every enqueued message has had its attempt."""
        await self._queue.join()

    # ── Lanes ─────────────────────────────────────────────────

    def _spawn_lane(self, lane_id: int) -> None:
        task = asyncio.create_task(self._run_lane(lane_id), name=f"dispatch-lane-{lane_id}")
        task.add_done_callback(functools.partial(self._on_lane_done, lane_id))
        self._lanes[lane_id] = task

    def _on_lane_done(self, lane_id: int, task: asyncio.Task) -> None:
        if task.cancelled() or not self._running:
            return
        exc = task.exception()
        logger.error("lane_terminated", lane=lane_id,
                     error=repr(exc) if exc else "lane returned")
        self.lane_restarts += 1
        self._spawn_lane(lane_id)

    async def _run_lane(self, lane_id: int) -> None:
        log = logger.bind(lane=lane_id)
        log.debug("lane_started")
        while True:
            message = await self._queue.get()
            try:
                await self._process(log, message)
            finally:
                self._queue.task_done()

    async def _process(self, log: Any, message: Any) -> DeliveryAttempt:
        """Run one attempt for one message. Never raises."""
        message_id = getattr(message, "message_id", "")
        log.debug("message_dequeued", message_id=message_id)
        try:
            if not isinstance(message, Message) or not message.is_valid:
                log.error("invalid_message_dequeued", message=_describe(message))
                attempt = DeliveryAttempt.for_message(message).complete(
                    AttemptOutcome.INVALID_MESSAGE, error="missing target or body",
                )
            else:
                attempt = await self._forward(message)
                if not attempt.is_complete:
                    log.error("delivery_attempt_unfinished", message_id=message_id,
                              state=attempt.state.value)
                    attempt.complete(AttemptOutcome.INTERNAL_ERROR,
                                     error="forwarder returned an unfinished attempt")
        except Exception as e:
            log.exception("delivery_unexpected_error", message_id=message_id, error=str(e))
            attempt = DeliveryAttempt.for_message(message).complete(
                AttemptOutcome.INTERNAL_ERROR, error=str(e) or type(e).__name__,
            )
        self._record(attempt)
        return attempt

    async def _forward(self, message: Message) -> DeliveryAttempt:
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        try:
            return await self.forwarder.forward(message)
        finally:
            self._in_flight -= 1

    def _record(self, attempt: DeliveryAttempt) -> None:
        self.completed += 1
        if attempt.succeeded:
            self.succeeded += 1
        elif attempt.outcome == AttemptOutcome.INVALID_MESSAGE:
            self.invalid += 1
        else:
            self.failed += 1

    # ── Diagnostics ───────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "lanes": len(self._lanes),
            "concurrency": self.concurrency,
            "depth": self._queue.qsize(),
            "max_depth": self.max_depth,
            "overflow_policy": self.overflow_policy,
            "in_flight": self._in_flight,
            "peak_in_flight": self.peak_in_flight,
            "enqueued": self.enqueued,
            "rejected": self.rejected,
            "dropped": self.dropped,
            "completed": self.completed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "invalid": self.invalid,
            "lane_restarts": self.lane_restarts,
            "delivery": self.forwarder.metrics.to_dict(),
        }


def _describe(message: Any) -> Any:
    if isinstance(message, Message):
        return {"message_id": message.message_id, "target": message.target,
                "body_length": len(message.body or "")}
    if isinstance(message, dict):
        return {k: message.get(k) for k in ("target", "body") if k in message}
    return repr(message)[:200]


def create_dispatch_queue(forwarder: Forwarder, settings: Optional[Settings] = None) -> DispatchQueue:
    """Factory: build the queue from relay settings."""
    relay = (settings or get_settings()).relay
    return DispatchQueue(
        forwarder,
        concurrency=relay.concurrency,
        max_depth=relay.queue_max_depth,
        overflow_policy=relay.overflow_policy,
    )
