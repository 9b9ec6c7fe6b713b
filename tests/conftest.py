"""Shared test fixtures for the Integration Bridge."""
import asyncio
from typing import Any, Optional

import pytest
import structlog

from config.settings import RelayConfig, Settings, TLSConfig
from delivery.base import Forwarder
from models.schemas import AttemptOutcome, DeliveryAttempt, Message


class RecordingForwarder(Forwarder):
    """Forwarder double: records messages, optionally slow or failing."""

    def __init__(self, delay: float = 0.0, status_code: int = 200,
                 outcome: AttemptOutcome = AttemptOutcome.DELIVERED,
                 raise_on: Optional[set[str]] = None):
        super().__init__()
        self.delay = delay
        self.status_code = status_code
        self.outcome = outcome
        self.raise_on = raise_on or set()
        self.messages: list[Message] = []
        self.attempt_ids: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def _do_forward(self, message: Message, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if message.body in self.raise_on:
                raise RuntimeError(f"boom: {message.body}")
            self.messages.append(message)
            self.attempt_ids.append(attempt.attempt_id)
            if self.outcome == AttemptOutcome.DELIVERED:
                return attempt.complete(self.outcome, status_code=self.status_code, latency_ms=self.delay * 1000)
            return attempt.complete(self.outcome, error="simulated failure")
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


class RecordingQueue:
    """Dispatch queue double for ingress tests: stores what gets admitted."""

    def __init__(self, forwarder: Forwarder = None, accept: bool = True):
        self.forwarder = forwarder or RecordingForwarder()
        self.accept = accept
        self.messages: list[Message] = []
        self.running = False
        self.started = 0
        self.stopped = 0

    def enqueue(self, message: Message) -> bool:
        if not self.accept:
            return False
        self.messages.append(message)
        return True

    async def start(self) -> None:
        self.running = True
        self.started += 1

    async def stop(self) -> None:
        self.running = False
        self.stopped += 1

    @property
    def depth(self) -> int:
        return len(self.messages)

    @property
    def lanes(self) -> int:
        return 1 if self.running else 0

    def stats(self) -> dict[str, Any]:
        return {"depth": self.depth, "enqueued": len(self.messages)}


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        relay=RelayConfig(concurrency=2, timeout_ms=500),
        tls=TLSConfig(enabled=False),
    )


@pytest.fixture
def forwarder() -> RecordingForwarder:
    return RecordingForwarder()


@pytest.fixture
def recording_queue(forwarder) -> RecordingQueue:
    return RecordingQueue(forwarder)


def make_message(body: str = '{"a":1}', target: str = "https://sink.example/hook") -> Message:
    return Message(target=target, body=body)
