"""
Delivery: base infrastructure for outbound forwarding.

Provides:
- DeliveryMetrics: send/fail/timeout/latency tracking
- Forwarder: abstract base performing exactly one attempt per message
"""
from __future__ import annotations

import abc
from typing import Any

from models.schemas import AttemptOutcome, DeliveryAttempt, Message


# ══════════════════════════════════════════════════════════════
#  DELIVERY METRICS
# ══════════════════════════════════════════════════════════════

class DeliveryMetrics:
    """Tracks delivered, failed and timed-out attempts with latency."""

    def __init__(self, max_latencies: int = 1000):
        self.delivered: int = 0
        self.failed: int = 0
        self.request_timeouts: int = 0
        self.response_timeouts: int = 0
        self.transport_errors: int = 0
        self.status_codes: dict[int, int] = {}
        self._max_latencies = max_latencies
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record(self, attempt: DeliveryAttempt) -> None:
        if attempt.succeeded:
            self.delivered += 1
            if attempt.status_code is not None:
                self.status_codes[attempt.status_code] = self.status_codes.get(attempt.status_code, 0) + 1
            if attempt.latency_ms > 0:
                self._latencies.append(attempt.latency_ms)
                if len(self._latencies) > self._max_latencies:
                    del self._latencies[0]
            return

        self.failed += 1
        if attempt.outcome == AttemptOutcome.REQUEST_TIMEOUT:
            self.request_timeouts += 1
        elif attempt.outcome == AttemptOutcome.RESPONSE_TIMEOUT:
            self.response_timeouts += 1
        elif attempt.outcome == AttemptOutcome.TRANSPORT_ERROR:
            self.transport_errors += 1
        if attempt.error:
            self._errors.append(attempt.error)
            if len(self._errors) > 50:
                del self._errors[0]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.delivered + self.failed
        return self.failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivered": self.delivered,
            "failed": self.failed,
            "request_timeouts": self.request_timeouts,
            "response_timeouts": self.response_timeouts,
            "transport_errors": self.transport_errors,
            "status_codes": {str(k): v for k, v in sorted(self.status_codes.items())},
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  FORWARDER
# ══════════════════════════════════════════════════════════════

class Forwarder(abc.ABC):
    """
    Base class for forwarders.

    ``forward`` performs one best-effort delivery and always returns a
    completed DeliveryAttempt. Delivery failures are reported through the
    attempt's outcome, never raised. Subclasses implement ``_do_forward``;
    the base class records metrics.
    """

    def __init__(self):
        self.metrics = DeliveryMetrics()

    @abc.abstractmethod
    async def _do_forward(self, message: Message, attempt: DeliveryAttempt) -> DeliveryAttempt:
        ...

    async def forward(self, message: Message) -> DeliveryAttempt:
        attempt = DeliveryAttempt.for_message(message)
        attempt.mark_in_flight()
        attempt = await self._do_forward(message, attempt)
        self.metrics.record(attempt)
        return attempt

    async def close(self) -> None:
        pass

    async def health_check(self) -> dict[str, Any]:
        return {"forwarder": type(self).__name__, "metrics": self.metrics.to_dict()}
