"""
HTTP Forwarder: delivers one message as an HTTP POST to its target.

Each attempt:
  - gets a fresh attempt_id bound onto its log context
  - shares the pooled httpx.AsyncClient with every other lane
  - is bounded by the same timeout on connect, write, pool wait and read
  - succeeds on the status line; the body is drained and discarded within
    the same timeout so the connection goes back to the pool
  - is final: no retry, the outcome is returned rather than raised
"""
from __future__ import annotations

import asyncio
import socket
import time
from typing import Optional

import httpx
import structlog

from config.settings import Settings, get_settings
from delivery.base import Forwarder
from models.schemas import AttemptOutcome, DeliveryAttempt, Message

logger = structlog.get_logger()

DEFAULT_HEADERS = {"Content-Type": "application/json"}

SOCKET_OPTIONS = [
    (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1),
    (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
]


class HTTPForwarder(Forwarder):
    """
    Forwarder backed by a single pooled httpx.AsyncClient.

    ``transport`` replaces the network transport (tests pass an
    ``httpx.MockTransport``); socket options and pool limits only apply to
    the default transport.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: int = 100,
    ):
        super().__init__()
        self.timeout_ms = timeout_ms
        self.max_connections = max_connections
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            limits = httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_connections,
                keepalive_expiry=self.timeout_seconds,
            )
            transport = self._transport or httpx.AsyncHTTPTransport(
                limits=limits,
                socket_options=SOCKET_OPTIONS,
            )
            self.client = httpx.AsyncClient(
                transport=transport,
                timeout=httpx.Timeout(self.timeout_seconds),
                limits=limits,
                follow_redirects=False,
            )
        return self.client

    async def _do_forward(self, message: Message, attempt: DeliveryAttempt) -> DeliveryAttempt:
        log = logger.bind(attempt_id=attempt.attempt_id,
                          message_id=attempt.message_id,
                          target=message.target)
        client = self._get_client()
        # Malformed targets raise here (httpx.InvalidURL) and surface to the lane
        request = client.build_request(
            "POST", message.target,
            content=message.body.encode("utf-8", "surrogateescape"),
            headers=DEFAULT_HEADERS,
        )

        log.debug("request_sending", bytes=len(request.content))
        start = time.monotonic()
        try:
            response = await client.send(request, stream=True)
            latency = _elapsed_ms(start)
            try:
                await asyncio.wait_for(_drain(response), self.timeout_seconds)
            finally:
                await response.aclose()
        except (httpx.ReadTimeout, asyncio.TimeoutError):
            log.error("response_timed_out", timeout_ms=self.timeout_ms)
            return attempt.complete(
                AttemptOutcome.RESPONSE_TIMEOUT,
                error=f"No response within {self.timeout_ms} ms",
                latency_ms=_elapsed_ms(start),
            )
        except httpx.TimeoutException as e:
            log.error("request_timed_out", timeout_ms=self.timeout_ms, phase=type(e).__name__)
            return attempt.complete(
                AttemptOutcome.REQUEST_TIMEOUT,
                error=f"{type(e).__name__} after {self.timeout_ms} ms",
                latency_ms=_elapsed_ms(start),
            )
        except httpx.HTTPError as e:
            log.error("request_errored", error=str(e) or type(e).__name__)
            return attempt.complete(
                AttemptOutcome.TRANSPORT_ERROR,
                error=str(e) or type(e).__name__,
                latency_ms=_elapsed_ms(start),
            )

        log.debug("request_completed", status_code=response.status_code,
                  latency_ms=round(latency, 1))
        return attempt.complete(
            AttemptOutcome.DELIVERED,
            status_code=response.status_code,
            latency_ms=latency,
        )

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


async def _drain(response: httpx.Response) -> None:
    # httpcore only returns a connection to the pool once its body is read
    async for _ in response.aiter_raw():
        pass


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def create_forwarder(
    settings: Settings = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HTTPForwarder:
    """Factory: build the forwarder from relay settings."""
    settings = settings or get_settings()
    return HTTPForwarder(
        timeout_ms=settings.relay.timeout_ms,
        transport=transport,
        max_connections=max(settings.relay.concurrency, 10),
    )
