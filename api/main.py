"""
FastAPI Application: Ingress endpoint of the Integration Bridge.

Provides:
- POST <relay.path>: accepts a notification, acknowledges 204 at once and
  admits it onto the dispatch queue in the background
- Health and queue diagnostics

Acknowledgment is sent before the request is validated, so callers cannot
tell an admitted notification from a dropped one. Outcomes only show up in
the logs and in /api/v1/queue/stats.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import BackgroundTasks, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings
from delivery.base import Forwarder
from delivery.http_forwarder import create_forwarder
from job_queue.dispatch_queue import DispatchQueue, create_dispatch_queue
from models.schemas import Message

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Admission
# ──────────────────────────────────────────────────────────────

def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def canonicalize_body(raw: bytes) -> Optional[str]:
    """
    Turn a raw request body into the payload to forward.

    Returns None for an empty body. Valid JSON is re-serialized in compact
    form with key order kept; anything else is returned verbatim. Bytes
    that are not UTF-8 survive as surrogate escapes, which the forwarder
    encodes back to the original bytes.
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", "surrogateescape")
            return text if text.strip() else None
    else:
        text = raw
    if not text or not text.strip():
        return None
    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
        canonical = json.dumps(parsed, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        # Escaped lone surrogates in the input cannot be written back as UTF-8
        canonical.encode("utf-8")
    except (ValueError, RecursionError):
        return text
    return canonical


async def admit(
    queue: DispatchQueue,
    target: Optional[str],
    raw_body: bytes,
    target_header: str,
) -> Optional[Message]:
    """Validate one inbound request and enqueue it. Returns the admitted message."""
    if not target or not target.strip():
        logger.error("ingress_missing_target_header", header=target_header)
        return None

    body = canonicalize_body(raw_body)
    if body is None:
        logger.error("ingress_missing_body", target=target)
        return None

    message = Message(target=target.strip(), body=body)
    if not queue.enqueue(message):
        return None
    logger.debug("ingress_message_admitted",
                 message_id=message.message_id,
                 target=message.target)
    return message


# ──────────────────────────────────────────────────────────────
#  Process-level fault handler
# ──────────────────────────────────────────────────────────────

def _log_uncaught(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("uncaught_exception",
                 message=context.get("message", ""),
                 error=repr(exc) if exc else "",
                 exc_info=exc)


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    queue: DispatchQueue = None,
    forwarder: Forwarder = None,
) -> FastAPI:
    """Build the ingress app around explicitly owned queue and forwarder."""
    settings = settings or get_settings()
    if queue is not None and forwarder is not None and forwarder is not queue.forwarder:
        raise ValueError("forwarder must be the one the queue delivers through")
    if forwarder is None:
        forwarder = queue.forwarder if queue is not None else create_forwarder(settings)
    if queue is None:
        queue = create_dispatch_queue(forwarder, settings)

    relay = settings.relay

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_log_uncaught)
        await queue.start()
        logger.info("bridge_started",
                    path=relay.path,
                    target_header=relay.target_header,
                    lanes=relay.concurrency,
                    timeout_ms=relay.timeout_ms)
        yield
        await queue.stop()
        await forwarder.close()
        logger.info("bridge_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Forwards inbound notifications to their target",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue = queue
    app.state.forwarder = forwarder

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  INGRESS
    # ══════════════════════════════════════════════════════════

    @app.post(relay.path, status_code=204, response_class=Response)
    async def ingest(request: Request, background_tasks: BackgroundTasks) -> Response:
        raw_body = await request.body()
        target = request.headers.get(relay.target_header)
        logger.debug("ingress_request_received",
                     target=target,
                     bytes=len(raw_body),
                     payload=raw_body[:512].decode("utf-8", errors="replace"))
        background_tasks.add_task(admit, queue, target, raw_body, relay.target_header)
        return Response(status_code=204)

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if queue.running else "starting",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "lanes": queue.lanes,
            "queue_depth": queue.depth,
            "delivery": await forwarder.health_check(),
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats():
        return queue.stats()

    return app
