import asyncio
import logging
from datetime import datetime
from typing import Optional, Union

import httpx
from pydantic import BaseModel

from schemas import ProfileAttributes

logger = logging.getLogger("gate.audit")

# ======================================================
# Tunables
# ======================================================

QUEUE_MAX_SIZE = 1000        # Max events kept in memory
SEND_TIMEOUT = 0.5           # Hard timeout per request (seconds)
MAX_CONNECTIONS = 20
KEEPALIVE_CONNECTIONS = 5


# ======================================================
# Events (Facts Only)
# ======================================================

class DecisionEvent(BaseModel):
    kind: str = "decision"
    timestamp: datetime
    identity: str
    address: str
    server_name: Optional[str]
    server_address: Optional[str]
    verdict: str
    deciding_rule: str
    reason: Optional[str]


class TransitionEvent(BaseModel):
    kind: str = "transition"
    timestamp: datetime
    identity: str
    from_status: Optional[str]      # None = absent
    to_status: Optional[str]
    attributes: Optional[ProfileAttributes] = None
    reason: Optional[str] = None


class FetchFailedEvent(BaseModel):
    kind: str = "fetch_failed"
    timestamp: datetime
    identity: str
    error: str
    retry_after_seconds: int


AuditEvent = Union[DecisionEvent, TransitionEvent, FetchFailedEvent]


# ======================================================
# Sink
# ======================================================

class AuditSink:
    """
    Fire-and-forget audit emission.

    Every event is logged locally. When a sink URL is configured and the
    worker is running, events are also queued and POSTed by one background
    worker. A full queue or a dead sink drops events; neither ever blocks
    or fails the caller.
    """

    def __init__(self, sink_url: Optional[str] = None, shared_secret: str = "",
                 client: Optional[httpx.AsyncClient] = None):
        self._sink_url = sink_url
        self._shared_secret = shared_secret
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAX_SIZE)
        self._worker_task: Optional[asyncio.Task] = None
        self._client = client

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    def start(self) -> None:
        """
        Must be called once the event loop is running.
        """
        if self._worker_task is not None:
            return

        if not self._sink_url:
            logger.warning("Audit forwarding disabled: AUDIT_SINK_URL not set")
            return

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(SEND_TIMEOUT),
                limits=httpx.Limits(
                    max_connections=MAX_CONNECTIONS,
                    max_keepalive_connections=KEEPALIVE_CONNECTIONS,
                ),
            )

        self._worker_task = asyncio.get_running_loop().create_task(self._worker())
        logger.info("Audit sink initialized")

    async def shutdown(self) -> None:
        """
        Graceful shutdown (best-effort).
        """
        if self._worker_task:
            self._worker_task.cancel()
            self._worker_task = None

        if self._client is not None:
            await self._client.aclose()
        logger.info("Audit sink shut down")

    @property
    def forwarding(self) -> bool:
        return self._worker_task is not None

    # --------------------------------------------------
    # Worker
    # --------------------------------------------------

    async def _worker(self):
        while True:
            event = await self._queue.get()
            try:
                await self._client.post(
                    self._sink_url,
                    json=event,
                    headers={"x-audit-secret": self._shared_secret},
                )
            except Exception as e:
                # Compliance plane failure must NOT affect the gate
                logger.debug(f"Audit send failed (dropped): {e}")
            finally:
                self._queue.task_done()

    # --------------------------------------------------
    # Public API
    # --------------------------------------------------

    def emit(self, event: AuditEvent) -> None:
        """
        Zero await, bounded memory, sink may be dead.
        """
        logger.info(event.model_dump_json())

        if not self.forwarding:
            return

        try:
            self._queue.put_nowait(event.model_dump(mode="json"))
        except asyncio.QueueFull:
            logger.debug("Audit queue full, dropping event")
