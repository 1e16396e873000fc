"""
In-memory progress relay.

Owns the subscription registry (workflow id -> live stream) and the
execution id mapping table, and routes engine callbacks to subscribers.

Usage:
    relay = ProgressRelay(completion_grace=2.0)
    subscription = relay.open("workflow_123")      # stream handler
    relay.register_execution("E1", "workflow_123")  # after trigger
    relay.ingest(ProgressUpdate(executionId="E1", status="running", ...))
    relay.shutdown()                                # on process exit
"""

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from .events import (
    TERMINAL_TYPES,
    EventType,
    IngestResult,
    InvalidRequest,
    ProgressUpdate,
    build_frame,
    classify,
)

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "Service shutting down"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """
    One live outbound stream.

    Frames are queued without blocking; the stream handler drains them.
    Closing enqueues a sentinel after any pending frames so the last
    writes still reach the client. Writes from other threads are handed
    to the loop that opened the subscription.
    """

    def __init__(self, workflow_id: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.workflow_id = workflow_id
        self.opened_at = datetime.now()
        self.loop = loop or _running_loop()
        self._queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self._closed = False
        self._state_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Optional[dict[str, Any]]) -> None:
        if self.loop is None or self.loop.is_closed() or _running_loop() is self.loop:
            self._queue.put_nowait(item)
        else:
            self.loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def send(self, frame: dict[str, Any]) -> bool:
        """Queue a frame. Returns False if the subscription is already closed."""
        with self._state_lock:
            if self._closed:
                return False
            self._put(frame)
        return True

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            self._put(None)

    async def next_frame(self) -> Optional[dict[str, Any]]:
        """Wait for the next frame; None means the stream is finished."""
        return await self._queue.get()


@dataclass
class RelayStats:
    """Counters for operational visibility."""
    opened: int = 0
    replaced: int = 0
    delivered: int = 0
    routing_misses: int = 0
    unresolved: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ProgressRelay:
    """
    Subscription registry, execution mapping and event router.

    Map and counter updates happen under a lock and never await. Frames and
    teardowns triggered from worker threads are scheduled onto the loop that
    owns the subscription, so ingest may be called from either side.
    """

    def __init__(self, completion_grace: float = 2.0):
        self.completion_grace = completion_grace
        self.stats = RelayStats()

        self._subscriptions: dict[str, Subscription] = {}
        self._live: set[Subscription] = set()
        self._executions: dict[str, str] = {}
        self._lock = threading.Lock()
        self._teardowns: set[asyncio.Task] = set()

    # --- Subscription registry ---

    def open(self, workflow_id: str) -> Subscription:
        """Register a new stream for workflow_id and queue the handshake."""
        if not workflow_id:
            raise InvalidRequest("workflowId is required")

        subscription = Subscription(workflow_id)
        with self._lock:
            replaced = self._subscriptions.get(workflow_id)
            self._subscriptions[workflow_id] = subscription
            self._live.add(subscription)
            self.stats.opened += 1
            if replaced is not None:
                self.stats.replaced += 1

        if replaced is not None:
            logger.info(f"Replaced existing subscription for {workflow_id}")
        logger.info(f"Opened progress stream for {workflow_id} ({self.active_count} active)")

        subscription.send(build_frame(
            EventType.CONNECTION,
            workflow_id,
            message="Connected to progress stream",
        ))
        return subscription

    def close(self, workflow_id: str, subscription: Optional[Subscription] = None) -> bool:
        """
        Deregister workflow_id. Safe to call repeatedly.

        If subscription is given, only remove the entry when it is still the
        registered one, so a replaced stream cannot evict its successor.
        """
        with self._lock:
            current = self._subscriptions.get(workflow_id)
            if current is None or (subscription is not None and current is not subscription):
                removed = None
            else:
                removed = self._subscriptions.pop(workflow_id)
            if subscription is not None:
                self._live.discard(subscription)
            if removed is not None:
                self._live.discard(removed)

        if subscription is not None:
            subscription.close()
        if removed is None:
            return False

        removed.close()
        logger.info(f"Closed progress stream for {workflow_id} ({self.active_count} active)")
        return True

    def get(self, workflow_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(workflow_id)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    @property
    def live_count(self) -> int:
        """Open streams, including replaced ones that are no longer addressable."""
        with self._lock:
            return len(self._live)

    def active_workflow_ids(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    # --- Execution mapping ---

    def register_execution(self, execution_id: Optional[str], workflow_id: Optional[str]) -> None:
        """Bind an engine execution id to a client workflow id (last write wins)."""
        if not execution_id or not workflow_id:
            raise InvalidRequest("executionId and workflowId are required")

        with self._lock:
            previous = self._executions.get(execution_id)
            self._executions[execution_id] = workflow_id

        if previous is not None and previous != workflow_id:
            logger.warning(f"Execution {execution_id} rebound from {previous} to {workflow_id}")
        else:
            logger.info(f"Registered execution {execution_id} -> {workflow_id}")

    def resolve(self, execution_id: str) -> Optional[str]:
        with self._lock:
            return self._executions.get(execution_id)

    # --- Routing ---

    def _count(self, counter: str) -> None:
        with self._lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)

    def ingest(self, update: ProgressUpdate) -> IngestResult:
        """
        Route one engine callback to its subscriber.

        Unknown identifiers and absent subscribers are not errors: the event
        is dropped, counted and reported back as undelivered.
        """
        if not update.workflow_id and not update.execution_id:
            raise InvalidRequest("workflowId or executionId is required")

        workflow_id = update.workflow_id or self.resolve(update.execution_id)
        if workflow_id is None:
            self._count("unresolved")
            logger.warning(
                f"No workflow registered for execution {update.execution_id}; "
                f"dropping '{update.status}' event"
            )
            return IngestResult(delivered=False, active_connections=self.active_count)

        subscription = self.get(workflow_id)
        if subscription is None or subscription.closed:
            self._count("routing_misses")
            logger.warning(
                f"No active subscriber for {workflow_id}; dropping '{update.status}' event "
                f"({self.active_count} active: {self.active_workflow_ids()})"
            )
            return IngestResult(
                delivered=False,
                active_connections=self.active_count,
                workflow_id=workflow_id,
            )

        event_type = classify(update.status)
        frame = build_frame(event_type, workflow_id, update)
        delivered = subscription.send(frame)
        if delivered:
            self._count("delivered")
            logger.debug(f"Forwarded {event_type.value} frame to {workflow_id}")

        if event_type in TERMINAL_TYPES:
            self._schedule_teardown(subscription)

        return IngestResult(
            delivered=delivered,
            active_connections=self.active_count,
            workflow_id=workflow_id,
        )

    def _schedule_teardown(self, subscription: Subscription) -> None:
        running = _running_loop()
        owner = subscription.loop
        if running is not None and (owner is None or owner is running):
            self._start_teardown(subscription)
        elif owner is not None and not owner.is_closed():
            owner.call_soon_threadsafe(self._start_teardown, subscription)
        else:
            # No loop to wait on; the grace period cannot be honoured.
            self.close(subscription.workflow_id, subscription)

    def _start_teardown(self, subscription: Subscription) -> None:
        task = asyncio.get_running_loop().create_task(self._teardown_after_grace(subscription))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def _teardown_after_grace(self, subscription: Subscription) -> None:
        """Brief delay so the terminal frame flushes before the stream ends."""
        await asyncio.sleep(self.completion_grace)
        self.close(subscription.workflow_id, subscription)

    # --- Lifecycle ---

    def shutdown(self, message: str = SHUTDOWN_MESSAGE) -> int:
        """Send a final error frame to every open stream and clear the registry.

        Replaced streams are included: they are unaddressable but still hold
        a client connection open.
        """
        with self._lock:
            subscriptions = set(self._live) | set(self._subscriptions.values())
            self._subscriptions.clear()
            self._live.clear()

        for subscription in subscriptions:
            subscription.send(build_frame(
                EventType.ERROR,
                subscription.workflow_id,
                step="Error",
                status="error",
                message=message,
            ))
            subscription.close()

        running = _running_loop()
        for task in list(self._teardowns):
            task_loop = task.get_loop()
            if task_loop is running:
                task.cancel()
            elif not task_loop.is_closed():
                task_loop.call_soon_threadsafe(task.cancel)

        if subscriptions:
            logger.info(f"Shutdown closed {len(subscriptions)} progress stream(s)")
        return len(subscriptions)
