"""
Tests for the progress relay.

Covers the subscription registry, execution mapping, routing and
lifecycle (grace-delay teardown and shutdown).
"""

import asyncio

import pytest

from workflow_relay.progress.events import (
    EventType,
    InvalidRequest,
    ProgressUpdate,
    classify,
)
from workflow_relay.progress.relay import SHUTDOWN_MESSAGE, ProgressRelay


def drain(subscription):
    """Pull every frame currently queued on a subscription."""
    frames = []
    while not subscription._queue.empty():
        frames.append(subscription._queue.get_nowait())
    return frames


def update(**fields):
    return ProgressUpdate(**fields)


class TestClassify:

    def test_completed_is_complete(self):
        assert classify("completed") == EventType.COMPLETE

    def test_error_is_error(self):
        assert classify("error") == EventType.ERROR

    @pytest.mark.parametrize("status", ["running", "pending", None, "anything"])
    def test_other_statuses_are_progress(self, status):
        assert classify(status) == EventType.PROGRESS


class TestSubscriptions:

    def test_open_sends_handshake(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")

        frames = drain(subscription)
        assert len(frames) == 1
        assert frames[0]["type"] == "connection"
        assert frames[0]["workflowId"] == "W1"
        assert "timestamp" in frames[0]
        assert relay.active_workflow_ids() == ["W1"]

    def test_open_requires_workflow_id(self):
        relay = ProgressRelay()
        with pytest.raises(InvalidRequest):
            relay.open("")

    def test_second_open_replaces_first(self):
        relay = ProgressRelay()
        first = relay.open("W1")
        second = relay.open("W1")

        assert relay.get("W1") is second
        assert relay.active_count == 1
        assert relay.live_count == 2
        assert relay.stats.replaced == 1
        assert not first.closed

    def test_replaced_stream_cannot_evict_successor(self):
        relay = ProgressRelay()
        first = relay.open("W1")
        second = relay.open("W1")

        assert relay.close("W1", first) is False
        assert relay.get("W1") is second
        assert first.closed

    def test_close_is_idempotent(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")

        assert relay.close("W1", subscription) is True
        assert relay.close("W1", subscription) is False
        assert relay.close("W1") is False
        assert relay.active_count == 0

    def test_close_queues_sentinel_after_frames(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        relay.close("W1")

        frames = drain(subscription)
        assert frames[0]["type"] == "connection"
        assert frames[-1] is None
        assert subscription.send({"type": "progress"}) is False


class TestExecutionMapping:

    def test_register_and_resolve(self):
        relay = ProgressRelay()
        relay.register_execution("E1", "W1")
        assert relay.resolve("E1") == "W1"

    def test_resolve_unknown_is_none(self):
        assert ProgressRelay().resolve("E404") is None

    @pytest.mark.parametrize("execution_id,workflow_id", [
        (None, "W1"),
        ("E1", None),
        ("", "W1"),
        ("E1", ""),
    ])
    def test_register_requires_both_ids(self, execution_id, workflow_id):
        relay = ProgressRelay()
        with pytest.raises(InvalidRequest):
            relay.register_execution(execution_id, workflow_id)

    def test_rebinding_last_write_wins(self):
        relay = ProgressRelay()
        relay.register_execution("E1", "W1")
        relay.register_execution("E1", "W1")
        relay.register_execution("E1", "W2")
        assert relay.resolve("E1") == "W2"


class TestIngest:

    @pytest.mark.asyncio
    async def test_delivers_by_workflow_id(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)

        result = relay.ingest(update(
            workflowId="W1", step="Fetch", message="m1", status="running", progress=10,
        ))

        assert result.received is True
        assert result.delivered is True
        assert result.active_connections == 1
        assert result.workflow_id == "W1"

        [frame] = drain(subscription)
        assert frame["type"] == "progress"
        assert frame["step"] == "Fetch"
        assert frame["message"] == "m1"
        assert frame["status"] == "running"
        assert frame["progress"] == 10
        assert frame["workflowId"] == "W1"

    @pytest.mark.asyncio
    async def test_execution_id_routes_like_workflow_id(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)
        relay.register_execution("E1", "W1")

        relay.ingest(update(workflowId="W1", step="A", message="direct", status="running"))
        relay.ingest(update(executionId="E1", step="A", message="direct", status="running"))

        direct, bound = drain(subscription)
        for frame in (direct, bound):
            frame.pop("timestamp")
        assert direct == bound
        assert "executionId" not in bound

    @pytest.mark.asyncio
    async def test_extra_sender_fields_are_forwarded(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)

        relay.ingest(update(workflowId="W1", status="running", jobsFound=12, newMessage="next"))

        [frame] = drain(subscription)
        assert frame["jobsFound"] == 12
        assert frame["newMessage"] == "next"

    @pytest.mark.asyncio
    async def test_sender_cannot_override_frame_type(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)

        relay.ingest(update(workflowId="W1", status="running", type="complete"))

        [frame] = drain(subscription)
        assert frame["type"] == "progress"

    def test_unbound_execution_is_dropped(self):
        relay = ProgressRelay()
        result = relay.ingest(update(executionId="E404", status="running"))

        assert result.received is True
        assert result.delivered is False
        assert result.workflow_id is None
        assert relay.stats.unresolved == 1

    def test_unsubscribed_workflow_is_dropped(self):
        relay = ProgressRelay()
        result = relay.ingest(update(workflowId="W404", status="running"))

        assert result.received is True
        assert result.delivered is False
        assert result.workflow_id == "W404"
        assert relay.stats.routing_misses == 1

    def test_bound_error_without_subscriber(self):
        """Bound execution with no open stream: acknowledged, dropped, no crash."""
        relay = ProgressRelay()
        relay.register_execution("E1", "W1")

        result = relay.ingest(update(executionId="E1", status="error", message="boom"))

        assert result.received is True
        assert result.delivered is False
        assert result.active_connections == 0
        assert relay.stats.routing_misses == 1

    def test_missing_both_ids_is_invalid(self):
        relay = ProgressRelay()
        with pytest.raises(InvalidRequest):
            relay.ingest(update(status="running", message="who am I"))

    @pytest.mark.asyncio
    async def test_events_route_only_to_latest_subscription(self):
        relay = ProgressRelay()
        first = relay.open("W1")
        second = relay.open("W1")
        drain(first)
        drain(second)

        relay.ingest(update(workflowId="W1", status="running", message="hello"))

        assert drain(first) == []
        [frame] = drain(second)
        assert frame["message"] == "hello"


class TestTerminalTeardown:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,frame_type", [
        ("completed", "complete"),
        ("error", "error"),
    ])
    async def test_terminal_event_closes_after_grace(self, status, frame_type):
        relay = ProgressRelay(completion_grace=0.01)
        subscription = relay.open("W1")
        drain(subscription)

        relay.ingest(update(workflowId="W1", status=status, message="final"))

        assert relay.active_count == 1
        await asyncio.sleep(0.05)
        assert relay.active_count == 0

        frames = drain(subscription)
        assert frames[0]["type"] == frame_type
        assert frames[-1] is None

    @pytest.mark.asyncio
    async def test_progress_event_keeps_stream_open(self):
        relay = ProgressRelay(completion_grace=0.01)
        relay.open("W1")
        relay.ingest(update(workflowId="W1", status="running"))
        await asyncio.sleep(0.05)
        assert relay.active_count == 1

    @pytest.mark.asyncio
    async def test_teardown_spares_replacement_stream(self):
        relay = ProgressRelay(completion_grace=0.01)
        relay.open("W1")
        relay.ingest(update(workflowId="W1", status="completed"))
        replacement = relay.open("W1")

        await asyncio.sleep(0.05)
        assert relay.get("W1") is replacement


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_notifies_and_clears(self):
        relay = ProgressRelay()
        subscriptions = [relay.open("W1"), relay.open("W2")]
        for subscription in subscriptions:
            drain(subscription)

        closed = relay.shutdown()

        assert closed == 2
        assert relay.active_count == 0
        for subscription in subscriptions:
            frame, sentinel = drain(subscription)
            assert frame["type"] == "error"
            assert frame["message"] == SHUTDOWN_MESSAGE
            assert sentinel is None
            assert subscription.closed

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_teardowns(self):
        relay = ProgressRelay(completion_grace=10)
        relay.open("W1")
        relay.ingest(update(workflowId="W1", status="completed"))
        [task] = relay._teardowns

        relay.shutdown()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert task.cancelled()

    def test_shutdown_with_no_streams(self):
        assert ProgressRelay().shutdown() == 0

    @pytest.mark.asyncio
    async def test_shutdown_closes_replaced_streams(self):
        relay = ProgressRelay()
        first = relay.open("W1")
        second = relay.open("W1")
        drain(first)
        drain(second)
        assert relay.live_count == 2

        assert relay.shutdown() == 2

        assert relay.live_count == 0
        for subscription in (first, second):
            frame, sentinel = drain(subscription)
            assert frame["type"] == "error"
            assert frame["workflowId"] == "W1"
            assert sentinel is None
            assert subscription.closed

    @pytest.mark.asyncio
    async def test_closed_replaced_stream_is_forgotten(self):
        relay = ProgressRelay()
        first = relay.open("W1")
        relay.open("W1")
        relay.close("W1", first)
        drain(first)

        assert relay.shutdown() == 1
        assert drain(first) == []


class TestWorkerThreads:

    @pytest.mark.asyncio
    async def test_send_from_thread_wakes_waiting_reader(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)
        waiter = asyncio.create_task(subscription.next_frame())
        await asyncio.sleep(0)

        result = await asyncio.to_thread(
            relay.ingest, update(workflowId="W1", status="running", message="from worker"),
        )

        assert result.delivered is True
        frame = await asyncio.wait_for(waiter, 1)
        assert frame["message"] == "from worker"

    @pytest.mark.asyncio
    async def test_terminal_ingest_from_thread_tears_down(self):
        relay = ProgressRelay(completion_grace=0.01)
        subscription = relay.open("W1")
        drain(subscription)

        result = await asyncio.to_thread(
            relay.ingest, update(workflowId="W1", status="completed"),
        )

        assert result.delivered is True
        frame = await asyncio.wait_for(subscription.next_frame(), 1)
        assert frame["type"] == "complete"
        assert await asyncio.wait_for(subscription.next_frame(), 1) is None
        assert relay.active_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_from_thread(self):
        relay = ProgressRelay()
        subscription = relay.open("W1")
        drain(subscription)

        assert await asyncio.to_thread(relay.shutdown) == 1

        frame = await asyncio.wait_for(subscription.next_frame(), 1)
        assert frame["message"] == SHUTDOWN_MESSAGE
        assert await asyncio.wait_for(subscription.next_frame(), 1) is None
