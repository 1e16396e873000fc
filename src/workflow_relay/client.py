"""
Async client for submitting a workflow and following its progress.

Mirrors what the browser UI does: pick a workflow id, open the progress
stream, trigger the engine webhook, bind the returned execution id, then
fold stream frames into a ProgressView until the run ends.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from workflow_relay.config import Config
from workflow_relay.progress.events import EventType
from workflow_relay.progress.projection import (
    ProgressView,
    apply_event,
    connection_error,
    initial_view,
)

logger = logging.getLogger(__name__)

UNREACHABLE_MESSAGE = "Cannot connect to backend server. Please try again later."
TRIGGER_FAILED_MESSAGE = "Request could not be processed. Please try again later."
TIMEOUT_MESSAGE = "Connection timeout - please try again later"
CLOSED_MESSAGE = "Connection closed by server"


class RelayUnavailableError(Exception):
    """The relay health check failed."""
    pass


class UpstreamTriggerError(Exception):
    """The engine webhook failed or did not return an execution id."""
    pass


def generate_workflow_id() -> str:
    """Client-side correlation id, e.g. workflow_1718000000000_3f9a1c2be."""
    return f"workflow_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RelayClient:
    """
    Talks to the relay and the engine webhook.

    Usage:
        async with RelayClient("http://localhost:3000", trigger_url=...) as client:
            view = await client.run({"title": "Data Engineer"}, on_update=render)
    """

    def __init__(
        self,
        base_url: str,
        trigger_url: Optional[str] = None,
        timeout: float = 3600.0,
        request_timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.trigger_url = trigger_url
        self.timeout = timeout
        self.request_timeout = request_timeout
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=request_timeout)

    @classmethod
    def from_config(cls, base_url: str, config: Config, **kwargs) -> "RelayClient":
        return cls(
            base_url,
            trigger_url=config.trigger.webhook_url,
            timeout=config.stream.timeout_seconds,
            request_timeout=config.trigger.timeout_seconds,
            **kwargs,
        )

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def health(self) -> dict[str, Any]:
        try:
            response = await self._http.get(f"{self.base_url}/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RelayUnavailableError(f"Health check failed: {e}") from e
        return response.json()

    async def register_execution(self, execution_id: str, workflow_id: str) -> dict[str, Any]:
        response = await self._http.post(
            f"{self.base_url}/api/register-execution",
            json={"executionId": execution_id, "workflowId": workflow_id},
        )
        response.raise_for_status()
        return response.json()

    async def trigger(self, payload: dict[str, Any]) -> str:
        """POST the job to the engine webhook and return its execution id."""
        if not self.trigger_url:
            raise UpstreamTriggerError("No trigger webhook URL configured")

        try:
            response = await self._http.post(self.trigger_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamTriggerError(f"HTTP {e.response.status_code}: {e}") from e
        except (httpx.RequestError, ValueError) as e:
            raise UpstreamTriggerError(f"Trigger request failed: {e}") from e

        execution_id = data.get("executionId") if isinstance(data, dict) else None
        if not execution_id:
            raise UpstreamTriggerError("Trigger response did not include an executionId")
        return str(execution_id)

    async def events(self, workflow_id: str) -> AsyncIterator[dict[str, Any]]:
        """Open the progress stream and yield decoded frames."""
        url = f"{self.base_url}/progress/{workflow_id}"
        timeout = httpx.Timeout(self.request_timeout, read=None)

        async with self._http.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if not line:
                    if data_lines:
                        frame = _decode("\n".join(data_lines))
                        data_lines = []
                        if frame is not None:
                            yield frame
                    continue
                if line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                if field == "data":
                    data_lines.append(value[1:] if value.startswith(" ") else value)

            if data_lines:
                frame = _decode("\n".join(data_lines))
                if frame is not None:
                    yield frame

    async def run(
        self,
        payload: dict[str, Any],
        on_update: Optional[Callable[[ProgressView], Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> ProgressView:
        """Submit one job and follow it to completion, failure or timeout."""
        workflow_id = workflow_id or generate_workflow_id()
        view = initial_view()

        def emit(new_view: ProgressView) -> None:
            nonlocal view
            view = new_view
            if on_update is not None:
                on_update(view)

        try:
            await self.health()
        except RelayUnavailableError as e:
            logger.error(str(e))
            emit(connection_error(view, UNREACHABLE_MESSAGE))
            return view

        connected = asyncio.Event()

        async def consume() -> None:
            stream = self.events(workflow_id)
            try:
                async for frame in stream:
                    emit(apply_event(view, frame))
                    if frame.get("type") == EventType.CONNECTION.value:
                        connected.set()
                    if view.is_terminal:
                        return
            finally:
                await stream.aclose()

        async def drive() -> None:
            consumer = asyncio.create_task(consume())
            waiter = asyncio.create_task(connected.wait())
            try:
                await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if connected.is_set():
                    try:
                        execution_id = await self.trigger({**payload, "workflowId": workflow_id})
                    except UpstreamTriggerError as e:
                        logger.error(f"Failed to trigger workflow {workflow_id}: {e}")
                        emit(connection_error(view, TRIGGER_FAILED_MESSAGE))
                        return

                    try:
                        await self.register_execution(execution_id, workflow_id)
                    except httpx.HTTPError as e:
                        # Events addressed by workflow id still route without the binding.
                        logger.warning(f"Could not bind execution {execution_id}: {e}")

                await consumer
                if not view.is_terminal:
                    emit(connection_error(view, CLOSED_MESSAGE))
            except httpx.HTTPError as e:
                logger.error(f"Progress stream for {workflow_id} failed: {e}")
                emit(connection_error(view, CLOSED_MESSAGE))
            finally:
                waiter.cancel()
                consumer.cancel()

        try:
            await asyncio.wait_for(drive(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Progress stream for {workflow_id} timed out")
            emit(connection_error(view, TIMEOUT_MESSAGE))

        return view


def _decode(data: str) -> Optional[dict[str, Any]]:
    try:
        frame = json.loads(data)
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing progress data: {e}")
        return None
    return frame if isinstance(frame, dict) else None
