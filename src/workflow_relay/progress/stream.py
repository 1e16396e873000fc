"""
Server-sent events framing for progress subscriptions.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

from .relay import ProgressRelay, Subscription

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def format_sse(frame: dict[str, Any]) -> str:
    """Encode one frame as an SSE data block."""
    return f"data: {json.dumps(frame)}\n\n"


async def event_stream(
    relay: ProgressRelay,
    subscription: Subscription,
    timeout: float,
    keepalive: Optional[float] = None,
) -> AsyncIterator[str]:
    """
    Drain a subscription as SSE text until it closes or times out.

    The subscription is deregistered however the loop ends: close sentinel,
    timeout, or cancellation when the client goes away.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    workflow_id = subscription.workflow_id

    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Progress stream for {workflow_id} timed out after {timeout}s")
                break

            wait = remaining if keepalive is None else min(remaining, keepalive)
            try:
                frame = await asyncio.wait_for(subscription.next_frame(), timeout=wait)
            except asyncio.TimeoutError:
                if loop.time() < deadline:
                    yield KEEPALIVE
                continue

            if frame is None:
                break
            yield format_sse(frame)
    finally:
        relay.close(workflow_id, subscription)
