"""Per-server traffic accounting for protocol lines."""

import asyncio
import dataclasses
import math
from typing import Dict, List, Optional, Tuple

import structlog

from .events import USAGE_TOPIC, EventBus
from .models import TrafficDirection, UsageSnapshot, utc_now

logger = structlog.get_logger(__name__)


def estimate_tokens(byte_count: int) -> int:
    """Rough token estimate for JSON payloads: one token per four bytes.

    This is an approximation for display purposes, not a tokenizer.
    """
    if byte_count <= 0:
        return 0
    return math.ceil(byte_count / 4)


class TrafficMeter:
    """Accumulates usage counters and publishes a full snapshot per line.

    Protocol sessions call :meth:`record` directly. Background stream
    readers call :meth:`observe`, which queues the line for the single
    metering task started with :meth:`start`.
    """

    def __init__(self, events: Optional[EventBus] = None):
        self.events = events
        self._usage: Dict[str, UsageSnapshot] = {}
        self._queue: "asyncio.Queue[Optional[Tuple[str, TrafficDirection, str]]]" = (
            asyncio.Queue()
        )
        self._task: Optional[asyncio.Task] = None

    def record(
        self, server_id: str, direction: TrafficDirection, payload: str
    ) -> UsageSnapshot:
        """Account for one line and return a copy of the updated snapshot."""
        # No awaits in here: the update and the copy happen in one step.
        size = len(payload.encode("utf-8"))
        tokens = estimate_tokens(size)

        usage = self._usage.get(server_id)
        if usage is None:
            usage = self._usage[server_id] = UsageSnapshot(server_id=server_id)

        if direction == TrafficDirection.INBOUND:
            usage.bytes_in += size
            usage.tokens_in += tokens
            usage.messages_in += 1
        else:
            usage.bytes_out += size
            usage.tokens_out += tokens
            usage.messages_out += 1

        usage.total_bytes = usage.bytes_in + usage.bytes_out
        usage.total_tokens = usage.tokens_in + usage.tokens_out
        usage.updated_at = utc_now()

        snapshot = dataclasses.replace(usage)
        if self.events is not None:
            self.events.publish(USAGE_TOPIC, snapshot.to_event())
        return snapshot

    def observe(self, server_id: str, direction: TrafficDirection, payload: str) -> None:
        """Queue a line for the metering task."""
        self._queue.put_nowait((server_id, direction, payload))

    def snapshot(self, server_id: str) -> Optional[UsageSnapshot]:
        usage = self._usage.get(server_id)
        return dataclasses.replace(usage) if usage else None

    def snapshots(self) -> List[UsageSnapshot]:
        return [dataclasses.replace(usage) for usage in self._usage.values()]

    def reset(self, server_id: str) -> None:
        self._usage.pop(server_id, None)

    def start(self) -> None:
        """Start the metering task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="traffic-meter")

    async def stop(self) -> None:
        """Drain queued observations and stop the metering task."""
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def drain(self) -> None:
        """Wait until every queued observation has been recorded."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                self.record(*item)
            except Exception:
                logger.exception("Failed to record traffic")
            finally:
                self._queue.task_done()
