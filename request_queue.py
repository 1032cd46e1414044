"""
Home Bridge - Request Queue
Per-channel reply queue: replies in one channel are generated one at a time
and in arrival order, without blocking message ingestion.

Every request that reaches the queue has already been approved by the
response policy, so nothing is dropped here.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Set
from collections import defaultdict

import logger as log
from constants import QUEUE_DELAY


class RequestQueue:
    """Manages queued reply requests with per-channel locking."""

    def __init__(self, delay: float = QUEUE_DELAY, on_depth_change: Callable[[int], None] = None):
        self.queues: Dict[Any, List[dict]] = defaultdict(list)
        self.processing: Dict[Any, bool] = defaultdict(bool)
        self.locks: Dict[Any, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.process_callback: Callable[[dict], Awaitable[None]] = None
        self.delay = delay
        self.on_depth_change = on_depth_change
        self._tasks: Set[asyncio.Task] = set()

    def set_processor(self, callback: Callable[[dict], Awaitable[None]]):
        """Set the coroutine function that handles one request."""
        self.process_callback = callback

    @property
    def depth(self) -> int:
        return sum(len(q) for q in self.queues.values())

    def _report_depth(self):
        if self.on_depth_change:
            self.on_depth_change(self.depth)

    def _spawn(self, channel_id):
        task = asyncio.create_task(self._process_queue(channel_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def add_request(self, channel_id, payload: dict):
        """Queue a request behind the ones already waiting in the channel."""
        async with self.locks[channel_id]:
            request = dict(payload)
            request.update({'channel_id': channel_id, 'timestamp': time.time()})
            self.queues[channel_id].append(request)
            self._report_depth()

            if not self.processing[channel_id]:
                self._spawn(channel_id)

    async def _process_queue(self, channel_id):
        """Drain the queue of one channel."""
        async with self.locks[channel_id]:
            if self.processing[channel_id]:
                return
            self.processing[channel_id] = True

        try:
            while self.queues[channel_id]:
                async with self.locks[channel_id]:
                    if not self.queues[channel_id]:
                        break
                    request = self.queues[channel_id].pop(0)
                    self._report_depth()

                if self.process_callback:
                    try:
                        await self.process_callback(request)
                    except Exception as e:
                        log.exception(f"Queued request in {channel_id} failed", e)

                if self.delay:
                    await asyncio.sleep(self.delay)

        finally:
            async with self.locks[channel_id]:
                self.processing[channel_id] = False
                # Requests that arrived while finishing up would otherwise be stuck
                if self.queues[channel_id]:
                    self._spawn(channel_id)

    async def wait_idle(self):
        """Wait until every queued request has been processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self):
        for task in list(self._tasks):
            task.cancel()
        self.queues.clear()
        self._report_depth()
