# txstress/blocks.py
"""
Block feed: consumes block events from the block source queue and updates the
tracker.

This is the bridge between the passive block source (txstress.ws) and the
tracker. It is the only place confirmations are written from, and it is a
single task, so tracker updates never interleave with each other.
"""
import asyncio
import contextlib
import logging
from collections import deque
from typing import AsyncIterator

import txstress.constants as C
from txstress.rpc import NodeClient, RpcError
from txstress.tracker import ConfirmationTracker

log = logging.getLogger("txstress.blocks")


class BlockFeed:
    def __init__(
        self,
        client: NodeClient,
        tracker: ConfirmationTracker,
        event_queue: asyncio.Queue | None = None,
        *,
        memory: int = C.SEEN_BLOCKS_MEMORY,
    ):
        self.client = client
        self.tracker = tracker
        self.queue: asyncio.Queue = event_queue or asyncio.Queue(maxsize=C.BLOCK_QUEUE_MAXSIZE)
        self._seen: set[int] = set()
        self._seen_order: deque[int] = deque()
        self._memory = memory
        self._subscribers: set[asyncio.Queue] = set()
        self.blocks_processed = 0
        self.last_height: int | None = None

    @contextlib.asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        """Yield a queue of heights for each block processed while the context is open."""
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(q)
        log.debug("Block subscriber added (%d active)", len(self._subscribers))
        try:
            yield q
        finally:
            self._subscribers.discard(q)
            log.debug("Block subscriber removed (%d active)", len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _mark_seen(self, height: int) -> bool:
        """Remember height; False if it was already handled."""
        if height in self._seen:
            return False
        self._seen.add(height)
        self._seen_order.append(height)
        if len(self._seen_order) > self._memory:
            self._seen.discard(self._seen_order.popleft())
        return True

    async def handle_block(self, height: int) -> bool:
        """Fetch block `height`, feed the tracker and notify subscribers. False if skipped."""
        if not self._mark_seen(height):
            log.debug("Block %s already processed, ignoring", height)
            return False

        # Fetched even with nothing pending: a send may still be waiting on its reply.
        try:
            tx_hashes = await self.client.get_block_with_transactions(height)
        except RpcError as e:
            log.error("Failed to fetch block %s: %s", height, e)
            tx_hashes = None
        if tx_hashes is None:
            log.warning("Block %s unavailable, confirmations in it will be missed", height)
        else:
            self.tracker.on_new_block(height, tx_hashes)

        self.blocks_processed += 1
        self.last_height = height if self.last_height is None else max(self.last_height, height)
        for q in list(self._subscribers):
            q.put_nowait(height)
        return True

    async def process_block_events(self, stop: asyncio.Event) -> None:
        """Consume ("block", height) events until stop is set. Runs for the lifetime of the session."""
        log.info("Block feed starting")
        try:
            while not stop.is_set():
                try:
                    event_type, data = await asyncio.wait_for(self.queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                if event_type != "block":
                    log.debug("Block feed ignoring %s event", event_type)
                    continue
                try:
                    await self.handle_block(int(data))
                except Exception as e:
                    log.error("Error processing block %s: %s", data, e, exc_info=True)
        except asyncio.CancelledError:
            log.info("Block feed cancelled")
            raise
        finally:
            log.info("Block feed stopped (processed %d blocks)", self.blocks_processed)
