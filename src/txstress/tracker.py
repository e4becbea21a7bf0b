# txstress/tracker.py
"""
Confirmation tracking for submitted transactions.

The tracker is a passive consumer: it never talks to the node. The block feed
(txstress.blocks) calls on_new_block() once per observed block with the hashes
that block contains, and anything we have in flight moves from pending to
completed with its latency stamped.

The hashes of the last few blocks are kept around as well: on a node that
mines instantly the block can arrive before eth_sendRawTransaction returns,
and a hash registered after its block was seen confirms on registration.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable

import txstress.constants as C

log = logging.getLogger("txstress.tracker")


@dataclass(slots=True)
class TrackedTransaction:
    tx_hash: str
    submitted_at: float
    confirmed_block: int | None = None
    confirmation_latency: float | None = None
    state: C.TxState = C.TxState.PENDING

    def __str__(self):
        return f"{self.tx_hash[:10]} -- {self.state}"


@dataclass(frozen=True)
class TrackerStats:
    completed: int
    pending: int
    avg_confirmation_time: float


class ConfirmationTracker:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        recent_blocks: int = C.RECENT_BLOCKS_MEMORY,
    ) -> None:
        self._clock = clock
        # Exactly one of these holds any given hash.
        self.pending: dict[str, TrackedTransaction] = {}
        self.completed: dict[str, TrackedTransaction] = {}
        self._drained = asyncio.Event()
        self._drained.set()
        # height of the most recent block each hash was seen in
        self._recent_hashes: dict[str, int] = {}
        self._recent_blocks: deque[tuple[int, list[str]]] = deque()
        self._recent_limit = recent_blocks

    def register(self, tx_hash: str) -> TrackedTransaction | None:
        """Start tracking tx_hash. Already tracked hashes are ignored."""
        if tx_hash in self.pending or tx_hash in self.completed:
            log.debug("register: %s already tracked", tx_hash)
            return None
        tx = TrackedTransaction(tx_hash=tx_hash, submitted_at=self._clock())
        self.pending[tx_hash] = tx
        self._drained.clear()
        log.info("↑ Sent transaction %s...", tx_hash[:10])

        height = self._recent_hashes.get(tx_hash)
        if height is not None:
            self._confirm(tx, height, self._clock())
            if not self.pending:
                self._drained.set()
        return tx

    def on_new_block(self, height: int, tx_hashes: Iterable[str]) -> list[TrackedTransaction]:
        """Move every pending hash found in block `height` to completed.

        Unknown hashes (never registered, or already confirmed by an earlier
        delivery of the same block) are ignored.
        """
        now = self._clock()
        tx_hashes = list(tx_hashes)
        self._remember(height, tx_hashes)
        confirmed = []
        for tx_hash in tx_hashes:
            tx = self.pending.get(tx_hash)
            if tx is None:
                continue
            self._confirm(tx, height, now)
            confirmed.append(tx)
        if not self.pending:
            self._drained.set()
        return confirmed

    def _confirm(self, tx: TrackedTransaction, height: int, now: float) -> None:
        del self.pending[tx.tx_hash]
        tx.confirmed_block = height
        tx.confirmation_latency = now - tx.submitted_at
        tx.state = C.TxState.CONFIRMED
        self.completed[tx.tx_hash] = tx
        log.info(
            "✓ Transaction %s... confirmed in block %s (%.2fs)",
            tx.tx_hash[:10], height, tx.confirmation_latency,
        )

    def _remember(self, height: int, tx_hashes: list[str]) -> None:
        if not tx_hashes or self._recent_limit <= 0:
            return
        self._recent_blocks.append((height, tx_hashes))
        for tx_hash in tx_hashes:
            self._recent_hashes[tx_hash] = height
        while len(self._recent_blocks) > self._recent_limit:
            old_height, old_hashes = self._recent_blocks.popleft()
            for tx_hash in old_hashes:
                if self._recent_hashes.get(tx_hash) == old_height:
                    del self._recent_hashes[tx_hash]

    def pending_count(self) -> int:
        return len(self.pending)

    def completed_count(self) -> int:
        return len(self.completed)

    def total_registered(self) -> int:
        return len(self.pending) + len(self.completed)

    def get(self, tx_hash: str) -> TrackedTransaction | None:
        return self.pending.get(tx_hash) or self.completed.get(tx_hash)

    def stragglers(self) -> list[TrackedTransaction]:
        """Pending entries, oldest first."""
        return sorted(self.pending.values(), key=lambda t: t.submitted_at)

    async def await_drain(self, timeout: float | None = None) -> bool:
        """Wait until nothing is pending or `timeout` seconds pass.

        Returns True if drained. A timeout only stops the waiting: pending
        entries stay put and can still confirm afterwards.
        """
        if not self.pending:
            return True
        if timeout is not None and timeout <= 0:
            self._log_stragglers()
            return False

        log.info(
            "Waiting for %d pending transactions to be confirmed (timeout: %s)...",
            len(self.pending), "none" if timeout is None else f"{timeout:g}s",
        )
        try:
            async with asyncio.timeout(timeout):
                await self._drained.wait()
        except TimeoutError:
            self._log_stragglers()
            return False
        return True

    def _log_stragglers(self) -> None:
        now = self._clock()
        log.warning("Timeout waiting for %d transactions", len(self.pending))
        for tx in self.stragglers():
            log.warning("  - %s... (sent %.1fs ago)", tx.tx_hash[:10], now - tx.submitted_at)

    def stats(self) -> TrackerStats:
        latencies = [t.confirmation_latency for t in self.completed.values() if t.confirmation_latency is not None]
        avg = sum(latencies) / len(latencies) if latencies else 0.0
        return TrackerStats(
            completed=len(self.completed),
            pending=len(self.pending),
            avg_confirmation_time=avg,
        )

    def snapshot_pending(self) -> list[dict]:
        now = self._clock()
        return [
            {
                "tx_hash": t.tx_hash,
                "state": t.state.name,
                "age": now - t.submitted_at,
            }
            for t in self.stragglers()
        ]

    def snapshot_completed(self) -> list[dict]:
        return [self.snapshot_tx(h) for h in self.completed]

    def snapshot_tx(self, tx_hash: str) -> dict:
        t = self.get(tx_hash)
        if t is None:
            return {}
        return {
            "tx_hash": t.tx_hash,
            "state": t.state.name,
            "confirmed_block": t.confirmed_block,
            "confirmation_latency": t.confirmation_latency,
        }
