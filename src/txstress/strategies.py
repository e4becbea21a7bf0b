# txstress/strategies.py
"""
Dispatch strategies.

Every driver walks INITIALIZING -> RUNNING -> DRAINING -> DONE (or FAILED),
sends through the Dispatcher, and leaves confirmation detection to the
tracker. A failed transaction is logged and counted, never retried.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field

import txstress.constants as C
from txstress.blocks import BlockFeed
from txstress.dispatch import Dispatcher, DispatchError
from txstress.tracker import ConfirmationTracker, TrackerStats
from txstress.wallets import WalletInfo

log = logging.getLogger("txstress.strategies")


class PreconditionError(RuntimeError):
    """The run cannot start (or continue) with the wallets it was given."""


class WatchdogTimeout(RuntimeError):
    """No block drove the run to completion within the watchdog window."""


_TRANSITIONS = {
    C.DriverState.INITIALIZING: {C.DriverState.RUNNING, C.DriverState.FAILED},
    C.DriverState.RUNNING: {C.DriverState.DRAINING, C.DriverState.FAILED},
    C.DriverState.DRAINING: {C.DriverState.DONE, C.DriverState.FAILED},
    C.DriverState.DONE: set(),
    C.DriverState.FAILED: set(),
}


@dataclass
class RunReport:
    mode: C.Mode
    state: C.DriverState
    requested: int
    sent: int
    failed: int
    skipped: int
    stats: TrackerStats
    stragglers: list[str] = field(default_factory=list)
    batches: list[int] = field(default_factory=list)
    blocks_seen: int = 0
    drained: bool = True
    elapsed: float = 0.0

    @property
    def succeeded(self) -> int:
        return self.sent - self.failed


class StrategyDriver:
    mode: C.Mode

    def __init__(
        self,
        dispatcher: Dispatcher,
        tracker: ConfirmationTracker,
        wallets: list[WalletInfo],
        *,
        to: str,
        amount: int,
        count: int,
        manual_nonce: bool = False,
        gas_limit: int | None = None,
        drain_timeout: float | None = C.DEFAULT_DRAIN_TIMEOUT,
    ):
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.wallets = wallets
        self.to = to
        self.amount = amount
        self.count = count
        self.manual_nonce = manual_nonce
        self.gas_limit = gas_limit
        self.drain_timeout = drain_timeout

        self.state = C.DriverState.INITIALIZING
        self.sent = 0
        self.failed = 0
        self.skipped = 0
        self.drained = True
        self._started: float | None = None

    def _transition(self, new: C.DriverState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.mode} driver: illegal transition {self.state} -> {new}")
        log.debug("%s driver: %s -> %s", self.mode, self.state, new)
        self.state = new

    def _check_preconditions(self) -> None:
        if not any(w.balance > 0 for w in self.wallets):
            raise PreconditionError("None of the wallets have balance. Please fund at least one wallet.")

    async def _send_one(self, wallet: WalletInfo) -> str | None:
        try:
            return await self.dispatcher.send(
                wallet.account, self.to, self.amount, self.manual_nonce, self.gas_limit,
            )
        except DispatchError as e:
            self.failed += 1
            log.error("Error sending tx: %s", e)
            return None

    async def _dispatch(self) -> None:
        raise NotImplementedError

    async def run(self) -> RunReport:
        self._started = time.monotonic()
        try:
            self._check_preconditions()
            self._transition(C.DriverState.RUNNING)
            await self._dispatch()
            self._transition(C.DriverState.DRAINING)
            if self.sent:
                log.info("All transactions have been sent! Waiting for confirmations...")
            self.drained = await self.tracker.await_drain(self.drain_timeout)
            self._transition(C.DriverState.DONE)
        except BaseException:
            if self.state is not C.DriverState.FAILED:
                self._transition(C.DriverState.FAILED)
            raise
        return self.report()

    def report(self) -> RunReport:
        return RunReport(
            mode=self.mode,
            state=self.state,
            requested=self.count,
            sent=self.sent,
            failed=self.failed,
            skipped=self.skipped,
            stats=self.tracker.stats(),
            stragglers=[t.tx_hash for t in self.tracker.stragglers()],
            drained=self.drained,
            elapsed=time.monotonic() - self._started if self._started is not None else 0.0,
        )


class SequentialDriver(StrategyDriver):
    """One transaction in flight at a time.

    Wallets at or below dust use up their iteration: a run with skipped
    wallets sends fewer than `count` transactions.
    """

    mode = C.Mode.SLOW

    def __init__(self, *args, confirm_timeout: float | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.confirm_timeout = confirm_timeout

    async def _dispatch(self) -> None:
        log.info("Starting slow mode: sending %d transactions sequentially", self.count)
        for i in range(self.count):
            wallet = self.wallets[i % len(self.wallets)]
            if not wallet.above_dust():
                log.warning("Skipping wallet %s due to low balance", wallet.address)
                self.skipped += 1
                continue

            self.sent += 1
            tx_hash = await self._send_one(wallet)
            if tx_hash is None:
                log.warning("Transaction %d/%d failed", i + 1, self.count)
                continue

            log.info("Transaction %d/%d sent: %s... waiting for confirmation", i + 1, self.count, tx_hash[:10])
            if await self.tracker.await_drain(self.confirm_timeout):
                log.info("Transaction confirmed. Moving to next transaction.")


class BatchDriver(StrategyDriver):
    """Concurrent batches of at most `batch_size`, never overlapping."""

    mode = C.Mode.BURST

    def __init__(self, *args, batch_size: int = C.DEFAULT_BATCH_SIZE, delay_ms: int = C.DEFAULT_DELAY_MS, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size
        self.delay_ms = delay_ms
        self.batches: list[int] = []
        self._cursor = 0

    def _next_funded_wallet(self) -> WalletInfo | None:
        """Round-robin to the next wallet above dust, skipping (and counting) depleted ones."""
        for _ in range(len(self.wallets)):
            wallet = self.wallets[self._cursor % len(self.wallets)]
            self._cursor += 1
            if wallet.above_dust():
                return wallet
            log.debug("Skipping wallet %s... due to low balance", wallet.address[:10])
            self.skipped += 1
        return None

    async def _dispatch(self) -> None:
        log.info("Starting burst mode: sending %d transactions in batches of %d", self.count, self.batch_size)
        batch = 1
        while self.sent < self.count:
            size = min(self.batch_size, self.count - self.sent)

            sends = []
            for _ in range(size):
                wallet = self._next_funded_wallet()
                if wallet is None:
                    break
                sends.append(self._send_one(wallet))
                self.sent += 1

            if not sends:
                raise PreconditionError(f"Batch {batch}: no wallet above the dust threshold, cannot continue")

            failed_before = self.failed
            await asyncio.gather(*sends)
            self.batches.append(len(sends))
            ok = len(sends) - (self.failed - failed_before)
            log.info("Batch %d: Sent %d/%d transactions successfully", batch, ok, len(sends))
            log.info("Progress: %d/%d transactions sent", self.sent, self.count)
            batch += 1

            if self.delay_ms > 0 and self.sent < self.count:
                log.info("Waiting %dms before next batch...", self.delay_ms)
                await asyncio.sleep(self.delay_ms / 1000)

    def report(self) -> RunReport:
        r = super().report()
        r.batches = list(self.batches)
        return r


class BlockTriggeredDriver(StrategyDriver):
    """One round of sends, one per funded wallet, for every new block."""

    mode = C.Mode.TIMED

    def __init__(self, *args, feed: BlockFeed, watchdog_timeout: float = C.DEFAULT_WATCHDOG_TIMEOUT, **kwargs):
        super().__init__(*args, **kwargs)
        self.feed = feed
        self.watchdog_timeout = watchdog_timeout
        self.blocks_seen = 0

    async def _on_block(self, height: int) -> None:
        log.info("New block detected: %s. Sending transactions...", height)
        sends = []
        for wallet in self.wallets:
            if self.sent >= self.count:
                break
            if not wallet.above_dust():
                log.debug("Skipping wallet %s due to low balance", wallet.address)
                self.skipped += 1
                continue
            sends.append(self._send_one(wallet))
            self.sent += 1

        if sends:
            await asyncio.gather(*sends)
            log.info("Sent %d transactions after block %s", len(sends), height)
            log.info("Progress: %d/%d transactions sent", self.sent, self.count)

    async def _dispatch(self) -> None:
        log.info("Starting timed with mining mode: sending %d transactions after blocks are mined", self.count)
        log.info("Waiting for new blocks...")
        async with self.feed.subscribe() as heights:
            try:
                async with asyncio.timeout(self.watchdog_timeout):
                    while self.sent < self.count:
                        height = await heights.get()
                        self.blocks_seen += 1
                        await self._on_block(height)
            except TimeoutError:
                log.error("Timeout: No new blocks detected for too long.")
                raise WatchdogTimeout(
                    f"only {self.sent}/{self.count} transactions sent after {self.watchdog_timeout:g}s"
                ) from None

    def report(self) -> RunReport:
        r = super().report()
        r.blocks_seen = self.blocks_seen
        return r
