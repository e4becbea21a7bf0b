"""Test the dispatch strategies."""

import asyncio
from unittest import IsolatedAsyncioTestCase

import txstress.constants as C
from txstress.blocks import BlockFeed
from txstress.dispatch import Dispatcher, DispatchError
from txstress.nonce import NonceSequencer
from txstress.strategies import (
    BatchDriver,
    BlockTriggeredDriver,
    PreconditionError,
    SequentialDriver,
    WatchdogTimeout,
)
from txstress.tracker import ConfirmationTracker
from tests.fakes import FakeNode, address, wallet

TO = address(0xDEAD)
DUST = C.DUST_THRESHOLD_WEI


class RecordingDispatcher:
    """Dispatcher stand-in that records ordering and optionally confirms what it sends."""

    def __init__(self, tracker: ConfirmationTracker, *, confirm_after: float | None = None, fail: set[int] = frozenset()):
        self.tracker = tracker
        self.confirm_after = confirm_after
        self.fail = fail
        self.calls: list[str] = []
        self.events: list[tuple[str, int]] = []
        self.pending_at_start: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.manual_nonce_flags: list[bool] = []

    async def send(self, account, to, amount, manual_nonce=False, gas_limit=None):
        n = len(self.calls)
        self.calls.append(account.address)
        self.manual_nonce_flags.append(manual_nonce)
        self.pending_at_start.append(self.tracker.pending_count())
        self.events.append(("start", n))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.001 * (3 - n % 3))
            if n in self.fail:
                raise DispatchError(account.address, RuntimeError("nonce too low"))
        finally:
            self.in_flight -= 1
            self.events.append(("end", n))

        tx_hash = f"0x{n:064x}"
        self.tracker.register(tx_hash)
        if self.confirm_after is not None:
            asyncio.get_running_loop().call_later(self.confirm_after, self.tracker.on_new_block, n + 1, [tx_hash])
        return tx_hash


def driver_kwargs(**kw):
    return dict(to=TO, amount=1, drain_timeout=0, **kw)


class TestPreconditions(IsolatedAsyncioTestCase):
    async def test_no_funded_wallet_is_fatal(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker)
        driver = SequentialDriver(dispatcher, tracker, [wallet(1, 0), wallet(2, 0)], **driver_kwargs(count=3))
        with self.assertRaises(PreconditionError):
            await driver.run()
        self.assertEqual(driver.state, C.DriverState.FAILED)
        self.assertEqual(dispatcher.calls, [])

    async def test_no_wallets_is_fatal(self):
        tracker = ConfirmationTracker()
        driver = BatchDriver(RecordingDispatcher(tracker), tracker, [], **driver_kwargs(count=3))
        with self.assertRaises(PreconditionError):
            await driver.run()

    async def test_illegal_transition(self):
        tracker = ConfirmationTracker()
        driver = SequentialDriver(RecordingDispatcher(tracker), tracker, [wallet(1)], **driver_kwargs(count=1))
        with self.assertRaises(RuntimeError):
            driver._transition(C.DriverState.DONE)


class TestSequentialDriver(IsolatedAsyncioTestCase):
    async def test_one_in_flight_and_confirmed_before_next(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker, confirm_after=0.005)
        wallets = [wallet(1), wallet(2)]
        driver = SequentialDriver(dispatcher, tracker, wallets, **driver_kwargs(count=4))

        report = await driver.run()

        self.assertEqual(report.state, C.DriverState.DONE)
        self.assertEqual(dispatcher.max_in_flight, 1)
        self.assertEqual(dispatcher.pending_at_start, [0, 0, 0, 0])
        self.assertEqual(dispatcher.calls, [w.address for w in wallets] * 2)
        self.assertEqual(report.stats.completed, 4)
        self.assertEqual(report.stats.pending, 0)
        self.assertTrue(report.drained)

    async def test_dust_wallet_skips_are_not_backfilled(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker, confirm_after=0.001)
        wallets = [wallet(1), wallet(2, DUST)]
        driver = SequentialDriver(dispatcher, tracker, wallets, **driver_kwargs(count=5))

        report = await driver.run()

        # iterations 1 and 3 land on the dust wallet
        self.assertEqual(report.sent, 3)
        self.assertEqual(report.skipped, 2)
        self.assertLess(report.sent, report.requested)
        self.assertEqual(set(dispatcher.calls), {wallets[0].address})

    async def test_failure_is_counted_and_run_continues(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker, confirm_after=0.001, fail={1})
        driver = SequentialDriver(dispatcher, tracker, [wallet(1)], **driver_kwargs(count=3))

        report = await driver.run()

        self.assertEqual(report.sent, 3)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.succeeded, 2)
        self.assertEqual(report.stats.completed, 2)


class TestBatchDriver(IsolatedAsyncioTestCase):
    async def test_batch_sizes_and_no_overlap(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker)
        driver = BatchDriver(dispatcher, tracker, [wallet(1), wallet(2)], batch_size=3, **driver_kwargs(count=7))

        report = await driver.run()

        self.assertEqual(report.batches, [3, 3, 1])
        self.assertEqual(report.sent, 7)
        pos = {e: i for i, e in enumerate(dispatcher.events)}
        for first, last, next_start in ((0, 2, 3), (3, 5, 6)):
            batch_ends = [pos[("end", n)] for n in range(first, last + 1)]
            batch_starts = [pos[("start", n)] for n in range(first, last + 1)]
            # every dispatch of a batch is issued before any of it settles
            self.assertLess(max(batch_starts), min(batch_ends))
            self.assertLess(max(batch_ends), pos[("start", next_start)])
        self.assertEqual(dispatcher.max_in_flight, 3)
        # drain timeout 0: nothing confirmed, nothing lost
        self.assertEqual(report.stats.pending, 7)
        self.assertFalse(report.drained)
        self.assertEqual(len(report.stragglers), 7)

    async def test_round_robin_skips_depleted_without_counting(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker)
        wallets = [wallet(1), wallet(2, DUST), wallet(3)]
        driver = BatchDriver(dispatcher, tracker, wallets, batch_size=2, **driver_kwargs(count=4))

        report = await driver.run()

        self.assertEqual(report.sent, 4)
        self.assertEqual(report.batches, [2, 2])
        self.assertNotIn(wallets[1].address, dispatcher.calls)
        self.assertEqual(dispatcher.calls, [wallets[0].address, wallets[2].address] * 2)
        self.assertEqual(report.skipped, 2)

    async def test_failures_do_not_abort_batch(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker, fail={0, 4})
        driver = BatchDriver(dispatcher, tracker, [wallet(1)], batch_size=3, **driver_kwargs(count=6))

        report = await driver.run()

        self.assertEqual(report.state, C.DriverState.DONE)
        self.assertEqual(report.sent, 6)
        self.assertEqual(report.failed, 2)
        self.assertEqual(tracker.total_registered(), 4)

    async def test_all_wallets_below_dust_fails(self):
        tracker = ConfirmationTracker()
        driver = BatchDriver(RecordingDispatcher(tracker), tracker, [wallet(1, DUST)], **driver_kwargs(count=2))
        with self.assertRaises(PreconditionError):
            await driver.run()
        self.assertEqual(driver.state, C.DriverState.FAILED)

    async def test_delay_between_batches(self):
        tracker = ConfirmationTracker()
        driver = BatchDriver(RecordingDispatcher(tracker), tracker, [wallet(1)], batch_size=1, delay_ms=20,
                             **driver_kwargs(count=3))
        loop = asyncio.get_running_loop()
        start = loop.time()
        await driver.run()
        # two delays, none after the last batch
        self.assertGreaterEqual(loop.time() - start, 0.04)

    async def test_manual_nonce_passed_through(self):
        tracker = ConfirmationTracker()
        dispatcher = RecordingDispatcher(tracker)
        driver = BatchDriver(dispatcher, tracker, [wallet(1)], **driver_kwargs(count=2, manual_nonce=True))
        await driver.run()
        self.assertEqual(dispatcher.manual_nonce_flags, [True, True])


class TestBlockTriggeredDriver(IsolatedAsyncioTestCase):
    def setUp(self):
        self.node = FakeNode()
        self.tracker = ConfirmationTracker()
        self.feed = BlockFeed(self.node, self.tracker)
        self.dispatcher = RecordingDispatcher(self.tracker)

    async def wait_for_subscriber(self):
        for _ in range(100):
            if self.feed.subscriber_count:
                return
            await asyncio.sleep(0)
        self.fail("driver never subscribed")

    async def test_one_round_per_block(self):
        wallets = [wallet(1), wallet(2, DUST), wallet(3)]
        driver = BlockTriggeredDriver(self.dispatcher, self.tracker, wallets, feed=self.feed,
                                      **driver_kwargs(count=3))
        task = asyncio.create_task(driver.run())
        await self.wait_for_subscriber()

        await self.feed.handle_block(self.node.mine())
        await asyncio.sleep(0.02)
        self.assertEqual(driver.sent, 2)

        await self.feed.handle_block(self.node.mine())
        report = await asyncio.wait_for(task, timeout=1)

        self.assertEqual(report.state, C.DriverState.DONE)
        self.assertEqual(report.sent, 3)
        self.assertEqual(report.blocks_seen, 2)
        self.assertEqual(self.dispatcher.calls, [wallets[0].address, wallets[2].address, wallets[0].address])
        self.assertEqual(self.feed.subscriber_count, 0)

    async def test_confirmations_flow_through_feed(self):
        driver = BlockTriggeredDriver(self.dispatcher, self.tracker, [wallet(1)], feed=self.feed,
                                      **driver_kwargs(count=1))
        driver.drain_timeout = 1
        task = asyncio.create_task(driver.run())
        await self.wait_for_subscriber()
        await self.feed.handle_block(self.node.mine())
        await asyncio.sleep(0.02)

        await self.feed.handle_block(self.node.mine(f"0x{0:064x}"))
        report = await asyncio.wait_for(task, timeout=1)
        self.assertEqual(report.stats.completed, 1)
        self.assertTrue(report.drained)

    async def test_watchdog_aborts_and_unsubscribes(self):
        driver = BlockTriggeredDriver(self.dispatcher, self.tracker, [wallet(1)], feed=self.feed,
                                      watchdog_timeout=0.05, **driver_kwargs(count=2))
        with self.assertRaises(WatchdogTimeout):
            await driver.run()
        self.assertEqual(driver.state, C.DriverState.FAILED)
        self.assertEqual(self.feed.subscriber_count, 0)
        self.assertEqual(driver.report().sent, 0)


class InstantMiningNode(FakeNode):
    """Mines every transaction and publishes the block before the send call returns."""

    feed: BlockFeed

    async def send_raw_transaction(self, raw_tx_hex: str) -> str:
        tx_hash = await super().send_raw_transaction(raw_tx_hex)
        await self.feed.handle_block(self.mine(tx_hash))
        return tx_hash


class TestInstantMining(IsolatedAsyncioTestCase):
    def setUp(self):
        self.node = InstantMiningNode()
        self.tracker = ConfirmationTracker()
        self.node.feed = BlockFeed(self.node, self.tracker)
        self.dispatcher = Dispatcher(self.node, self.tracker, NonceSequencer())

    async def test_slow_mode_does_not_stall_when_block_beats_reply(self):
        driver = SequentialDriver(self.dispatcher, self.tracker, [wallet(1)], **driver_kwargs(count=2))
        report = await asyncio.wait_for(driver.run(), timeout=1)

        self.assertEqual(report.state, C.DriverState.DONE)
        self.assertEqual(report.sent, 2)
        self.assertEqual(report.stats.completed, 2)
        self.assertEqual(report.stats.pending, 0)
        self.assertEqual(self.node.block_requests, [1, 2])
        self.assertEqual([self.tracker.get(tx["hash"]).confirmed_block for tx in self.node.submitted], [1, 2])
