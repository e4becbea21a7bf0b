# txstress/session.py
"""
One run's worth of state and background work.

The session owns the node client, the tracker, the nonce sequencer and the
block feed, and runs the block source, the feed consumer and (optionally) the
status API as tasks. Leaving the context stops all of them, whatever the
reason for leaving.
"""
import asyncio
import contextlib
import logging
from typing import AsyncIterator

import uvicorn

from txstress.app import create_app
from txstress.blocks import BlockFeed
from txstress.config import RunConfig
from txstress.dispatch import Dispatcher
from txstress.nonce import NonceSequencer
from txstress.rpc import NodeClient
from txstress.strategies import StrategyDriver
from txstress.tracker import ConfirmationTracker
from txstress.ws import poll_blocks, ws_listener

log = logging.getLogger("txstress.session")


class Session:
    def __init__(self, config: RunConfig, client: NodeClient, chain_id: int | None = None):
        self.config = config
        self.client = client
        self.tracker = ConfirmationTracker()
        self.nonces = NonceSequencer()
        self.dispatcher = Dispatcher(
            client, self.tracker, self.nonces, gas_limit=config.gas_limit, chain_id=chain_id,
        )
        self.feed = BlockFeed(client, self.tracker)
        self.stop = asyncio.Event()
        self.driver: StrategyDriver | None = None
        self.tasks: list[asyncio.Task] = []


async def _shutdown(tasks: list[asyncio.Task]) -> None:
    for t in tasks:
        t.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for t, res in zip(tasks, results):
        if isinstance(res, Exception):
            log.error("Background task %s failed: %s", t.get_name(), res)


@contextlib.asynccontextmanager
async def open_session(config: RunConfig, *, client: NodeClient | None = None) -> AsyncIterator[Session]:
    client = client or NodeClient(config.node_url, timeout=config.rpc_timeout)
    async with client:
        log.info("Probing RPC endpoint %s...", config.node_url)
        chain_id = await client.probe()
        session = Session(config, client, chain_id=chain_id)

        if config.ws_url:
            source = ws_listener(session.stop, config.ws_url, session.feed.queue)
        else:
            source = poll_blocks(session.stop, client, session.feed.queue, config.poll_interval)
        session.tasks = [
            asyncio.create_task(source, name="block_source"),
            asyncio.create_task(session.feed.process_block_events(session.stop), name="block_feed"),
        ]

        server = None
        if config.status_port is not None:
            server = uvicorn.Server(uvicorn.Config(
                create_app(session),
                host=config.status_host,
                port=config.status_port,
                log_config=None,
                lifespan="off",
            ))
            session.tasks.append(asyncio.create_task(server.serve(), name="status_api"))
            log.info("Status API on http://%s:%d/state/summary", config.status_host, config.status_port)

        try:
            yield session
        finally:
            session.stop.set()
            if server is not None:
                server.should_exit = True
            await _shutdown(session.tasks)
            log.debug("Session background tasks stopped")
