# txstress/ws.py
"""
Block sources. Each one:
1. Watches the node for new blocks (websocket newHeads subscription, or
   eth_blockNumber polling when there is no websocket endpoint)
2. Publishes ("block", height) events to a queue for the block feed
3. Keeps going across node hiccups; the websocket source reconnects with
   exponential backoff
"""
import asyncio
import json
import logging

import websockets

import txstress.constants as C
from txstress.rpc import NodeClient, RpcError

log = logging.getLogger("txstress.ws")

RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0
SUBSCRIBE_ACK_TIMEOUT = 10.0


async def ws_listener(stop: asyncio.Event, ws_url: str, event_queue: asyncio.Queue) -> None:
    """
    Connect to the node websocket, subscribe to newHeads and publish block events.

    Parameters
    ----------
    stop:
        Event to signal graceful shutdown
    ws_url:
        WebSocket URL (e.g., "ws://127.0.0.1:8546")
    event_queue:
        Queue receiving ("block", height) tuples
    """
    backoff = RECONNECT_BASE

    while not stop.is_set():
        try:
            async with websockets.connect(
                ws_url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=1,
            ) as ws:
                log.info("WS connected: %s", ws_url)
                await ws.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}))

                try:
                    ack = json.loads(await asyncio.wait_for(ws.recv(), timeout=SUBSCRIBE_ACK_TIMEOUT))
                    if "error" in ack:
                        raise RuntimeError(f"eth_subscribe failed: {ack['error']}")
                    log.info("WS subscription successful (%s)", ack.get("result"))
                except asyncio.TimeoutError:
                    log.warning("WS subscription ack timeout, continuing anyway")

                backoff = RECONNECT_BASE

                while not stop.is_set():
                    recv_task = asyncio.create_task(ws.recv())
                    halt_task = asyncio.create_task(stop.wait())

                    done, pending = await asyncio.wait(
                        {recv_task, halt_task},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    for t in pending:
                        t.cancel()

                    if halt_task in done:
                        log.info("WS listener received stop signal")
                        return

                    try:
                        await _process_message(recv_task.result(), event_queue)
                    except websockets.ConnectionClosed:
                        raise
                    except Exception as e:
                        log.error("Error processing WS message: %s", e, exc_info=True)

        except asyncio.CancelledError:
            log.info("WS listener cancelled")
            raise
        except Exception as e:
            log.error("WS connection error: %s", e)

        if stop.is_set():
            break

        log.info("WS reconnecting in %.1fs", backoff)
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, RECONNECT_MAX)

    log.info("WS listener stopped")


async def _process_message(raw_msg: str | bytes, queue: asyncio.Queue) -> None:
    """
    Parse a websocket message and publish a block event if it is a new head.

    Subscription notifications look like:
    {"jsonrpc": "2.0", "method": "eth_subscription",
     "params": {"subscription": "0x...", "result": {"number": "0x1b4", ...}}}
    """
    try:
        obj = json.loads(raw_msg)
    except json.JSONDecodeError:
        log.debug("WS raw (non-JSON): %s", str(raw_msg)[:200])
        return

    if obj.get("method") != "eth_subscription":
        log.debug("WS non-subscription message: %s", str(obj)[:200])
        return

    head = obj.get("params", {}).get("result") or {}
    number = head.get("number")
    if number is None:
        log.debug("WS head without number, ignoring")
        return

    height = int(number, 16)
    log.debug("WS new head: %s", height)
    await queue.put(("block", height))


async def poll_blocks(
    stop: asyncio.Event,
    client: NodeClient,
    event_queue: asyncio.Queue,
    interval: float = C.POLL_INTERVAL,
) -> None:
    """Publish a block event for every height the node reaches, checking every `interval` seconds."""
    last: int | None = None
    log.info("Polling for new blocks every %.1fs", interval)
    try:
        while not stop.is_set():
            try:
                current = await client.block_number()
            except RpcError as e:
                log.warning("Block poll failed: %s", e)
            else:
                if last is None:
                    # Start from the tip; only blocks mined from now on matter.
                    last = current
                elif current > last:
                    for height in range(last + 1, current + 1):
                        await event_queue.put(("block", height))
                    last = current

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    except asyncio.CancelledError:
        log.info("Block poller cancelled")
        raise
    log.info("Block poller stopped")
