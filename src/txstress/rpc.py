# txstress/rpc.py
"""
Minimal async JSON-RPC 2.0 client for an EVM node.

Only the handful of methods the stress runs need. Quantities come back from
the node as hex strings and are returned as ints; hashes are normalized to
lowercase so they compare equal to what blocks report.
"""
import asyncio
import itertools
import logging
from typing import Any

import httpx

import txstress.constants as C

log = logging.getLogger("txstress.rpc")


class RpcError(RuntimeError):
    """The node answered with a JSON-RPC error, or could not be reached."""

    def __init__(self, method: str, message: str, code: int | None = None, data: Any = None):
        super().__init__(f"{method}: {message}" + (f" (code {code})" if code is not None else ""))
        self.method = method
        self.code = code
        self.data = data


def _quantity(value: str | int) -> int:
    return value if isinstance(value, int) else int(value, 16)


class NodeClient:
    def __init__(self, url: str, *, timeout: float = C.RPC_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self._ids = itertools.count(1)
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "NodeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def request(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            r = await self._http.post(self.url, json=payload)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise RpcError(method, f"{e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise RpcError(method, f"invalid JSON response: {e}") from e

        if not isinstance(body, dict):
            raise RpcError(method, f"unexpected response: {str(body)[:200]}")
        if err := body.get("error"):
            if not isinstance(err, dict):
                raise RpcError(method, str(err))
            raise RpcError(method, err.get("message", str(err)), code=err.get("code"), data=err.get("data"))
        return body.get("result")

    async def probe(self, max_retries: int = 5, retry_delay: float = 2.0) -> int:
        """Check the node is up, retrying a few times. Returns the chain id."""
        for attempt in range(1, max_retries + 1):
            try:
                chain_id = await self.chain_id()
                log.info("RPC endpoint responding (attempt %d/%d), chain id %d", attempt, max_retries, chain_id)
                return chain_id
            except RpcError as e:
                if attempt < max_retries:
                    log.info("RPC not ready yet (attempt %d/%d): %s - retrying in %ss", attempt, max_retries, e, retry_delay)
                    await asyncio.sleep(retry_delay)
                else:
                    log.error("RPC failed after %d attempts", max_retries)
                    raise

    async def chain_id(self) -> int:
        return _quantity(await self.request("eth_chainId"))

    async def block_number(self) -> int:
        return _quantity(await self.request("eth_blockNumber"))

    async def get_balance(self, address: str) -> int:
        return _quantity(await self.request("eth_getBalance", [address, "latest"]))

    async def get_gas_price(self) -> int:
        return _quantity(await self.request("eth_gasPrice"))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _quantity(await self.request("eth_getTransactionCount", [address, block]))

    async def send_raw_transaction(self, raw_tx_hex: str) -> str:
        return str(await self.request("eth_sendRawTransaction", [raw_tx_hex])).lower()

    async def get_block_with_transactions(self, height: int) -> list[str] | None:
        """Hashes of the transactions in block `height`, or None if the node doesn't have it yet."""
        block = await self.request("eth_getBlockByNumber", [hex(height), False])
        if not block:
            return None
        txs = block.get("transactions") or []
        # Some nodes ignore the full=False flag
        return [(tx if isinstance(tx, str) else tx["hash"]).lower() for tx in txs]
