"""Client-side nonce allocation for manual-nonce mode.

Each address gets its own lock so allocation for one address never waits on
another. The node's pending count is reconciled on every allocation, so a
cache that fell behind (another sender, a restart) catches up instead of
handing out stale nonces.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from eth_utils import to_checksum_address

log = logging.getLogger("txstress.nonce")


@dataclass
class AccountRecord:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_nonce: int | None = None


class NonceSequencer:
    def __init__(self) -> None:
        self.accounts: dict[str, AccountRecord] = {}

    def _record_for(self, address: str) -> AccountRecord:
        addr = to_checksum_address(address)
        rec = self.accounts.get(addr)
        if rec is None:
            rec = self.accounts[addr] = AccountRecord()
        return rec

    def next_nonce(self, address: str, on_chain_pending_nonce: int) -> int:
        rec = self._record_for(address)
        cached = rec.next_nonce if rec.next_nonce is not None else on_chain_pending_nonce
        nonce = max(cached, on_chain_pending_nonce)
        rec.next_nonce = nonce + 1
        return nonce

    async def allocate(self, address: str, fetch_pending: Callable[[str], Awaitable[int]]) -> int:
        """Query the node and hand out the next nonce while holding the address lock."""
        rec = self._record_for(address)
        async with rec.lock:
            on_chain = await fetch_pending(address)
            nonce = self.next_nonce(address, on_chain)
        if nonce != on_chain:
            log.debug("Using manual nonce %s for %s... (node pending: %s)", nonce, address[:10], on_chain)
        else:
            log.debug("Using manual nonce %s for %s...", nonce, address[:10])
        return nonce

    def peek(self, address: str) -> int | None:
        rec = self.accounts.get(to_checksum_address(address))
        return rec.next_nonce if rec else None
