import asyncio
import logging

from eth_account.signers.local import LocalAccount

import txstress.constants as C
from txstress.nonce import NonceSequencer
from txstress.rpc import NodeClient
from txstress.tracker import ConfirmationTracker

log = logging.getLogger("txstress.dispatch")


class DispatchError(RuntimeError):
    """A single transaction could not be built, signed or submitted."""

    def __init__(self, address: str, cause: BaseException):
        super().__init__(f"{address[:10]}...: {cause}")
        self.address = address
        self.cause = cause


class Dispatcher:
    def __init__(
        self,
        client: NodeClient,
        tracker: ConfirmationTracker,
        nonces: NonceSequencer | None = None,
        *,
        gas_limit: int = C.DEFAULT_GAS_LIMIT,
        chain_id: int | None = None,
    ):
        self.client = client
        self.tracker = tracker
        self.nonces = nonces or NonceSequencer()
        self.gas_limit = gas_limit
        self._chain_id = chain_id
        self._chain_id_lock = asyncio.Lock()

    async def chain_id(self) -> int:
        async with self._chain_id_lock:
            if self._chain_id is None:
                self._chain_id = await self.client.chain_id()
            return self._chain_id

    async def _nonce_for(self, address: str, manual_nonce: bool) -> int:
        if manual_nonce:
            return await self.nonces.allocate(address, self.client.get_transaction_count)
        return await self.client.get_transaction_count(address, "pending")

    async def send(
        self,
        account: LocalAccount,
        to: str,
        amount: int,
        manual_nonce: bool = False,
        gas_limit: int | None = None,
    ) -> str:
        """Build, sign and submit one transfer, then start tracking it.

        Gas price is fetched fresh for every call. On any failure nothing is
        registered and DispatchError is raised; there are no retries here.
        """
        address = account.address
        try:
            gas_price = await self.client.get_gas_price()
            tx = {
                "to": to,
                "value": amount,
                "gas": gas_limit or self.gas_limit,
                "gasPrice": gas_price,
                "nonce": await self._nonce_for(address, manual_nonce),
                "chainId": await self.chain_id(),
            }
            signed = account.sign_transaction(tx)
            tx_hash = await self.client.send_raw_transaction("0x" + bytes(signed.raw_transaction).hex())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Error sending transaction from %s...: %s", address[:10], e)
            raise DispatchError(address, e) from e

        log.debug("submitted tx=%s from=%s nonce=%s gas_price=%s", tx_hash, address, tx["nonce"], gas_price)
        self.tracker.register(tx_hash)
        return tx_hash
