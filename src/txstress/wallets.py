import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import from_wei

import txstress.constants as C
from txstress.rpc import NodeClient

log = logging.getLogger("txstress.wallets")


class WalletLoadError(RuntimeError):
    """The key file is missing, empty or holds a key we can't use."""


@dataclass(slots=True)
class WalletInfo:
    account: LocalAccount
    address: str
    balance: int  # wei, sampled once at load time

    @property
    def balance_ether(self) -> str:
        return f"{from_wei(self.balance, 'ether'):f}"

    def above_dust(self) -> bool:
        return self.balance > C.DUST_THRESHOLD_WEI


def read_private_keys(key_file: Path) -> list[str]:
    try:
        content = Path(key_file).expanduser().read_text()
    except OSError as e:
        raise WalletLoadError(f"Cannot read key file {key_file}: {e}") from e

    keys = [line.strip() for line in content.splitlines()]
    keys = [k for k in keys if k and not k.startswith("#")]
    if not keys:
        raise WalletLoadError(f"No private keys found in {key_file}")
    return keys


async def load_wallets(key_file: Path, client: NodeClient) -> list[WalletInfo]:
    """Load every key in key_file and fetch the balances concurrently, keeping file order."""
    keys = read_private_keys(key_file)
    log.info("Loading %d wallets...", len(keys))

    accounts = []
    for n, key in enumerate(keys, start=1):
        try:
            accounts.append(Account.from_key(key))
        except (ValueError, TypeError) as e:
            # Never echo the key itself
            raise WalletLoadError(f"Invalid private key on entry {n} of {key_file}") from e

    balances = await asyncio.gather(*(client.get_balance(a.address) for a in accounts))
    return [WalletInfo(account=a, address=a.address, balance=b) for a, b in zip(accounts, balances)]


def display_wallet_info(wallets: list[WalletInfo]) -> None:
    log.info("Wallet Information:")
    log.info("-------------------")
    for n, w in enumerate(wallets, start=1):
        marker = "" if w.balance > 0 else "  (empty)"
        log.info("%d. %s - Balance: %s ETH%s", n, w.address, w.balance_ether, marker)
