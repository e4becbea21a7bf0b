from typing import Final
from enum import StrEnum

# Burn address, the default recipient. Accepts value, nobody can spend it.
ZERO_ADDRESS: Final = "0x0000000000000000000000000000000000000000"

WEI_PER_ETHER: Final = 10**18

# Wallets at or below 0.001 native units are treated as unfunded.
DUST_THRESHOLD_WEI: Final = 10**15

DEFAULT_COUNT = 10
DEFAULT_VALUE_ETHER = "0.001"
DEFAULT_GAS_LIMIT = 21_000
DEFAULT_BATCH_SIZE = 5
DEFAULT_DELAY_MS = 0
DEFAULT_DRAIN_TIMEOUT = 300.0  # seconds
DEFAULT_WATCHDOG_TIMEOUT = 600.0  # seconds
RPC_TIMEOUT = 10.0
POLL_INTERVAL = 4.0  # matches the usual provider block polling cadence
BLOCK_QUEUE_MAXSIZE = 1000
SEEN_BLOCKS_MEMORY = 256
RECENT_BLOCKS_MEMORY = 16  # blocks whose tx hashes the tracker keeps for late registrations
MAX_UINT256 = 2**256 - 1


class TxState(StrEnum):
    PENDING   = "PENDING"
    CONFIRMED = "CONFIRMED"


class DriverState(StrEnum):
    INITIALIZING = "INITIALIZING"
    RUNNING      = "RUNNING"
    DRAINING     = "DRAINING"
    DONE         = "DONE"
    FAILED       = "FAILED"


class Mode(StrEnum):
    SLOW  = "slow"
    BURST = "burst"
    TIMED = "timed"


__all__ = [
    "BLOCK_QUEUE_MAXSIZE",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_COUNT",
    "DEFAULT_DELAY_MS",
    "DEFAULT_DRAIN_TIMEOUT",
    "DEFAULT_GAS_LIMIT",
    "DEFAULT_VALUE_ETHER",
    "DEFAULT_WATCHDOG_TIMEOUT",
    "DUST_THRESHOLD_WEI",
    "POLL_INTERVAL",
    "MAX_UINT256",
    "RECENT_BLOCKS_MEMORY",
    "RPC_TIMEOUT",
    "SEEN_BLOCKS_MEMORY",
    "WEI_PER_ETHER",
    "ZERO_ADDRESS",

    ######
    "DriverState",
    "Mode",
    "TxState",
]
