import argparse
import asyncio
import logging
import sys
from pathlib import Path

import txstress.constants as C
from txstress import __version__
from txstress.config import ConfigError, RunConfig, build_run_config
from txstress.logging_config import setup_logging
from txstress.rpc import RpcError
from txstress.session import Session, open_session
from txstress.strategies import (
    BatchDriver,
    BlockTriggeredDriver,
    PreconditionError,
    RunReport,
    SequentialDriver,
    StrategyDriver,
    WatchdogTimeout,
)
from txstress.wallets import WalletInfo, WalletLoadError, display_wallet_info, load_wallets

log = logging.getLogger("txstress.cli")

FATAL_ERRORS = (ConfigError, WalletLoadError, PreconditionError, WatchdogTimeout, RpcError)


def parse_args(argv: list[str] | None = None) -> tuple[argparse.ArgumentParser, argparse.Namespace]:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-n", "--node", help="Blockchain node JSON-RPC URL (env TXSTRESS_NODE_URL).")
    common.add_argument("-w", "--ws", help="Node websocket URL for new block notifications (env TXSTRESS_WS_URL). "
                                           "Blocks are polled over HTTP when omitted.")
    common.add_argument("-k", "--keys", type=Path, required=True,
                        help="Path to file containing private keys, one per line.")
    common.add_argument("-c", "--count", type=int, help="Number of transactions to send.")
    common.add_argument("-t", "--to", help="Recipient address.")
    common.add_argument("-v", "--value", help="Amount of native token to send per transaction.")
    common.add_argument("-g", "--gas-limit", type=int, help="Gas limit per transaction.")
    common.add_argument("--manual-nonce", action="store_true",
                        help="Assign nonces client side instead of asking the node every time.")
    common.add_argument("--drain-timeout", type=float,
                        help="Seconds to wait for outstanding confirmations at the end of the run.")
    common.add_argument("--status-port", type=int, help="Serve live run state over HTTP on this port.")

    parser = argparse.ArgumentParser(prog="txstress", description="A CLI tool for stress testing blockchain nodes")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="mode", metavar="{slow,timed,burst}")

    slow = sub.add_parser(C.Mode.SLOW, parents=[common],
                          help="Send transactions in slow mode (one at a time, waiting for confirmation)")
    slow.add_argument("--confirm-timeout", type=float,
                      help="Give up waiting on a single confirmation after this many seconds (default: wait).")

    timed = sub.add_parser(C.Mode.TIMED, parents=[common],
                           help="Send transactions timed with mining (after each block)")
    timed.add_argument("--watchdog", type=float, dest="watchdog_timeout",
                       help="Abort if the run has not completed after this many seconds.")

    burst = sub.add_parser(C.Mode.BURST, parents=[common],
                           help="Send transactions in burst mode (many transactions in a short period)")
    burst.add_argument("-b", "--batch-size", type=int, help="Number of transactions in each batch.")
    burst.add_argument("-d", "--delay", type=int, dest="delay_ms", help="Delay between batches in ms.")

    return parser, parser.parse_args(argv)


def config_from_args(a: argparse.Namespace) -> RunConfig:
    return build_run_config(
        mode=a.mode,
        node_url=a.node,
        ws_url=a.ws,
        keys=a.keys,
        count=a.count,
        to=a.to,
        value=a.value,
        gas_limit=a.gas_limit,
        manual_nonce=a.manual_nonce,
        drain_timeout=a.drain_timeout,
        status_port=a.status_port,
        confirm_timeout=getattr(a, "confirm_timeout", None),
        watchdog_timeout=getattr(a, "watchdog_timeout", None),
        batch_size=getattr(a, "batch_size", None),
        delay_ms=getattr(a, "delay_ms", None),
    )


def build_driver(config: RunConfig, session: Session, wallets: list[WalletInfo]) -> StrategyDriver:
    common = dict(
        to=config.to,
        amount=config.value_wei,
        count=config.count,
        manual_nonce=config.manual_nonce,
        gas_limit=config.gas_limit,
        drain_timeout=config.drain_timeout,
    )
    match config.mode:
        case C.Mode.SLOW:
            return SequentialDriver(session.dispatcher, session.tracker, wallets,
                                    confirm_timeout=config.confirm_timeout, **common)
        case C.Mode.BURST:
            return BatchDriver(session.dispatcher, session.tracker, wallets,
                               batch_size=config.batch_size, delay_ms=config.delay_ms, **common)
        case C.Mode.TIMED:
            return BlockTriggeredDriver(session.dispatcher, session.tracker, wallets,
                                        feed=session.feed, watchdog_timeout=config.watchdog_timeout, **common)
    raise ConfigError(f"unknown mode {config.mode!r}")


def log_banner(config: RunConfig) -> None:
    log.info("== Running in %s mode ==", config.mode.upper())
    log.info("Node URL: %s", config.node_url)
    log.info("Block source: %s", config.ws_url or f"polling every {config.poll_interval:g}s")
    log.info("Target count: %d transactions", config.count)
    log.info("Recipient: %s", config.to)
    log.info("Value per tx: %s ETH", config.value)
    log.info("Gas limit: %d", config.gas_limit)
    log.info("Manual nonce management: %s", "Enabled" if config.manual_nonce else "Disabled")
    if config.mode == C.Mode.BURST:
        log.info("Batch size: %d", config.batch_size)
        log.info("Delay between batches: %dms", config.delay_ms)


def log_report(report: RunReport) -> None:
    s = report.stats
    if report.state == C.DriverState.DONE:
        log.info("Test completed successfully!")
    else:
        log.warning("Test ended in state %s", report.state)
    log.info("Sent: %d/%d (%d failed, %d skipped) in %.1fs",
             report.sent, report.requested, report.failed, report.skipped, report.elapsed)
    if report.batches:
        log.info("Batches: %s", report.batches)
    log.info("Completed transactions: %d", s.completed)
    log.info("Pending transactions: %d", s.pending)
    log.info("Average confirmation time: %.2f seconds", s.avg_confirmation_time)


async def run(config: RunConfig) -> RunReport:
    log_banner(config)
    async with open_session(config) as session:
        wallets = await load_wallets(config.keys, session.client)
        display_wallet_info(wallets)
        session.driver = driver = build_driver(config, session, wallets)
        try:
            return await driver.run()
        except WatchdogTimeout:
            log_report(driver.report())
            raise


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    parser, args = parse_args(argv)
    if args.mode is None:
        log.info("Welcome to txstress - Blockchain Node Stress Testing Tool")
        parser.print_help()
        return 0

    try:
        report = asyncio.run(run(config_from_args(args)))
    except FATAL_ERRORS as e:
        log.error("Error in %s mode: %s", args.mode, e)
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130

    log_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
