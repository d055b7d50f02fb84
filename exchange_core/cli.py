"""
Exchange Core - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line entry point.

- relay     serve the market data relay (one upstream, many clients)
- watch     run the relay client and print the ticker table
- validate  check exchange credentials read from the environment

============================================================
USAGE
============================================================
python -m exchange_core relay --port 8080
python -m exchange_core watch --interval 5
python -m exchange_core validate --exchange kraken

Configuration comes from EXCHANGE_CORE_* variables (a .env
file is loaded); credentials from <EXCHANGE>_API_KEY,
<EXCHANGE>_API_SECRET and <EXCHANGE>_PASSPHRASE.

============================================================
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .adapters.factory import AdapterFactory, credentials_from_env
from .config import CoreConfig
from .errors import ConfigurationError
from .market_data.relay import MarketDataRelay
from .market_data.relay_server import RelayServer
from .market_data.tickers import TickerTable


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="exchange-core",
        description="Exchange integration and simulated order execution core",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Serve the market data relay")
    relay.add_argument("--host", default=None, help="Bind address")
    relay.add_argument("--port", type=int, default=None, help="Listen port")

    watch = sub.add_parser("watch", help="Stream tickers through the relay client")
    watch.add_argument("--interval", type=float, default=5.0, help="Print interval in seconds")
    watch.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = forever)")

    validate = sub.add_parser("validate", help="Validate exchange credentials from the environment")
    validate.add_argument(
        "--exchange",
        required=True,
        choices=AdapterFactory.list_supported(),
        help="Exchange to check",
    )

    return parser


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


# ============================================================
# COMMANDS
# ============================================================

def run_relay(config: CoreConfig, args: argparse.Namespace) -> int:
    if args.host:
        config.relay.host = args.host
    if args.port:
        config.relay.port = args.port
    RelayServer(config.relay).run()
    return 0


async def run_watch(config: CoreConfig, args: argparse.Namespace) -> int:
    table = TickerTable()
    relay = MarketDataRelay(config.relay, table)
    await relay.start()
    elapsed = 0.0
    try:
        while not args.duration or elapsed < args.duration:
            await asyncio.sleep(args.interval)
            elapsed += args.interval
            print(f"--- {relay.state.value} | {len(table)} symbols ---")
            for ticker in sorted(table.snapshot(), key=lambda t: t.symbol):
                print(f"{ticker.symbol:<12} {ticker.last_price:>18} {ticker.change_percent:>8}%")
    finally:
        await relay.stop()
    return 0


async def run_validate(config: CoreConfig, args: argparse.Namespace) -> int:
    creds = credentials_from_env(args.exchange)
    if creds is None:
        print(f"Error: no credentials for {args.exchange} in the environment", file=sys.stderr)
        return 1

    factory = AdapterFactory(config)
    try:
        check = await factory.get(args.exchange).validate_credentials(creds)
    finally:
        await factory.close()

    if check.valid:
        print(f"{args.exchange}: credentials valid ({check.platform})")
        return 0
    print(f"{args.exchange}: credentials invalid: {check.error}")
    return 2


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = CoreConfig.from_env()
    except ConfigurationError as e:
        logging.error(f"Invalid configuration: {e.error.message}")
        return 2

    try:
        if args.command == "relay":
            return run_relay(config, args)
        if args.command == "watch":
            return asyncio.run(run_watch(config, args))
        return asyncio.run(run_validate(config, args))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
