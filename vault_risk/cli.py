"""Command-line interface for the vault risk engine."""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from .config import load_config
from .engine import RiskEngine
from .errors import EngineError
from .logging_setup import configure_logging


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="vault-risk",
        description="Collateral risk and liquidation engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    price_parser = sub.add_parser("price", help="Aggregate the current price of an asset")
    price_parser.add_argument("symbol", help="Asset symbol, e.g. SUI")
    price_parser.add_argument(
        "--force", action="store_true", help="Bypass the price cache"
    )

    validate_parser = sub.add_parser(
        "validate-price", help="Check a proposed price against the aggregate"
    )
    validate_parser.add_argument("symbol", help="Asset symbol, e.g. SUI")
    validate_parser.add_argument("price", type=float, help="Proposed USD price")
    validate_parser.add_argument(
        "--max-deviation",
        type=float,
        default=None,
        help="Allowed deviation in percent (default from config)",
    )

    sub.add_parser("check", help="Single health sweep over configured vaults")

    monitor_parser = sub.add_parser("monitor", help="Continuous monitoring loop")
    monitor_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Sweep interval in seconds (overrides config)",
    )

    liq_parser = sub.add_parser(
        "liquidation-check", help="Check whether a loan is eligible for liquidation"
    )
    liq_parser.add_argument("loan_id", help="Loan object id")

    return parser


async def _run(args: argparse.Namespace) -> int:
    """Execute the selected command and return the exit code."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    engine = RiskEngine(config)

    if args.command == "price":
        price = await engine.aggregation.get_aggregated_price(args.symbol, args.force)
        print(
            f"{price.symbol}: ${price.price:,.6f} "
            f"(confidence {price.confidence:.0f}, deviation {price.deviation:.2f}%, "
            f"sources {', '.join(price.sources)})"
        )
    elif args.command == "validate-price":
        result = await engine.aggregation.validate_price(
            args.symbol, args.price, args.max_deviation
        )
        verdict = "VALID" if result.is_valid else f"INVALID: {result.reason}"
        print(
            f"{args.symbol.upper()} @ ${args.price:,.6f}: {verdict} "
            f"(aggregate ${result.price:,.6f}, deviation {result.deviation:.2f}%)"
        )
        return 0 if result.is_valid else 2
    elif args.command == "check":
        await engine.track_configured_vaults()
        checked = await engine.monitor.run_sweep()
        for monitored in engine.monitor.all_monitored():
            health = monitored.health
            if health is None:
                print(f"{monitored.vault.vault_id}: not checked")
                continue
            print(
                f"{monitored.vault.vault_id}: {health.status.value} "
                f"LTV {health.ltv_ratio / 100:.2f}% HF {health.health_factor / 10000:.2f}"
            )
        print(f"{checked} vault(s) checked")
    elif args.command == "monitor":
        await engine.track_configured_vaults()
        if sys.platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, engine.monitor.stop)
        await engine.monitor.run_continuous(args.interval)
    elif args.command == "liquidation-check":
        eligible = await engine.liquidation.check_liquidation_criteria(args.loan_id)
        print(f"{args.loan_id}: {'ELIGIBLE' if eligible else 'not eligible'} for liquidation")
        return 3 if eligible else 0
    else:
        build_parser().print_help()
        return 1
    return 0


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        code = asyncio.run(_run(args))
    except EngineError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)
