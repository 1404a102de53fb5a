#!/usr/bin/env python3
"""
Run the 15m/5m Up/Down Arbitrage Bot

This script provides a command-line interface to run the cross-market
arbitrage bot on Polymarket 15-minute and 5-minute crypto Up/Down markets.

Usage:
    # Simulation (default, safe)
    python scripts/run_arb_bot.py

    # Custom strategy config
    python scripts/run_arb_bot.py --config config.json

    # Check status (non-blocking, shows current state)
    python scripts/run_arb_bot.py --status

    # Run for a specific duration (in minutes)
    python scripts/run_arb_bot.py --duration 60

    # Live trading (CAUTION - requires proper credentials)
    python scripts/run_arb_bot.py --live

    # Activate kill switch (halts new entries)
    python scripts/run_arb_bot.py --kill

    # Deactivate kill switch (resume trading)
    python scripts/run_arb_bot.py --resume

    # Replay a recorded quote file through the simulator
    python scripts/run_arb_bot.py --replay data/quotes/btc_20260101.jsonl

    # List positions ready for the external redeemer
    python scripts/run_arb_bot.py --redeem [--condition-id 0xabc...]

Safety Notes:
    - Simulation is the default. Live trading needs --live (or simulation_mode: false
      in the config file) plus typing LIVE at the confirmation prompt.
    - Kill switch: Create .kill_switch file in project root to halt new entries.
    - Live mode requires POLYMARKET_PRIVATE_KEY and POLYMARKET_FUNDER in .env

Environment Variables:
    POLYMARKET_PRIVATE_KEY - Private key for signing orders
    POLYMARKET_FUNDER - Proxy wallet address holding funds
    POLYMARKET_SIGNATURE_TYPE - Signature type (default: 2)
    ARB_CONFIG_PATH - Default strategy config path
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.arb.bot import ArbBot
from src.arb.ledger import PositionLedger, TradeLedger
from src.arb.simulation import QuoteReplay
from src.config import (
    CONFIG_PATH,
    DATA_DIR,
    KILL_SWITCH_FILE,
    LOGS_DIR,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    POSITIONS_PATH,
    TRADES_LOG_PATH,
    TRADING_MODE,
    ArbConfig,
    load_config,
)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the bot."""
    level = logging.DEBUG if verbose else logging.INFO

    # Create formatters
    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"arb_bot_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("websocket").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def show_status(config: ArbConfig) -> None:
    """Show current bot status without starting the bot."""
    print("\n" + "=" * 70)
    print("Arbitrage Bot Status")
    print("=" * 70)

    kill_switch_active = KILL_SWITCH_FILE.exists()
    print(f"\nKill Switch: {'ACTIVE (entries halted)' if kill_switch_active else 'Inactive'}")
    print(f"Kill Switch Path: {KILL_SWITCH_FILE}")

    print("\nConfiguration:")
    print(f"  Trading Mode: {TRADING_MODE}")
    for key, value in config.to_dict().items():
        print(f"  {key}: {value}")

    print("\nCredentials:")
    has_key = bool(POLYMARKET_PRIVATE_KEY)
    has_funder = bool(POLYMARKET_FUNDER)
    print(f"  Private Key: {'Configured' if has_key else 'NOT CONFIGURED'}")
    print(f"  Funder Address: {'Configured' if has_funder else 'NOT CONFIGURED'}")
    print(f"  Live Trading: {'Ready' if (has_key and has_funder) else 'NOT AVAILABLE'}")

    records = TradeLedger(TRADES_LOG_PATH).load()
    if records:
        by_state: dict[str, int] = {}
        for record in records:
            if record.get("event") == "trade":
                by_state[record["state"]] = by_state.get(record["state"], 0) + 1
        pnl = sum(r["pnl"] for r in records if r.get("event") == "resolved" and r.get("pnl") is not None)
        print("\nTrade History:")
        print(f"  Records logged: {len(records)}")
        for state, count in sorted(by_state.items()):
            print(f"    {state}: {count}")
        print(f"  Resolved PnL: {pnl:+.4f}")
        print(f"  Last record: {records[-1].get('timestamp', 'Unknown')}")
    else:
        print("\nTrade History: No trades yet")

    positions = PositionLedger(POSITIONS_PATH)
    print(f"\nPositions: {len(positions.positions)} tracked, {len(positions.redeemable())} redeemable")
    print("\n" + "=" * 70)


def show_redeemable(condition_id: str = None) -> None:
    """Print positions ready for the external redemption process."""
    positions = PositionLedger(POSITIONS_PATH).redeemable(condition_id)
    if not positions:
        print("No redeemable positions")
        return
    print(json.dumps([p.to_dict() for p in positions], indent=2))


def activate_kill_switch(reason: str = "CLI activation") -> None:
    """Activate the kill switch to halt new entries."""
    with open(KILL_SWITCH_FILE, "w") as f:
        f.write(f"Kill switch activated at {datetime.now(timezone.utc).isoformat()}\n")
        f.write(f"Reason: {reason}\n")
    print(f"\nKill switch ACTIVATED: {reason}")
    print(f"Kill switch file: {KILL_SWITCH_FILE}")
    print("\nNew entries are halted; open trades still run to completion.")
    print("To resume, run: python scripts/run_arb_bot.py --resume")


def deactivate_kill_switch() -> None:
    """Deactivate the kill switch to allow trading."""
    if KILL_SWITCH_FILE.exists():
        KILL_SWITCH_FILE.unlink()
        print("\nKill switch DEACTIVATED")
    else:
        print("\nKill switch was not active")
    print("Trading is now allowed.")


def build_live_gateway(config: ArbConfig):
    """
    Initialize the live CLOB order gateway.

    Only called in live mode; simulation never constructs it.
    """
    from src.exchanges.clob import ClobOrderGateway, build_clob_client

    client = build_clob_client()
    return ClobOrderGateway(client, tick_size=config.tick_size)


async def run_replay(path: str, config: ArbConfig) -> None:
    """Replay a quote recording through the simulated trading stack."""
    replay_dir = DATA_DIR / "replay"
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    trades = TradeLedger(replay_dir / f"trades_{stamp}.jsonl")
    positions = PositionLedger(replay_dir / f"positions_{stamp}.json")

    executed = await QuoteReplay(path).run(config, trades, positions)

    print("\n" + "=" * 70)
    print(f"Replay of {path}")
    print("=" * 70)
    for trade in executed:
        print(
            f"  {trade.trade_id} {trade.spread.label} total={trade.spread.total:.4f} "
            f"-> {trade.state} locked={trade.locked_size} {trade.reason}"
        )
    print(f"\n{json.dumps(trades.stats(), indent=2)}")
    print(f"Trades written to: {trades.log_path}")


async def run_bot(config: ArbConfig, duration_minutes: int) -> None:
    """
    Run the arbitrage bot.

    Args:
        config: Strategy configuration (simulation_mode decides the gateway)
        duration_minutes: How long to run (0 = unlimited)
    """
    mode_str = "SIMULATION" if config.simulation_mode else "LIVE"

    print("\n" + "=" * 70)
    print(f"Starting Arbitrage Bot ({mode_str} MODE)")
    print("=" * 70)

    gateway = None
    if not config.simulation_mode:
        print("\n" + "!" * 70)
        print("WARNING: LIVE TRADING MODE")
        print("Real money will be at risk!")
        print("!" * 70)

        confirm = input("\nType 'LIVE' to confirm live trading: ")
        if confirm != "LIVE":
            print("Live trading cancelled.")
            return
        gateway = build_live_gateway(config)

    print("\nConfiguration:")
    print(f"  Mode: {mode_str}")
    print(f"  Symbol: {config.symbol.upper()}")
    print(f"  Sum threshold: {config.sum_threshold}")
    print(f"  Shares per leg: {config.shares}")
    print(f"  Duration: {duration_minutes} minutes" if duration_minutes > 0 else "  Duration: Unlimited")
    print("\nPress Ctrl+C to stop\n")

    bot = ArbBot(config, gateway=gateway, duration_secs=duration_minutes * 60 if duration_minutes > 0 else None)
    resolved = await bot.resolution.resume_pending()
    if resolved:
        print(f"Marked {resolved} market(s) resolved from a previous session")

    try:
        await bot.run()
    finally:
        state = bot.state.to_dict()
        print("\n" + "=" * 70)
        print("Final Status")
        print("=" * 70)
        print("\nSession Summary:")
        print(f"  Mode: {mode_str}")
        print(f"  Windows monitored: {state['windows_monitored']}")
        print(f"  Trades opened: {state['trades_opened']}")
        for outcome, count in sorted(state["outcomes"].items()):
            print(f"    {outcome}: {count}")
        print(f"  Resolved PnL: {state['total_pnl']:+.4f}")
        print(f"  Uptime: {state['uptime_seconds']} seconds")
        if state.get("last_error"):
            print(f"\nLast Error: {state['last_error']}")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the 15m/5m Up/Down Arbitrage Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_arb_bot.py                      # Simulation (default)
  python scripts/run_arb_bot.py --status             # Check status
  python scripts/run_arb_bot.py --duration 60        # Run for 60 minutes
  python scripts/run_arb_bot.py --live               # Live trading (CAUTION)
  python scripts/run_arb_bot.py --kill               # Activate kill switch
  python scripts/run_arb_bot.py --resume             # Deactivate kill switch
  python scripts/run_arb_bot.py --replay FILE        # Replay recorded quotes
  python scripts/run_arb_bot.py --redeem             # List redeemable positions
        """,
    )

    # Mode arguments
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--live",
        action="store_true",
        help="Enable live trading (CAUTION: real money at risk)",
    )
    mode_group.add_argument(
        "--status",
        action="store_true",
        help="Show current bot status and exit",
    )
    mode_group.add_argument(
        "--kill",
        action="store_true",
        help="Activate kill switch to halt new entries",
    )
    mode_group.add_argument(
        "--resume",
        action="store_true",
        help="Deactivate kill switch to allow trading",
    )
    mode_group.add_argument(
        "--replay",
        metavar="FILE",
        help="Replay a recorded quote file in simulation and exit",
    )
    mode_group.add_argument(
        "--redeem",
        action="store_true",
        help="Print redeemable positions for the external redeemer and exit",
    )

    # Configuration arguments
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        metavar="PATH",
        help=f"Strategy config JSON (default: {CONFIG_PATH})",
    )
    parser.add_argument(
        "--condition-id",
        metavar="ID",
        help="With --redeem, only this market",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.kill:
        activate_kill_switch("CLI --kill flag")
        return

    if args.resume:
        deactivate_kill_switch()
        return

    if args.redeem:
        show_redeemable(args.condition_id)
        return

    config = load_config(args.config)

    if args.status:
        show_status(config)
        return

    setup_logging(verbose=args.verbose)

    config.apply_live_flag(args.live)

    try:
        if args.replay:
            config.simulation_mode = True
            asyncio.run(run_replay(args.replay, config))
        else:
            asyncio.run(run_bot(config, args.duration))
    except KeyboardInterrupt:
        print("\nShutdown requested by user...")
    except Exception as e:
        print(f"\nFatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
