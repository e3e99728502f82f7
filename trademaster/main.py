#!/usr/bin/env python3
"""
TradeMaster Trading Assistant
Main Entry Point

Usage:
    python main.py                       # Stream quotes from the simulated host
    python main.py --url ws://host:8765  # Connect to a host bridge over WebSocket
    python main.py --symbol GBPUSD       # Chart another symbol
    python main.py --config path.yaml    # Use custom config file
    python main.py --status              # Show current status and exit
    python main.py --test                # Run one demo trade cycle and exit
"""

import asyncio
import argparse
import sys
import os

# Add parent directory to path so we can import as package
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

from trademaster.core.confirmation import AutoConfirm
from trademaster.core.trading_assistant import TradingAssistant
from trademaster.core.transport import TradeSide
from trademaster.utils.config_loader import ConfigManager
from trademaster.utils.logger import setup_logging, get_logger


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="TradeMaster Trading Assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                        Stream from the simulated host
  python main.py --url ws://host:8765   Connect to a live host bridge
  python main.py --symbol GBPUSD        Chart GBPUSD
  python main.py --config my.yaml       Use custom configuration
  python main.py --status               Show assistant status
  python main.py --test                 Run one demo trade cycle
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="WebSocket URL of the host bridge (selects the WebSocket transport)"
    )

    parser.add_argument(
        "--symbol",
        type=str,
        default=None,
        help="Chart symbol (default: from config)"
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current assistant status and exit"
    )

    parser.add_argument(
        "--test",
        action="store_true",
        help="Run a single demo trade cycle and exit"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)"
    )

    return parser.parse_args(argv)


def load_config(args) -> ConfigManager:
    """Load configuration and apply command line overrides"""
    config = ConfigManager(args.config)
    if args.url:
        config.update("connection", "transport", "websocket")
        config.update("connection", "url", args.url)
    if args.symbol:
        config.update("chart", "default_symbol", args.symbol.upper())
    return config


async def show_status(config: ConfigManager):
    """Connect, show assistant status and exit"""
    assistant = TradingAssistant(config=config)
    await assistant.start()

    status = assistant.get_status()

    print("\n" + "=" * 60)
    print("TRADING ASSISTANT STATUS")
    print("=" * 60)

    connection = status['connection']
    print(f"\nTransport: {connection['transport']}")
    print(f"State: {connection['state']}")
    print(f"Symbols: {connection['symbols']}")

    print("\n--- Account ---")
    account = status['account']
    if account:
        print(f"Balance: {account['balance']:.2f} {account['currency']}")
        print(f"Equity: {account['equity']:.2f}")
        print(f"Free Margin: {account['free_margin']:.2f}")
        print(f"Profit: {account['profit']:.2f}")
    else:
        print("  Account information unavailable")

    print("\n--- Chart ---")
    chart = status['chart']
    print(f"{chart['symbol']} {chart['timeframe']}: {chart['price_len']} points")
    for name, length in chart['overlays'].items():
        print(f"  {name}: {length} points")

    insights = assistant.indicators.insights()
    if insights:
        for message in insights.messages:
            print(f"  {message}")

    print("\n--- Open Positions ---")
    positions = assistant.positions.all()
    if positions:
        for pos in positions:
            print(f"  {pos.id} {pos.symbol}: {pos.side.value} {pos.volume} @ {pos.entry_price:.5f} "
                  f"(P&L {pos.profit:.2f})")
    else:
        print("  No open positions")

    print("\n" + "=" * 60)

    await assistant.stop()


async def run_test(config: ConfigManager):
    """Run one demo trade cycle against the configured host"""
    print("\n" + "=" * 60)
    print("RUNNING DEMO TRADE CYCLE")
    print("=" * 60)

    assistant = TradingAssistant(config=config, confirmer=AutoConfirm(True))
    if not await assistant.start():
        print("Connection failed")
        await assistant.stop()
        return

    symbol = assistant.chart.symbol
    # Wait for the first quote of the chart symbol
    for _ in range(50):
        if assistant.quotes.latest(symbol):
            break
        await asyncio.sleep(0.1)
    quote = assistant.quotes.latest(symbol)
    if quote is None:
        print(f"No quote received for {symbol}")
        await assistant.stop()
        return
    print(f"\n{symbol}: bid {quote.bid:.5f} ask {quote.ask:.5f} spread {quote.spread:.5f}")

    pip = 0.01 if "JPY" in symbol else 0.0001
    stop_loss = quote.ask - 20 * pip
    account = assistant.connection.account
    if account is None:
        volume = assistant.executor.default_volume
    else:
        volume = assistant.risk.suggest_volume(account.balance, quote.ask, stop_loss)

    print("\n--- Opening Position ---")
    result = await assistant.executor.execute(TradeSide.BUY, {
        "symbol": symbol,
        "volume": volume,
        "stop_loss": stop_loss,
        "take_profit": quote.ask + 40 * pip
    })
    print(f"Order: {'OK ' + result.order_id if result.success else 'FAILED: ' + result.error}")

    # Let the execution event reach the position registry
    await asyncio.sleep(0.2)

    if result.success and result.position_id in assistant.positions:
        print("\n--- Closing Position ---")
        closed = await assistant.executor.close_position(result.position_id)
        print(f"Close: {'OK' if closed.success else 'FAILED: ' + closed.error} "
              f"(P&L {closed.metadata.get('pnl', 0.0) or 0.0:.2f})")

    print("\n--- Final Status ---")
    performance = assistant.tracker.get_stats()
    print(f"Trades: {performance['total_trades']}  Win Rate: {performance['win_rate']:.1f}%")
    print(f"Open Positions: {assistant.positions.count}")

    print("\n" + "=" * 60)
    print("TEST COMPLETE")
    print("=" * 60)

    await assistant.stop()


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    config = load_config(args)

    # Setup logging
    log_config = config.logging
    setup_logging(
        level=args.log_level or log_config.level,
        log_file=log_config.file,
        max_size_mb=log_config.max_size_mb,
        backup_count=log_config.backup_count
    )
    logger = get_logger(__name__)

    try:
        if args.status:
            asyncio.run(show_status(config))
        elif args.test:
            asyncio.run(run_test(config))
        else:
            print("\n" + "=" * 60)
            print(f"STARTING TRADING ASSISTANT ({config.connection.transport.upper()})")
            print("=" * 60)
            print("\nPress Ctrl+C to stop\n")

            asyncio.run(TradingAssistant(config=config).run_assistant())

    except KeyboardInterrupt:
        print("\nShutdown requested...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
