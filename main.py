"""Kandle - Multi-timeframe Candle Engine Entry Point."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from kandle.app import Engine
from kandle.config import Settings, load_settings
from kandle.errors import KandleError, TickValidationError
from kandle.monitor.logger import setup_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Kandle - multi-timeframe candle aggregation engine"
    )

    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Database path (default: from config)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: from config)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser(
        "ingest", help="Replay JSON-lines ticks from a file ('-' for stdin)"
    )
    ingest.add_argument("file", type=str)

    subparsers.add_parser("sweep", help="Run one retention sweep and exit")
    subparsers.add_parser("serve", help="Run the periodic retention sweeper until stopped")
    subparsers.add_parser("timeframes", help="List active timeframes")

    stats = subparsers.add_parser("stats", help="Show tick and candle counts for a symbol")
    stats.add_argument("symbol")

    latest = subparsers.add_parser("latest", help="Show the latest candle per timeframe")
    latest.add_argument("symbol")

    history = subparsers.add_parser("history", help="Show recent candles")
    history.add_argument("symbol")
    history.add_argument("timeframe")
    history.add_argument("--limit", type=int, default=20)

    return parser.parse_args(argv)


def apply_args_to_settings(args: argparse.Namespace, settings: Settings) -> Settings:
    """Apply command line arguments to settings."""
    if args.db:
        settings.database.path = Path(args.db)

    if args.log_level:
        settings.logging.level = args.log_level

    return settings


def _format_candle(candle) -> str:
    if candle is None:
        return "-"
    return (
        f"{candle.open_time.isoformat()} O={candle.open} H={candle.high} "
        f"L={candle.low} C={candle.close} V={candle.volume}"
    )


async def _ingest_file(engine: Engine, path: str) -> int:
    stream = sys.stdin if path == "-" else open(path, encoding="utf-8")
    ingested = rejected = partial = 0
    try:
        for line_no, line in enumerate(stream, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                result = await engine.ingest(json.loads(line))
            except (json.JSONDecodeError, TickValidationError) as e:
                rejected += 1
                print(f"line {line_no}: rejected: {e}", file=sys.stderr)
                continue
            ingested += 1
            if result.is_partial:
                partial += 1
    finally:
        if stream is not sys.stdin:
            stream.close()

    print(f"Ingested {ingested} ticks ({partial} partial, {rejected} rejected)")
    return 0 if rejected == 0 else 2


async def async_main(args: argparse.Namespace, settings: Settings) -> int:
    """Async main entry point."""
    engine = Engine(settings)

    if args.command == "serve":
        await engine.run()
        return 0

    await engine.start(run_sweeper=False)
    try:
        if args.command == "ingest":
            return await _ingest_file(engine, args.file)

        if args.command == "sweep":
            result = await engine.sweeper.sweep()
            print(f"Deleted {result.ticks_deleted} ticks, candles: {result.candles_deleted}")
            return 0 if result.ok else 1

        if args.command == "timeframes":
            for timeframe in engine.query.available_timeframes():
                print(f"  - {timeframe.name} ({timeframe.interval_minutes:g} min)")
            return 0

        if args.command == "stats":
            stats = await engine.query.instrument_stats(args.symbol)
            print(f"{stats.symbol}: {stats.total_ticks} ticks, last update {stats.last_update}")
            for name, count in stats.total_candles_by_timeframe.items():
                print(f"  {name}: {count} candles")
            return 0

        if args.command == "latest":
            latest = await engine.query.latest_per_timeframe(args.symbol)
            for name, candle in latest.items():
                print(f"  {name}: {_format_candle(candle)}")
            return 0

        if args.command == "history":
            candles = await engine.query.historical_range(
                args.symbol, args.timeframe, limit=args.limit
            )
            for candle in candles:
                print(_format_candle(candle))
            return 0

        return 1
    finally:
        await engine.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    settings = load_settings()
    settings = apply_args_to_settings(args, settings)

    setup_logging(
        settings.logging.log_dir,
        settings.logging.level,
        settings.logging.json_format,
    )

    try:
        return asyncio.run(async_main(args, settings))
    except KeyboardInterrupt:
        return 0
    except KandleError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
