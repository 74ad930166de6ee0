"""Rebuild the monthly portfolio history from transaction exports."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any

from opentelemetry import trace

from portfolio_replay.config import EngineSettings, get_settings
from portfolio_replay.core.logging import setup_logging
from portfolio_replay.core.telemetry import setup_telemetry, shutdown_telemetry
from portfolio_replay.providers import CachingPriceOracle, InMemoryPriceOracle, PriceServiceClient
from portfolio_replay.services.report import build_portfolio_report

tracer = trace.get_tracer(__name__)


def _load_json(path: str) -> list[dict[str, Any]]:
    with Path(path).open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, list):
        raise SystemExit(f"{path} must contain a JSON list of transactions")
    return payload


def _load_prices(path: str) -> InMemoryPriceOracle:
    with Path(path).open("r", encoding="utf-8") as f:
        payload = json.load(f)
    prices = {
        symbol: {date.fromisoformat(day): value for day, value in series.items()}
        for symbol, series in payload.items()
    }
    return InMemoryPriceOracle(prices)


def _print_progress(done: int, total: int, month: str) -> None:
    print(f"[{done}/{total}] {month}")


async def _run(args: argparse.Namespace, settings: EngineSettings) -> None:
    portfolio = _load_json(args.portfolio)
    closed = _load_json(args.closed) if args.closed else []
    if args.prices:
        oracle = _load_prices(args.prices)
    else:
        oracle = CachingPriceOracle(PriceServiceClient(settings=settings))

    with tracer.start_as_current_span("portfolio_replay.rebuild_history") as span:
        span.set_attribute("portfolio_replay.records", len(portfolio) + len(closed))
        report = await build_portfolio_report(
            portfolio,
            closed,
            oracle,
            settings=settings,
            progress=_print_progress,
        )
        span.set_attribute("portfolio_replay.mode", report.mode.value)
    stats = report.stats
    print(f"Mode: {report.mode.value}")
    if report.fallback_reason:
        print(f"Fallback reason: {report.fallback_reason}")
    print(
        f"Trades: {stats.total_trades} (wins {stats.winning_trades}, losses {stats.losing_trades}, "
        f"win rate {stats.win_rate:.1f}%)"
    )
    print(f"Realized P&L: {stats.total_pnl:.2f}")
    print(f"Current P&L: {report.current_pnl:.2f} over {report.total_invested:.2f} invested")
    quality = report.data_quality
    print(f"Records: {quality.records_seen} seen, {quality.dropped_total} dropped")
    for reason, count in sorted(quality.dropped.items()):
        print(f"  {reason}: {count}")
    if quality.closes_without_position:
        print(f"Closes without position: {len(quality.closes_without_position)}")
    for month, symbols in quality.excluded_by_month.items():
        print(f"  {month}: no price for {', '.join(symbols)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild monthly mark-to-market history")
    parser.add_argument("--portfolio", required=True, help="JSON export of portfolio transactions")
    parser.add_argument("--closed", help="JSON export of closed transactions")
    parser.add_argument("--prices", help="JSON {symbol: {YYYY-MM-DD: close}} used instead of the price service")
    parser.add_argument("--account", help="Target account id")
    parser.add_argument("--as-of", type=date.fromisoformat, help="Last day of the window (YYYY-MM-DD)")
    parser.add_argument("--concurrency", type=int, help="Months replayed in parallel")
    args = parser.parse_args()

    overrides: dict[str, Any] = {}
    if args.account:
        overrides["target_account_id"] = args.account
    if args.as_of:
        overrides["as_of_date"] = args.as_of
    if args.concurrency:
        overrides["history_max_concurrency"] = args.concurrency
    settings = get_settings(**overrides)

    setup_logging(settings.log_level)
    setup_telemetry(settings)
    try:
        asyncio.run(_run(args, settings))
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    main()
