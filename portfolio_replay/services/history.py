"""Month-by-month mark-to-market reconstruction.

Every month is an independent full replay of the transactions dated up to
that month's end, valued at the month-end close. Months share nothing but the
read-only transaction list and the price gateway, which makes them safe to run
through a bounded worker pool.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from opentelemetry import trace

from portfolio_replay.config.settings import DEFAULT_POSITION_EPSILON
from portfolio_replay.models import (
    AssetValuation,
    MonthlySnapshot,
    PortfolioHistory,
    Position,
    Transaction,
)
from portfolio_replay.providers.price_oracle import (
    PriceOracleError,
    PriceOracleGateway,
    PriceQuote,
    PriceRequest,
)
from portfolio_replay.services.ledger import replay_ledger

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ProgressCallback = Callable[[int, int, str], None]


class ReconstructionError(RuntimeError):
    """Raised when the monthly history cannot be completed."""


def month_periods(start: date, end: date) -> List[pd.Period]:
    """Calendar months from the one containing ``start`` through ``end``'s, inclusive."""

    if start > end:
        return []
    return list(pd.period_range(start=pd.Timestamp(start), end=pd.Timestamp(end), freq="M"))


def month_end(period: pd.Period) -> date:
    return period.end_time.date()


def value_positions(
    positions: Sequence[Position],
    quotes: Dict[str, PriceQuote],
) -> Tuple[List[AssetValuation], List[str]]:
    """Mark positions to their quotes; instruments without a usable price are excluded."""

    assets: List[AssetValuation] = []
    excluded: List[str] = []
    for pos in positions:
        quote = quotes.get(pos.symbol)
        if quote is None or not quote.found or quote.price is None or not math.isfinite(quote.price):
            excluded.append(pos.symbol)
            continue
        close = quote.price
        # signed shares make this (avg - close) * |shares| for shorts
        unrealized = (close - pos.avg_cost) * pos.shares
        assets.append(
            AssetValuation(
                symbol=pos.symbol,
                asset_class=pos.asset_class,
                shares=pos.shares,
                avg_cost=pos.avg_cost,
                close_price=close,
                unrealized_pnl=unrealized,
                market_value=pos.shares * close,
            )
        )
    return assets, excluded


class MonthlyHistoryReconstructor:
    """Build one :class:`MonthlySnapshot` per month up to ``as_of``."""

    def __init__(
        self,
        oracle: PriceOracleGateway,
        *,
        as_of: date,
        epsilon: float = DEFAULT_POSITION_EPSILON,
        max_concurrency: int = 1,
        price_timeout_seconds: float | None = None,
        account_id: str | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.oracle = oracle
        self.as_of = as_of
        self.epsilon = epsilon
        self.max_concurrency = max_concurrency
        self.price_timeout_seconds = price_timeout_seconds
        self.account_id = account_id

    async def _resolve(self, requests: List[PriceRequest], label: str) -> Dict[str, PriceQuote]:
        try:
            call = self.oracle.resolve_closing_prices(requests)
            if self.price_timeout_seconds is not None:
                return await asyncio.wait_for(call, timeout=self.price_timeout_seconds)
            return await call
        except (PriceOracleError, asyncio.TimeoutError, OSError) as exc:
            raise ReconstructionError(f"Price lookup failed for {label}: {exc}") from exc

    async def snapshot_month(
        self, transactions: Sequence[Transaction], period: pd.Period
    ) -> MonthlySnapshot:
        label = str(period)
        last_day = month_end(period)
        price_date = min(last_day, self.as_of)
        cutoff = datetime.combine(price_date, time.max)

        with tracer.start_as_current_span("portfolio_replay.month") as span:
            span.set_attribute("portfolio_replay.month", label)
            ledger = replay_ledger(transactions, until=cutoff, epsilon=self.epsilon)
            open_positions = [
                pos for pos in ledger.open_positions() if abs(pos.shares) >= self.epsilon
            ]
            span.set_attribute("portfolio_replay.open_positions", len(open_positions))

            quotes: Dict[str, PriceQuote] = {}
            if open_positions:
                requests = [
                    PriceRequest(instrument=pos.symbol, asset_class=pos.asset_class, as_of_date=price_date)
                    for pos in open_positions
                ]
                quotes = await self._resolve(requests, label)

        assets, excluded = value_positions(open_positions, quotes)
        if excluded:
            logger.warning("No %s close for %s; excluded from %s", price_date, ", ".join(excluded), label)
        return MonthlySnapshot(
            month=label,
            as_of=price_date,
            assets=tuple(assets),
            portfolio_value=sum((asset.market_value for asset in assets), 0.0),
            portfolio_pnl=sum((asset.unrealized_pnl for asset in assets), 0.0),
            excluded_instruments=tuple(excluded),
        )

    async def reconstruct(
        self,
        transactions: Sequence[Transaction],
        *,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PortfolioHistory:
        """Replay every month from the first transaction through ``as_of``.

        Cancellation is honoured between months; a cancelled run returns the
        contiguous prefix of months that finished.
        """

        if not transactions:
            return PortfolioHistory(account_id=self.account_id, snapshots=(), months_total=0)

        first = min(tx.timestamp for tx in transactions).date()
        periods = month_periods(first, self.as_of)
        total = len(periods)
        logger.info(
            "Reconstructing %s months (%s to %s) from %s transactions",
            total,
            periods[0] if periods else "-",
            periods[-1] if periods else "-",
            len(transactions),
        )

        with tracer.start_as_current_span("portfolio_replay.reconstruct") as span:
            span.set_attribute("portfolio_replay.months_total", total)
            if self.max_concurrency == 1:
                snapshots = await self._run_sequential(transactions, periods, progress, cancel_event)
            else:
                snapshots = await self._run_pooled(transactions, periods, progress, cancel_event)

        cancelled = len(snapshots) < total
        if cancelled:
            logger.info("Reconstruction cancelled after %s of %s months", len(snapshots), total)
        return PortfolioHistory(
            account_id=self.account_id,
            snapshots=tuple(snapshots),
            months_total=total,
            cancelled=cancelled,
        )

    async def _run_sequential(
        self,
        transactions: Sequence[Transaction],
        periods: List[pd.Period],
        progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> List[MonthlySnapshot]:
        snapshots: List[MonthlySnapshot] = []
        for index, period in enumerate(periods):
            if cancel_event is not None and cancel_event.is_set():
                break
            snapshots.append(await self.snapshot_month(transactions, period))
            if progress is not None:
                progress(index + 1, len(periods), str(period))
        return snapshots

    async def _run_pooled(
        self,
        transactions: Sequence[Transaction],
        periods: List[pd.Period],
        progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> List[MonthlySnapshot]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results: Dict[int, MonthlySnapshot] = {}

        async def run(index: int, period: pd.Period) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return
                snapshot = await self.snapshot_month(transactions, period)
            results[index] = snapshot
            if progress is not None:
                progress(len(results), len(periods), str(period))

        tasks = [asyncio.create_task(run(index, period)) for index, period in enumerate(periods)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        # restore month order, keeping only the unbroken prefix
        snapshots: List[MonthlySnapshot] = []
        for index in range(len(periods)):
            if index not in results:
                break
            snapshots.append(results[index])
        return snapshots


__all__ = [
    "MonthlyHistoryReconstructor",
    "ProgressCallback",
    "ReconstructionError",
    "month_end",
    "month_periods",
    "value_positions",
]
