"""Realized trade statistics and monthly realized P&L buckets."""

from __future__ import annotations

from typing import Iterable, List, Sequence

import pandas as pd

from portfolio_replay.config.settings import DEFAULT_PNL_NOISE_THRESHOLD
from portfolio_replay.models import (
    MonthlyPerformance,
    OperationKind,
    RealizedEvent,
    TradeStats,
    Transaction,
)


def significant_events(
    events: Iterable[RealizedEvent],
    noise_threshold: float = DEFAULT_PNL_NOISE_THRESHOLD,
) -> List[RealizedEvent]:
    """Drop events whose P&L is commission-sized noise."""

    return [event for event in events if abs(event.pnl) > noise_threshold]


def compute_trade_stats(
    events: Iterable[RealizedEvent],
    *,
    noise_threshold: float = DEFAULT_PNL_NOISE_THRESHOLD,
) -> TradeStats:
    """Aggregate realized events into win/loss statistics.

    ``win_rate`` is a percentage. An empty input yields all-zero stats.
    """

    pnls = [event.pnl for event in significant_events(events, noise_threshold)]
    if not pnls:
        return TradeStats()

    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]
    total = sum(pnls)
    return TradeStats(
        total_pnl=total,
        total_trades=len(pnls),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(pnls) * 100,
        average_win=sum(wins) / len(wins) if wins else 0.0,
        average_loss=sum(losses) / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        average_trade_pnl=total / len(pnls),
    )


def monthly_performance(
    events: Iterable[RealizedEvent],
    *,
    noise_threshold: float = DEFAULT_PNL_NOISE_THRESHOLD,
) -> List[MonthlyPerformance]:
    """Bucket realized P&L by the calendar month of the closing transaction."""

    rows = [
        {"month": event.transaction.month_key, "pnl": event.pnl}
        for event in significant_events(events, noise_threshold)
    ]
    if not rows:
        return []
    grouped = (
        pd.DataFrame(rows)
        .groupby("month", sort=True)["pnl"]
        .agg(["size", "sum"])
    )
    return [
        MonthlyPerformance(month=str(month), trades=int(row["size"]), pnl=float(row["sum"]))
        for month, row in grouped.iterrows()
    ]


def total_invested(transactions: Sequence[Transaction]) -> float:
    """Capital deployed: price times quantity summed over every buy."""

    return sum(
        (tx.price * abs(tx.quantity) for tx in transactions if tx.kind is OperationKind.BUY),
        0.0,
    )


__all__ = [
    "compute_trade_stats",
    "monthly_performance",
    "significant_events",
    "total_invested",
]
