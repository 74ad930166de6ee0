"""Equity/P&L curves for display."""

from __future__ import annotations

from itertools import accumulate
from typing import Iterable, List

from portfolio_replay.models import CumulativePoint, PortfolioHistory, RealizedEvent


def mark_to_market_series(history: PortfolioHistory) -> List[CumulativePoint]:
    """One point per month: that month's aggregate unrealized P&L.

    Each snapshot is already a full-history replay, so values are not summed
    across months.
    """

    ordered = sorted(history.snapshots, key=lambda snapshot: snapshot.month)
    return [CumulativePoint(date=snapshot.as_of, value=snapshot.portfolio_pnl) for snapshot in ordered]


def realized_cumulative_series(events: Iterable[RealizedEvent]) -> List[CumulativePoint]:
    """Running sum of realized P&L in transaction-time order."""

    ordered = sorted(events, key=lambda event: event.timestamp)
    running = accumulate(event.pnl for event in ordered)
    return [
        CumulativePoint(date=event.timestamp.date(), value=value)
        for event, value in zip(ordered, running)
    ]


def to_percentage_series(points: Iterable[CumulativePoint], invested: float) -> List[CumulativePoint]:
    """Express curve values as a percentage of capital invested."""

    if invested <= 0:
        return [CumulativePoint(date=point.date, value=0.0) for point in points]
    return [CumulativePoint(date=point.date, value=point.value / invested * 100) for point in points]


__all__ = [
    "mark_to_market_series",
    "realized_cumulative_series",
    "to_percentage_series",
]
