"""Core package for the portfolio replay engine."""

__version__ = "0.1.0"

from .models import (
    AssetClass,
    CumulativePoint,
    MonthlySnapshot,
    OperationKind,
    PortfolioHistory,
    Position,
    RealizedEvent,
    TradeStats,
    Transaction,
)
from .services import build_portfolio_report, replay_ledger

__all__ = [
    "__version__",
    "AssetClass",
    "CumulativePoint",
    "MonthlySnapshot",
    "OperationKind",
    "PortfolioHistory",
    "Position",
    "RealizedEvent",
    "TradeStats",
    "Transaction",
    "build_portfolio_report",
    "replay_ledger",
]
