"""Position accounting, month-end reconstruction and statistics."""

from .history import MonthlyHistoryReconstructor, ReconstructionError
from .ledger import LedgerResult, PositionLedger, replay_ledger
from .normalizer import NormalizedBatch, normalize_records, normalize_transactions, parse_csv_trades
from .report import PortfolioReport, ReportMode, build_portfolio_report
from .series import mark_to_market_series, realized_cumulative_series, to_percentage_series
from .stats import compute_trade_stats, monthly_performance, total_invested

__all__ = [
    "LedgerResult",
    "MonthlyHistoryReconstructor",
    "NormalizedBatch",
    "PortfolioReport",
    "PositionLedger",
    "ReconstructionError",
    "ReportMode",
    "build_portfolio_report",
    "compute_trade_stats",
    "mark_to_market_series",
    "monthly_performance",
    "normalize_records",
    "normalize_transactions",
    "parse_csv_trades",
    "realized_cumulative_series",
    "replay_ledger",
    "to_percentage_series",
    "total_invested",
]
