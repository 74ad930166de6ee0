"""End-to-end portfolio report: normalize, replay, value, summarize.

The caller always gets a consistent report. When the month-end valuation
cannot finish (gateway down, timeouts) the report falls back to a curve built
from realized P&L only, and nothing from the failed valuation leaks into it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from portfolio_replay.config import EngineSettings, get_settings
from portfolio_replay.models import (
    CumulativePoint,
    DataQualityReport,
    MonthlyPerformance,
    PortfolioHistory,
    Position,
    RealizedEvent,
    TradeStats,
    Transaction,
    TransactionOutcome,
)
from portfolio_replay.providers.price_oracle import PriceOracleGateway
from portfolio_replay.services.history import (
    MonthlyHistoryReconstructor,
    ProgressCallback,
    ReconstructionError,
)
from portfolio_replay.services.ledger import replay_ledger
from portfolio_replay.services.normalizer import NormalizedBatch, normalize_records
from portfolio_replay.services.series import (
    mark_to_market_series,
    realized_cumulative_series,
    to_percentage_series,
)
from portfolio_replay.services.stats import compute_trade_stats, monthly_performance, total_invested

logger = logging.getLogger(__name__)


class ReportMode(str, Enum):
    MARK_TO_MARKET = "mark_to_market"
    REALIZED_ONLY = "realized_only"


@dataclass(frozen=True)
class PortfolioReport:
    account_id: Optional[str]
    mode: ReportMode
    transactions: Tuple[Transaction, ...]
    outcomes: Tuple[TransactionOutcome, ...]
    open_positions: Tuple[Position, ...]
    realized_events: Tuple[RealizedEvent, ...]
    stats: TradeStats
    monthly: Tuple[MonthlyPerformance, ...]
    cumulative: Tuple[CumulativePoint, ...]
    total_invested: float
    data_quality: DataQualityReport
    history: Optional[PortfolioHistory] = None
    fallback_reason: Optional[str] = None

    @property
    def current_pnl(self) -> float:
        return self.cumulative[-1].value if self.cumulative else 0.0

    def cumulative_percentage(self) -> List[CumulativePoint]:
        return to_percentage_series(self.cumulative, self.total_invested)


def _data_quality(
    batch: NormalizedBatch,
    closes_without_position: List[str],
    history: Optional[PortfolioHistory],
) -> DataQualityReport:
    excluded = {}
    if history is not None:
        excluded = {
            snapshot.month: list(snapshot.excluded_instruments)
            for snapshot in history.snapshots
            if snapshot.excluded_instruments
        }
    return DataQualityReport(
        records_seen=batch.records_seen,
        dropped=dict(batch.dropped),
        unknown_asset_classes=list(batch.unknown_asset_classes),
        closes_without_position=list(closes_without_position),
        excluded_by_month=excluded,
    )


async def build_portfolio_report(
    transaction_portfolio: Iterable[Any],
    closed_transactions: Iterable[Any],
    oracle: Optional[PriceOracleGateway],
    *,
    settings: EngineSettings | None = None,
    progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> PortfolioReport:
    """Build the full report for the configured account.

    Without an ``oracle`` the report is realized-only from the start.
    """

    settings = settings or get_settings()
    batch = normalize_records(
        transaction_portfolio,
        closed_transactions,
        account_id=settings.target_account_id,
        timezone=settings.timezone,
        default_commission=settings.default_commission,
    )
    transactions = batch.transactions

    ledger = replay_ledger(transactions, epsilon=settings.position_epsilon)
    if ledger.closes_without_position:
        logger.warning(
            "%s close transactions had no open position: %s",
            len(ledger.closes_without_position),
            ", ".join(ledger.closes_without_position),
        )
    stats = compute_trade_stats(ledger.realized_events, noise_threshold=settings.pnl_noise_threshold)
    monthly = monthly_performance(ledger.realized_events, noise_threshold=settings.pnl_noise_threshold)

    history: Optional[PortfolioHistory] = None
    fallback_reason: Optional[str] = None
    if oracle is None:
        fallback_reason = "no price oracle configured"
    else:
        reconstructor = MonthlyHistoryReconstructor(
            oracle,
            as_of=settings.resolved_as_of(),
            epsilon=settings.position_epsilon,
            max_concurrency=settings.history_max_concurrency,
            price_timeout_seconds=settings.price_service_timeout_seconds,
            account_id=settings.target_account_id,
        )
        try:
            history = await reconstructor.reconstruct(
                transactions, progress=progress, cancel_event=cancel_event
            )
        except ReconstructionError as exc:
            logger.warning("Mark-to-market reconstruction failed, using realized P&L only: %s", exc)
            fallback_reason = str(exc)

    if history is not None:
        mode = ReportMode.MARK_TO_MARKET
        cumulative = mark_to_market_series(history)
    else:
        mode = ReportMode.REALIZED_ONLY
        cumulative = realized_cumulative_series(ledger.realized_events)

    report = PortfolioReport(
        account_id=settings.target_account_id,
        mode=mode,
        transactions=tuple(transactions),
        outcomes=tuple(ledger.outcomes),
        open_positions=tuple(ledger.open_positions()),
        realized_events=tuple(ledger.realized_events),
        stats=stats,
        monthly=tuple(monthly),
        cumulative=tuple(cumulative),
        total_invested=total_invested(transactions),
        data_quality=_data_quality(batch, ledger.closes_without_position, history),
        history=history,
        fallback_reason=fallback_reason,
    )
    logger.info(
        "Report ready: mode=%s trades=%s realized=%.2f current=%.2f",
        report.mode.value,
        stats.total_trades,
        stats.total_pnl,
        report.current_pnl,
    )
    return report


__all__ = ["PortfolioReport", "ReportMode", "build_portfolio_report"]
