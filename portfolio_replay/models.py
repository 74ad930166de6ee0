"""Domain models used by the portfolio replay engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class OperationKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"


class AssetClass(str, Enum):
    EQUITY = "equity"
    CRYPTO = "crypto"
    ETF = "etf"
    FOREX = "forex"


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Transaction:
    """A canonical, account-scoped trade.

    ``quantity`` is signed: positive for buys, negative for sells and closes.
    """

    id: str
    timestamp: datetime
    symbol: str
    kind: OperationKind
    quantity: float
    price: float
    commission: float = 0.0
    asset_class: AssetClass = AssetClass.EQUITY
    account_id: Optional[str] = None

    @property
    def month_key(self) -> str:
        return f"{self.timestamp.year:04d}-{self.timestamp.month:02d}"


@dataclass
class Position:
    """Running position for one instrument during a ledger replay."""

    symbol: str
    shares: float
    avg_cost: float
    asset_class: AssetClass = AssetClass.EQUITY

    @property
    def side(self) -> Side:
        return Side.LONG if self.shares > 0 else Side.SHORT

    def copy(self) -> "Position":
        return Position(
            symbol=self.symbol,
            shares=self.shares,
            avg_cost=self.avg_cost,
            asset_class=self.asset_class,
        )


@dataclass(frozen=True)
class RealizedEvent:
    """P&L locked in by a transaction that closed some or all of a position."""

    symbol: str
    pnl: float
    quantity_closed: float
    transaction: Transaction

    @property
    def timestamp(self) -> datetime:
        return self.transaction.timestamp


@dataclass(frozen=True)
class TransactionOutcome:
    """Effect of a single transaction on the ledger."""

    transaction: Transaction
    pnl: float
    shares_after: float
    realized: Optional[RealizedEvent] = None


@dataclass(frozen=True)
class AssetValuation:
    """Mark-to-market line for one open instrument at a month end."""

    symbol: str
    asset_class: AssetClass
    shares: float
    avg_cost: float
    close_price: float
    unrealized_pnl: float
    market_value: float


@dataclass(frozen=True)
class MonthlySnapshot:
    month: str
    as_of: date
    assets: Tuple[AssetValuation, ...]
    portfolio_value: float
    portfolio_pnl: float
    excluded_instruments: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PortfolioHistory:
    account_id: Optional[str]
    snapshots: Tuple[MonthlySnapshot, ...]
    months_total: int
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.cancelled and len(self.snapshots) == self.months_total


@dataclass(frozen=True)
class TradeStats:
    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_trade_pnl: float = 0.0


@dataclass(frozen=True)
class MonthlyPerformance:
    month: str
    trades: int
    pnl: float


@dataclass(frozen=True)
class CumulativePoint:
    date: date
    value: float


@dataclass
class DataQualityReport:
    """Counts of records and instruments the engine skipped on purpose."""

    records_seen: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)
    unknown_asset_classes: List[str] = field(default_factory=list)
    closes_without_position: List[str] = field(default_factory=list)
    excluded_by_month: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())
