"""Average-cost position ledger.

One algorithm serves both the full-history statistics path and every
month-end replay: :func:`replay_ledger` builds a fresh :class:`PositionLedger`
per call, so no position state outlives a replay.

Per transaction, against the instrument's signed share count:

* BUY on flat/long adds to the long at a weighted average cost.
* BUY on short covers up to the short size and realizes
  ``(avg_cost - price) * covered``; any excess opens a long at ``price``.
* SELL on long closes up to the long size and realizes
  ``(price - avg_cost) * closed``; any excess opens a short at ``price``.
* SELL on flat/short adds to the short at a weighted average cost.
* CLOSE flattens whatever is open. With nothing open it is a zero P&L no-op.

Commission is subtracted from every contribution. Positions whose absolute
size falls below ``epsilon`` are removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from portfolio_replay.config.settings import DEFAULT_POSITION_EPSILON
from portfolio_replay.models import (
    OperationKind,
    Position,
    RealizedEvent,
    Transaction,
    TransactionOutcome,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    positions: Dict[str, Position]
    outcomes: List[TransactionOutcome] = field(default_factory=list)
    realized_events: List[RealizedEvent] = field(default_factory=list)
    closes_without_position: List[str] = field(default_factory=list)

    def open_positions(self) -> List[Position]:
        return sorted(self.positions.values(), key=lambda p: p.symbol)


class PositionLedger:
    """Mutable per-instrument positions owned by a single replay pass."""

    def __init__(self, epsilon: float = DEFAULT_POSITION_EPSILON):
        if epsilon <= 0:
            raise ValueError("epsilon must be > 0")
        self.epsilon = epsilon
        self._positions: Dict[str, Position] = {}
        self.closes_without_position: List[str] = []

    @property
    def positions(self) -> Dict[str, Position]:
        return {symbol: pos.copy() for symbol, pos in self._positions.items()}

    def position(self, symbol: str) -> Optional[Position]:
        pos = self._positions.get(symbol)
        return pos.copy() if pos else None

    def apply(self, tx: Transaction) -> TransactionOutcome:
        if tx.kind is OperationKind.BUY:
            pnl, closed = self._buy(tx)
        elif tx.kind is OperationKind.SELL:
            pnl, closed = self._sell(tx)
        else:
            pnl, closed = self._close(tx)

        realized = None
        if closed > 0:
            realized = RealizedEvent(
                symbol=tx.symbol,
                pnl=pnl,
                quantity_closed=closed,
                transaction=tx,
            )
        current = self._positions.get(tx.symbol)
        return TransactionOutcome(
            transaction=tx,
            pnl=pnl,
            shares_after=current.shares if current else 0.0,
            realized=realized,
        )

    # Helpers

    def _settle(self, pos: Position) -> None:
        if abs(pos.shares) < self.epsilon:
            del self._positions[pos.symbol]

    def _open(self, tx: Transaction, shares: float) -> None:
        if abs(shares) < self.epsilon:
            return
        self._positions[tx.symbol] = Position(
            symbol=tx.symbol,
            shares=shares,
            avg_cost=tx.price,
            asset_class=tx.asset_class,
        )

    def _buy(self, tx: Transaction) -> tuple[float, float]:
        qty = abs(tx.quantity)
        pos = self._positions.get(tx.symbol)
        if pos is None:
            self._open(tx, qty)
            return 0.0 - tx.commission, 0.0
        pos.asset_class = tx.asset_class
        if pos.shares >= 0:
            total_cost = pos.shares * pos.avg_cost + qty * tx.price
            pos.shares += qty
            pos.avg_cost = total_cost / pos.shares
            return 0.0 - tx.commission, 0.0

        # cover
        short_size = -pos.shares
        covered = min(qty, short_size)
        pnl = (pos.avg_cost - tx.price) * covered - tx.commission
        residual = qty - covered
        if residual >= self.epsilon:
            pos.shares = residual
            pos.avg_cost = tx.price
        else:
            pos.shares += qty
            self._settle(pos)
        return pnl, covered

    def _sell(self, tx: Transaction) -> tuple[float, float]:
        qty = abs(tx.quantity)
        pos = self._positions.get(tx.symbol)
        if pos is None:
            self._open(tx, -qty)
            return 0.0 - tx.commission, 0.0
        pos.asset_class = tx.asset_class
        if pos.shares <= 0:
            short_size = -pos.shares
            total_cost = short_size * pos.avg_cost + qty * tx.price
            pos.shares -= qty
            pos.avg_cost = total_cost / (short_size + qty)
            return 0.0 - tx.commission, 0.0

        long_size = pos.shares
        closed = min(qty, long_size)
        pnl = (tx.price - pos.avg_cost) * closed - tx.commission
        residual = qty - closed
        if residual >= self.epsilon:
            pos.shares = -residual
            pos.avg_cost = tx.price
        else:
            pos.shares -= qty
            self._settle(pos)
        return pnl, closed

    def _close(self, tx: Transaction) -> tuple[float, float]:
        pos = self._positions.get(tx.symbol)
        if pos is None:
            self.closes_without_position.append(tx.id)
            logger.debug(
                "Close %s for %s found no open position; treating it as a no-op", tx.id, tx.symbol
            )
            return 0.0, 0.0
        size = abs(pos.shares)
        if abs(abs(tx.quantity) - size) >= self.epsilon:
            logger.debug(
                "Close %s for %s quantity %s differs from open size %s; closing all",
                tx.id,
                tx.symbol,
                abs(tx.quantity),
                size,
            )
        if pos.shares > 0:
            pnl = (tx.price - pos.avg_cost) * size
        else:
            pnl = (pos.avg_cost - tx.price) * size
        del self._positions[tx.symbol]
        return pnl - tx.commission, size


def replay_ledger(
    transactions: Iterable[Transaction],
    *,
    until: datetime | None = None,
    epsilon: float = DEFAULT_POSITION_EPSILON,
) -> LedgerResult:
    """Replay transactions (optionally only those at or before ``until``) from empty."""

    ledger = PositionLedger(epsilon=epsilon)
    selected = [tx for tx in transactions if until is None or tx.timestamp <= until]
    selected.sort(key=lambda tx: tx.timestamp)
    outcomes: List[TransactionOutcome] = []
    events: List[RealizedEvent] = []
    for tx in selected:
        outcome = ledger.apply(tx)
        outcomes.append(outcome)
        if outcome.realized is not None:
            events.append(outcome.realized)
    return LedgerResult(
        positions=ledger.positions,
        outcomes=outcomes,
        realized_events=events,
        closes_without_position=list(ledger.closes_without_position),
    )


__all__ = ["LedgerResult", "PositionLedger", "replay_ledger"]
