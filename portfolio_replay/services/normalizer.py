"""Normalize raw transaction exports into canonical, time-ordered trades.

Two collections come in (open-portfolio transactions and closed
transactions) in the document-store export shape. Records for other accounts,
duplicates and rows that cannot be parsed are dropped and counted rather than
raised, so one bad row never sinks a batch.
"""

from __future__ import annotations

import csv
import io
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

from portfolio_replay.models import AssetClass, OperationKind, Transaction

logger = logging.getLogger(__name__)

OPERATION_TAGS: dict[str, OperationKind] = {
    "BUY": OperationKind.BUY,
    "COMPRA": OperationKind.BUY,
    "SELL": OperationKind.SELL,
    "VENTA": OperationKind.SELL,
    "CLOSE": OperationKind.CLOSE,
    "CIERRE": OperationKind.CLOSE,
}

ASSET_CLASS_TAGS: dict[str, AssetClass] = {
    "EQUITY": AssetClass.EQUITY,
    "STOCK": AssetClass.EQUITY,
    "ACCION": AssetClass.EQUITY,
    "CRYPTO": AssetClass.CRYPTO,
    "CRYPTOCURRENCY": AssetClass.CRYPTO,
    "ETF": AssetClass.ETF,
    "FUND": AssetClass.ETF,
    "FX": AssetClass.FOREX,
    "FOREX": AssetClass.FOREX,
    "CURRENCY": AssetClass.FOREX,
}

DROP_FOREIGN_ACCOUNT = "foreign_account"
DROP_MALFORMED = "malformed"
DROP_DUPLICATE = "duplicate"
DROP_UNKNOWN_OPERATION = "unknown_operation"


class MalformedRecord(ValueError):
    """Raised internally when a raw record cannot be turned into a Transaction."""


@dataclass
class NormalizedBatch:
    transactions: list[Transaction]
    records_seen: int = 0
    dropped: Counter = field(default_factory=Counter)
    unknown_asset_classes: list[str] = field(default_factory=list)


def _field(record: Any, *names: str) -> Any:
    for name in names:
        if isinstance(record, Mapping):
            value = record.get(name)
        else:
            value = getattr(record, name, None)
        if value is not None:
            return value
    return None


def _reference_id(raw: Any) -> str | None:
    """Return the last path segment of a document reference."""

    if raw is None:
        return None
    if isinstance(raw, Mapping):
        path = raw.get("_path") or raw.get("path")
        if isinstance(path, Mapping):
            segments = path.get("segments") or []
            return str(segments[-1]) if segments else None
        if path is not None:
            return _reference_id(path)
        segments = raw.get("segments")
        if segments:
            return str(segments[-1])
        return None
    text = str(raw).strip().strip("/")
    if not text:
        return None
    return text.rsplit("/", 1)[-1]


def _from_epoch(epoch: float, tz: ZoneInfo) -> datetime:
    try:
        return datetime.fromtimestamp(epoch, tz).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedRecord(f"epoch out of range: {epoch}") from exc


def _parse_timestamp(raw: Any, tz: ZoneInfo) -> datetime:
    """Return a naive datetime expressed in ``tz``."""

    if raw is None:
        raise MalformedRecord("missing timestamp")
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw
        return raw.astimezone(tz).replace(tzinfo=None)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    if isinstance(raw, Mapping):
        seconds = raw.get("_seconds", raw.get("seconds"))
        nanos = raw.get("_nanoseconds", raw.get("nanoseconds", 0)) or 0
        if seconds is None:
            raise MalformedRecord(f"timestamp mapping without seconds: {raw!r}")
        epoch = _parse_float(seconds, "seconds") + _parse_float(nanos, "nanoseconds") / 1_000_000_000
        return _from_epoch(epoch, tz)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        epoch = _parse_float(raw, "timestamp")
        if epoch > 1e11:
            # milliseconds
            epoch /= 1000.0
        return _from_epoch(epoch, tz)
    text = str(raw).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError as exc:
            raise MalformedRecord(f"unparseable timestamp {text!r}") from exc
    if parsed.tzinfo is not None:
        return parsed.astimezone(tz).replace(tzinfo=None)
    return parsed


def _parse_float(raw: Any, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(f"{name} is not numeric: {raw!r}") from exc
    if not math.isfinite(value):
        raise MalformedRecord(f"{name} is not finite: {raw!r}")
    return value


def parse_operation(raw: Any) -> OperationKind | None:
    if raw is None:
        return None
    return OPERATION_TAGS.get(str(raw).strip().upper())


def parse_asset_class(raw: Any) -> tuple[AssetClass, str | None]:
    """Map an asset-class tag, defaulting unknown tags to equity.

    The second element is the unrecognised tag, if any.
    """

    if raw is None or not str(raw).strip():
        return AssetClass.EQUITY, None
    tag = str(raw).strip().upper().replace("-", "_").replace(" ", "_")
    if tag in ASSET_CLASS_TAGS:
        return ASSET_CLASS_TAGS[tag], None
    if tag in {"EXCHANGE_TRADED_FUND"}:
        return AssetClass.ETF, None
    if tag in {"FOREIGN_EXCHANGE"}:
        return AssetClass.FOREX, None
    return AssetClass.EQUITY, str(raw)


def _signed_quantity(kind: OperationKind, amount: float) -> float:
    if kind is OperationKind.BUY:
        return abs(amount)
    return -abs(amount)


def _to_transaction(
    record: Any,
    *,
    fallback_id: str,
    kind: OperationKind,
    account_id: str | None,
    tz: ZoneInfo,
    default_commission: float,
) -> tuple[Transaction, str | None]:
    ticker = _field(record, "ticker", "symbol")
    symbol = str(ticker).strip().upper() if ticker is not None else ""
    if not symbol:
        symbol = (_reference_id(_field(record, "id_asset")) or "").strip().upper()
    if not symbol:
        raise MalformedRecord("missing instrument")

    amount = _parse_float(_field(record, "amount", "quantity"), "amount")
    if amount == 0:
        raise MalformedRecord("zero quantity")
    price = _parse_float(_field(record, "price"), "price")
    if price < 0:
        raise MalformedRecord(f"negative price {price}")
    raw_commission = _field(record, "commission", "fee")
    commission = default_commission if raw_commission is None else abs(_parse_float(raw_commission, "commission"))
    timestamp = _parse_timestamp(_field(record, "created_time", "timestamp", "datetime"), tz)
    asset_class, unknown = parse_asset_class(_field(record, "asset_class", "asset_type"))

    record_id = _field(record, "id")
    tx = Transaction(
        id=str(record_id) if record_id is not None else fallback_id,
        timestamp=timestamp,
        symbol=symbol,
        kind=kind,
        quantity=_signed_quantity(kind, amount),
        price=price,
        commission=commission,
        asset_class=asset_class,
        account_id=account_id,
    )
    return tx, unknown


def normalize_records(
    transaction_portfolio: Iterable[Any],
    closed_transactions: Iterable[Any] = (),
    *,
    account_id: str | None = None,
    timezone: str = "UTC",
    default_commission: float = 0.0,
) -> NormalizedBatch:
    """Merge both raw collections into one chronologically sorted batch.

    Ties on timestamp keep input order: the open-portfolio collection first,
    then the closed collection, each in its own order.
    """

    tz = ZoneInfo(timezone)
    if account_id is None:
        logger.warning("No target account configured; keeping records from every account")

    batch = NormalizedBatch(transactions=[])
    seen_ids: set[str] = set()
    collections = (("portfolio", transaction_portfolio), ("closed", closed_transactions))
    for source_name, records in collections:
        for index, record in enumerate(records):
            batch.records_seen += 1
            record_account = _reference_id(_field(record, "id_portfolio", "account_id", "account"))
            if account_id is not None and record_account != account_id:
                batch.dropped[DROP_FOREIGN_ACCOUNT] += 1
                continue

            kind = parse_operation(_field(record, "operation", "side", "type"))
            if kind is None:
                batch.dropped[DROP_UNKNOWN_OPERATION] += 1
                logger.debug("Skipping %s record %s with unknown operation", source_name, index)
                continue

            try:
                tx, unknown_class = _to_transaction(
                    record,
                    fallback_id=f"{source_name}-{index}",
                    kind=kind,
                    account_id=record_account,
                    tz=tz,
                    default_commission=default_commission,
                )
            except MalformedRecord as exc:
                batch.dropped[DROP_MALFORMED] += 1
                logger.debug("Skipping malformed %s record %s: %s", source_name, index, exc)
                continue

            if tx.id in seen_ids:
                batch.dropped[DROP_DUPLICATE] += 1
                continue
            seen_ids.add(tx.id)

            if unknown_class is not None:
                logger.warning(
                    "Unknown asset class %r for %s; treating it as equity", unknown_class, tx.symbol
                )
                batch.unknown_asset_classes.append(unknown_class)
            batch.transactions.append(tx)

    batch.transactions.sort(key=lambda tx: tx.timestamp)
    if batch.dropped:
        logger.info(
            "Normalized %s of %s records (dropped: %s)",
            len(batch.transactions),
            batch.records_seen,
            dict(batch.dropped),
        )
    return batch


def normalize_transactions(
    transaction_portfolio: Iterable[Any],
    closed_transactions: Iterable[Any] = (),
    **kwargs: Any,
) -> list[Transaction]:
    """Return only the sorted transactions of :func:`normalize_records`."""

    return normalize_records(transaction_portfolio, closed_transactions, **kwargs).transactions


def parse_csv_trades(content: str, *, commission_default: float = 0.0) -> list[Transaction]:
    """Parse a ``date,time,symbol,quantity,price,side,commission`` trade log.

    The header line is skipped, as are blank, short or unparseable rows.
    """

    trades: list[Transaction] = []
    reader = csv.reader(io.StringIO(content.strip()))
    for line_no, parts in enumerate(reader):
        if line_no == 0 or len(parts) < 7:
            continue
        parts = [p.strip() for p in parts]
        kind = parse_operation(parts[5])
        if kind is None:
            continue
        try:
            timestamp = _parse_timestamp(f"{parts[0]} {parts[1]}", ZoneInfo("UTC"))
            quantity = _parse_float(parts[3], "quantity")
            price = _parse_float(parts[4], "price")
            commission = abs(_parse_float(parts[6], "commission")) if parts[6] else commission_default
        except MalformedRecord as exc:
            logger.debug("Skipping CSV line %s: %s", line_no, exc)
            continue
        if quantity == 0 or not parts[2]:
            continue
        trades.append(
            Transaction(
                id=f"{parts[0]}-{parts[1]}-{parts[2]}-{line_no}",
                timestamp=timestamp,
                symbol=parts[2].upper(),
                kind=kind,
                quantity=_signed_quantity(kind, quantity),
                price=price,
                commission=commission,
            )
        )
    trades.sort(key=lambda tx: tx.timestamp)
    return trades


__all__ = [
    "NormalizedBatch",
    "MalformedRecord",
    "normalize_records",
    "normalize_transactions",
    "parse_csv_trades",
    "parse_asset_class",
    "parse_operation",
    "DROP_FOREIGN_ACCOUNT",
    "DROP_MALFORMED",
    "DROP_DUPLICATE",
    "DROP_UNKNOWN_OPERATION",
]
