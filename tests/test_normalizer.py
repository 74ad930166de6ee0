from __future__ import annotations

from datetime import datetime, timezone

import pytest

from portfolio_replay.models import AssetClass, OperationKind
from portfolio_replay.services.normalizer import (
    DROP_DUPLICATE,
    DROP_FOREIGN_ACCOUNT,
    DROP_MALFORMED,
    DROP_UNKNOWN_OPERATION,
    normalize_records,
    normalize_transactions,
    parse_asset_class,
    parse_csv_trades,
    parse_operation,
)


def record(record_id: str, operation: str, amount, price, created, **extra):
    payload = {
        "id": record_id,
        "id_portfolio": "portfolios/acct-1",
        "ticker": "aapl",
        "operation": operation,
        "amount": amount,
        "price": price,
        "created_time": created,
    }
    payload.update(extra)
    return payload


def test_operation_tags_map_in_either_language():
    assert parse_operation("Compra") is OperationKind.BUY
    assert parse_operation("sell") is OperationKind.SELL
    assert parse_operation("CIERRE") is OperationKind.CLOSE
    assert parse_operation("transfer") is None
    assert parse_operation(None) is None


def test_unknown_asset_class_defaults_to_equity():
    assert parse_asset_class("Crypto") == (AssetClass.CRYPTO, None)
    assert parse_asset_class("exchange traded fund") == (AssetClass.ETF, None)
    assert parse_asset_class(None) == (AssetClass.EQUITY, None)
    assert parse_asset_class("bond") == (AssetClass.EQUITY, "bond")


def test_quantities_are_signed_by_operation():
    batch = normalize_records(
        [
            record("b", "COMPRA", -10, 100, "2024-01-02T10:00:00Z"),
            record("s", "VENTA", 4, 110, "2024-01-03T10:00:00Z"),
        ],
        [record("c", "CIERRE", 6, 120, "2024-01-04T10:00:00Z")],
        account_id="acct-1",
    )

    assert [tx.quantity for tx in batch.transactions] == [10, -4, -6]
    assert [tx.kind for tx in batch.transactions] == [
        OperationKind.BUY,
        OperationKind.SELL,
        OperationKind.CLOSE,
    ]
    assert all(tx.symbol == "AAPL" for tx in batch.transactions)


def test_records_for_other_accounts_are_dropped():
    other = record("x", "BUY", 1, 1, "2024-01-02T10:00:00Z", id_portfolio="portfolios/acct-2")

    batch = normalize_records(
        [record("a", "BUY", 1, 1, "2024-01-02T10:00:00Z"), other],
        account_id="acct-1",
    )

    assert [tx.id for tx in batch.transactions] == ["a"]
    assert batch.dropped[DROP_FOREIGN_ACCOUNT] == 1
    assert batch.records_seen == 2


def test_document_store_timestamps_are_converted():
    seconds = int(datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc).timestamp())

    batch = normalize_records(
        [record("a", "BUY", 1, 1, {"_seconds": seconds, "_nanoseconds": 0})],
        account_id="acct-1",
    )

    assert batch.transactions[0].timestamp == datetime(2024, 3, 1, 15, 30)


def test_timestamps_are_expressed_in_configured_timezone():
    batch = normalize_records(
        [record("a", "BUY", 1, 1, "2024-02-01T02:00:00Z")],
        account_id="acct-1",
        timezone="America/New_York",
    )

    assert batch.transactions[0].timestamp == datetime(2024, 1, 31, 21, 0)
    assert batch.transactions[0].month_key == "2024-01"


def test_duplicates_keep_first_occurrence():
    batch = normalize_records(
        [record("dup", "BUY", 1, 10, "2024-01-02T10:00:00Z")],
        [record("dup", "SELL", 1, 12, "2024-01-03T10:00:00Z")],
        account_id="acct-1",
    )

    assert len(batch.transactions) == 1
    assert batch.transactions[0].kind is OperationKind.BUY
    assert batch.dropped[DROP_DUPLICATE] == 1


def test_malformed_and_unknown_records_are_counted_not_raised():
    batch = normalize_records(
        [
            record("bad-price", "BUY", 1, "abc", "2024-01-02T10:00:00Z"),
            record("zero", "BUY", 0, 10, "2024-01-02T10:00:00Z"),
            record("no-time", "BUY", 1, 10, None),
            record("dividend", "DIVIDEND", 1, 10, "2024-01-02T10:00:00Z"),
            record("ok", "BUY", 1, 10, "2024-01-02T10:00:00Z"),
        ],
        account_id="acct-1",
    )

    assert [tx.id for tx in batch.transactions] == ["ok"]
    assert batch.dropped[DROP_MALFORMED] == 3
    assert batch.dropped[DROP_UNKNOWN_OPERATION] == 1


def test_equal_timestamps_keep_input_order():
    same = "2024-01-02T10:00:00Z"
    transactions = normalize_transactions(
        [
            record("late", "SELL", 1, 10, "2024-01-05T10:00:00Z"),
            record("first", "BUY", 1, 10, same),
        ],
        [record("second", "SELL", 1, 10, same)],
        account_id="acct-1",
    )

    assert [tx.id for tx in transactions] == ["first", "second", "late"]


def test_symbol_falls_back_to_asset_reference():
    raw = record("a", "BUY", 1, 10, "2024-01-02T10:00:00Z", asset_type="unknown-thing")
    del raw["ticker"]
    raw["id_asset"] = "assets/msft"

    batch = normalize_records([raw], account_id="acct-1")

    assert batch.transactions[0].symbol == "MSFT"
    assert batch.transactions[0].asset_class is AssetClass.EQUITY
    assert batch.unknown_asset_classes == ["unknown-thing"]


def test_missing_commission_uses_default():
    batch = normalize_records(
        [
            record("a", "BUY", 1, 10, "2024-01-02T10:00:00Z"),
            record("b", "SELL", 1, 10, "2024-01-03T10:00:00Z", commission=-2.5),
        ],
        account_id="acct-1",
        default_commission=1.0,
    )

    assert [tx.commission for tx in batch.transactions] == [1.0, 2.5]


def test_no_account_filter_keeps_every_account():
    batch = normalize_records(
        [
            record("a", "BUY", 1, 1, "2024-01-02T10:00:00Z"),
            record("b", "BUY", 1, 1, "2024-01-02T10:00:00Z", id_portfolio="portfolios/acct-2"),
        ]
    )

    assert [tx.account_id for tx in batch.transactions] == ["acct-1", "acct-2"]


def test_csv_trade_log_is_parsed_and_sorted():
    content = "\n".join(
        [
            "date,time,symbol,quantity,price,side,commission",
            "2024-01-03,10:00:00,msft,2,300,SELL,1",
            "2024-01-02,09:30:00,aapl,10,100,BUY,",
            "2024-01-04,09:30:00,aapl,x,100,BUY,1",
            "short,row",
        ]
    )

    trades = parse_csv_trades(content, commission_default=0.5)

    assert [trade.symbol for trade in trades] == ["AAPL", "MSFT"]
    assert trades[0].quantity == 10
    assert trades[0].commission == pytest.approx(0.5)
    assert trades[1].quantity == -2
    assert trades[1].id == "2024-01-03-10:00:00-msft-1"
