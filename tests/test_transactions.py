"""Tests for parsing and validating ledger records."""

from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from portsync.currency import Currency
from portsync.errors import InvalidTransactionError
from portsync.transactions import (
    AssetClass,
    CashAsset,
    CryptoAsset,
    DeleteSource,
    GoldAsset,
    Market,
    StockAsset,
    TransactionType,
    make_delete_transaction,
    transaction_from_dict,
    transactions_from_records,
)


def _record(**overrides):
    record = {
        "id": "tx-1",
        "type": "buy",
        "assetType": "stock",
        "ticker": "bbca",
        "market": "IDX",
        "amount": 1000,
        "price": 4500,
        "valueIDR": 4500000,
        "valueUSD": 290.32,
        "timestamp": "2024-01-15T10:30:00+07:00",
    }
    record.update(overrides)
    return record


def test_parse_stock_record():
    tx = transaction_from_dict(_record())
    assert tx.id == "tx-1"
    assert tx.transaction_type == TransactionType.BUY
    assert tx.asset == StockAsset("BBCA", Market.IDX)
    assert tx.key == "BBCA"
    assert tx.quantity == Decimal("1000")
    assert tx.value_idr == Decimal("4500000")
    assert tx.value_usd == Decimal("290.32")
    assert tx.native_currency == Currency.IDR
    assert tx.value_native == Decimal("4500000")
    assert tx.value_counter == Decimal("290.32")


def test_market_inferred_from_currency():
    """Older records without a market field are US stocks when priced in USD."""
    record = _record(ticker="AAPL", currency="USD")
    del record["market"]
    tx = transaction_from_dict(record)
    assert tx.asset.market == Market.US
    assert tx.native_currency == Currency.USD


def test_parse_crypto_with_exchange_and_aliases():
    tx = transaction_from_dict(_record(
        assetType="crypto", ticker=None, symbol="eth", exchange="Indodax",
        amount=None, quantity="1.5", type="SELL",
    ))
    assert tx.asset == CryptoAsset("ETH", exchange="Indodax")
    assert tx.key == "ETH|INDODAX"
    assert tx.transaction_type == TransactionType.SELL
    assert tx.quantity == Decimal("1.5")


def test_broker_becomes_part_of_key():
    tx = transaction_from_dict(_record(broker=" ajaib "))
    assert tx.key == "BBCA|AJAIB"


def test_cash_price_defaults_to_one():
    record = _record(assetType="cash", ticker="BCA", amount=2500000)
    del record["price"]
    tx = transaction_from_dict(record)
    assert isinstance(tx.asset, CashAsset)
    assert tx.price == Decimal("1")


def test_parse_gold_record():
    tx = transaction_from_dict(_record(assetType="gold", ticker="gold-antam", subtype="physical", brand="antam", amount=5))
    assert tx.asset == GoldAsset("GOLD-ANTAM", subtype="physical", brand="antam")
    assert tx.asset_class == AssetClass.GOLD


def test_manual_price_requires_flag():
    tx = transaction_from_dict(_record(useManualPrice=True, manualPrice=4800))
    assert tx.manual_price == Decimal("4800")

    tx = transaction_from_dict(_record(useManualPrice=False, manualPrice=4800))
    assert tx.manual_price is None


def test_history_delete_record():
    tx = transaction_from_dict(_record(type="delete", amount=0, price=0, source="history"))
    assert tx.is_history_delete
    assert not tx.is_portfolio_delete
    assert tx.source == DeleteSource.HISTORY


def test_naive_timestamp_assumes_jakarta():
    tx = transaction_from_dict(_record(timestamp="2024-01-15T10:30:00"))
    assert tx.timestamp.tzinfo == ZoneInfo("Asia/Jakarta")


def test_utc_z_suffix():
    tx = transaction_from_dict(_record(timestamp="2024-01-15T03:30:00Z"))
    assert tx.timestamp == datetime(2024, 1, 15, 3, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("overrides", [
    {"id": ""},
    {"type": "transfer"},
    {"assetType": "bond"},
    {"ticker": None},
    {"amount": -1},
    {"amount": 0},
    {"price": -10},
    {"price": "abc"},
    {"timestamp": "not a date"},
    {"timestamp": None},
    {"source": "history"},
])
def test_invalid_records_raise(overrides):
    with pytest.raises(InvalidTransactionError):
        transaction_from_dict(_record(**overrides))


def test_batch_reports_record_index():
    records = [_record(), _record(id="tx-2", amount=-5)]
    with pytest.raises(InvalidTransactionError, match="Record 1"):
        transactions_from_records(records)


def test_batch_warns_once_about_naive_timestamps():
    records = [
        _record(timestamp="2024-01-15T10:30:00"),
        _record(id="tx-2", timestamp="2024-01-16T10:30:00"),
    ]
    with pytest.warns(UserWarning, match="missing timezone"):
        transactions = transactions_from_records(records, origin="ledger.json")
    assert [tx.id for tx in transactions] == ["tx-1", "tx-2"]


def test_make_delete_transaction():
    when = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    tx = make_delete_transaction(StockAsset("BBCA"), timestamp=when)
    assert tx.transaction_type == TransactionType.DELETE
    assert tx.is_portfolio_delete
    assert tx.id == f"delete_stock_BBCA_{int(when.timestamp() * 1000)}"
