"""Tests for pricing data managers and price table parsing."""

from decimal import Decimal

import pandas as pd
import pytest

import portsync.pricingdata as pricing_module
from portsync.currency import Currency
from portsync.errors import InvalidMutationError
from portsync.pricingdata import (
    FixedPricingDataManager,
    PricePoint,
    YFinancePricingDataManager,
    price_point_from_history,
    price_table_from_dict,
)


def _history(closes):
    index = pd.date_range("2024-03-01", periods=len(closes), freq="D", tz="Asia/Jakarta")
    return pd.DataFrame({"Close": closes}, index=index)


class FakeTicker:
    """Stand-in for yfinance.Ticker serving canned daily closes."""

    histories = {
        "BBCA.JK": [9000.0, 9100.0],
        "BTC-USD": [60000.0, 66000.0],
    }

    def __init__(self, symbol):
        self.symbol = symbol

    def history(self, period="5d", auto_adjust=False):
        if self.symbol not in self.histories:
            return pd.DataFrame()
        return _history(self.histories[self.symbol])


def test_price_point_from_history():
    point = price_point_from_history("BBCA.JK", _history([9000.0, 9100.0]), Currency.IDR)
    assert point.price == Decimal("9100.0")
    assert point.currency == Currency.IDR
    assert point.change_percent.quantize(Decimal("0.01")) == Decimal("1.11")
    assert point.as_of.year == 2024


def test_price_point_from_single_row_has_no_change():
    point = price_point_from_history("AAPL", _history([190.5]), Currency.USD)
    assert point.price == Decimal("190.5")
    assert point.change_percent is None


def test_price_point_from_empty_history_raises():
    with pytest.raises(ValueError):
        price_point_from_history("AAPL", pd.DataFrame(), Currency.USD)


def test_yfinance_price_table(monkeypatch):
    """Provider symbols are fetched, and results are keyed by the table symbol."""
    monkeypatch.setattr(pricing_module.yf, "Ticker", FakeTicker)
    manager = YFinancePricingDataManager()

    table = manager.get_price_table(["BBCA.JK", "BTC", "NOPE"], {"BTC": "BTC-USD"})
    assert set(table) == {"BBCA.JK", "BTC"}
    assert table["BBCA.JK"].currency == Currency.IDR
    assert table["BTC"].symbol == "BTC"
    assert table["BTC"].price == Decimal("66000.0")
    assert table["BTC"].currency == Currency.USD
    assert table["BTC"].change_percent == Decimal("10")


def test_yfinance_request_error_becomes_value_error(monkeypatch):
    class BrokenTicker(FakeTicker):
        def history(self, period="5d", auto_adjust=False):
            raise ConnectionError("rate limited")

    monkeypatch.setattr(pricing_module.yf, "Ticker", BrokenTicker)
    with pytest.raises(ValueError, match="rate limited"):
        YFinancePricingDataManager().get_price_point("AAPL")


def test_fixed_pricing_manager():
    manager = FixedPricingDataManager({"AAPL": Decimal("160")})
    assert manager.get_price_point("AAPL").price == Decimal("160")
    with pytest.raises(ValueError):
        manager.get_price_point("MSFT")
    assert list(manager.get_price_table(["AAPL", "MSFT"])) == ["AAPL"]


def test_price_table_from_dict_shapes():
    table = price_table_from_dict({
        "BBCA.JK": 9100,
        "AAPL": {"price": "190.25", "change": 1.5, "asOf": "2024-03-01T16:00:00Z"},
        "GOLD": {"price": 1500000, "currency": "idr"},
    })
    assert table["BBCA.JK"].currency == Currency.IDR
    assert table["BBCA.JK"].price == Decimal("9100")
    assert table["AAPL"].currency == Currency.USD
    assert table["AAPL"].change_percent == Decimal("1.5")
    assert table["AAPL"].as_of.tzinfo is not None
    assert table["GOLD"].currency == Currency.IDR


def test_price_table_passes_price_points_through():
    point = PricePoint(symbol="ETH", price=Decimal("3000"))
    assert price_table_from_dict({"ETH": point})["ETH"] is point


@pytest.mark.parametrize("entry", [
    "abc",
    -1,
    {"currency": "USD"},
    {"price": 10, "currency": "EUR"},
    {"price": 10, "asOf": "yesterday"},
])
def test_price_table_rejects_bad_entries(entry):
    with pytest.raises(InvalidMutationError):
        price_table_from_dict({"AAPL": entry})
