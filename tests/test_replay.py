"""Tests for ledger replay: cost basis, sells, updates, deletes and valuation."""

from datetime import datetime
from decimal import Decimal
from itertools import permutations
from zoneinfo import ZoneInfo

from portsync.currency import Currency
from portsync.replay import Position, replay_position, revalue_position
from portsync.transactions import (
    CashAsset,
    CryptoAsset,
    DeleteSource,
    Market,
    StockAsset,
    Transaction,
    TransactionType,
)

JKT = ZoneInfo("Asia/Jakarta")

BBCA = StockAsset("BBCA", Market.IDX)
AAPL = StockAsset("AAPL", Market.US)
BTC = CryptoAsset("BTC")


def _tx(tx_id, tx_type, asset, quantity, price, day, hour=10, **kwargs):
    return Transaction(
        id=tx_id,
        transaction_type=TransactionType(tx_type),
        asset=asset,
        quantity=Decimal(str(quantity)),
        price=Decimal(str(price)),
        timestamp=datetime(2024, 1, day, hour, tzinfo=JKT),
        **kwargs,
    )


def test_idx_buy_sell_delete_rebuy_scenario():
    """IDX lot lifecycle: partial sell keeps the average, delete wipes history, rebuy starts fresh."""
    buy = _tx("t1", "buy", BBCA, 2000, 4750, 1, value_idr=Decimal("9500000"))
    position = replay_position([buy], Decimal("4750"), Decimal("15000"))
    assert position.quantity == Decimal("2000")
    assert position.cost_basis_native == Decimal("9500000")
    assert position.average_price == Decimal("4750")

    sell = _tx("t2", "sell", BBCA, 1000, 5000, 2)
    position = replay_position([buy, sell], Decimal("4750"), Decimal("15000"))
    assert position.quantity == Decimal("1000")
    assert position.cost_basis_native == Decimal("4750000")
    assert position.cost_basis_idr == Decimal("4750000")
    assert position.average_price == Decimal("4750")

    delete = _tx("t3", "delete", BBCA, 0, 0, 3, source=DeleteSource.PORTFOLIO)
    position = replay_position([buy, sell, delete], Decimal("4750"), Decimal("15000"))
    assert position.quantity == 0
    assert position.cost_basis_native == 0

    rebuy = _tx("t4", "buy", BBCA, 500, 6000, 4, value_idr=Decimal("3000000"))
    position = replay_position([buy, sell, delete, rebuy], Decimal("6000"), Decimal("15000"))
    assert position.quantity == Decimal("500")
    assert position.cost_basis_native == Decimal("3000000")
    assert position.cost_basis_idr == Decimal("3000000")
    assert position.average_price == Decimal("6000")
    assert position.native_currency == Currency.IDR


def test_us_stock_dual_currency_valuation():
    """A USD-native stock is valued in USD and converted to IDR at the given rate."""
    buy = _tx("t1", "buy", AAPL, 10, 150, 1, value_usd=Decimal("1500"))
    position = replay_position([buy], Decimal("160"), Decimal("15000"))

    assert position.native_currency == Currency.USD
    assert position.valuation_usd == Decimal("1600")
    assert position.valuation_idr == Decimal("24000000")
    assert position.primary_valuation == Decimal("1600")
    assert position.unrealized_gain_native == Decimal("100")
    assert position.unrealized_gain_usd == Decimal("100")
    assert position.unrealized_gain_idr == Decimal("1500000")
    assert position.gain_percent.quantize(Decimal("0.01")) == Decimal("6.67")


def test_replay_is_order_independent():
    """Any permutation of the same ledger replays to the same position."""
    txs = [
        _tx("t1", "buy", BBCA, 1000, 4500, 1, value_idr=Decimal("4500000")),
        _tx("t2", "buy", BBCA, 500, 4800, 2, value_idr=Decimal("2400000")),
        _tx("t3", "sell", BBCA, 300, 5000, 3),
        _tx("t4", "buy", BBCA, 200, 5100, 4, value_idr=Decimal("1020000")),
    ]
    expected = replay_position(txs, Decimal("5200"), Decimal("15500"))
    for ordering in permutations(txs):
        assert replay_position(list(ordering), Decimal("5200"), Decimal("15500")) == expected


def test_sell_keeps_average_price():
    """Selling part of a position leaves the average price unchanged."""
    txs = [
        _tx("t1", "buy", BBCA, 100, 10, 1),
        _tx("t2", "buy", BBCA, 100, 20, 2),
    ]
    before = replay_position(txs, Decimal("15"), None)
    assert before.average_price == Decimal("15")

    after = replay_position(txs + [_tx("t3", "sell", BBCA, 50, 30, 3)], Decimal("15"), None)
    assert after.quantity == Decimal("150")
    assert after.average_price == before.average_price
    assert after.cost_basis_native == Decimal("2250")


def test_sell_reduces_captured_costs_by_quantity_ratio():
    """IDR/USD cost fields shrink by the sold fraction of the quantity."""
    txs = [
        _tx("t1", "buy", AAPL, 10, 150, 1, value_usd=Decimal("1500"), value_idr=Decimal("22500000")),
        _tx("t2", "sell", AAPL, 4, 170, 2),
    ]
    position = replay_position(txs, Decimal("170"), Decimal("15000"))
    assert position.quantity == Decimal("6")
    assert position.cost_basis_usd == Decimal("900")
    assert position.cost_basis_idr == Decimal("13500000")


def test_oversell_snaps_to_zero():
    """Selling more than is held closes the position instead of going negative."""
    txs = [
        _tx("t1", "buy", BBCA, 10, 5, 1, value_idr=Decimal("50")),
        _tx("t2", "sell", BBCA, 15, 6, 2),
    ]
    position = replay_position(txs, Decimal("6"), None)
    assert position.quantity == 0
    assert position.cost_basis_native == 0
    assert position.cost_basis_idr == 0
    assert position.cost_basis_usd == 0
    assert position.average_price == 0


def test_dust_after_sell_snaps_to_zero():
    """A remainder within epsilon of zero after a sell is treated as closed."""
    txs = [
        _tx("t1", "buy", BTC, 1, 3, 1),
        _tx("t2", "sell", BTC, "0.9999999999", 3, 2),
    ]
    position = replay_position(txs, Decimal("3"), None)
    assert position.quantity == 0
    assert position.cost_basis_native == 0


def test_sell_without_position_is_noop():
    position = replay_position([_tx("t1", "sell", BBCA, 100, 5000, 1)], Decimal("5000"), None)
    assert position.quantity == 0
    assert position.cost_basis_native == 0


def test_delete_then_rebuy_ignores_prior_history():
    """Buying again after a delete starts a fresh position at the new price."""
    txs = [
        _tx("t1", "buy", BBCA, 100, 10, 1),
        _tx("t2", "delete", BBCA, 0, 0, 2, source=DeleteSource.PORTFOLIO),
        _tx("t3", "buy", BBCA, 50, 20, 3),
    ]
    position = replay_position(txs, Decimal("20"), None)
    assert position.quantity == Decimal("50")
    assert position.average_price == Decimal("20")
    assert position.cost_basis_native == Decimal("1000")


def test_transactions_stamped_at_delete_time_are_skipped():
    """A transaction sharing the delete's timestamp but sorted after it does not reopen the position."""
    delete = _tx("t2", "delete", BBCA, 0, 0, 2, source=DeleteSource.PORTFOLIO)
    same_time_buy = _tx("t3", "buy", BBCA, 70, 30, 2)
    txs = [_tx("t1", "buy", BBCA, 100, 10, 1), delete, same_time_buy]
    position = replay_position(txs, Decimal("30"), None)
    assert position.quantity == 0


def test_history_delete_is_ignored():
    """Deleting a row from history never touches the position."""
    txs = [
        _tx("t1", "buy", BBCA, 100, 10, 1),
        _tx("t2", "delete", BBCA, 0, 0, 2, source=DeleteSource.HISTORY),
    ]
    position = replay_position(txs, Decimal("10"), None)
    assert position.quantity == Decimal("100")
    assert position.cost_basis_native == Decimal("1000")


def test_update_on_empty_position_acts_as_buy():
    position = replay_position([_tx("t1", "update", BBCA, 10, 100, 1)], Decimal("100"), None)
    assert position.quantity == Decimal("10")
    assert position.cost_basis_native == Decimal("1000")
    assert position.cost_basis_idr == Decimal("1000")


def test_update_overwrites_open_position():
    """An update is an absolute correction of quantity and cost."""
    txs = [
        _tx("t1", "buy", BBCA, 10, 100, 1, value_idr=Decimal("1000")),
        _tx("t2", "update", BBCA, 20, 50, 2),
    ]
    position = replay_position(txs, Decimal("60"), None)
    assert position.quantity == Decimal("20")
    assert position.cost_basis_native == Decimal("1000")
    assert position.average_price == Decimal("50")
    assert position.cost_basis_idr == Decimal("1000")


def test_update_without_quantity_keeps_quantity():
    """An update with quantity 0 on an open position only re-prices the cost."""
    txs = [
        _tx("t1", "buy", BBCA, 10, 100, 1),
        _tx("t2", "update", BBCA, 0, 120, 2, value_idr=Decimal("1200"), entry_price=Decimal("95")),
    ]
    position = replay_position(txs, Decimal("130"), None)
    assert position.quantity == Decimal("10")
    assert position.cost_basis_native == Decimal("1200")
    assert position.cost_basis_idr == Decimal("1200")
    assert position.entry_price == Decimal("95")


def test_missing_fx_rate_yields_zero_counter_values():
    """No exchange rate means zero counter-currency values, never an error."""
    buy = _tx("t1", "buy", AAPL, 10, 150, 1, value_usd=Decimal("1500"))
    position = replay_position([buy], Decimal("160"), None)
    assert position.valuation_usd == Decimal("1600")
    assert position.valuation_idr == 0
    assert position.unrealized_gain_idr == 0

    position = replay_position([buy], Decimal("160"), Decimal("0"))
    assert position.valuation_idr == 0


def test_counter_cost_left_unchanged_without_captured_value():
    """Without a captured counter value, the counter cost field is not estimated."""
    buy = _tx("t1", "buy", BBCA, 100, 5000, 1)
    position = replay_position([buy], Decimal("5000"), Decimal("15000"))
    assert position.cost_basis_idr == Decimal("500000")
    assert position.cost_basis_usd == 0


def test_zero_cost_gives_zero_gain_percent():
    buy = _tx("t1", "buy", CashAsset("BCA"), 1000000, 1, 1)
    position = replay_position([buy], Decimal("1"), None)
    assert position.quantity == Decimal("1000000")
    assert position.gain_percent == 0

    gift = _tx("t2", "buy", BBCA, 10, 0, 1)
    position = replay_position([gift], Decimal("5000"), None)
    assert position.cost_basis_native == 0
    assert position.gain_percent == 0
    assert position.unrealized_gain_native == Decimal("50000")


def test_delete_clears_entry_price():
    txs = [
        _tx("t1", "buy", BBCA, 100, 10, 1, entry_price=Decimal("9")),
        _tx("t2", "delete", BBCA, 0, 0, 2, source=DeleteSource.PORTFOLIO),
    ]
    assert replay_position(txs[:1], Decimal("10"), None).entry_price == Decimal("9")
    assert replay_position(txs, Decimal("10"), None).entry_price is None


def test_empty_ledger_returns_empty_position():
    position = replay_position([], Decimal("10"), None)
    assert position == Position(current_price=Decimal("10"))
    assert position.quantity == 0


def test_revalue_position_changes_only_valuation():
    """Re-pricing keeps quantity and cost but recomputes value and gain."""
    buy = _tx("t1", "buy", AAPL, 10, 150, 1, value_usd=Decimal("1500"))
    position = replay_position([buy], Decimal("160"), Decimal("15000"))

    revalued = revalue_position(position, Decimal("170"), Decimal("16000"))
    assert revalued.quantity == position.quantity
    assert revalued.cost_basis_native == position.cost_basis_native
    assert revalued.average_price == position.average_price
    assert revalued.current_price == Decimal("170")
    assert revalued.valuation_usd == Decimal("1700")
    assert revalued.valuation_idr == Decimal("27200000")
    assert revalued.unrealized_gain_native == Decimal("200")
