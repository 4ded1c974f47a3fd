"""Ledger replay: fold one asset's transaction history into a position.

Replay is a pure function of (transactions, current price, fx rate). It
sorts by timestamp itself, so the order transactions arrive in never changes
the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable

from .currency import Currency, convert_amount
from .transactions import AssetClass, AssetRef, Transaction, TransactionType

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

# Quantities this close to zero after a sell are treated as a closed position
EPSILON = Decimal("1e-9")


@dataclass(frozen=True)
class Position:
    """A derived holding. Never persisted; always recomputed from the ledger.

    Cost fields are tracked three ways: in the asset's native currency from
    transaction prices, and in IDR and USD from the values captured when each
    transaction was recorded.
    """

    quantity: Decimal = _ZERO
    cost_basis_native: Decimal = _ZERO
    cost_basis_idr: Decimal = _ZERO
    cost_basis_usd: Decimal = _ZERO
    average_price: Decimal = _ZERO
    current_price: Decimal = _ZERO
    valuation_idr: Decimal = _ZERO
    valuation_usd: Decimal = _ZERO
    primary_valuation: Decimal = _ZERO
    unrealized_gain_native: Decimal = _ZERO
    unrealized_gain_idr: Decimal = _ZERO
    unrealized_gain_usd: Decimal = _ZERO
    gain_percent: Decimal = _ZERO
    entry_price: Decimal | None = None
    native_currency: Currency = Currency.IDR
    asset: AssetRef | None = None
    display_quantity: Decimal = _ZERO
    lots: int | None = None
    manual_price: Decimal | None = None

    @property
    def asset_class(self) -> AssetClass | None:
        return self.asset.asset_class if self.asset is not None else None

    @property
    def key(self) -> str | None:
        return self.asset.key if self.asset is not None else None

    @property
    def counter_currency(self) -> Currency:
        return self.native_currency.counter

    def valuation_in(self, currency: Currency) -> Decimal:
        """Market value in IDR or USD."""
        return self.valuation_idr if currency == Currency.IDR else self.valuation_usd

    def __repr__(self):
        return f"Position(key={self.key}, quantity={self.quantity}, average_price={self.average_price}, current_price={self.current_price})"


def _captured(tx: Transaction, currency: Currency) -> Decimal | None:
    return tx.value_idr if currency == Currency.IDR else tx.value_usd


def _native_currency_for(ordered: list[Transaction]) -> tuple[Currency, AssetRef | None]:
    """Pick the currency pairing from the first buy/update, else any transaction."""
    for tx in ordered:
        if tx.transaction_type in (TransactionType.BUY, TransactionType.UPDATE):
            return tx.native_currency, tx.asset
    if ordered:
        return ordered[0].native_currency, ordered[0].asset
    return Currency.IDR, None


def _valuation_fields(quantity: Decimal, average_price: Decimal, current_price: Decimal, native: Currency, fx_rate: Decimal | None) -> dict[str, Decimal]:
    """Market value and unrealized gain in the native and counter currency."""
    counter = native.counter
    valuation_native = current_price * quantity
    valuation_counter = convert_amount(valuation_native, native, counter, fx_rate)

    cost = average_price * quantity
    gain_native = valuation_native - cost
    gain_counter = convert_amount(gain_native, native, counter, fx_rate)
    gain_percent = gain_native / cost * _HUNDRED if cost > 0 else _ZERO

    by_currency = {
        native: (valuation_native, gain_native),
        counter: (valuation_counter, gain_counter),
    }
    return {
        "current_price": current_price,
        "valuation_idr": by_currency[Currency.IDR][0],
        "valuation_usd": by_currency[Currency.USD][0],
        "primary_valuation": valuation_native,
        "unrealized_gain_native": gain_native,
        "unrealized_gain_idr": by_currency[Currency.IDR][1],
        "unrealized_gain_usd": by_currency[Currency.USD][1],
        "gain_percent": gain_percent,
    }


def replay_position(
    transactions: Iterable[Transaction],
    current_price: Decimal,
    fx_rate: Decimal | None,
) -> Position:
    """Replay one asset's transactions into its current position.

    Transactions are folded in timestamp order:

    - BUY adds quantity and cost.
    - UPDATE overwrites quantity (when > 0) and cost on an open position, and
      acts like a BUY on an empty one.
    - SELL removes cost at the average price; IDR/USD cost fields shrink by
      the sold fraction of the quantity. Selling with no open position is a
      no-op.
    - DELETE zeroes the position; everything stamped at or before it is
      ignored, so later transactions reopen it from scratch. Deletes that
      only hide a history row are ignored entirely.

    Args:
        transactions: All transactions for a single asset, in any order.
        current_price: Latest market price in the asset's native currency.
        fx_rate: USD->IDR rate, or None if unknown. Without a rate the
            counter-currency fields are 0.

    Returns:
        The derived Position.
    """
    ordered = sorted(transactions, key=lambda t: t.timestamp)
    native, reference_asset = _native_currency_for(ordered)
    counter = native.counter

    quantity = _ZERO
    cost_native = _ZERO
    costs: dict[Currency, Decimal] = {Currency.IDR: _ZERO, Currency.USD: _ZERO}
    entry_price: Decimal | None = None
    delete_cutoff = None

    for tx in ordered:
        if tx.is_history_delete:
            continue
        if delete_cutoff is not None and tx.timestamp <= delete_cutoff:
            continue

        tx_type = tx.transaction_type

        if tx_type == TransactionType.BUY or (tx_type == TransactionType.UPDATE and quantity == 0):
            total = tx.price * tx.quantity
            cost_native += total
            quantity += tx.quantity

            captured_native = _captured(tx, native)
            costs[native] += captured_native if captured_native is not None else total
            captured_counter = _captured(tx, counter)
            if captured_counter is not None:
                costs[counter] += captured_counter

            if tx.entry_price is not None:
                entry_price = tx.entry_price

        elif tx_type == TransactionType.UPDATE:
            # Absolute correction of an open position
            if tx.quantity > 0:
                quantity = tx.quantity
            cost_native = tx.price * quantity

            captured_native = _captured(tx, native)
            costs[native] = captured_native if captured_native is not None else cost_native
            captured_counter = _captured(tx, counter)
            if captured_counter is not None:
                costs[counter] = captured_counter

            if tx.entry_price is not None:
                entry_price = tx.entry_price

        elif tx_type == TransactionType.SELL:
            if quantity <= 0 or cost_native <= 0:
                logger.debug("Ignoring sell %s: no open position", tx.id)
                continue

            quantity_before = quantity
            average = cost_native / quantity_before
            cost_native -= average * tx.quantity

            # Quantity ratio, not cost ratio, so rounding does not compound
            ratio = tx.quantity / quantity_before
            for currency in costs:
                costs[currency] -= costs[currency] * ratio

            quantity -= tx.quantity
            if quantity <= EPSILON:
                quantity = _ZERO
                cost_native = _ZERO
                costs = {Currency.IDR: _ZERO, Currency.USD: _ZERO}

        elif tx_type == TransactionType.DELETE:
            quantity = _ZERO
            cost_native = _ZERO
            costs = {Currency.IDR: _ZERO, Currency.USD: _ZERO}
            entry_price = None
            delete_cutoff = tx.timestamp

    if quantity < 0:
        quantity = _ZERO
        cost_native = _ZERO
        costs = {Currency.IDR: _ZERO, Currency.USD: _ZERO}

    average_price = cost_native / quantity if quantity > 0 else _ZERO

    return Position(
        quantity=quantity,
        cost_basis_native=cost_native,
        cost_basis_idr=costs[Currency.IDR],
        cost_basis_usd=costs[Currency.USD],
        average_price=average_price,
        entry_price=entry_price,
        native_currency=native,
        asset=reference_asset,
        display_quantity=quantity,
        **_valuation_fields(quantity, average_price, current_price, native, fx_rate),
    )


def revalue_position(position: Position, current_price: Decimal, fx_rate: Decimal | None) -> Position:
    """Re-price an existing position without replaying its ledger.

    A price or FX tick never changes quantity or cost basis, so only the
    valuation and gain fields are recomputed.

    Args:
        position: The position to re-price.
        current_price: New market price in the position's native currency.
        fx_rate: USD->IDR rate, or None if unknown.

    Returns:
        A new Position with fresh valuation fields.
    """
    return replace(
        position,
        **_valuation_fields(position.quantity, position.average_price, current_price, position.native_currency, fx_rate),
    )
