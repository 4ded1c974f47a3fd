"""Group a ledger by asset and replay every group into a position."""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, Mapping, Sequence

from .currency import convert_amount
from .pricingdata import PricePoint
from .replay import Position, replay_position
from .transactions import (
    AssetClass,
    AssetRef,
    CryptoAsset,
    GoldAsset,
    Market,
    StockAsset,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")

DEFAULT_LOT_SIZE = 100
DEFAULT_IDX_SUFFIX = ".JK"

# Fallback table key shared by all gold holdings
GOLD_PRICE_KEY = "GOLD"

Assets = dict[AssetClass, dict[str, Position]]
GroupKey = tuple[AssetClass, str]


def empty_assets() -> Assets:
    """Return an Assets mapping with an empty bucket per asset class."""
    return {asset_class: {} for asset_class in AssetClass}


def group_transactions(transactions: Iterable[Transaction]) -> dict[GroupKey, list[Transaction]]:
    """Split a ledger into per-asset groups, oldest transaction first.

    A portfolio delete throws away everything accumulated for its key so far
    and starts a new group holding only the delete. Deletes that only hide a
    history row stay in the group; replay ignores them.

    Args:
        transactions: The ledger, in any order.

    Returns:
        A dict of (asset_class, key) to that asset's transactions.
    """
    groups: dict[GroupKey, list[Transaction]] = {}
    for tx in sorted(transactions, key=lambda t: t.timestamp):
        group_key = (tx.asset_class, tx.key)
        if tx.transaction_type == TransactionType.DELETE and not tx.is_history_delete:
            discarded = groups.get(group_key)
            if discarded:
                logger.debug("Delete %s discards %d earlier transaction(s) for %s", tx.id, len(discarded), group_key[1])
            groups[group_key] = [tx]
            continue
        groups.setdefault(group_key, []).append(tx)
    return groups


def price_keys(asset: AssetRef, idx_suffix: str = DEFAULT_IDX_SUFFIX) -> list[str]:
    """Price-table keys tried for an asset, most specific first."""
    if isinstance(asset, StockAsset):
        if asset.market == Market.IDX:
            return [f"{asset.ticker}{idx_suffix}", asset.ticker]
        return [asset.ticker]
    if isinstance(asset, CryptoAsset):
        return [asset.symbol]
    if isinstance(asset, GoldAsset):
        return [asset.ticker, GOLD_PRICE_KEY]
    return []


def market_price(
    asset: AssetRef,
    prices: Mapping[str, PricePoint],
    fx_rate: Decimal | None = None,
    idx_suffix: str = DEFAULT_IDX_SUFFIX,
) -> Decimal | None:
    """Look up the market price of an asset in its native currency.

    Quotes in the other currency are converted with ``fx_rate``.

    Returns:
        The first positive price found, or None. Cash is always 1.
    """
    if asset.asset_class == AssetClass.CASH:
        return _ONE

    native = asset.native_currency
    for key in price_keys(asset, idx_suffix):
        point = prices.get(key)
        if point is None:
            continue
        price = convert_amount(point.price, point.currency, native, fx_rate)
        if price > 0:
            return price
    return None


def resolve_current_price(
    asset: AssetRef,
    prices: Mapping[str, PricePoint],
    group: Sequence[Transaction],
    fx_rate: Decimal | None = None,
    idx_suffix: str = DEFAULT_IDX_SUFFIX,
) -> tuple[Decimal, Decimal | None]:
    """Decide which price a group is valued at.

    A manual price on the group's latest transaction wins over the market.
    With no positive market price the latest non-delete transaction price is
    used instead.

    Args:
        asset: The asset being valued.
        prices: The current price table.
        group: The asset's transactions, oldest first.
        fx_rate: USD->IDR rate for converting foreign-currency quotes.
        idx_suffix: Suffix of IDX tickers in the price table.

    Returns:
        A tuple of (current_price, manual_price). ``manual_price`` is None
        unless the manual override was used.
    """
    if asset.asset_class == AssetClass.CASH:
        return _ONE, None

    latest = group[-1] if group else None
    if latest is not None and latest.manual_price is not None:
        logger.debug("Using manual price %s for %s", latest.manual_price, asset.key)
        return latest.manual_price, latest.manual_price

    price = market_price(asset, prices, fx_rate, idx_suffix)
    if price is not None:
        return price, None

    for tx in reversed(group):
        if tx.transaction_type != TransactionType.DELETE:
            logger.debug("No market price for %s, falling back to transaction %s", asset.key, tx.id)
            return tx.price, None
    return _ZERO, None


def apply_lot_view(position: Position, lot_size: int = DEFAULT_LOT_SIZE) -> Position:
    """Fill in display quantity and lots for IDX stocks.

    IDX shares trade in lots; the display quantity is rounded down to whole
    lots while ``quantity`` keeps the exact share count.
    """
    asset = position.asset
    if not isinstance(asset, StockAsset) or asset.market != Market.IDX:
        return replace(position, display_quantity=position.quantity, lots=None)

    lots = int((position.quantity / lot_size).to_integral_value(rounding=ROUND_FLOOR))
    remainder = position.quantity - lots * lot_size
    if remainder > 0:
        logger.warning(
            "Stock %s has %s share(s) outside whole lots (total %s, lot size %d)",
            asset.key, remainder, position.quantity, lot_size,
        )
    return replace(position, display_quantity=Decimal(lots * lot_size), lots=lots)


def build_assets(
    transactions: Iterable[Transaction],
    prices: Mapping[str, PricePoint],
    fx_rate: Decimal | None,
    lot_size: int = DEFAULT_LOT_SIZE,
    idx_suffix: str = DEFAULT_IDX_SUFFIX,
) -> Assets:
    """Replay a whole ledger into current holdings.

    Args:
        transactions: The full ledger, in any order.
        prices: Price table keyed by symbol.
        fx_rate: USD->IDR rate, or None if unknown.
        lot_size: Shares per IDX lot.
        idx_suffix: Suffix of IDX tickers in the price table.

    Returns:
        Open positions per asset class, keyed by asset key. Closed positions
        (quantity 0) are left out.
    """
    assets = empty_assets()
    groups = group_transactions(transactions)

    for (asset_class, key), group in groups.items():
        # The latest reference carries the current broker/market spelling
        asset = group[-1].asset
        current_price, manual_price = resolve_current_price(asset, prices, group, fx_rate, idx_suffix)

        position = replay_position(group, current_price, fx_rate)
        if position.quantity <= 0:
            continue

        position = replace(position, asset=asset, manual_price=manual_price)
        assets[asset_class][key] = apply_lot_view(position, lot_size)

    logger.debug(
        "Built %d position(s) from %d group(s)",
        sum(len(bucket) for bucket in assets.values()), len(groups),
    )
    return assets


def provider_symbols(transactions: Iterable[Transaction], idx_suffix: str = DEFAULT_IDX_SUFFIX) -> dict[str, str]:
    """Map price-table keys needed by a ledger to Yahoo Finance symbols.

    Cash needs no price and gold has no Yahoo Finance listing, so neither
    appears in the result.

    Returns:
        A dict of table key (e.g. "BTC") to provider symbol (e.g. "BTC-USD").
    """
    symbols: dict[str, str] = {}
    for tx in transactions:
        asset = tx.asset
        if isinstance(asset, StockAsset):
            key = price_keys(asset, idx_suffix)[0]
            symbols[key] = key
        elif isinstance(asset, CryptoAsset):
            symbols[asset.symbol] = f"{asset.symbol}-USD"
    return symbols
