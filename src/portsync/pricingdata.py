from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
import logging

import pandas as pd
import yfinance as yf  # type: ignore[import-untyped]

from .currency import Currency
from .errors import InvalidMutationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricePoint:
    """Latest known market price for one symbol.

    Attributes:
        symbol: Price-table key (e.g. "BBCA.JK", "AAPL", "BTC").
        price: Last price in ``currency``.
        currency: Currency the price is quoted in.
        change_percent: Change against the previous close, if known.
        as_of: When the price was observed.
    """

    symbol: str
    price: Decimal
    currency: Currency = Currency.USD
    change_percent: Decimal | None = None
    as_of: datetime | None = None


class PricingDataManager(ABC):
    """Abstract base class for all pricing data providers."""

    @abstractmethod
    def get_price_point(self, symbol: str) -> PricePoint:
        raise NotImplementedError("This method should be overridden by subclasses.")

    def get_price_table(self, symbols: Iterable[str], provider_symbols: Mapping[str, str] | None = None) -> dict[str, PricePoint]:
        """Fetch the latest price for each symbol, skipping failures.

        Args:
            symbols: Price-table keys to fetch.
            provider_symbols: Optional mapping from a table key to the symbol
                the provider knows it by (e.g. "BTC" -> "BTC-USD").

        Returns:
            A dict of table key to PricePoint. Symbols the provider could
            not price are left out and logged.
        """
        provider_symbols = provider_symbols or {}
        table: dict[str, PricePoint] = {}
        for symbol in dict.fromkeys(symbols):
            lookup = provider_symbols.get(symbol, symbol)
            try:
                point = self.get_price_point(lookup)
            except ValueError as e:
                logger.warning("No price for %s: %s", symbol, e)
                continue
            table[symbol] = PricePoint(
                symbol=symbol,
                price=point.price,
                currency=point.currency,
                change_percent=point.change_percent,
                as_of=point.as_of,
            )
        return table


class FixedPricingDataManager(PricingDataManager):
    """Pricing manager backed by a static symbol -> price mapping."""

    def __init__(self, prices: Mapping[str, Decimal], currency: Currency = Currency.USD):
        """Initialize with fixed prices.

        Args:
            prices: Price for each known symbol.
            currency: Currency every price is quoted in.
        """
        self.prices = dict(prices)
        self.currency = currency

    def get_price_point(self, symbol: str) -> PricePoint:
        """Return the fixed price for a symbol.

        Raises:
            ValueError: If the symbol has no fixed price.
        """
        if symbol not in self.prices:
            raise ValueError(f"No fixed price for {symbol}")
        return PricePoint(
            symbol=symbol,
            price=self.prices[symbol],
            currency=self.currency,
            as_of=datetime.now(timezone.utc),
        )


def price_point_from_history(symbol: str, history: pd.DataFrame, currency: Currency) -> PricePoint:
    """Build a PricePoint from a daily price history.

    The last close is the price; the change is measured against the close
    before it.

    Args:
        symbol: The symbol the history belongs to.
        history: DataFrame with a ``Close`` column, oldest row first.
        currency: Currency the closes are quoted in.

    Returns:
        The latest PricePoint.

    Raises:
        ValueError: If the history holds no usable close.
    """
    if history.empty or "Close" not in history.columns:
        raise ValueError(f"No price data available for {symbol}")

    closes = history["Close"].dropna()
    if closes.empty:
        raise ValueError(f"No price data available for {symbol}")

    price = Decimal(str(closes.iloc[-1]))
    change_percent: Decimal | None = None
    if len(closes) > 1:
        previous = Decimal(str(closes.iloc[-2]))
        if previous > 0:
            change_percent = (price - previous) / previous * 100

    as_of = closes.index[-1]
    if isinstance(as_of, pd.Timestamp):
        as_of = as_of.to_pydatetime()
    else:
        as_of = datetime.now(timezone.utc)

    return PricePoint(
        symbol=symbol,
        price=price,
        currency=currency,
        change_percent=change_percent,
        as_of=as_of,
    )


class YFinancePricingDataManager(PricingDataManager):
    """Latest-price lookups against Yahoo Finance.

    One request per symbol per call. Polling, retry and caching are left to
    whoever schedules the refresh.
    """

    IDR_SUFFIXES = (".JK",)

    def __init__(self, history_period: str = "5d"):
        """Initialize the YFinance pricing manager.

        Args:
            history_period: yfinance period used to find the last two closes.
        """
        self.history_period = history_period

    def _currency_for(self, symbol: str) -> Currency:
        if symbol.upper().endswith(self.IDR_SUFFIXES) or symbol.upper().endswith("-IDR"):
            return Currency.IDR
        return Currency.USD

    def get_price_point(self, symbol: str) -> PricePoint:
        """Get the latest price for a Yahoo Finance symbol.

        Raises:
            ValueError: If the request fails or returns no data.
        """
        try:
            history: pd.DataFrame = yf.Ticker(symbol).history(period=self.history_period, auto_adjust=False)  # type: ignore[call-arg]
        except Exception as e:
            # yfinance raises a variety of errors on rate limiting and network issues
            raise ValueError(f"yfinance request failed for {symbol}: {e}") from e

        return price_point_from_history(symbol, history, self._currency_for(symbol))


def _decimal_field(value: Any, symbol: str, field: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidMutationError(f"Invalid {field} for {symbol}: {value!r}") from e
    if not result.is_finite():
        raise InvalidMutationError(f"Invalid {field} for {symbol}: {value!r}")
    return result


def price_table_from_dict(data: Mapping[str, Any]) -> dict[str, PricePoint]:
    """Parse a plain price table into PricePoints.

    Each entry is either a bare number or a mapping such as
    ``{"price": 9100, "currency": "IDR", "change": 1.5}``. Entries without a
    currency are assumed to be IDR for ".JK" keys and USD otherwise.

    Args:
        data: Mapping of symbol to price entry.

    Returns:
        A dict of symbol to PricePoint.

    Raises:
        InvalidMutationError: If an entry has no usable price.
    """
    table: dict[str, PricePoint] = {}
    for symbol, entry in data.items():
        if isinstance(entry, PricePoint):
            table[symbol] = entry
            continue

        change: Decimal | None = None
        as_of: datetime | None = None
        if isinstance(entry, Mapping):
            if entry.get("price") is None:
                raise InvalidMutationError(f"Missing price for {symbol}")
            price = _decimal_field(entry["price"], symbol, "price")
            raw_currency = entry.get("currency")
            raw_change = entry.get("changePercent", entry.get("change"))
            if raw_change is not None:
                change = _decimal_field(raw_change, symbol, "change")
            raw_as_of = entry.get("asOf", entry.get("lastUpdate"))
            if isinstance(raw_as_of, str) and raw_as_of:
                try:
                    as_of = datetime.fromisoformat(raw_as_of.replace("Z", "+00:00"))
                except ValueError as e:
                    raise InvalidMutationError(f"Invalid asOf for {symbol}: {raw_as_of!r}") from e
        else:
            price = _decimal_field(entry, symbol, "price")
            raw_currency = None

        if price < 0:
            raise InvalidMutationError(f"Negative price for {symbol}: {price}")

        if raw_currency:
            try:
                currency = Currency(str(raw_currency).upper())
            except ValueError as e:
                raise InvalidMutationError(f"Unsupported currency for {symbol}: {raw_currency!r}") from e
        else:
            currency = Currency.IDR if symbol.upper().endswith(".JK") else Currency.USD

        table[symbol] = PricePoint(symbol=symbol, price=price, currency=currency, change_percent=change, as_of=as_of)
    return table
