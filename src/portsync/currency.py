from enum import Enum
from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime
import logging

import yfinance as yf  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class Currency(Enum):
    """Currencies tracked by the portfolio. Exchange rates are quoted USD->IDR."""

    IDR = "IDR"
    USD = "USD"

    @property
    def counter(self) -> "Currency":
        """Return the other tracked currency."""
        return Currency.USD if self is Currency.IDR else Currency.IDR


def convert_amount(amount: Decimal, from_currency: Currency, to_currency: Currency, usd_idr_rate: Decimal | None) -> Decimal:
    """Convert an amount between IDR and USD using a USD->IDR rate.

    A missing or non-positive rate is an expected steady state (no FX tick
    has arrived yet) and converts to zero instead of raising.

    Args:
        amount: The amount expressed in ``from_currency``.
        from_currency: Currency of ``amount``.
        to_currency: Currency to convert into.
        usd_idr_rate: How many IDR one USD buys, or None if unknown.

    Returns:
        The converted amount, or 0 when the rate is unavailable.
    """
    if from_currency == to_currency:
        return amount
    if usd_idr_rate is None or usd_idr_rate <= 0:
        return _ZERO
    if from_currency == Currency.USD:
        return amount * usd_idr_rate
    return amount / usd_idr_rate


class ExchangeRateManager(ABC):
    """Abstract base class for currency exchange rate providers."""

    @abstractmethod
    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None = None) -> Decimal:
        """Get the exchange rate between two currencies.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: The date for the rate lookup. If None, uses the latest rate.

        Returns:
            The exchange rate as a Decimal.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")

    def get_usd_idr_rate(self) -> Decimal | None:
        """Return the latest USD->IDR rate, or None if the provider has none.

        Returns:
            The rate as a Decimal, or None when the lookup fails.
        """
        try:
            return self.get_exchange_rate(Currency.USD, Currency.IDR)
        except ValueError as e:
            logger.warning("USD->IDR rate unavailable: %s", e)
            return None


class FixedExchangeRateManager(ExchangeRateManager):
    """Exchange rate manager using fixed rates.

    Provides static exchange rates that do not vary by date. Useful for
    testing or when live rates are not needed.
    """

    global_exchange_rates = {
        (Currency.USD, Currency.IDR): Decimal("15500"),
    }

    def __init__(self, exchange_rates:dict[tuple[Currency, Currency], Decimal] | None = None):
        """Initialize with optional custom exchange rates.

        Args:
            exchange_rates: Custom rates to use. Missing pairs are filled
                from global_exchange_rates defaults.
        """
        self.exchange_rates = dict(exchange_rates or {})
        for pair, rate in self.global_exchange_rates.items():
            self.exchange_rates.setdefault(pair, rate)

    def set_exchange_rate(self, from_currency: Currency, to_currency: Currency, rate: Decimal):
        """Set or override the exchange rate for a currency pair.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            rate: The exchange rate to set.
        """
        self.exchange_rates[(from_currency, to_currency)] = rate

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None=None) -> Decimal:
        """Get the fixed exchange rate between two currencies.

        Falls back to the inverse of the opposite pair if no direct rate exists.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: Ignored; included for interface compatibility.

        Returns:
            The exchange rate as a Decimal.

        Raises:
            ValueError: If no rate is available for the currency pair.
        """
        if from_currency == to_currency:
            return Decimal("1")

        if (from_currency, to_currency) in self.exchange_rates:
            return self.exchange_rates[(from_currency, to_currency)]

        inverse = self.exchange_rates.get((to_currency, from_currency))
        if inverse:
            return Decimal("1") / inverse

        raise ValueError(f"Exchange rate from {from_currency.value} to {to_currency.value} not available.")


class YFinanceExchangeRateManager(ExchangeRateManager):
    """Exchange rate manager reading the latest USD/IDR quote from Yahoo Finance.

    Performs one lookup per call; polling and caching belong to the caller.
    """

    FX_TICKER = "IDR=X"

    # Plausible USD->IDR band; quotes outside it are logged, not rejected.
    SANITY_RANGE = (Decimal("5000"), Decimal("25000"))

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None=None) -> Decimal:
        """Get the latest USD/IDR rate in the requested direction.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: Ignored; only the latest quote is supported.

        Returns:
            The exchange rate as a Decimal.

        Raises:
            ValueError: If Yahoo Finance returns no usable quote.
        """
        if from_currency == to_currency:
            return Decimal("1")

        try:
            last_price = yf.Ticker(self.FX_TICKER).fast_info.get("lastPrice")
        except Exception as e:
            raise ValueError(f"yfinance request failed for {self.FX_TICKER}: {e}") from e

        if last_price is None or last_price <= 0:
            raise ValueError(f"No exchange rate available for {self.FX_TICKER}")

        rate = Decimal(str(last_price))
        low, high = self.SANITY_RANGE
        if rate < low or rate > high:
            logger.warning("USD->IDR rate %s looks unusual", rate)

        if from_currency == Currency.USD:
            return rate
        return Decimal("1") / rate
