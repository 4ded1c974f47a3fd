"""Ledger transaction model, parsing and validation.

A transaction's ``asset`` field is one of four frozen asset references
(stock, crypto, cash, gold). Each reference knows its asset class, its
grouping key and its native currency, so the replay code can branch on the
reference type instead of probing optional record fields.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Iterable, Mapping, Union
from zoneinfo import ZoneInfo

from .currency import Currency
from .errors import InvalidTransactionError

# Ledger timestamps without an offset are assumed to be Jakarta wall-clock time
DEFAULT_TIMEZONE = ZoneInfo("Asia/Jakarta")


class TransactionType(Enum):
    """Kinds of ledger events replayed into a position."""

    BUY = "buy"
    SELL = "sell"
    UPDATE = "update"
    DELETE = "delete"


class AssetClass(Enum):
    """Asset classes held in the portfolio."""

    STOCK = "stock"
    CRYPTO = "crypto"
    CASH = "cash"
    GOLD = "gold"


class Market(Enum):
    """Exchange a stock trades on."""

    IDX = "IDX"
    US = "US"


class DeleteSource(Enum):
    """Where a delete was issued from.

    PORTFOLIO deletes close the position. HISTORY deletes only hide a row in
    the transaction history and never touch the position.
    """

    PORTFOLIO = "portfolio"
    HISTORY = "history"


def _sub_key(base: str, qualifier: str | None) -> str:
    if qualifier and qualifier.strip():
        return f"{base}|{qualifier.strip().upper()}"
    return base


@dataclass(frozen=True)
class StockAsset:
    """An exchange-listed equity, optionally held at a specific broker."""

    ticker: str
    market: Market = Market.IDX
    broker: str | None = None

    asset_class: ClassVar[AssetClass] = AssetClass.STOCK

    def __post_init__(self):
        object.__setattr__(self, "ticker", self.ticker.strip().upper())

    @property
    def symbol(self) -> str:
        return self.ticker

    @property
    def key(self) -> str:
        """Grouping key ``TICKER`` or ``TICKER|BROKER``.

        The market is not part of the key: the same ticker listed on IDX and
        in the US at the same broker is one holding, and a delete for either
        market closes it. The market only decides native currency and price
        lookup.
        """
        return _sub_key(self.ticker, self.broker)

    @property
    def native_currency(self) -> Currency:
        return Currency.USD if self.market == Market.US else Currency.IDR


@dataclass(frozen=True)
class CryptoAsset:
    """A cryptocurrency, optionally held on a specific exchange. Quoted in USD."""

    symbol: str
    exchange: str | None = None

    asset_class: ClassVar[AssetClass] = AssetClass.CRYPTO

    def __post_init__(self):
        object.__setattr__(self, "symbol", self.symbol.strip().upper())

    @property
    def key(self) -> str:
        return _sub_key(self.symbol, self.exchange)

    @property
    def native_currency(self) -> Currency:
        return Currency.USD


@dataclass(frozen=True)
class CashAsset:
    """An IDR cash balance held at a bank or account."""

    account: str

    asset_class: ClassVar[AssetClass] = AssetClass.CASH

    def __post_init__(self):
        object.__setattr__(self, "account", self.account.strip().upper())

    @property
    def symbol(self) -> str:
        return self.account

    @property
    def key(self) -> str:
        return self.account

    @property
    def native_currency(self) -> Currency:
        return Currency.IDR


@dataclass(frozen=True)
class GoldAsset:
    """Physical or digital gold measured in grams and priced in IDR."""

    ticker: str
    subtype: str = "digital"
    brand: str | None = None

    asset_class: ClassVar[AssetClass] = AssetClass.GOLD

    def __post_init__(self):
        object.__setattr__(self, "ticker", self.ticker.strip().upper())

    @property
    def symbol(self) -> str:
        return self.ticker

    @property
    def key(self) -> str:
        return self.ticker

    @property
    def native_currency(self) -> Currency:
        return Currency.IDR


AssetRef = Union[StockAsset, CryptoAsset, CashAsset, GoldAsset]


@dataclass(frozen=True)
class Transaction:
    """A single ledger event for one asset.

    ``value_idr`` and ``value_usd`` are the monetary values captured when the
    transaction was recorded, which preserves the exchange rate of that day.
    """

    id: str
    transaction_type: TransactionType
    asset: AssetRef
    quantity: Decimal
    price: Decimal
    timestamp: datetime
    value_idr: Decimal | None = None
    value_usd: Decimal | None = None
    source: DeleteSource | None = None
    entry_price: Decimal | None = None
    manual_price: Decimal | None = None

    @property
    def asset_class(self) -> AssetClass:
        return self.asset.asset_class

    @property
    def key(self) -> str:
        return self.asset.key

    @property
    def native_currency(self) -> Currency:
        return self.asset.native_currency

    @property
    def value_native(self) -> Decimal | None:
        """Captured value in the asset's native currency, if any."""
        return self.value_usd if self.native_currency == Currency.USD else self.value_idr

    @property
    def value_counter(self) -> Decimal | None:
        """Captured value in the other tracked currency, if any."""
        return self.value_idr if self.native_currency == Currency.USD else self.value_usd

    @property
    def is_history_delete(self) -> bool:
        """True for deletes that only hide a history row."""
        return self.transaction_type == TransactionType.DELETE and self.source == DeleteSource.HISTORY

    @property
    def is_portfolio_delete(self) -> bool:
        return self.transaction_type == TransactionType.DELETE and self.source == DeleteSource.PORTFOLIO

    def __repr__(self):
        return f"Transaction(id={self.id}, type={self.transaction_type.value}, key={self.asset_class.value}:{self.key}, quantity={self.quantity}, price={self.price}, timestamp={self.timestamp.isoformat()})"


def _normalize_transaction_datetime(dt: datetime) -> tuple[datetime, bool]:
    """Ensure a transaction datetime carries timezone information.

    Args:
        dt: The datetime to normalize.

    Returns:
        A tuple of (normalized_datetime, timezone_was_missing).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=DEFAULT_TIMEZONE), True
    return dt, False


def _parse_timestamp(value: Any) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        return _normalize_transaction_datetime(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        # fromisoformat only accepts a trailing "Z" from Python 3.11 on
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _normalize_transaction_datetime(datetime.fromisoformat(text))
        except ValueError as e:
            raise InvalidTransactionError(f"Invalid timestamp: {value!r}") from e
    raise InvalidTransactionError(f"Missing or invalid timestamp: {value!r}")


def _to_decimal(value: Any, field: str, default: Decimal | None = None) -> Decimal | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidTransactionError(f"Invalid {field}: {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidTransactionError(f"Invalid {field}: {value!r}") from e
    if not result.is_finite():
        raise InvalidTransactionError(f"Invalid {field}: {value!r}")
    return result


def _parse_enum(enum_type: type[Enum], value: Any, field: str) -> Any:
    text = str(value).strip()
    for candidate in (text, text.lower(), text.upper()):
        try:
            return enum_type(candidate)
        except ValueError:
            continue
    raise InvalidTransactionError(f"Unknown {field}: {value!r}")


def _first(record: Mapping[str, Any], *names: str) -> Any:
    """Return the first non-empty value among alternative field names."""
    for name in names:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return None


def _asset_from_dict(record: Mapping[str, Any]) -> AssetRef:
    raw_class = record.get("assetClass") or record.get("assetType")
    if not raw_class:
        raise InvalidTransactionError("Missing required field: assetType")
    asset_class = _parse_enum(AssetClass, raw_class, "asset class")

    name = record.get("ticker") or record.get("symbol")
    if not name or not str(name).strip():
        raise InvalidTransactionError("Missing required field: ticker/symbol")
    name = str(name)

    if asset_class == AssetClass.STOCK:
        raw_market = record.get("market")
        if raw_market:
            market = _parse_enum(Market, raw_market, "market")
        else:
            # Records from before the market field existed: infer from currency
            market = Market.US if str(record.get("currency", "")).upper() == "USD" else Market.IDX
        return StockAsset(ticker=name, market=market, broker=record.get("broker") or None)

    if asset_class == AssetClass.CRYPTO:
        return CryptoAsset(symbol=record.get("symbol") or name, exchange=record.get("exchange") or None)

    if asset_class == AssetClass.CASH:
        return CashAsset(account=name)

    return GoldAsset(
        ticker=name,
        subtype=str(record.get("subtype") or "digital"),
        brand=record.get("brand") or None,
    )


def transaction_from_dict(record: Mapping[str, Any]) -> Transaction:
    """Build a validated Transaction from a plain ledger record.

    Accepts the ledger store's record shape::

        {
            "id": "tx-1",
            "type": "buy",
            "assetType": "stock",
            "ticker": "BBCA",
            "market": "IDX",
            "amount": 1000,
            "price": 4500,
            "valueIDR": 4500000,
            "valueUSD": 290.32,
            "timestamp": "2024-01-15T10:30:00+07:00"
        }

    ``quantity`` is accepted as an alias of ``amount``, ``symbol`` as an
    alias of ``ticker`` and ``assetClass`` as an alias of ``assetType``.

    Args:
        record: Mapping with the fields above.

    Returns:
        The parsed Transaction.

    Raises:
        InvalidTransactionError: If a required field is missing or invalid.
    """
    tx_id = record.get("id")
    if tx_id is None or not str(tx_id).strip():
        raise InvalidTransactionError("Missing required field: id")

    if not record.get("type"):
        raise InvalidTransactionError("Missing required field: type")
    transaction_type = _parse_enum(TransactionType, record["type"], "transaction type")
    asset = _asset_from_dict(record)

    quantity = _to_decimal(_first(record, "amount", "quantity"), "quantity", Decimal("0"))
    default_price = Decimal("1") if asset.asset_class == AssetClass.CASH else Decimal("0")
    price = _to_decimal(record.get("price"), "price", default_price)
    timestamp, _ = _parse_timestamp(record.get("timestamp"))

    source = record.get("source")
    manual_price = None
    if record.get("useManualPrice", record.get("manualPrice") is not None):
        manual_price = _to_decimal(record.get("manualPrice"), "manual price")

    transaction = Transaction(
        id=str(tx_id),
        transaction_type=transaction_type,
        asset=asset,
        quantity=quantity,  # type: ignore[arg-type]
        price=price,  # type: ignore[arg-type]
        timestamp=timestamp,
        value_idr=_to_decimal(_first(record, "valueIDR", "value_idr"), "valueIDR"),
        value_usd=_to_decimal(_first(record, "valueUSD", "value_usd"), "valueUSD"),
        source=_parse_enum(DeleteSource, source, "source") if source else None,
        entry_price=_to_decimal(_first(record, "entry", "entry_price"), "entry price"),
        manual_price=manual_price,
    )
    return validate_transaction(transaction)


def transactions_from_records(records: Iterable[Mapping[str, Any]], origin: str = "ledger") -> list[Transaction]:
    """Parse a batch of ledger records, warning once about naive timestamps.

    Args:
        records: Plain ledger records (see transaction_from_dict).
        origin: Name of the record source, used in the warning text.

    Returns:
        The parsed transactions, in input order.

    Raises:
        InvalidTransactionError: If any record is invalid. The message
            includes the zero-based index of the offending record.
    """
    transactions: list[Transaction] = []
    any_missing_timezone = False

    for index, record in enumerate(records):
        try:
            transactions.append(transaction_from_dict(record))
        except InvalidTransactionError as e:
            raise InvalidTransactionError(f"Record {index} in {origin}: {e}") from e
        _, tz_missing = _parse_timestamp(record.get("timestamp"))
        any_missing_timezone = any_missing_timezone or tz_missing

    if any_missing_timezone:
        warnings.warn(
            f"Some transactions in '{origin}' were missing timezone information. "
            f"Assuming Jakarta time (Asia/Jakarta) for these transactions.",
            UserWarning
        )

    return transactions


def validate_transaction(transaction: Transaction) -> Transaction:
    """Check a transaction against the ledger rules.

    Args:
        transaction: The transaction to check.

    Returns:
        The same transaction, for chaining.

    Raises:
        InvalidTransactionError: If the transaction is invalid.
    """
    if not isinstance(transaction, Transaction):
        raise InvalidTransactionError(f"Expected a Transaction, got {type(transaction).__name__}")
    if not transaction.id or not transaction.id.strip():
        raise InvalidTransactionError("Transaction id must not be empty")
    if transaction.timestamp.tzinfo is None:
        raise InvalidTransactionError(f"Transaction {transaction.id} has a naive timestamp")
    if transaction.quantity < 0:
        raise InvalidTransactionError(f"Transaction {transaction.id} has negative quantity {transaction.quantity}")
    if transaction.transaction_type != TransactionType.DELETE and transaction.price < 0:
        raise InvalidTransactionError(f"Transaction {transaction.id} has negative price {transaction.price}")
    if transaction.transaction_type == TransactionType.BUY and transaction.quantity <= 0:
        raise InvalidTransactionError(f"Buy transaction {transaction.id} must have a positive quantity")
    if transaction.source == DeleteSource.HISTORY and transaction.transaction_type != TransactionType.DELETE:
        raise InvalidTransactionError(f"Transaction {transaction.id}: only deletes may come from history")
    return transaction


def make_delete_transaction(asset: AssetRef, transaction_id: str | None = None, timestamp: datetime | None = None) -> Transaction:
    """Create a portfolio delete for an asset, stamped now unless told otherwise.

    Args:
        asset: The asset to close.
        transaction_id: Id to use. Defaults to ``delete_<class>_<key>_<epoch-ms>``.
        timestamp: When the delete happened. Defaults to the current UTC time.

    Returns:
        The delete Transaction.
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    if transaction_id is None:
        transaction_id = f"delete_{asset.asset_class.value}_{asset.key}_{int(timestamp.timestamp() * 1000)}"
    return Transaction(
        id=transaction_id,
        transaction_type=TransactionType.DELETE,
        asset=asset,
        quantity=Decimal("0"),
        price=Decimal("0"),
        timestamp=timestamp,
        source=DeleteSource.PORTFOLIO,
    )
