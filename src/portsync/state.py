"""The portfolio state store and its single-writer mutation queue.

Every change to the portfolio goes through ``PortfolioStore``. Entry points
validate their input on the calling thread, then push a mutation record onto
a FIFO queue. Whichever caller finds no writer active drains the queue, so
mutations are applied one at a time in arrival order no matter how many
threads (or observers) submit them.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from .builder import (
    DEFAULT_IDX_SUFFIX,
    DEFAULT_LOT_SIZE,
    Assets,
    build_assets,
    empty_assets,
    market_price,
)
from .currency import Currency, convert_amount
from .errors import (
    InvalidMutationError,
    QueueDrainError,
    StoreNotReadyError,
    StoreStateError,
)
from .notifications import ObserverRegistry
from .pricingdata import PricePoint, price_table_from_dict
from .replay import Position, revalue_position
from .transactions import AssetClass, AssetRef, Transaction, make_delete_transaction, validate_transaction

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class StoreState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


@dataclass(frozen=True)
class InitializeMutation:
    transactions: tuple[Transaction, ...]
    assets: Assets | None = None


@dataclass(frozen=True)
class RecordTransactionsMutation:
    transactions: tuple[Transaction, ...]


@dataclass(frozen=True)
class RecordPricesMutation:
    prices: dict[str, PricePoint]


@dataclass(frozen=True)
class RecordFxRateMutation:
    rate: Decimal | None


@dataclass(frozen=True)
class AppendTransactionMutation:
    transaction: Transaction


@dataclass(frozen=True)
class RebuildMutation:
    pass


@dataclass(frozen=True)
class ResetMutation:
    pass


Mutation = Union[
    InitializeMutation,
    RecordTransactionsMutation,
    RecordPricesMutation,
    RecordFxRateMutation,
    AppendTransactionMutation,
    RebuildMutation,
    ResetMutation,
]


class MutationQueue:
    """FIFO queue with a single active drainer.

    ``submit`` appends a mutation and, if no other caller is draining, drains
    the queue on the current thread. A submit made while a drain is running
    (from another thread, or re-entrantly from inside ``apply``) only
    enqueues; the active drainer picks it up in order.
    """

    def __init__(self, apply: Callable[[Any], Any]):
        """Initialize the queue.

        Args:
            apply: Called with each mutation, one at a time.
        """
        self._apply = apply
        self._pending: deque[Any] = deque()
        self._mutex = threading.Lock()
        # Not reentrant: a nested submit must fail to acquire and just enqueue
        self._writer = threading.Lock()

    def submit(self, mutation: Any) -> bool:
        """Enqueue a mutation and drain if no writer is active.

        Returns:
            True if this call drained the queue, False if it only enqueued.

        Raises:
            QueueDrainError: If applying a mutation failed during this
                caller's drain. The remaining queue has been discarded.
        """
        with self._mutex:
            self._pending.append(mutation)
        return self._drain()

    def _drain(self) -> bool:
        drained = False
        while self._writer.acquire(blocking=False):
            drained = True
            try:
                while True:
                    with self._mutex:
                        if not self._pending:
                            break
                        mutation = self._pending.popleft()
                    try:
                        self._apply(mutation)
                    except Exception as e:
                        discarded = self.clear()
                        logger.error(
                            "Applying %s failed; discarded %d queued mutation(s)",
                            type(mutation).__name__, len(discarded),
                        )
                        raise QueueDrainError(mutation, len(discarded)) from e
            finally:
                self._writer.release()

            # Something may have been enqueued between the last check and the release
            with self._mutex:
                if not self._pending:
                    break
        return drained

    def clear(self) -> list[Any]:
        """Drop every queued mutation and return them."""
        with self._mutex:
            discarded = list(self._pending)
            self._pending.clear()
        return discarded

    @property
    def draining(self) -> bool:
        return self._writer.locked()

    def __len__(self) -> int:
        with self._mutex:
            return len(self._pending)


@dataclass(frozen=True)
class PortfolioSnapshot:
    """A read-only copy of the store's state at one point in time."""

    assets: Assets = field(default_factory=empty_assets)
    transactions: tuple[Transaction, ...] = ()
    prices: dict[str, PricePoint] = field(default_factory=dict)
    fx_rate: Decimal | None = None
    last_update: datetime | None = None
    initialized: bool = False

    @property
    def state(self) -> StoreState:
        return StoreState.READY if self.initialized else StoreState.UNINITIALIZED

    def positions(self) -> Iterator[Position]:
        """Iterate over every open position, grouped by asset class."""
        for bucket in self.assets.values():
            yield from bucket.values()

    def get(self, asset_class: AssetClass, key: str) -> Position | None:
        return self.assets.get(asset_class, {}).get(key)


@dataclass(frozen=True)
class PortfolioSummary:
    """Portfolio totals in one currency."""

    total_value: Decimal
    total_cost: Decimal
    total_gain: Decimal
    total_gain_percent: Decimal
    asset_count: int
    currency: Currency
    last_update: datetime | None = None


def dedupe_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Drop transactions whose id was already seen; the first one wins."""
    seen: set[str] = set()
    result: list[Transaction] = []
    for tx in transactions:
        if tx.id in seen:
            continue
        seen.add(tx.id)
        result.append(tx)
    return result


def ledger_hash(transactions: Iterable[Transaction]) -> str:
    """Fingerprint a ledger by its (id, timestamp) pairs, ignoring list order."""
    pairs = sorted((tx.id, tx.timestamp.isoformat()) for tx in transactions)
    digest = hashlib.sha256()
    for tx_id, stamp in pairs:
        digest.update(f"{tx_id}|{stamp}\n".encode("utf-8"))
    return digest.hexdigest()


def _copy_assets(assets: Assets) -> Assets:
    copied = empty_assets()
    for asset_class, bucket in assets.items():
        copied[asset_class] = dict(bucket)
    return copied


def _price_changed(old: PricePoint | None, new: PricePoint) -> bool:
    return old is None or old.price != new.price or old.currency != new.currency


def _parse_fx_rate(rate: Any) -> Decimal | None:
    if rate is None:
        return None
    if isinstance(rate, bool):
        raise InvalidMutationError(f"Invalid exchange rate: {rate!r}")
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError) as e:
        raise InvalidMutationError(f"Invalid exchange rate: {rate!r}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidMutationError(f"Exchange rate must be positive, got {rate!r}")
    return value


class PortfolioStore:
    """Owns the portfolio state and serializes every change to it.

    Lifecycle: a new store is uninitialized. ``initialize`` loads the ledger
    once and makes it ready; ``reset_all`` returns it to uninitialized.
    Readers get copies through ``snapshot`` or by subscribing; the live state
    is never handed out.

    Example:
        store = PortfolioStore()
        unsubscribe = store.subscribe(lambda snap: print(len(snap.transactions)))
        store.initialize(transactions)
        store.record_fx_rate(Decimal("15500"))
        store.record_prices(price_table)
    """

    def __init__(self, lot_size: int = DEFAULT_LOT_SIZE, idx_suffix: str = DEFAULT_IDX_SUFFIX):
        """Initialize an empty store.

        Args:
            lot_size: Shares per IDX lot.
            idx_suffix: Suffix of IDX tickers in the price table.
        """
        self.lot_size = lot_size
        self.idx_suffix = idx_suffix

        # Guards the fields below and the pending id set; never held while
        # observers run or while a mutation is submitted.
        self._lock = threading.Lock()
        self._assets: Assets = empty_assets()
        self._transactions: list[Transaction] = []
        self._transaction_ids: set[str] = set()
        self._prices: dict[str, PricePoint] = {}
        self._fx_rate: Decimal | None = None
        self._last_update: datetime | None = None
        self._initialized = False
        self._last_hash: str | None = None
        self._pending_ids: set[str] = set()

        self._observers = ObserverRegistry()
        self._queue = MutationQueue(self._apply)
        self._handlers: dict[type, Callable[[Any], bool]] = {
            InitializeMutation: self._apply_initialize,
            RecordTransactionsMutation: self._apply_record_transactions,
            RecordPricesMutation: self._apply_record_prices,
            RecordFxRateMutation: self._apply_record_fx_rate,
            AppendTransactionMutation: self._apply_append_transaction,
            RebuildMutation: self._apply_rebuild,
            ResetMutation: self._apply_reset,
        }

    @classmethod
    def from_settings(cls, settings) -> "PortfolioStore":
        """Create a store using lot size and IDX suffix from a Settings object."""
        return cls(lot_size=settings.lot_size, idx_suffix=settings.idx_suffix)

    # Read side

    @property
    def state(self) -> StoreState:
        with self._lock:
            return StoreState.READY if self._initialized else StoreState.UNINITIALIZED

    def snapshot(self) -> PortfolioSnapshot:
        """Return a copy of the current state."""
        with self._lock:
            return PortfolioSnapshot(
                assets=_copy_assets(self._assets),
                transactions=tuple(self._transactions),
                prices=dict(self._prices),
                fx_rate=self._fx_rate,
                last_update=self._last_update,
                initialized=self._initialized,
            )

    def get_asset(self, asset_class: AssetClass, key: str) -> Position | None:
        """Return the open position for an asset key, or None."""
        with self._lock:
            return self._assets[asset_class].get(key.strip().upper())

    def subscribe(self, callback: Callable[[PortfolioSnapshot], None]) -> Callable[[], None]:
        """Call ``callback`` with a fresh snapshot after every state change.

        Returns:
            A function that cancels the subscription.
        """
        return self._observers.subscribe(callback)

    def summary(self, currency: Currency = Currency.IDR) -> PortfolioSummary:
        """Total value, cost and unrealized gain of all open positions.

        Amounts are converted into ``currency`` at the current exchange rate;
        a position that cannot be converted (no rate yet) contributes 0.

        Args:
            currency: Currency to report in.

        Returns:
            The PortfolioSummary.
        """
        snap = self.snapshot()
        total_value = _ZERO
        total_cost = _ZERO
        count = 0
        for position in snap.positions():
            count += 1
            total_value += convert_amount(position.primary_valuation, position.native_currency, currency, snap.fx_rate)
            total_cost += convert_amount(position.cost_basis_native, position.native_currency, currency, snap.fx_rate)

        total_gain = total_value - total_cost
        gain_percent = total_gain / total_cost * _HUNDRED if total_cost > 0 else _ZERO
        return PortfolioSummary(
            total_value=total_value,
            total_cost=total_cost,
            total_gain=total_gain,
            total_gain_percent=gain_percent,
            asset_count=count,
            currency=currency,
            last_update=snap.last_update,
        )

    # Write side

    def initialize(self, transactions: Iterable[Transaction] = (), assets: Assets | None = None) -> None:
        """Load the ledger and make the store ready.

        Args:
            transactions: The ledger snapshot. Duplicate ids are dropped.
            assets: Precomputed positions, used only when ``transactions``
                is empty.

        Raises:
            StoreStateError: If the store is already initialized.
            InvalidTransactionError: If any transaction is invalid.
        """
        if self.state == StoreState.READY:
            raise StoreStateError("Portfolio store is already initialized")
        txs = tuple(validate_transaction(tx) for tx in transactions)
        self._submit(InitializeMutation(transactions=txs, assets=_copy_assets(assets) if assets is not None else None))

    def record_transactions(self, transactions: Iterable[Transaction]) -> None:
        """Replace the ledger with a new snapshot of it.

        Nothing happens if the snapshot holds the same (id, timestamp) pairs
        as the last one accepted.

        Raises:
            StoreNotReadyError: If the store is not initialized.
            InvalidTransactionError: If any transaction is invalid.
        """
        self._require_ready("record_transactions")
        txs = tuple(validate_transaction(tx) for tx in transactions)
        self._submit(RecordTransactionsMutation(transactions=txs))

    def record_prices(self, prices: Mapping[str, Any]) -> None:
        """Merge a price table and re-value positions at the new prices.

        Args:
            prices: Symbol to PricePoint, or anything price_table_from_dict
                accepts.

        Raises:
            InvalidMutationError: If an entry has no usable price.
        """
        table = price_table_from_dict(prices)
        self._submit(RecordPricesMutation(prices=table))

    def record_fx_rate(self, rate: Any) -> None:
        """Set the USD->IDR rate and re-value every position.

        Args:
            rate: A positive rate, or None to clear it.

        Raises:
            InvalidMutationError: If the rate is not a positive number.
        """
        self._submit(RecordFxRateMutation(rate=_parse_fx_rate(rate)))

    def append_transaction(self, transaction: Transaction) -> bool:
        """Queue a single new transaction.

        Returns:
            False if a transaction with the same id is already committed or
            queued, True once the transaction has been queued.

        Raises:
            StoreNotReadyError: If the store is not initialized.
            InvalidTransactionError: If the transaction is invalid.
        """
        self._require_ready("append_transaction")
        validate_transaction(transaction)
        with self._lock:
            if transaction.id in self._pending_ids or transaction.id in self._transaction_ids:
                logger.debug("Ignoring duplicate transaction %s", transaction.id)
                return False
            self._pending_ids.add(transaction.id)
        self._submit(AppendTransactionMutation(transaction=transaction))
        return True

    def delete_asset(self, asset: AssetRef, timestamp: datetime | None = None) -> bool:
        """Close a position by appending a portfolio delete for it.

        Returns:
            The result of append_transaction.
        """
        self._require_ready("delete_asset")
        return self.append_transaction(make_delete_transaction(asset, timestamp=timestamp))

    def rebuild(self) -> None:
        """Replay the whole ledger again at the current prices."""
        self._require_ready("rebuild")
        self._submit(RebuildMutation())

    def reset_all(self) -> None:
        """Discard queued mutations and return the store to uninitialized."""
        discarded = self._queue.clear()
        with self._lock:
            self._pending_ids.clear()
        if discarded:
            logger.info("Reset discarded %d queued mutation(s)", len(discarded))
        self._submit(ResetMutation())

    def _require_ready(self, operation: str) -> None:
        if self.state != StoreState.READY:
            raise StoreNotReadyError(f"Cannot {operation} before the store is initialized")

    def _submit(self, mutation: Mutation) -> None:
        try:
            self._queue.submit(mutation)
        except QueueDrainError:
            with self._lock:
                self._pending_ids.clear()
            raise

    # Writer side; only ever runs inside the queue drain

    def _apply(self, mutation: Mutation) -> None:
        handler = self._handlers.get(type(mutation))
        if handler is None:
            raise TypeError(f"Unknown mutation type: {type(mutation).__name__}")
        if handler(mutation):
            self._observers.publish(self.snapshot())

    def _build(self, transactions: Iterable[Transaction], prices: Mapping[str, PricePoint], fx_rate: Decimal | None) -> Assets:
        return build_assets(transactions, prices, fx_rate, lot_size=self.lot_size, idx_suffix=self.idx_suffix)

    def _revalue(self, prices: Mapping[str, PricePoint], fx_rate: Decimal | None) -> Assets:
        revalued = empty_assets()
        count = 0
        for asset_class, bucket in self._assets.items():
            for key, position in bucket.items():
                price = position.current_price
                if position.manual_price is None and position.asset is not None:
                    market = market_price(position.asset, prices, fx_rate, self.idx_suffix)
                    if market is not None:
                        price = market
                revalued[asset_class][key] = revalue_position(position, price, fx_rate)
                count += 1
        logger.debug("Re-valued %d position(s)", count)
        return revalued

    def _apply_initialize(self, mutation: InitializeMutation) -> bool:
        if self._initialized:
            raise StoreStateError("Portfolio store is already initialized")

        txs = dedupe_transactions(mutation.transactions)
        if txs or mutation.assets is None:
            assets = self._build(txs, self._prices, self._fx_rate)
        else:
            assets = _copy_assets(mutation.assets)

        with self._lock:
            self._transactions = txs
            self._transaction_ids = {tx.id for tx in txs}
            self._assets = assets
            self._last_hash = ledger_hash(txs)
            self._initialized = True
            self._last_update = datetime.now(timezone.utc)
        logger.info("Initialized portfolio with %d transaction(s)", len(txs))
        return True

    def _apply_record_transactions(self, mutation: RecordTransactionsMutation) -> bool:
        if not self._initialized:
            logger.warning("Dropping ledger update queued before a reset")
            return False

        txs = dedupe_transactions(mutation.transactions)
        new_hash = ledger_hash(txs)
        if new_hash == self._last_hash:
            logger.debug("Ledger unchanged (%d transaction(s)); skipping rebuild", len(txs))
            return False

        assets = self._build(txs, self._prices, self._fx_rate)
        with self._lock:
            self._transactions = txs
            self._transaction_ids = {tx.id for tx in txs}
            self._assets = assets
            self._last_hash = new_hash
            self._last_update = datetime.now(timezone.utc)
        logger.debug("Rebuilt portfolio from %d transaction(s)", len(txs))
        return True

    def _apply_record_prices(self, mutation: RecordPricesMutation) -> bool:
        changed = [symbol for symbol, point in mutation.prices.items() if _price_changed(self._prices.get(symbol), point)]
        if not changed:
            logger.debug("Prices unchanged; skipping re-valuation")
            return False

        prices = {**self._prices, **mutation.prices}
        if not self._initialized:
            with self._lock:
                self._prices = prices
            return False

        assets = self._revalue(prices, self._fx_rate)
        with self._lock:
            self._prices = prices
            self._assets = assets
            self._last_update = datetime.now(timezone.utc)
        logger.debug("Applied %d changed price(s)", len(changed))
        return True

    def _apply_record_fx_rate(self, mutation: RecordFxRateMutation) -> bool:
        if mutation.rate == self._fx_rate:
            logger.debug("Exchange rate unchanged; skipping re-valuation")
            return False

        if not self._initialized:
            with self._lock:
                self._fx_rate = mutation.rate
            return False

        assets = self._revalue(self._prices, mutation.rate)
        with self._lock:
            self._fx_rate = mutation.rate
            self._assets = assets
            self._last_update = datetime.now(timezone.utc)
        return True

    def _apply_append_transaction(self, mutation: AppendTransactionMutation) -> bool:
        tx = mutation.transaction
        if tx.id in self._transaction_ids or not self._initialized:
            with self._lock:
                self._pending_ids.discard(tx.id)
            logger.debug("Dropping queued transaction %s", tx.id)
            return False

        txs = self._transactions + [tx]
        assets = self._build(txs, self._prices, self._fx_rate)
        with self._lock:
            self._pending_ids.discard(tx.id)
            self._transactions = txs
            self._transaction_ids.add(tx.id)
            self._assets = assets
            self._last_hash = ledger_hash(txs)
            self._last_update = datetime.now(timezone.utc)
        logger.debug("Appended transaction %s", tx.id)
        return True

    def _apply_rebuild(self, mutation: RebuildMutation) -> bool:
        if not self._initialized:
            return False
        assets = self._build(self._transactions, self._prices, self._fx_rate)
        with self._lock:
            self._assets = assets
            self._last_update = datetime.now(timezone.utc)
        return True

    def _apply_reset(self, mutation: ResetMutation) -> bool:
        with self._lock:
            self._assets = empty_assets()
            self._transactions = []
            self._transaction_ids = set()
            self._prices = {}
            self._fx_rate = None
            self._last_update = None
            self._initialized = False
            self._last_hash = None
        logger.info("Portfolio store reset")
        return True
