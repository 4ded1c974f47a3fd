"""Exception types raised by the portfolio engine."""


class PortfolioError(Exception):
    """Base class for all portsync errors."""


class InvalidTransactionError(PortfolioError, ValueError):
    """A transaction record is malformed or violates a ledger rule."""


class InvalidMutationError(PortfolioError, ValueError):
    """A price table or exchange rate handed to the store is unusable."""


class StoreStateError(PortfolioError, RuntimeError):
    """The store was used in a way its lifecycle does not allow."""


class StoreNotReadyError(StoreStateError):
    """A ledger mutation arrived before the store was initialized."""


class QueueDrainError(PortfolioError):
    """Applying a queued mutation failed; the rest of the queue was discarded.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, mutation: object, discarded: int):
        """Initialize a QueueDrainError.

        Args:
            mutation: The queued mutation whose application failed.
            discarded: Number of queued mutations dropped after the failure.
        """
        super().__init__(
            f"Failed to apply {type(mutation).__name__}; "
            f"discarded {discarded} queued mutation(s)"
        )
        self.mutation = mutation
        self.discarded = discarded
