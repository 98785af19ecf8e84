"""Domain exceptions for the analytics table engine."""


class StockScreenerError(Exception):
    """Base class for every error raised by this package."""


class SourceFetchError(StockScreenerError):
    """A remote source (fundamentals, membership, account) could not be read or written."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WatchlistError(StockScreenerError):
    """Base class for watchlist mutation failures."""

    def __init__(self, message: str, symbol: str):
        super().__init__(message)
        self.symbol = symbol


class AmbiguousMembershipError(WatchlistError):
    """The source watchlist of a move/copy/remove cannot be resolved. Raised before any network call."""


class MutationPendingError(WatchlistError):
    """A mutation for this symbol is still in flight."""


class WatchlistMutationError(WatchlistError):
    """The backing store rejected or failed a mutation. Local state has been rolled back."""


class LockedColumnError(StockScreenerError):
    """A locked column was requested as sort key or visible column."""

    def __init__(self, column_id: str):
        super().__init__(f"column '{column_id}' is locked for this tier/dataset")
        self.column_id = column_id
