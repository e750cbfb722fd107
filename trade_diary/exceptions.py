"""
Custom exception hierarchy for the trade diary.

Hierarchy:

    TradeDiaryError (base)
    ├── OperationalError       - transient/retryable (fill source, database)
    │   └── FillSourceError
    ├── DataError              - bad input or rejected business operation
    │   ├── ValidationError
    │   ├── PositionNotFoundError
    │   └── PositionClosedError
    └── InvariantError         - ledger invariant violated, never swallowed

Rules:
    - OperationalError: surface to the caller, which may retry the batch.
      Re-ingestion is idempotent for buys.
    - DataError: reject the single operation, no partial mutation.
    - InvariantError: stop processing. A corrupted ledger is worse than a
      failed sync.
"""


class TradeDiaryError(Exception):
    """Base exception for all trade diary errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeDiaryError):
    """Transient/retryable error: upstream fill fetch, database connectivity."""
    pass


class FillSourceError(OperationalError):
    """Raised when an upstream fill source fails to deliver fills."""
    pass


# ============ DATA (bad input, rejected operation) ============

class DataError(TradeDiaryError):
    """Bad input or a business rule rejection for a single operation."""
    pass


class ValidationError(DataError):
    """Raised when a record fails field validation."""
    pass


class PositionNotFoundError(DataError):
    """Raised when a position does not exist for the requesting owner."""
    pass


class PositionClosedError(DataError):
    """Raised when an operation requires an OPEN position but it is CLOSED."""
    pass


# ============ INVARIANT (ledger corruption) ============

class InvariantError(TradeDiaryError):
    """Position invariant violation.

    Raised by the Position constructor when quantity/status bookkeeping is
    inconsistent. Should never be caught and silently continued.
    """
    pass
