"""Exceptions raised by the storage and reconciliation layers."""


class ListingSyncError(Exception):
    """Base class for listing-sync errors."""


class NotFoundError(ListingSyncError):
    """Raised when a property ref (or tag) does not exist."""


class ConflictError(ListingSyncError):
    """Raised when a concurrent writer got there first, or a unique key is taken.

    Callers may retry or report it to the operator.
    """


class PersistenceError(ListingSyncError):
    """Raised when the datastore fails or a transaction is aborted.

    The transaction has been rolled back; the underlying error is chained.
    """
