"""Exception hierarchy for the cooperative loan ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class ValidationError(LedgerError, ValueError):
    """Raised when input is malformed or out of range."""


class NotFoundError(LedgerError, LookupError):
    """Raised when a loan, installment or fine id is unknown."""


class InvalidStateError(LedgerError):
    """Raised when an entity is in a state that forbids the operation."""


class AlreadyPaidError(InvalidStateError):
    """Raised when paying an installment or fine that is already paid."""


class CannotPayWaivedError(InvalidStateError):
    """Raised when paying a fine that has been waived."""


class CannotWaivePaidError(InvalidStateError):
    """Raised when waiving a fine that has been paid."""


class ConsistencyError(LedgerError):
    """Raised when a ledger invariant does not hold after a mutation.

    Indicates a broken transaction boundary; the enclosing atomic scope is
    rolled back and the error propagates.
    """
