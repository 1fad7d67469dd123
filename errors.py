class LedgerError(ValueError):
    """Base class for errors raised by the ledger services."""


class InvalidRequest(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class EditWindowViolation(LedgerError):
    pass


class WrongTransactionType(LedgerError):
    """Operation attempted on the wrong kind of row, e.g. a transfer-in mirror."""


class NothingToUpdate(LedgerError):
    pass


class TooManyQueryItems(LedgerError):
    pass


class EmptyQueryItems(LedgerError):
    pass


class OperationFailed(LedgerError):
    pass
