class LedgerError(Exception):
    pass


class LedgerValidationError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


class EntryNotFoundError(NotFoundError):
    pass


class AlertNotFoundError(NotFoundError):
    pass


class InsufficientStockError(LedgerError):
    def __init__(self, message: str, *, requested: int, allocatable: int) -> None:
        super().__init__(message)
        self.requested = requested
        self.allocatable = allocatable

    @property
    def shortfall(self) -> int:
        return self.requested - self.allocatable


class UnallocatableSaleError(InsufficientStockError):
    pass


class StockConsumedError(LedgerError):
    pass


class LedgerConflictError(LedgerError):
    """Raised when a concurrent writer got there first; the caller may retry."""
