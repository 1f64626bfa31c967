from stockledger.models.audit import AuditLog
from stockledger.models.ledger import BatchDeduction, EntryKind, LedgerEntry, MonthlyLedger
from stockledger.models.reporting import AlertSeverity, AlertType, MonthlySummary, StockAlert

__all__ = [
    "AlertSeverity",
    "AlertType",
    "AuditLog",
    "BatchDeduction",
    "EntryKind",
    "LedgerEntry",
    "MonthlyLedger",
    "MonthlySummary",
    "StockAlert",
]
