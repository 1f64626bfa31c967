"""
Optional collaborators a ``LedgerService`` can be given.

None of them is required. Without a ``StockLevelSink`` current stock is not mirrored
anywhere, without a ``ThresholdProvider`` the configured ``LOW_STOCK_THRESHOLD`` applies,
and without an ``AlertNotifier`` alerts are only stored in ``stock_alerts``.
"""
from typing import Protocol

from stockledger.schemas.ledger import StockAlertOut


class StockLevelSink(Protocol):
    def publish(self, venue_id: str, product_id: str, current_stock: int) -> None:
        """Called after a successful commit with the key's latest closing balance."""


class ThresholdProvider(Protocol):
    def low_stock_threshold(self, venue_id: str, product_id: str) -> int | None:
        """Return ``None`` to use the configured default."""


class AlertNotifier(Protocol):
    def notify(self, alert: StockAlertOut) -> None:
        """Called after commit for every alert raised by that write."""
