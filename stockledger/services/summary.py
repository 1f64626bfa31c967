from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.models.ledger import EntryKind, MonthlyLedger
from stockledger.models.reporting import MonthlySummary


def summary_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def find_summary(db: Session, venue_id: str, product_id: str, month: str) -> MonthlySummary | None:
    return db.scalar(
        select(MonthlySummary).where(
            MonthlySummary.venue_id == venue_id,
            MonthlySummary.product_id == product_id,
            MonthlySummary.month == month,
        )
    )


def refresh_summary(db: Session, ledger: MonthlyLedger) -> MonthlySummary:
    """Rebuild the summary row for one ledger document from its entries."""
    month = summary_month(ledger.year, ledger.month_number)
    summary = find_summary(db, ledger.venue_id, ledger.product_id, month)
    if summary is None:
        summary = MonthlySummary(venue_id=ledger.venue_id, product_id=ledger.product_id, month=month)
        db.add(summary)

    purchases = sales = adjustments = waste = returns = 0
    purchases_cost = Decimal("0.00")
    for entry in ledger.entries:
        quantity = abs(entry.quantity)
        if entry.kind == EntryKind.ADDED:
            purchases += quantity
            if entry.unit_cost is not None:
                purchases_cost += entry.unit_cost * quantity
        elif entry.kind == EntryKind.SOLD:
            sales += quantity
        elif entry.kind == EntryKind.ADJUSTMENT:
            adjustments += entry.quantity
        elif entry.kind in (EntryKind.EXPIRED, EntryKind.DAMAGED):
            waste += quantity
        elif entry.kind == EntryKind.RETURNED:
            returns += quantity

    summary.current_stock = ledger.closing_balance
    summary.reserved_stock = 0
    summary.available_stock = ledger.closing_balance
    summary.purchases_quantity = purchases
    summary.purchases_cost = purchases_cost.quantize(Decimal("0.01"))
    summary.sales_quantity = sales
    summary.adjustments_quantity = adjustments
    summary.waste_quantity = waste
    summary.returns_quantity = returns
    summary.last_updated = datetime.utcnow()
    return summary
