import json
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from stockledger.core.errors import (
    EntryNotFoundError,
    InsufficientStockError,
    LedgerValidationError,
    StockConsumedError,
    UnallocatableSaleError,
)
from stockledger.models.audit import AuditLog
from stockledger.models.ledger import EntryKind, MonthlyLedger
from stockledger.services.balance import unclamped_closing_balance, compute_totals
from tests.conftest import PRODUCT, VENUE


def assert_invariants(db):
    for ledger in db.scalars(select(MonthlyLedger)).all():
        totals = compute_totals(ledger.ordered_entries())
        assert ledger.closing_balance == max(0, unclamped_closing_balance(ledger.carry_forward, totals))
        assert ledger.total_used_stock == sum(
            entry.used_stock for entry in ledger.entries if entry.kind != EntryKind.SOLD and entry.quantity > 0
        )


def test_end_to_end_month(service, db):
    batch_a = service.record_addition(VENUE, PRODUCT, 100, batch_number="A", entry_date=date(2025, 1, 1))
    sale = service.record_sale(VENUE, PRODUCT, 30, entry_date=date(2025, 1, 10))
    batch_b = service.record_addition(VENUE, PRODUCT, 50, batch_number="B", entry_date=date(2025, 1, 15))
    expiry = service.record_expiry(VENUE, PRODUCT, 20, batch_number="A", entry_date=date(2025, 1, 20))

    assert sale.balance == 70
    assert [(d.batch_number, d.deducted) for d in sale.deductions] == [("A", 30)]
    assert batch_b.balance == 120
    assert expiry.balance == 100
    assert expiry.expired_stock == 20

    view = service.get_monthly_view(VENUE, PRODUCT, 2025, 1)
    assert view.total_stock_added == 150
    assert view.total_used_stock == 30
    assert view.total_expired_stock == 20
    assert view.closing_balance == 100
    assert [entry.kind for entry in view.entries] == [EntryKind.ADDED, EntryKind.SOLD, EntryKind.ADDED, EntryKind.EXPIRED]

    batches = {batch.batch_number: batch for batch in service.get_batches(VENUE, PRODUCT)}
    assert batches["A"].entry_id == batch_a.id
    assert batches["A"].remaining_quantity == 50
    assert batches["B"].remaining_quantity == 50
    assert_invariants(db)


def test_sale_spans_batches_in_fifo_order(service, db):
    service.record_addition(VENUE, PRODUCT, 5, batch_number="B1", entry_date=date(2025, 1, 1))
    service.record_addition(VENUE, PRODUCT, 5, batch_number="B2", entry_date=date(2025, 1, 3))

    sale = service.record_sale(VENUE, PRODUCT, 7, entry_date=date(2025, 1, 5))

    assert [(d.sequence, d.batch_number, d.deducted) for d in sale.deductions] == [(1, "B1", 5), (2, "B2", 2)]
    assert sale.quantity == -7
    assert sum(d.deducted for d in sale.deductions) == 7
    assert_invariants(db)


def test_sale_usage_is_only_counted_on_batches(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    sale = service.record_sale(VENUE, PRODUCT, 4, entry_date=date(2025, 1, 2))

    view = service.get_monthly_view(VENUE, PRODUCT, 2025, 1)

    assert sale.used_stock == 4
    assert view.total_used_stock == 4
    assert view.closing_balance == 6
    added = next(entry for entry in view.entries if entry.kind == EntryKind.ADDED)
    assert added.used_stock == 4
    assert added.remaining_quantity == 6


def test_unallocatable_sale_is_rejected_without_writing(service):
    service.record_addition(VENUE, PRODUCT, 5, entry_date=date(2025, 1, 1))

    with pytest.raises(UnallocatableSaleError) as excinfo:
        service.record_sale(VENUE, PRODUCT, 8, entry_date=date(2025, 1, 2))

    assert excinfo.value.requested == 8
    assert excinfo.value.allocatable == 5
    assert excinfo.value.shortfall == 3
    assert len(service.get_history(VENUE, PRODUCT)) == 1
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 5
    assert service.get_batches(VENUE, PRODUCT)[0].remaining_quantity == 5


def test_sale_cannot_use_expired_stock(service):
    service.record_addition(VENUE, PRODUCT, 10, expire_date=date(2025, 1, 5), entry_date=date(2025, 1, 1))

    service.record_sale(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 5))
    with pytest.raises(UnallocatableSaleError):
        service.record_sale(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 6))


def test_sale_from_previous_month_batch(service, db):
    service.record_addition(VENUE, PRODUCT, 10, batch_number="JAN", entry_date=date(2025, 1, 10))

    sale = service.record_sale(VENUE, PRODUCT, 4, entry_date=date(2025, 2, 3))

    january = service.get_monthly_view(VENUE, PRODUCT, 2025, 1)
    february = service.get_monthly_view(VENUE, PRODUCT, 2025, 2)
    assert sale.used_carry_forward_stock == 4
    assert sale.deductions[0].from_carry_forward
    assert january.closing_balance == 6
    assert february.carry_forward == 6
    assert february.closing_balance == 6
    assert february.used_carry_forward_stock == 4
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 6
    assert_invariants(db)


def test_expire_due_batches_writes_off_the_day_after_expiry(service, clock, db):
    service.record_addition(VENUE, PRODUCT, 10, batch_number="OLD", expire_date=date(2025, 1, 31), entry_date=date(2025, 1, 2))
    service.record_addition(VENUE, PRODUCT, 4, batch_number="NEW", expire_date=date(2025, 3, 1), entry_date=date(2025, 1, 20))
    service.record_sale(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 25))
    clock.today = date(2025, 2, 10)

    expired = service.expire_due_batches(VENUE, PRODUCT)

    assert len(expired) == 1
    entry = expired[0]
    assert entry.entry_date == date(2025, 2, 1)
    assert entry.quantity == -7
    assert entry.expired_carry_forward_stock == 7
    assert entry.expired_stock == 0
    assert [(d.batch_number, d.deducted) for d in entry.deductions] == [("OLD", 7)]

    february = service.get_monthly_view(VENUE, PRODUCT, 2025, 2)
    assert february.carry_forward == 11
    assert february.closing_balance == 4
    assert service.expire_due_batches(VENUE, PRODUCT) == []
    assert_invariants(db)


def test_damage_from_named_batch(service):
    service.record_addition(VENUE, PRODUCT, 5, batch_number="B1", entry_date=date(2025, 1, 1))
    service.record_addition(VENUE, PRODUCT, 5, batch_number="B2", entry_date=date(2025, 1, 2))

    damage = service.record_damage(VENUE, PRODUCT, 2, batch_number="B2", entry_date=date(2025, 1, 3))

    assert damage.damage_stock == 2
    assert damage.balance == 8
    remaining = {batch.batch_number: batch.remaining_quantity for batch in service.get_batches(VENUE, PRODUCT)}
    assert remaining == {"B1": 5, "B2": 3}

    with pytest.raises(InsufficientStockError):
        service.record_damage(VENUE, PRODUCT, 4, batch_number="B2", entry_date=date(2025, 1, 4))
    with pytest.raises(LedgerValidationError):
        service.record_damage(VENUE, PRODUCT, 1, batch_number="nope", entry_date=date(2025, 1, 4))


def test_returns_become_new_batches(service):
    service.record_addition(VENUE, PRODUCT, 2, entry_date=date(2025, 1, 1))
    service.record_sale(VENUE, PRODUCT, 2, entry_date=date(2025, 1, 2))

    returned = service.record_return(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 3))
    sale = service.record_sale(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 4))

    assert returned.balance == 1
    assert sale.deductions[0].source_entry_id == returned.id
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 0


def test_adjustments_in_both_directions(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))

    up = service.record_adjustment(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 2), reason="stock count")
    down = service.record_adjustment(VENUE, PRODUCT, -5, entry_date=date(2025, 1, 3), reason="shrinkage")

    assert up.added_stock == 3
    assert up.balance == 13
    assert down.quantity == -5
    assert down.balance == 8
    assert down.notes == "shrinkage"
    with pytest.raises(InsufficientStockError):
        service.record_adjustment(VENUE, PRODUCT, -50, entry_date=date(2025, 1, 4))
    with pytest.raises(LedgerValidationError):
        service.record_adjustment(VENUE, PRODUCT, 0, entry_date=date(2025, 1, 4))


@pytest.mark.parametrize("quantity", [0, -3, "5", 2.5, True, None])
def test_bad_quantities_are_rejected(service, quantity):
    with pytest.raises(LedgerValidationError):
        service.record_addition(VENUE, PRODUCT, quantity, entry_date=date(2025, 1, 1))
    assert service.get_history(VENUE, PRODUCT) == []


def test_bad_identifiers_and_dates_are_rejected(service):
    with pytest.raises(LedgerValidationError):
        service.record_addition("  ", PRODUCT, 1)
    with pytest.raises(LedgerValidationError):
        service.record_addition(VENUE, PRODUCT, 1, entry_date="not-a-date")
    with pytest.raises(LedgerValidationError):
        service.record_addition(VENUE, PRODUCT, 1, expire_date=date(2024, 12, 1), entry_date=date(2025, 1, 1))
    with pytest.raises(LedgerValidationError):
        service.get_monthly_view(VENUE, PRODUCT, 2025, 13)


def test_monthly_view_synthesises_opening_entry_without_creating_documents(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))

    view = service.get_monthly_view(VENUE, PRODUCT, 2025, 2)

    assert not view.exists
    assert view.carry_forward == 10
    assert view.closing_balance == 10
    assert len(view.entries) == 1
    opening = view.entries[0]
    assert opening.kind == EntryKind.OPENING
    assert opening.is_virtual
    assert opening.balance == 10
    assert opening.id is None
    balance = service.get_current_balance(VENUE, PRODUCT)
    assert (balance.year, balance.month_number) == (2025, 1)


def test_month_without_carry_forward_has_no_opening_entry(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))

    view = service.get_monthly_view(VENUE, PRODUCT, 2025, 1)

    assert all(not entry.is_virtual for entry in view.entries)


def test_history_is_chronological_across_months(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 2, 1))
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 5))
    service.record_sale(VENUE, PRODUCT, 2, entry_date=date(2025, 2, 3))

    history = service.get_history(VENUE, PRODUCT)
    window = service.get_history(VENUE, PRODUCT, date(2025, 2, 1), date(2025, 2, 28))
    sales = service.get_history(VENUE, PRODUCT, kinds=[EntryKind.SOLD])

    assert [entry.entry_date for entry in history] == [date(2025, 1, 5), date(2025, 2, 1), date(2025, 2, 3)]
    assert len(window) == 2
    assert [entry.kind for entry in sales] == [EntryKind.SOLD]
    with pytest.raises(LedgerValidationError):
        service.get_history(VENUE, PRODUCT, date(2025, 3, 1), date(2025, 2, 1))


def test_deleting_a_sale_restores_its_batches(service, db):
    addition = service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    sale = service.record_sale(VENUE, PRODUCT, 4, entry_date=date(2025, 1, 2))

    with pytest.raises(StockConsumedError):
        service.delete_entry(VENUE, PRODUCT, addition.id)

    service.delete_entry(VENUE, PRODUCT, sale.id)

    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 10
    assert service.get_batches(VENUE, PRODUCT)[0].remaining_quantity == 10
    service.delete_entry(VENUE, PRODUCT, addition.id)
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 0
    assert_invariants(db)


def test_deleting_unknown_or_foreign_entry(service):
    addition = service.record_addition(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 1))

    with pytest.raises(EntryNotFoundError):
        service.delete_entry(VENUE, PRODUCT, 9999)
    with pytest.raises(EntryNotFoundError):
        service.delete_entry("other-venue", PRODUCT, addition.id)


def test_update_entry_guards_consumed_batches(service):
    addition = service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    service.record_sale(VENUE, PRODUCT, 6, entry_date=date(2025, 1, 5))

    with pytest.raises(StockConsumedError):
        service.update_entry(VENUE, PRODUCT, addition.id, entry_date=date(2025, 1, 7))
    with pytest.raises(StockConsumedError):
        service.update_entry(VENUE, PRODUCT, addition.id, quantity=5)
    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, addition.id, entry_date=date(2025, 2, 1))

    updated = service.update_entry(
        VENUE,
        PRODUCT,
        addition.id,
        quantity=12,
        entry_date=date(2025, 1, 3),
        unit_cost=Decimal("1.25"),
        notes="recounted",
    )

    assert updated.quantity == 12
    assert updated.entry_date == date(2025, 1, 3)
    assert updated.notes == "recounted"
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 6


def test_sale_cannot_be_moved_past_its_batch_expiry(service):
    service.record_addition(VENUE, PRODUCT, 10, expire_date=date(2025, 1, 10), entry_date=date(2025, 1, 1))
    sale = service.record_sale(VENUE, PRODUCT, 4, entry_date=date(2025, 1, 5))

    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, sale.id, entry_date=date(2025, 1, 25))

    moved = service.update_entry(VENUE, PRODUCT, sale.id, entry_date=date(2025, 1, 10))
    assert moved.entry_date == date(2025, 1, 10)
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 6


def test_sale_cannot_be_moved_before_its_batch(service, db):
    service.record_addition(VENUE, PRODUCT, 5, entry_date=date(2025, 1, 5))
    sale = service.record_sale(VENUE, PRODUCT, 2, entry_date=date(2025, 1, 6))

    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, sale.id, entry_date=date(2025, 1, 3))

    moved = service.update_entry(VENUE, PRODUCT, sale.id, entry_date=date(2025, 1, 9))
    assert moved.entry_date == date(2025, 1, 9)
    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 3
    assert_invariants(db)


def test_batch_expiry_cannot_be_moved_before_a_sale_from_it(service):
    addition = service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    service.record_sale(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 20))

    with pytest.raises(StockConsumedError):
        service.update_entry(VENUE, PRODUCT, addition.id, expire_date=date(2025, 1, 15))

    updated = service.update_entry(VENUE, PRODUCT, addition.id, expire_date=date(2025, 1, 25))
    assert updated.expire_date == date(2025, 1, 25)


def test_only_stock_in_entries_change_quantity_cost_or_expiry(service):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    sale = service.record_sale(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 2))

    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, sale.id, quantity=2)
    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, sale.id, unit_cost=Decimal("1.00"))
    with pytest.raises(LedgerValidationError):
        service.update_entry(VENUE, PRODUCT, sale.id, expire_date=date(2025, 1, 20))

    assert service.get_current_balance(VENUE, PRODUCT).current_stock == 7


def test_notes_can_be_cleared(service):
    addition = service.record_addition(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 1), notes="back shelf")

    unchanged = service.update_entry(VENUE, PRODUCT, addition.id, unit_cost=Decimal("2.00"))
    assert unchanged.notes == "back shelf"

    cleared = service.update_entry(VENUE, PRODUCT, addition.id, notes="")
    assert cleared.notes is None


def test_backdated_write_off_names_later_consumption(service):
    service.record_addition(VENUE, PRODUCT, 5, entry_date=date(2025, 1, 5))
    service.record_sale(VENUE, PRODUCT, 5, entry_date=date(2025, 3, 1))

    with pytest.raises(InsufficientStockError, match="consumed by later entries") as excinfo:
        service.record_expiry(VENUE, PRODUCT, 2, entry_date=date(2025, 2, 3))

    assert excinfo.value.allocatable == 0


def test_recalculate_repairs_tampered_totals(service, session_factory):
    service.record_addition(VENUE, PRODUCT, 10, entry_date=date(2025, 1, 1))
    service.record_addition(VENUE, PRODUCT, 5, entry_date=date(2025, 2, 1))
    with session_factory() as db:
        january = db.scalar(select(MonthlyLedger).where(MonthlyLedger.month_number == 1))
        january.closing_balance = 99
        january.total_stock_added = 99
        db.commit()

    documents = service.recalculate(VENUE, PRODUCT)

    assert [(doc.month_number, doc.carry_forward, doc.closing_balance) for doc in documents] == [(1, 0, 10), (2, 10, 15)]
    with pytest.raises(LedgerValidationError):
        service.recalculate(VENUE, PRODUCT, year=2025)


def test_monthly_summary_projection(service):
    service.record_addition(VENUE, PRODUCT, 10, unit_cost=Decimal("2.50"), entry_date=date(2025, 1, 1))
    service.record_sale(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 2))
    service.record_damage(VENUE, PRODUCT, 1, entry_date=date(2025, 1, 3))
    service.record_return(VENUE, PRODUCT, 2, entry_date=date(2025, 1, 4))
    service.record_adjustment(VENUE, PRODUCT, -1, entry_date=date(2025, 1, 5))

    summary = service.get_monthly_summary(VENUE, PRODUCT, 2025, 1)

    assert summary.month == "2025-01"
    assert summary.current_stock == 7
    assert summary.available_stock == 7
    assert summary.purchases_quantity == 10
    assert summary.purchases_cost == Decimal("25.00")
    assert summary.sales_quantity == 3
    assert summary.waste_quantity == 1
    assert summary.returns_quantity == 2
    assert summary.adjustments_quantity == -1
    assert service.get_monthly_summary(VENUE, PRODUCT, 2025, 2) is None


def test_every_write_is_audited(service, db):
    entry = service.record_addition(VENUE, PRODUCT, 3, entry_date=date(2025, 1, 1), actor="staff-7")

    log = db.scalar(select(AuditLog).where(AuditLog.event_type == "stock.added"))

    assert log.actor == "staff-7"
    assert log.entry_id == entry.id
    assert json.loads(log.details)["quantity"] == 3
    assert entry.actor == "staff-7"
