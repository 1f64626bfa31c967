"""
Batch allocation.

Batches are derived from stock-in entries (ADDED, RETURNED and positive ADJUSTMENT) across
every month of a venue/product. The allocators never mutate a batch: they return an
``Allocation`` describing which batches to draw from, and the caller applies it.
"""
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date

from stockledger.models.ledger import LedgerEntry


@dataclass(frozen=True)
class Batch:
    batch_number: str | None
    entry_date: date
    sequence: int
    expire_date: date | None
    original_quantity: int
    remaining_quantity: int
    source: LedgerEntry | None = field(default=None, compare=False, repr=False)

    @property
    def period(self) -> tuple[int, int]:
        return self.entry_date.year, self.entry_date.month

    def is_expired(self, on_date: date) -> bool:
        # Stock stays usable through its expiry date.
        return self.expire_date is not None and self.expire_date < on_date


@dataclass(frozen=True)
class Deduction:
    batch: Batch
    deducted: int

    @property
    def batch_number(self) -> str | None:
        return self.batch.batch_number

    @property
    def expire_date(self) -> date | None:
        return self.batch.expire_date


@dataclass(frozen=True)
class Allocation:
    requested: int
    deductions: tuple[Deduction, ...]

    @property
    def allocated(self) -> int:
        return sum(deduction.deducted for deduction in self.deductions)

    @property
    def unallocated(self) -> int:
        return self.requested - self.allocated

    @property
    def is_complete(self) -> bool:
        return self.unallocated == 0


def batch_from_entry(entry: LedgerEntry) -> Batch:
    return Batch(
        batch_number=entry.batch_number,
        entry_date=entry.entry_date,
        sequence=entry.sequence,
        expire_date=entry.expire_date,
        original_quantity=entry.added_stock or 0,
        remaining_quantity=entry.remaining_quantity,
        source=entry,
    )


def batches_from_entries(entries: Iterable[LedgerEntry]) -> list[Batch]:
    batches = [batch_from_entry(entry) for entry in entries if entry.is_stock_in]
    return sorted(batches, key=_age_key)


def _age_key(batch: Batch) -> tuple:
    return batch.entry_date, batch.sequence


def _expiry_key(batch: Batch) -> tuple:
    return batch.expire_date is None, batch.expire_date or date.max, batch.entry_date, batch.sequence


def _walk(candidates: Sequence[Batch], quantity: int) -> Allocation:
    outstanding = quantity
    deductions: list[Deduction] = []
    for batch in candidates:
        if outstanding <= 0:
            break
        take = min(batch.remaining_quantity, outstanding)
        if take <= 0:
            continue
        deductions.append(Deduction(batch=batch, deducted=take))
        outstanding -= take
    return Allocation(requested=quantity, deductions=tuple(deductions))


def _available(batches: Iterable[Batch], on_date: date, batch_number: str | None) -> list[Batch]:
    return [
        batch
        for batch in batches
        if batch.remaining_quantity > 0
        and batch.entry_date <= on_date
        and (batch_number is None or batch.batch_number == batch_number)
    ]


def fifo_candidates(batches: Iterable[Batch], on_date: date) -> list[Batch]:
    usable = [batch for batch in _available(batches, on_date, None) if not batch.is_expired(on_date)]
    return sorted(usable, key=_age_key)


def allocate_fifo(batches: Iterable[Batch], quantity: int, on_date: date) -> Allocation:
    """Oldest unexpired batch first; used for sales and negative adjustments."""
    return _walk(fifo_candidates(batches, on_date), quantity)


def allocate_expiry(
    batches: Iterable[Batch],
    quantity: int,
    on_date: date,
    batch_number: str | None = None,
) -> Allocation:
    """Earliest expiry first, batches without an expiry date last."""
    return _walk(sorted(_available(batches, on_date, batch_number), key=_expiry_key), quantity)


def allocate_damage(
    batches: Iterable[Batch],
    quantity: int,
    on_date: date,
    batch_number: str | None = None,
) -> Allocation:
    return _walk(sorted(_available(batches, on_date, batch_number), key=_age_key), quantity)
