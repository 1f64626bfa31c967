"""
Balance recalculation and monthly aggregation.

Both are pure functions of (carry forward, ordered entries) so they can be re-run at any
time without drift. ``finalize`` applies them to a ledger document and is called by every
write path right before the session is committed.
"""
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from stockledger.models.ledger import LedgerEntry, MonthlyLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Movement:
    added: int
    used: int
    expired: int
    expired_carry_forward: int
    damaged: int

    @property
    def net(self) -> int:
        return self.added - self.used - self.expired - self.expired_carry_forward - self.damaged


@dataclass(frozen=True)
class BalanceResult:
    openings: tuple[int, ...]
    balances: tuple[int, ...]
    closing_balance: int
    # Positions where the running balance went negative and was floored at zero.
    clamped: tuple[int, ...]


@dataclass(frozen=True)
class MonthlyTotals:
    total_stock_added: int = 0
    total_used_stock: int = 0
    total_expired_stock: int = 0
    expired_carry_forward_stock: int = 0
    total_damage_stock: int = 0
    used_carry_forward_stock: int = 0


def counted_movement(entry: LedgerEntry) -> Movement:
    # Deduction entries only display their usage; the batch entries they drew from carry it.
    used = 0 if entry.is_deduction else (entry.used_stock or 0)
    return Movement(
        added=entry.added_stock or 0,
        used=used,
        expired=entry.expired_stock or 0,
        expired_carry_forward=entry.expired_carry_forward_stock or 0,
        damaged=entry.damage_stock or 0,
    )


def recalculate_balances(carry_forward: int, entries: Sequence[LedgerEntry]) -> BalanceResult:
    running = carry_forward
    openings: list[int] = []
    balances: list[int] = []
    clamped: list[int] = []
    for index, entry in enumerate(entries):
        openings.append(running)
        running += counted_movement(entry).net
        if running < 0:
            clamped.append(index)
            running = 0
        balances.append(running)
    return BalanceResult(
        openings=tuple(openings),
        balances=tuple(balances),
        closing_balance=running,
        clamped=tuple(clamped),
    )


def compute_totals(entries: Sequence[LedgerEntry]) -> MonthlyTotals:
    added = used = expired = expired_cf = damaged = used_cf = 0
    for entry in entries:
        movement = counted_movement(entry)
        added += movement.added
        used += movement.used
        expired += movement.expired
        expired_cf += movement.expired_carry_forward
        damaged += movement.damaged
        if entry.is_deduction:
            used_cf += entry.used_carry_forward_stock or 0
    return MonthlyTotals(
        total_stock_added=added,
        total_used_stock=used,
        total_expired_stock=expired,
        expired_carry_forward_stock=expired_cf,
        total_damage_stock=damaged,
        used_carry_forward_stock=used_cf,
    )


def unclamped_closing_balance(carry_forward: int, totals: MonthlyTotals) -> int:
    return (
        carry_forward
        + totals.total_stock_added
        - totals.total_used_stock
        - totals.total_expired_stock
        - totals.expired_carry_forward_stock
        - totals.total_damage_stock
    )


def closing_balance_for(carry_forward: int, totals: MonthlyTotals) -> int:
    return max(0, unclamped_closing_balance(carry_forward, totals))


def _describe(ledger: MonthlyLedger) -> str:
    return f"{ledger.venue_id}/{ledger.product_id} {ledger.year}-{ledger.month_number:02d}"


def _assign(target, field: str, value) -> None:
    if getattr(target, field) != value:
        setattr(target, field, value)


def finalize(ledger: MonthlyLedger) -> BalanceResult:
    entries = ledger.ordered_entries()
    result = recalculate_balances(ledger.carry_forward, entries)
    for entry, opening, balance in zip(entries, result.openings, result.balances):
        _assign(entry, "opening_balance", opening)
        _assign(entry, "balance", balance)
    for index in result.clamped:
        entry = entries[index]
        logger.warning(
            "Running balance floored at zero for %s on %s (%s entry, sequence %s)",
            _describe(ledger),
            entry.entry_date.isoformat(),
            entry.kind.value,
            entry.sequence,
        )

    totals = compute_totals(entries)
    _assign(ledger, "total_stock_added", totals.total_stock_added)
    _assign(ledger, "total_used_stock", totals.total_used_stock)
    _assign(ledger, "total_expired_stock", totals.total_expired_stock)
    _assign(ledger, "expired_carry_forward_stock", totals.expired_carry_forward_stock)
    _assign(ledger, "total_damage_stock", totals.total_damage_stock)
    _assign(ledger, "used_carry_forward_stock", totals.used_carry_forward_stock)

    raw_closing = unclamped_closing_balance(ledger.carry_forward, totals)
    if raw_closing < 0:
        logger.warning("Closing balance %s floored at zero for %s", raw_closing, _describe(ledger))
    _assign(ledger, "closing_balance", max(0, raw_closing))
    if not result.clamped and result.closing_balance != ledger.closing_balance:
        logger.warning(
            "Running balance %s disagrees with aggregate closing balance %s for %s",
            result.closing_balance,
            ledger.closing_balance,
            _describe(ledger),
        )
    return result
