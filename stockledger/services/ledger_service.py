import json
import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from stockledger.core.config import Settings, settings
from stockledger.core.errors import (
    AlertNotFoundError,
    EntryNotFoundError,
    InsufficientStockError,
    LedgerConflictError,
    LedgerValidationError,
    StockConsumedError,
    UnallocatableSaleError,
)
from stockledger.models.audit import AuditLog
from stockledger.models.ledger import BatchDeduction, EntryKind, LedgerEntry, MonthlyLedger
from stockledger.models.reporting import StockAlert
from stockledger.schemas.ledger import (
    BalanceOut,
    BatchOut,
    LedgerEntryOut,
    MonthlyLedgerOut,
    MonthlySummaryOut,
    MonthlyViewOut,
    StockAlertOut,
)
from stockledger.services.alerts import AlertRules, evaluate_stock_alerts, resolve
from stockledger.services.balance import finalize
from stockledger.services.capabilities import AlertNotifier, StockLevelSink, ThresholdProvider
from stockledger.services.carry_forward import (
    apply_carry_forward,
    find_monthly_ledger,
    latest_ledger_before,
    latest_monthly_ledger,
    list_monthly_ledgers,
    open_monthly_ledger,
    propagate_carry_forward,
)
from stockledger.services.fifo import (
    Allocation,
    Batch,
    Deduction,
    allocate_damage,
    allocate_expiry,
    allocate_fifo,
    batches_from_entries,
)
from stockledger.services.locking import KeyedLock
from stockledger.services.periods import as_date, month_name, period_of, validate_period
from stockledger.services.summary import find_summary, refresh_summary, summary_month

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 64


def _require_id(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise LedgerValidationError(f"{field} is required")
    cleaned = value.strip()
    if len(cleaned) > MAX_ID_LENGTH:
        raise LedgerValidationError(f"{field} must be at most {MAX_ID_LENGTH} characters")
    return cleaned


def _require_quantity(value: Any, *, signed: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LedgerValidationError("quantity must be a whole number")
    if signed and value == 0:
        raise LedgerValidationError("Adjustment quantity cannot be zero")
    if not signed and value <= 0:
        raise LedgerValidationError("quantity must be greater than zero")
    return value


def _optional_cost(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        cost = Decimal(str(value))
    except InvalidOperation as exc:
        raise LedgerValidationError("unit_cost must be numeric") from exc
    if not cost.is_finite() or cost < 0:
        raise LedgerValidationError("unit_cost must be a non-negative number")
    return cost.quantize(Decimal("0.01"))


def _optional_text(value: Any, field: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise LedgerValidationError(f"{field} must be text")
    cleaned = value.strip()
    if len(cleaned) > max_length:
        raise LedgerValidationError(f"{field} must be at most {max_length} characters")
    return cleaned or None


def _default_batch_number(on: date, sequence: int) -> str:
    return f"B{on:%Y%m%d}-{sequence:03d}"


def _entry_out(entry: LedgerEntry) -> LedgerEntryOut:
    return LedgerEntryOut.model_validate(entry)


def _opening_entry(view: MonthlyViewOut) -> LedgerEntryOut:
    return LedgerEntryOut(
        id=None,
        sequence=0,
        entry_date=date(view.year, view.month_number, 1),
        kind=EntryKind.OPENING,
        quantity=view.carry_forward,
        opening_balance=view.carry_forward,
        added_stock=0,
        used_stock=0,
        expired_stock=0,
        expired_carry_forward_stock=0,
        damage_stock=0,
        used_carry_forward_stock=0,
        balance=view.carry_forward,
        notes="Opening balance carried forward",
        is_virtual=True,
    )


def _batch_out(batch: Batch, on: date) -> BatchOut:
    source = batch.source
    return BatchOut(
        entry_id=source.id,
        kind=source.kind,
        batch_number=batch.batch_number,
        entry_date=batch.entry_date,
        expire_date=batch.expire_date,
        unit_cost=source.unit_cost,
        original_quantity=batch.original_quantity,
        used_quantity=source.used_stock or 0,
        expired_quantity=source.batch_expired or 0,
        damaged_quantity=source.batch_damaged or 0,
        remaining_quantity=batch.remaining_quantity,
        is_expired=batch.is_expired(on),
    )


class _Write:
    """State collected by one ledger write and settled right before commit."""

    def __init__(self, db: Session, venue_id: str, product_id: str, actor: str | None) -> None:
        self.db = db
        self.venue_id = venue_id
        self.product_id = product_id
        self.actor = actor
        self.touched: list[MonthlyLedger] = []
        self.events: list[tuple[str, LedgerEntry | int | None, dict]] = []
        self.new_alerts: list[StockAlert] = []
        self.alert_outs: list[StockAlertOut] = []
        self.current_stock = 0

    def touch(self, ledger: MonthlyLedger) -> None:
        if not any(existing is ledger for existing in self.touched):
            self.touched.append(ledger)

    def audit(self, event_type: str, entry: LedgerEntry | int | None, **details) -> None:
        self.events.append((event_type, entry, details))


class LedgerService:
    """Write and read facade over the monthly stock ledger.

    Writers are serialised per (venue, product): an in-process keyed lock, row locks on
    the key's ledger documents and the documents' version counter. Every write finalizes
    the documents it touched, re-seeds later months, refreshes the monthly summaries and
    stock alerts, and records an audit row in the same transaction.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        locks: KeyedLock | None = None,
        stock_sink: StockLevelSink | None = None,
        threshold_provider: ThresholdProvider | None = None,
        alert_notifier: AlertNotifier | None = None,
        config: Settings = settings,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks or KeyedLock(timeout_seconds=config.lock_timeout_seconds)
        self._stock_sink = stock_sink
        self._threshold_provider = threshold_provider
        self._alert_notifier = alert_notifier
        self._config = config
        self._today = today

    # Write path

    def _entry_date(self, value: Any, field: str = "entry_date") -> date:
        if value is None:
            return self._today()
        return as_date(value, field)

    def _write(
        self,
        venue_id: str,
        product_id: str,
        actor: str | None,
        operation: Callable[[_Write], Any],
        render: Callable[[Any], Any],
    ):
        with self._locks.hold((venue_id, product_id)):
            with self._session_factory() as db:
                write = _Write(db, venue_id, product_id, actor)
                try:
                    list_monthly_ledgers(db, venue_id, product_id, for_update=True)
                    result = operation(write)
                    self._settle(write)
                    output = render(result)
                    db.commit()
                except (StaleDataError, IntegrityError) as exc:
                    db.rollback()
                    logger.warning("Conflicting write on %s/%s: %s", venue_id, product_id, exc)
                    raise LedgerConflictError(
                        f"Ledger for {venue_id}/{product_id} was changed concurrently, retry the request"
                    ) from exc
        self._after_commit(write)
        return output

    def _settle(self, write: _Write) -> None:
        db = write.db
        if write.touched:
            for ledger in sorted(write.touched, key=lambda item: item.period):
                finalize(ledger)
            start = min(ledger.period for ledger in write.touched)
            reseeded = propagate_carry_forward(db, write.venue_id, write.product_id, *start)
            now = datetime.utcnow()
            for ledger in dict.fromkeys([*write.touched, *reseeded]):
                ledger.updated_at = now
                refresh_summary(db, ledger)

        latest = latest_monthly_ledger(db, write.venue_id, write.product_id)
        write.current_stock = latest.closing_balance if latest else 0

        if self._config.alerts_enabled:
            rules = AlertRules(
                low_stock_threshold=self._low_stock_threshold(write.venue_id, write.product_id),
                overstock_threshold=self._config.overstock_threshold,
                expiry_warning_days=self._config.expiry_warning_days,
            )
            write.new_alerts = evaluate_stock_alerts(
                db,
                write.venue_id,
                write.product_id,
                write.current_stock,
                batches_from_entries(self._key_entries(db, write.venue_id, write.product_id)),
                rules,
                self._today(),
            )

        db.flush()
        for event_type, entry, details in write.events:
            entry_id = entry.id if isinstance(entry, LedgerEntry) else entry
            db.add(
                AuditLog(
                    event_type=event_type,
                    actor=write.actor,
                    venue_id=write.venue_id,
                    product_id=write.product_id,
                    entry_id=entry_id,
                    details=json.dumps(details, default=str),
                )
            )
        db.flush()
        write.alert_outs = [StockAlertOut.model_validate(alert) for alert in write.new_alerts]

    def _after_commit(self, write: _Write) -> None:
        if self._stock_sink is not None:
            try:
                self._stock_sink.publish(write.venue_id, write.product_id, write.current_stock)
            except Exception:
                logger.exception("Stock level sink failed for %s/%s", write.venue_id, write.product_id)
        if self._alert_notifier is not None:
            for alert in write.alert_outs:
                try:
                    self._alert_notifier.notify(alert)
                except Exception:
                    logger.exception("Alert notifier failed for alert %s", alert.id)

    def _low_stock_threshold(self, venue_id: str, product_id: str) -> int:
        if self._threshold_provider is not None:
            try:
                threshold = self._threshold_provider.low_stock_threshold(venue_id, product_id)
            except Exception:
                logger.exception("Threshold provider failed for %s/%s, using default", venue_id, product_id)
                threshold = None
            if threshold is not None:
                return threshold
        return self._config.low_stock_threshold

    @staticmethod
    def _key_entries(db: Session, venue_id: str, product_id: str) -> list[LedgerEntry]:
        return [entry for ledger in list_monthly_ledgers(db, venue_id, product_id) for entry in ledger.entries]

    @staticmethod
    def _new_entry(
        ledger: MonthlyLedger,
        kind: EntryKind,
        quantity: int,
        on: date,
        notes: str | None,
        actor: str | None,
    ) -> LedgerEntry:
        return LedgerEntry(
            sequence=ledger.next_sequence(),
            entry_date=on,
            kind=kind,
            quantity=quantity,
            opening_balance=0,
            added_stock=0,
            used_stock=0,
            expired_stock=0,
            expired_carry_forward_stock=0,
            damage_stock=0,
            used_carry_forward_stock=0,
            balance=0,
            batch_expired=0,
            batch_damaged=0,
            notes=notes,
            actor=actor,
        )

    def _book_stock_out(
        self,
        write: _Write,
        kind: EntryKind,
        quantity: int,
        allocation: Allocation,
        on: date,
        notes: str | None,
    ) -> LedgerEntry:
        ledger = open_monthly_ledger(write.db, write.venue_id, write.product_id, on.year, on.month)
        entry = self._new_entry(ledger, kind, -quantity, on, notes, write.actor)
        carried = 0
        for index, deduction in enumerate(allocation.deductions, start=1):
            batch = deduction.batch
            source = batch.source
            from_carry_forward = batch.period < ledger.period
            if from_carry_forward:
                carried += deduction.deducted
            if kind == EntryKind.EXPIRED:
                source.batch_expired = (source.batch_expired or 0) + deduction.deducted
            elif kind == EntryKind.DAMAGED:
                source.batch_damaged = (source.batch_damaged or 0) + deduction.deducted
            else:
                source.used_stock = (source.used_stock or 0) + deduction.deducted
            write.touch(source.ledger)
            entry.deductions.append(
                BatchDeduction(
                    sequence=index,
                    source_entry=source,
                    batch_number=batch.batch_number,
                    batch_date=batch.entry_date,
                    deducted=deduction.deducted,
                    expire_date=batch.expire_date,
                    from_carry_forward=from_carry_forward,
                )
            )

        if kind == EntryKind.EXPIRED:
            entry.expired_stock = quantity - carried
            entry.expired_carry_forward_stock = carried
        elif kind == EntryKind.DAMAGED:
            entry.damage_stock = quantity
        else:
            entry.used_stock = quantity
            entry.used_carry_forward_stock = carried
        ledger.entries.append(entry)
        write.touch(ledger)
        return entry

    def _record_stock_in(
        self,
        kind: EntryKind,
        event_type: str,
        venue_id: Any,
        product_id: Any,
        quantity: int,
        *,
        unit_cost: Any,
        batch_number: Any,
        expire_date: Any,
        entry_date: Any,
        notes: Any,
        actor: Any,
    ) -> LedgerEntryOut:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        quantity = _require_quantity(quantity)
        on = self._entry_date(entry_date)
        validate_period(on.year, on.month)
        expires = as_date(expire_date, "expire_date") if expire_date is not None else None
        if expires is not None and expires < on:
            raise LedgerValidationError("expire_date cannot be before the entry date")
        cost = _optional_cost(unit_cost)
        batch_number = _optional_text(batch_number, "batch_number", 64)
        notes = _optional_text(notes, "notes", 255)
        actor = _optional_text(actor, "actor", 128)

        def operation(write: _Write) -> LedgerEntry:
            ledger = open_monthly_ledger(write.db, venue_id, product_id, on.year, on.month)
            entry = self._new_entry(ledger, kind, quantity, on, notes, actor)
            entry.added_stock = quantity
            entry.batch_number = batch_number or _default_batch_number(on, entry.sequence)
            entry.expire_date = expires
            entry.unit_cost = cost
            ledger.entries.append(entry)
            write.touch(ledger)
            write.audit(event_type, entry, quantity=quantity, batch_number=entry.batch_number, entry_date=on)
            logger.info("%s %s of %s/%s on %s", kind.value, quantity, venue_id, product_id, on.isoformat())
            return entry

        return self._write(venue_id, product_id, actor, operation, _entry_out)

    def _consumed_after(self, db: Session, batches: list[Batch], on: date, batch_number: str | None) -> int:
        """Quantity drawn from batches held on ``on`` by entries dated after it."""
        total = 0
        for batch in batches:
            if batch.source is None or batch.entry_date > on:
                continue
            if batch_number is not None and batch.batch_number != batch_number:
                continue
            total += sum(
                deduction.deducted
                for deduction in self._deductions_from(db, batch.source)
                if deduction.entry.entry_date > on
            )
        return total

    def _record_write_off(
        self,
        kind: EntryKind,
        venue_id: Any,
        product_id: Any,
        quantity: int,
        batch_number: Any,
        entry_date: Any,
        notes: Any,
        actor: Any,
    ) -> LedgerEntryOut:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        quantity = _require_quantity(quantity)
        on = self._entry_date(entry_date)
        validate_period(on.year, on.month)
        batch_number = _optional_text(batch_number, "batch_number", 64)
        notes = _optional_text(notes, "notes", 255)
        actor = _optional_text(actor, "actor", 128)
        allocator = allocate_expiry if kind == EntryKind.EXPIRED else allocate_damage

        def operation(write: _Write) -> LedgerEntry:
            batches = batches_from_entries(self._key_entries(write.db, venue_id, product_id))
            if batch_number is not None and not any(batch.batch_number == batch_number for batch in batches):
                raise LedgerValidationError(f"Unknown batch {batch_number}")
            allocation = allocator(batches, quantity, on, batch_number)
            if not allocation.is_complete:
                source = f"batch {batch_number}" if batch_number else "available batches"
                message = f"Cannot write off {quantity}: only {allocation.allocated} left in {source} on {on.isoformat()}"
                consumed_later = self._consumed_after(write.db, batches, on, batch_number)
                if consumed_later:
                    message += f"; {consumed_later} of the stock held on that date was consumed by later entries"
                raise InsufficientStockError(
                    message,
                    requested=quantity,
                    allocatable=allocation.allocated,
                )
            entry = self._book_stock_out(write, kind, quantity, allocation, on, notes)
            write.audit(
                f"stock.{kind.value.lower()}",
                entry,
                quantity=quantity,
                entry_date=on,
                deductions=[{"batch_number": item.batch_number, "deducted": item.deducted} for item in allocation.deductions],
            )
            logger.info("%s %s of %s/%s on %s", kind.value, quantity, venue_id, product_id, on.isoformat())
            return entry

        return self._write(venue_id, product_id, actor, operation, _entry_out)

    def _record_fifo_out(
        self,
        kind: EntryKind,
        venue_id: str,
        product_id: str,
        quantity: int,
        on: date,
        notes: str | None,
        actor: str | None,
        error: type[InsufficientStockError],
    ) -> LedgerEntryOut:
        def operation(write: _Write) -> LedgerEntry:
            batches = batches_from_entries(self._key_entries(write.db, venue_id, product_id))
            allocation = allocate_fifo(batches, quantity, on)
            if not allocation.is_complete:
                raise error(
                    f"Insufficient stock: requested {quantity}, only {allocation.allocated} "
                    f"available in unexpired batches on {on.isoformat()}",
                    requested=quantity,
                    allocatable=allocation.allocated,
                )
            entry = self._book_stock_out(write, kind, quantity, allocation, on, notes)
            write.audit(
                "stock.sold" if kind == EntryKind.SOLD else "stock.adjusted",
                entry,
                quantity=-quantity,
                entry_date=on,
                deductions=[{"batch_number": item.batch_number, "deducted": item.deducted} for item in allocation.deductions],
            )
            logger.info("%s %s of %s/%s on %s", kind.value, quantity, venue_id, product_id, on.isoformat())
            return entry

        return self._write(venue_id, product_id, actor, operation, _entry_out)

    def record_addition(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        unit_cost: Decimal | None = None,
        batch_number: str | None = None,
        expire_date: date | None = None,
        entry_date: date | None = None,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        return self._record_stock_in(
            EntryKind.ADDED,
            "stock.added",
            venue_id,
            product_id,
            quantity,
            unit_cost=unit_cost,
            batch_number=batch_number,
            expire_date=expire_date,
            entry_date=entry_date,
            notes=notes,
            actor=actor,
        )

    def record_sale(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        entry_date: date | None = None,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        """Book a sale against the oldest unexpired batches.

        A sale the batches cannot fully cover is rejected with ``UnallocatableSaleError``
        and nothing is written.
        """
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        quantity = _require_quantity(quantity)
        on = self._entry_date(entry_date)
        validate_period(on.year, on.month)
        return self._record_fifo_out(
            EntryKind.SOLD,
            venue_id,
            product_id,
            quantity,
            on,
            _optional_text(notes, "notes", 255),
            _optional_text(actor, "actor", 128),
            UnallocatableSaleError,
        )

    def record_expiry(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        batch_number: str | None = None,
        entry_date: date | None = None,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        return self._record_write_off(EntryKind.EXPIRED, venue_id, product_id, quantity, batch_number, entry_date, notes, actor)

    def record_damage(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        batch_number: str | None = None,
        entry_date: date | None = None,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        return self._record_write_off(EntryKind.DAMAGED, venue_id, product_id, quantity, batch_number, entry_date, notes, actor)

    def record_return(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        unit_cost: Decimal | None = None,
        batch_number: str | None = None,
        expire_date: date | None = None,
        entry_date: date | None = None,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        """Returned goods go back on the shelf as a new batch."""
        return self._record_stock_in(
            EntryKind.RETURNED,
            "stock.returned",
            venue_id,
            product_id,
            quantity,
            unit_cost=unit_cost,
            batch_number=batch_number,
            expire_date=expire_date,
            entry_date=entry_date,
            notes=notes,
            actor=actor,
        )

    def record_adjustment(
        self,
        venue_id: str,
        product_id: str,
        quantity: int,
        entry_date: date | None = None,
        *,
        reason: str | None = None,
        unit_cost: Decimal | None = None,
        batch_number: str | None = None,
        expire_date: date | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        """Positive adjustments add a batch, negative ones are deducted like a sale."""
        quantity = _require_quantity(quantity, signed=True)
        if quantity > 0:
            return self._record_stock_in(
                EntryKind.ADJUSTMENT,
                "stock.adjusted",
                venue_id,
                product_id,
                quantity,
                unit_cost=unit_cost,
                batch_number=batch_number,
                expire_date=expire_date,
                entry_date=entry_date,
                notes=reason,
                actor=actor,
            )
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        on = self._entry_date(entry_date)
        validate_period(on.year, on.month)
        return self._record_fifo_out(
            EntryKind.ADJUSTMENT,
            venue_id,
            product_id,
            -quantity,
            on,
            _optional_text(reason, "reason", 255),
            _optional_text(actor, "actor", 128),
            InsufficientStockError,
        )

    def expire_due_batches(
        self,
        venue_id: str,
        product_id: str,
        as_of: date | None = None,
        *,
        actor: str | None = None,
    ) -> list[LedgerEntryOut]:
        """Write off every batch whose expiry date has passed, one EXPIRED entry per batch.

        Each entry is dated the day after the batch's expiry date.
        """
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        cutoff = self._entry_date(as_of, "as_of")
        actor = _optional_text(actor, "actor", 128)

        def operation(write: _Write) -> list[LedgerEntry]:
            batches = batches_from_entries(self._key_entries(write.db, venue_id, product_id))
            due = [batch for batch in batches if batch.remaining_quantity > 0 and batch.is_expired(cutoff)]
            created = []
            for batch in sorted(due, key=lambda item: (item.expire_date, item.entry_date, item.sequence)):
                quantity = batch.remaining_quantity
                allocation = Allocation(requested=quantity, deductions=(Deduction(batch=batch, deducted=quantity),))
                expired_on = batch.expire_date + timedelta(days=1)
                entry = self._book_stock_out(
                    write,
                    EntryKind.EXPIRED,
                    quantity,
                    allocation,
                    expired_on,
                    f"Batch {batch.batch_number} expired on {batch.expire_date.isoformat()}",
                )
                write.audit("stock.expired.auto", entry, quantity=quantity, batch_number=batch.batch_number)
                created.append(entry)
            if created:
                logger.info("Expired %s batches of %s/%s as of %s", len(created), venue_id, product_id, cutoff.isoformat())
            return created

        return self._write(venue_id, product_id, actor, operation, lambda entries: [_entry_out(entry) for entry in entries])

    # Entry maintenance

    @staticmethod
    def _get_entry(db: Session, venue_id: str, product_id: str, entry_id: int) -> LedgerEntry:
        entry = db.get(LedgerEntry, entry_id)
        if entry is None or entry.ledger.venue_id != venue_id or entry.ledger.product_id != product_id:
            raise EntryNotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    @staticmethod
    def _deductions_from(db: Session, entry: LedgerEntry) -> list[BatchDeduction]:
        return list(db.scalars(select(BatchDeduction).where(BatchDeduction.source_entry_id == entry.id)).all())

    def update_entry(
        self,
        venue_id: str,
        product_id: str,
        entry_id: int,
        *,
        entry_date: date | None = None,
        quantity: int | None = None,
        unit_cost: Decimal | None = None,
        expire_date: date | None = None,
        notes: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntryOut:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        new_date = as_date(entry_date, "entry_date") if entry_date is not None else None
        new_quantity = _require_quantity(quantity) if quantity is not None else None
        new_cost = _optional_cost(unit_cost)
        new_expiry = as_date(expire_date, "expire_date") if expire_date is not None else None
        # None leaves notes untouched; an empty string clears them.
        notes_given = notes is not None
        notes = _optional_text(notes, "notes", 255)
        actor = _optional_text(actor, "actor", 128)

        def operation(write: _Write) -> LedgerEntry:
            entry = self._get_entry(write.db, venue_id, product_id, entry_id)
            consumers = self._deductions_from(write.db, entry) if entry.is_stock_in else []
            if not entry.is_stock_in and (new_quantity is not None or new_cost is not None or new_expiry is not None):
                raise LedgerValidationError("Only stock-in entries can change quantity, cost or expiry; delete and re-record instead")
            changes: dict[str, Any] = {}

            if new_date is not None and new_date != entry.entry_date:
                if period_of(new_date) != entry.ledger.period:
                    raise LedgerValidationError("An entry can only be moved within its own month")
                if any(deduction.entry.entry_date < new_date for deduction in consumers):
                    raise StockConsumedError("Batch was consumed before the new entry date")
                if any(deduction.batch_date > new_date for deduction in entry.deductions):
                    raise LedgerValidationError("Entry cannot be dated before the batches it drew from")
                if entry.is_deduction and any(
                    deduction.expire_date is not None and deduction.expire_date < new_date
                    for deduction in entry.deductions
                ):
                    raise LedgerValidationError("Entry cannot be moved past the expiry date of a batch it drew from")
                for deduction in consumers:
                    deduction.batch_date = new_date
                changes["entry_date"] = new_date
                entry.entry_date = new_date

            if new_quantity is not None and new_quantity != entry.quantity:
                consumed = (entry.used_stock or 0) + (entry.batch_expired or 0) + (entry.batch_damaged or 0)
                if new_quantity < consumed:
                    raise StockConsumedError(f"{consumed} of this batch has already been consumed")
                changes["quantity"] = new_quantity
                entry.quantity = new_quantity
                entry.added_stock = new_quantity

            if new_cost is not None:
                changes["unit_cost"] = new_cost
                entry.unit_cost = new_cost

            if new_expiry is not None:
                if new_expiry < entry.entry_date:
                    raise LedgerValidationError("expire_date cannot be before the entry date")
                sold_after = [
                    deduction
                    for deduction in consumers
                    if deduction.entry.is_deduction and deduction.entry.entry_date > new_expiry
                ]
                if sold_after:
                    raise StockConsumedError("Batch was sold after the new expiry date")
                for deduction in consumers:
                    deduction.expire_date = new_expiry
                changes["expire_date"] = new_expiry
                entry.expire_date = new_expiry

            if notes_given:
                changes["notes"] = notes
                entry.notes = notes

            write.touch(entry.ledger)
            write.audit("stock.entry_updated", entry, **changes)
            return entry

        return self._write(venue_id, product_id, actor, operation, _entry_out)

    def delete_entry(self, venue_id: str, product_id: str, entry_id: int, *, actor: str | None = None) -> None:
        """Remove an entry and reverse the batch deductions it made.

        Stock-in entries can only be removed while nothing has been drawn from them.
        """
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        actor = _optional_text(actor, "actor", 128)

        def operation(write: _Write) -> None:
            entry = self._get_entry(write.db, venue_id, product_id, entry_id)
            ledger = entry.ledger
            if entry.is_stock_in:
                if self._deductions_from(write.db, entry) or entry.remaining_quantity != (entry.added_stock or 0):
                    raise StockConsumedError("Cannot delete this entry because stock from it has already been consumed")
            else:
                for deduction in entry.deductions:
                    source = deduction.source_entry
                    if entry.kind == EntryKind.EXPIRED:
                        source.batch_expired -= deduction.deducted
                    elif entry.kind == EntryKind.DAMAGED:
                        source.batch_damaged -= deduction.deducted
                    else:
                        source.used_stock -= deduction.deducted
                    write.touch(source.ledger)
            write.audit(
                "stock.entry_deleted",
                entry.id,
                kind=entry.kind.value,
                quantity=entry.quantity,
                entry_date=entry.entry_date,
            )
            ledger.entries.remove(entry)
            write.touch(ledger)
            logger.info("Deleted %s entry %s of %s/%s", entry.kind.value, entry.id, venue_id, product_id)

        self._write(venue_id, product_id, actor, operation, lambda _: None)

    def recalculate(
        self,
        venue_id: str,
        product_id: str,
        year: int | None = None,
        month: int | None = None,
        *,
        actor: str | None = None,
    ) -> list[MonthlyLedgerOut]:
        """Re-run carry forward and balance recalculation from a month onwards (all months by default)."""
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        if (year is None) != (month is None):
            raise LedgerValidationError("year and month must be given together")
        if year is not None:
            validate_period(year, month)
        actor = _optional_text(actor, "actor", 128)

        def operation(write: _Write) -> list[MonthlyLedger]:
            ledgers = list_monthly_ledgers(write.db, venue_id, product_id)
            if year is not None:
                ledgers = [ledger for ledger in ledgers if ledger.period >= (year, month)]
            if not ledgers:
                return []
            first = ledgers[0]
            predecessor = latest_ledger_before(write.db, venue_id, product_id, *first.period)
            apply_carry_forward(first, predecessor.closing_balance if predecessor else 0)
            for ledger in ledgers:
                write.touch(ledger)
            write.audit("stock.recalculated", None, from_period=f"{first.year}-{first.month_number:02d}", documents=len(ledgers))
            return ledgers

        return self._write(
            venue_id,
            product_id,
            actor,
            operation,
            lambda ledgers: [MonthlyLedgerOut.model_validate(ledger) for ledger in ledgers],
        )

    # Queries

    def get_current_balance(self, venue_id: str, product_id: str) -> BalanceOut:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        with self._session_factory() as db:
            latest = latest_monthly_ledger(db, venue_id, product_id)
            if latest is None:
                return BalanceOut(venue_id=venue_id, product_id=product_id, current_stock=0)
            return BalanceOut(
                venue_id=venue_id,
                product_id=product_id,
                current_stock=latest.closing_balance,
                year=latest.year,
                month_number=latest.month_number,
            )

    def get_monthly_view(self, venue_id: str, product_id: str, year: int, month: int) -> MonthlyViewOut:
        """Entries of one month, led by a virtual OPENING entry when stock was carried in.

        Read only: a month without a document is reported with the balance it would open with.
        """
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        validate_period(year, month)
        with self._session_factory() as db:
            ledger = find_monthly_ledger(db, venue_id, product_id, year, month)
            if ledger is None:
                earlier = latest_ledger_before(db, venue_id, product_id, year, month)
                carry_forward = earlier.closing_balance if earlier else 0
                view = MonthlyViewOut(
                    venue_id=venue_id,
                    product_id=product_id,
                    year=year,
                    month_number=month,
                    month_name=month_name(month),
                    carry_forward=carry_forward,
                    total_stock_added=0,
                    total_used_stock=0,
                    total_expired_stock=0,
                    expired_carry_forward_stock=0,
                    used_carry_forward_stock=0,
                    total_damage_stock=0,
                    closing_balance=carry_forward,
                    exists=False,
                )
            else:
                view = MonthlyViewOut(
                    **MonthlyLedgerOut.model_validate(ledger).model_dump(),
                    entries=[_entry_out(entry) for entry in ledger.ordered_entries()],
                )
        if view.carry_forward > 0:
            view.entries.insert(0, _opening_entry(view))
        return view

    def get_history(
        self,
        venue_id: str,
        product_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
        kinds: Iterable[EntryKind] | None = None,
    ) -> list[LedgerEntryOut]:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        start = as_date(date_from, "date_from") if date_from is not None else None
        end = as_date(date_to, "date_to") if date_to is not None else None
        if start and end and start > end:
            raise LedgerValidationError("date_from cannot be after date_to")

        query = (
            select(LedgerEntry)
            .join(LedgerEntry.ledger)
            .where(MonthlyLedger.venue_id == venue_id, MonthlyLedger.product_id == product_id)
        )
        if start:
            query = query.where(LedgerEntry.entry_date >= start)
        if end:
            query = query.where(LedgerEntry.entry_date <= end)
        if kinds:
            query = query.where(LedgerEntry.kind.in_(list(kinds)))
        query = query.order_by(LedgerEntry.entry_date, LedgerEntry.sequence, LedgerEntry.id)

        with self._session_factory() as db:
            return [_entry_out(entry) for entry in db.scalars(query).all()]

    def get_batches(
        self,
        venue_id: str,
        product_id: str,
        *,
        on_date: date | None = None,
        include_exhausted: bool = False,
    ) -> list[BatchOut]:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        on = self._entry_date(on_date, "on_date")
        with self._session_factory() as db:
            batches = batches_from_entries(self._key_entries(db, venue_id, product_id))
            return [
                _batch_out(batch, on)
                for batch in batches
                if include_exhausted or batch.remaining_quantity > 0
            ]

    def get_monthly_summary(self, venue_id: str, product_id: str, year: int, month: int) -> MonthlySummaryOut | None:
        venue_id = _require_id(venue_id, "venue_id")
        product_id = _require_id(product_id, "product_id")
        validate_period(year, month)
        with self._session_factory() as db:
            summary = find_summary(db, venue_id, product_id, summary_month(year, month))
            return MonthlySummaryOut.model_validate(summary) if summary else None

    def list_alerts(
        self,
        venue_id: str | None = None,
        product_id: str | None = None,
        *,
        active_only: bool = True,
    ) -> list[StockAlertOut]:
        query = select(StockAlert)
        if venue_id is not None:
            query = query.where(StockAlert.venue_id == venue_id)
        if product_id is not None:
            query = query.where(StockAlert.product_id == product_id)
        if active_only:
            query = query.where(StockAlert.is_active.is_(True))
        query = query.order_by(StockAlert.created_at.desc(), StockAlert.id.desc())
        with self._session_factory() as db:
            return [StockAlertOut.model_validate(alert) for alert in db.scalars(query).all()]

    def resolve_alert(self, alert_id: int, *, actor: str | None = None) -> StockAlertOut:
        actor = _optional_text(actor, "actor", 128)
        with self._session_factory() as db:
            alert = db.get(StockAlert, alert_id)
            if alert is None:
                raise AlertNotFoundError(f"Stock alert {alert_id} not found")
            if alert.is_active:
                resolve(alert, actor)
                db.add(
                    AuditLog(
                        event_type="alert.resolved",
                        actor=actor,
                        venue_id=alert.venue_id,
                        product_id=alert.product_id,
                        details=json.dumps({"alert_id": alert.id, "alert_type": alert.alert_type.value}),
                    )
                )
                db.commit()
                logger.info("Alert %s resolved by %s", alert_id, actor)
            return StockAlertOut.model_validate(alert)
