import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from stockledger.models.ledger import MonthlyLedger
from stockledger.services.balance import finalize
from stockledger.services.periods import month_name, periods_between, previous_period, validate_period

logger = logging.getLogger(__name__)


def _ledger_query(venue_id: str, product_id: str):
    return select(MonthlyLedger).where(
        MonthlyLedger.venue_id == venue_id,
        MonthlyLedger.product_id == product_id,
    )


def find_monthly_ledger(db: Session, venue_id: str, product_id: str, year: int, month: int) -> MonthlyLedger | None:
    return db.scalar(
        _ledger_query(venue_id, product_id).where(
            MonthlyLedger.year == year,
            MonthlyLedger.month_number == month,
        )
    )


def list_monthly_ledgers(db: Session, venue_id: str, product_id: str, *, for_update: bool = False) -> list[MonthlyLedger]:
    query = _ledger_query(venue_id, product_id).order_by(MonthlyLedger.year, MonthlyLedger.month_number)
    if for_update:
        query = query.with_for_update()
    return list(db.scalars(query).all())


def latest_ledger_before(db: Session, venue_id: str, product_id: str, year: int, month: int) -> MonthlyLedger | None:
    return db.scalar(
        _ledger_query(venue_id, product_id)
        .where(
            or_(
                MonthlyLedger.year < year,
                and_(MonthlyLedger.year == year, MonthlyLedger.month_number < month),
            )
        )
        .order_by(MonthlyLedger.year.desc(), MonthlyLedger.month_number.desc())
        .limit(1)
    )


def earliest_ledger_after(db: Session, venue_id: str, product_id: str, year: int, month: int) -> MonthlyLedger | None:
    return db.scalar(
        _ledger_query(venue_id, product_id)
        .where(
            or_(
                MonthlyLedger.year > year,
                and_(MonthlyLedger.year == year, MonthlyLedger.month_number > month),
            )
        )
        .order_by(MonthlyLedger.year, MonthlyLedger.month_number)
        .limit(1)
    )


def latest_monthly_ledger(db: Session, venue_id: str, product_id: str) -> MonthlyLedger | None:
    return db.scalar(
        _ledger_query(venue_id, product_id)
        .order_by(MonthlyLedger.year.desc(), MonthlyLedger.month_number.desc())
        .limit(1)
    )


def get_previous_month_balance(db: Session, venue_id: str, product_id: str, year: int, month: int) -> int:
    prev_year, prev_month = previous_period(year, month)
    previous = find_monthly_ledger(db, venue_id, product_id, prev_year, prev_month)
    return previous.closing_balance if previous else 0


def apply_carry_forward(ledger: MonthlyLedger, carry_forward: int) -> bool:
    if ledger.carry_forward == carry_forward:
        return False
    logger.info(
        "Carry forward for %s/%s %s-%02d changed from %s to %s",
        ledger.venue_id,
        ledger.product_id,
        ledger.year,
        ledger.month_number,
        ledger.carry_forward,
        carry_forward,
    )
    ledger.carry_forward = carry_forward
    if not ledger.entries:
        ledger.closing_balance = carry_forward
    else:
        finalize(ledger)
    return True


def get_or_create_monthly_ledger(
    db: Session,
    venue_id: str,
    product_id: str,
    year: int,
    month: int,
    carry_forward: int,
) -> MonthlyLedger:
    validate_period(year, month)
    ledger = find_monthly_ledger(db, venue_id, product_id, year, month)
    if ledger is None:
        ledger = MonthlyLedger(
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
            entries=[],
        )
        db.add(ledger)
        db.flush()
        logger.info("Opened monthly ledger %s/%s %s-%02d with carry forward %s", venue_id, product_id, year, month, carry_forward)
        return ledger

    apply_carry_forward(ledger, carry_forward)
    return ledger


def open_monthly_ledger(db: Session, venue_id: str, product_id: str, year: int, month: int) -> MonthlyLedger:
    """Resolve the carry forward and get or create the document.

    Months missing between a new document and its existing neighbours are created too,
    so the chain stays contiguous and stock is never lost to a gap.
    """
    validate_period(year, month)
    if find_monthly_ledger(db, venue_id, product_id, year, month) is not None:
        carry_forward = get_previous_month_balance(db, venue_id, product_id, year, month)
        return get_or_create_monthly_ledger(db, venue_id, product_id, year, month, carry_forward)

    earlier = latest_ledger_before(db, venue_id, product_id, year, month)
    if earlier is not None:
        _fill_gap(db, venue_id, product_id, earlier.period, (year, month))
    carry_forward = get_previous_month_balance(db, venue_id, product_id, year, month)
    ledger = get_or_create_monthly_ledger(db, venue_id, product_id, year, month, carry_forward)

    later = earliest_ledger_after(db, venue_id, product_id, year, month)
    if later is not None:
        _fill_gap(db, venue_id, product_id, (year, month), later.period)
    return ledger


def _fill_gap(db: Session, venue_id: str, product_id: str, start: tuple[int, int], end: tuple[int, int]) -> None:
    for gap_year, gap_month in periods_between(start, end):
        get_or_create_monthly_ledger(
            db,
            venue_id,
            product_id,
            gap_year,
            gap_month,
            get_previous_month_balance(db, venue_id, product_id, gap_year, gap_month),
        )


def propagate_carry_forward(db: Session, venue_id: str, product_id: str, year: int, month: int) -> list[MonthlyLedger]:
    """Re-seed every document after ``(year, month)`` from its predecessor's closing balance."""
    changed: list[MonthlyLedger] = []
    previous: MonthlyLedger | None = None
    for ledger in list_monthly_ledgers(db, venue_id, product_id):
        if ledger.period > (year, month):
            expected = previous.closing_balance if previous is not None else 0
            if apply_carry_forward(ledger, expected):
                changed.append(ledger)
        previous = ledger
    return changed
