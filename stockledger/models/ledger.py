from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.db.database import Base


class EntryKind(str, Enum):
    ADDED = "ADDED"
    SOLD = "SOLD"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    RETURNED = "RETURNED"
    ADJUSTMENT = "ADJUSTMENT"
    # Synthesised for monthly views only, never stored.
    OPENING = "OPENING"


class MonthlyLedger(Base):
    __tablename__ = "monthly_ledgers"
    __table_args__ = (
        UniqueConstraint("venue_id", "product_id", "year", "month_number", name="uq_monthly_ledgers_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    venue_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month_number: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(16), nullable=False)
    carry_forward: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_stock_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_used_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_expired_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expired_carry_forward_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    used_carry_forward_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_damage_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    closing_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="ledger",
        cascade="all, delete-orphan",
        order_by="LedgerEntry.sequence",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def period(self) -> tuple[int, int]:
        return self.year, self.month_number

    def ordered_entries(self) -> list["LedgerEntry"]:
        return sorted(self.entries, key=lambda entry: (entry.entry_date, entry.sequence))

    def next_sequence(self) -> int:
        return max((entry.sequence for entry in self.entries), default=0) + 1


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    ledger_id: Mapped[int] = mapped_column(
        ForeignKey("monthly_ledgers.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, index=True, nullable=False)
    kind: Mapped[EntryKind] = mapped_column(SQLEnum(EntryKind), index=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    opening_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    added_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    used_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expired_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expired_carry_forward_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    damage_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    used_carry_forward_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Batch bookkeeping for stock-in entries; not part of the day breakdown.
    batch_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_damaged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_number: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    expire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    ledger: Mapped[MonthlyLedger] = relationship(back_populates="entries")
    deductions: Mapped[list["BatchDeduction"]] = relationship(
        foreign_keys="BatchDeduction.entry_id",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="BatchDeduction.sequence",
    )

    @property
    def is_stock_in(self) -> bool:
        if self.kind in (EntryKind.ADDED, EntryKind.RETURNED):
            return True
        return self.kind == EntryKind.ADJUSTMENT and self.quantity > 0

    @property
    def is_deduction(self) -> bool:
        """SOLD and negative adjustments: their consumption lives on the batch entries."""
        if self.kind == EntryKind.SOLD:
            return True
        return self.kind == EntryKind.ADJUSTMENT and self.quantity < 0

    @property
    def remaining_quantity(self) -> int:
        if not self.is_stock_in:
            return 0
        return (
            (self.added_stock or 0)
            - (self.used_stock or 0)
            - (self.batch_expired or 0)
            - (self.batch_damaged or 0)
        )


class BatchDeduction(Base):
    __tablename__ = "batch_deductions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    entry_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    source_entry_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="RESTRICT"),
        index=True,
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    batch_date: Mapped[date] = mapped_column(Date, nullable=False)
    deducted: Mapped[int] = mapped_column(Integer, nullable=False)
    expire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    from_carry_forward: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    entry: Mapped[LedgerEntry] = relationship(foreign_keys=[entry_id], back_populates="deductions")
    source_entry: Mapped[LedgerEntry] = relationship(foreign_keys=[source_entry_id])
