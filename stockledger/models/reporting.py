from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.database import Base


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    EXPIRY_WARNING = "expiry_warning"
    OVERSTOCK = "overstock"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MonthlySummary(Base):
    __tablename__ = "monthly_summaries"
    __table_args__ = (UniqueConstraint("venue_id", "product_id", "month", name="uq_monthly_summaries_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    venue_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    # YYYY-MM
    month: Mapped[str] = mapped_column(String(7), index=True, nullable=False)
    current_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchases_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchases_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    sales_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    adjustments_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    waste_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    returns_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )


class StockAlert(Base):
    __tablename__ = "stock_alerts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    venue_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(SQLEnum(AlertType), index=True, nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(SQLEnum(AlertSeverity), default=AlertSeverity.MEDIUM, nullable=False)
    message: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Batch number for expiry warnings, empty otherwise.
    reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
