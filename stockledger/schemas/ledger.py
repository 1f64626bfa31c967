from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from stockledger.models.ledger import EntryKind
from stockledger.models.reporting import AlertSeverity, AlertType


class AdditionCreateRequest(BaseModel):
    quantity: int = Field(gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    batch_number: str | None = Field(default=None, max_length=64)
    expire_date: date | None = None
    entry_date: date | None = None
    notes: str | None = Field(default=None, max_length=255)


class SaleCreateRequest(BaseModel):
    quantity: int = Field(gt=0)
    entry_date: date | None = None
    notes: str | None = Field(default=None, max_length=255)


class WriteOffCreateRequest(BaseModel):
    quantity: int = Field(gt=0)
    batch_number: str | None = Field(default=None, max_length=64)
    entry_date: date | None = None
    notes: str | None = Field(default=None, max_length=255)


class ReturnCreateRequest(BaseModel):
    quantity: int = Field(gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    batch_number: str | None = Field(default=None, max_length=64)
    expire_date: date | None = None
    entry_date: date | None = None
    notes: str | None = Field(default=None, max_length=255)


class AdjustmentCreateRequest(BaseModel):
    quantity: int = Field(description="Signed quantity to apply, may be negative")
    unit_cost: Decimal | None = Field(default=None, ge=0)
    batch_number: str | None = Field(default=None, max_length=64)
    expire_date: date | None = None
    entry_date: date | None = None
    reason: str | None = Field(default=None, max_length=255)


class ExpireDueRequest(BaseModel):
    as_of: date | None = None


class EntryUpdateRequest(BaseModel):
    entry_date: date | None = None
    quantity: int | None = Field(default=None, gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    expire_date: date | None = None
    notes: str | None = Field(default=None, max_length=255)


class DeductionOut(BaseModel):
    sequence: int
    source_entry_id: int
    batch_number: str | None
    batch_date: date
    deducted: int
    expire_date: date | None
    from_carry_forward: bool

    model_config = {"from_attributes": True}


class LedgerEntryOut(BaseModel):
    id: int | None
    sequence: int
    entry_date: date
    kind: EntryKind
    quantity: int
    opening_balance: int
    added_stock: int
    used_stock: int
    expired_stock: int
    expired_carry_forward_stock: int
    damage_stock: int
    used_carry_forward_stock: int
    balance: int
    remaining_quantity: int = 0
    batch_number: str | None = None
    expire_date: date | None = None
    unit_cost: Decimal | None = None
    notes: str | None = None
    actor: str | None = None
    created_at: datetime | None = None
    deductions: list[DeductionOut] = Field(default_factory=list)
    is_virtual: bool = False

    model_config = {"from_attributes": True}


class MonthlyLedgerOut(BaseModel):
    venue_id: str
    product_id: str
    year: int
    month_number: int
    month_name: str
    carry_forward: int
    total_stock_added: int
    total_used_stock: int
    total_expired_stock: int
    expired_carry_forward_stock: int
    used_carry_forward_stock: int
    total_damage_stock: int
    closing_balance: int
    version: int | None = None

    model_config = {"from_attributes": True}


class MonthlyViewOut(MonthlyLedgerOut):
    exists: bool = True
    entries: list[LedgerEntryOut] = Field(default_factory=list)


class BalanceOut(BaseModel):
    venue_id: str
    product_id: str
    current_stock: int
    year: int | None = None
    month_number: int | None = None


class BatchOut(BaseModel):
    entry_id: int
    kind: EntryKind
    batch_number: str | None
    entry_date: date
    expire_date: date | None
    unit_cost: Decimal | None
    original_quantity: int
    used_quantity: int
    expired_quantity: int
    damaged_quantity: int
    remaining_quantity: int
    is_expired: bool


class MonthlySummaryOut(BaseModel):
    venue_id: str
    product_id: str
    month: str
    current_stock: int
    reserved_stock: int
    available_stock: int
    purchases_quantity: int
    purchases_cost: Decimal
    sales_quantity: int
    adjustments_quantity: int
    waste_quantity: int
    returns_quantity: int
    last_updated: datetime

    model_config = {"from_attributes": True}


class StockAlertOut(BaseModel):
    id: int
    venue_id: str
    product_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str | None
    reference: str | None
    threshold: int | None
    current_value: int | None
    is_active: bool
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
