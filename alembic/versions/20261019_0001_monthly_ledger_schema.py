"""monthly ledger schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

entry_kind = sa.Enum(
    "ADDED",
    "SOLD",
    "EXPIRED",
    "DAMAGED",
    "RETURNED",
    "ADJUSTMENT",
    "OPENING",
    name="entrykind",
)


def upgrade() -> None:
    op.create_table(
        "monthly_ledgers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("venue_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month_number", sa.Integer(), nullable=False),
        sa.Column("month_name", sa.String(length=16), nullable=False),
        sa.Column("carry_forward", sa.Integer(), nullable=False),
        sa.Column("total_stock_added", sa.Integer(), nullable=False),
        sa.Column("total_used_stock", sa.Integer(), nullable=False),
        sa.Column("total_expired_stock", sa.Integer(), nullable=False),
        sa.Column("expired_carry_forward_stock", sa.Integer(), nullable=False),
        sa.Column("used_carry_forward_stock", sa.Integer(), nullable=False),
        sa.Column("total_damage_stock", sa.Integer(), nullable=False),
        sa.Column("closing_balance", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("venue_id", "product_id", "year", "month_number", name="uq_monthly_ledgers_key"),
    )
    op.create_index(op.f("ix_monthly_ledgers_id"), "monthly_ledgers", ["id"], unique=False)
    op.create_index(op.f("ix_monthly_ledgers_venue_id"), "monthly_ledgers", ["venue_id"], unique=False)
    op.create_index(op.f("ix_monthly_ledgers_product_id"), "monthly_ledgers", ["product_id"], unique=False)

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ledger_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("entry_date", sa.Date(), nullable=False),
        sa.Column("kind", entry_kind, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("opening_balance", sa.Integer(), nullable=False),
        sa.Column("added_stock", sa.Integer(), nullable=False),
        sa.Column("used_stock", sa.Integer(), nullable=False),
        sa.Column("expired_stock", sa.Integer(), nullable=False),
        sa.Column("expired_carry_forward_stock", sa.Integer(), nullable=False),
        sa.Column("damage_stock", sa.Integer(), nullable=False),
        sa.Column("used_carry_forward_stock", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("batch_expired", sa.Integer(), nullable=False),
        sa.Column("batch_damaged", sa.Integer(), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("expire_date", sa.Date(), nullable=True),
        sa.Column("unit_cost", sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column("notes", sa.String(length=255), nullable=True),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["ledger_id"], ["monthly_ledgers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ledger_entries_id"), "ledger_entries", ["id"], unique=False)
    op.create_index(op.f("ix_ledger_entries_ledger_id"), "ledger_entries", ["ledger_id"], unique=False)
    op.create_index(op.f("ix_ledger_entries_entry_date"), "ledger_entries", ["entry_date"], unique=False)
    op.create_index(op.f("ix_ledger_entries_kind"), "ledger_entries", ["kind"], unique=False)
    op.create_index(op.f("ix_ledger_entries_batch_number"), "ledger_entries", ["batch_number"], unique=False)

    op.create_table(
        "batch_deductions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("source_entry_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("deducted", sa.Integer(), nullable=False),
        sa.Column("expire_date", sa.Date(), nullable=True),
        sa.Column("from_carry_forward", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["entry_id"], ["ledger_entries.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["source_entry_id"], ["ledger_entries.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_batch_deductions_id"), "batch_deductions", ["id"], unique=False)
    op.create_index(op.f("ix_batch_deductions_entry_id"), "batch_deductions", ["entry_id"], unique=False)
    op.create_index(op.f("ix_batch_deductions_source_entry_id"), "batch_deductions", ["source_entry_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_batch_deductions_source_entry_id"), table_name="batch_deductions")
    op.drop_index(op.f("ix_batch_deductions_entry_id"), table_name="batch_deductions")
    op.drop_index(op.f("ix_batch_deductions_id"), table_name="batch_deductions")
    op.drop_table("batch_deductions")

    op.drop_index(op.f("ix_ledger_entries_batch_number"), table_name="ledger_entries")
    op.drop_index(op.f("ix_ledger_entries_kind"), table_name="ledger_entries")
    op.drop_index(op.f("ix_ledger_entries_entry_date"), table_name="ledger_entries")
    op.drop_index(op.f("ix_ledger_entries_ledger_id"), table_name="ledger_entries")
    op.drop_index(op.f("ix_ledger_entries_id"), table_name="ledger_entries")
    op.drop_table("ledger_entries")

    op.drop_index(op.f("ix_monthly_ledgers_product_id"), table_name="monthly_ledgers")
    op.drop_index(op.f("ix_monthly_ledgers_venue_id"), table_name="monthly_ledgers")
    op.drop_index(op.f("ix_monthly_ledgers_id"), table_name="monthly_ledgers")
    op.drop_table("monthly_ledgers")
    entry_kind.drop(op.get_bind(), checkfirst=True)
