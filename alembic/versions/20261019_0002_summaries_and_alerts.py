"""monthly summaries and stock alerts

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0002"
down_revision: Union[str, Sequence[str], None] = "20261019_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

alert_type = sa.Enum("LOW_STOCK", "OUT_OF_STOCK", "EXPIRY_WARNING", "OVERSTOCK", name="alerttype")
alert_severity = sa.Enum("LOW", "MEDIUM", "HIGH", "CRITICAL", name="alertseverity")


def upgrade() -> None:
    op.create_table(
        "monthly_summaries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("venue_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("current_stock", sa.Integer(), nullable=False),
        sa.Column("reserved_stock", sa.Integer(), nullable=False),
        sa.Column("available_stock", sa.Integer(), nullable=False),
        sa.Column("purchases_quantity", sa.Integer(), nullable=False),
        sa.Column("purchases_cost", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("sales_quantity", sa.Integer(), nullable=False),
        sa.Column("adjustments_quantity", sa.Integer(), nullable=False),
        sa.Column("waste_quantity", sa.Integer(), nullable=False),
        sa.Column("returns_quantity", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("venue_id", "product_id", "month", name="uq_monthly_summaries_key"),
    )
    op.create_index(op.f("ix_monthly_summaries_id"), "monthly_summaries", ["id"], unique=False)
    op.create_index(op.f("ix_monthly_summaries_venue_id"), "monthly_summaries", ["venue_id"], unique=False)
    op.create_index(op.f("ix_monthly_summaries_product_id"), "monthly_summaries", ["product_id"], unique=False)
    op.create_index(op.f("ix_monthly_summaries_month"), "monthly_summaries", ["month"], unique=False)

    op.create_table(
        "stock_alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("venue_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("alert_type", alert_type, nullable=False),
        sa.Column("severity", alert_severity, nullable=False),
        sa.Column("message", sa.String(length=255), nullable=True),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("threshold", sa.Integer(), nullable=True),
        sa.Column("current_value", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_stock_alerts_id"), "stock_alerts", ["id"], unique=False)
    op.create_index(op.f("ix_stock_alerts_venue_id"), "stock_alerts", ["venue_id"], unique=False)
    op.create_index(op.f("ix_stock_alerts_product_id"), "stock_alerts", ["product_id"], unique=False)
    op.create_index(op.f("ix_stock_alerts_alert_type"), "stock_alerts", ["alert_type"], unique=False)
    op.create_index(op.f("ix_stock_alerts_is_active"), "stock_alerts", ["is_active"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_stock_alerts_is_active"), table_name="stock_alerts")
    op.drop_index(op.f("ix_stock_alerts_alert_type"), table_name="stock_alerts")
    op.drop_index(op.f("ix_stock_alerts_product_id"), table_name="stock_alerts")
    op.drop_index(op.f("ix_stock_alerts_venue_id"), table_name="stock_alerts")
    op.drop_index(op.f("ix_stock_alerts_id"), table_name="stock_alerts")
    op.drop_table("stock_alerts")

    op.drop_index(op.f("ix_monthly_summaries_month"), table_name="monthly_summaries")
    op.drop_index(op.f("ix_monthly_summaries_product_id"), table_name="monthly_summaries")
    op.drop_index(op.f("ix_monthly_summaries_venue_id"), table_name="monthly_summaries")
    op.drop_index(op.f("ix_monthly_summaries_id"), table_name="monthly_summaries")
    op.drop_table("monthly_summaries")
    alert_severity.drop(op.get_bind(), checkfirst=True)
    alert_type.drop(op.get_bind(), checkfirst=True)
