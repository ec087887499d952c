"""Initial schema: clinics, suppliers, categories, stock ledger, alerts, stock requests

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_CONDITION_PREDICATE = (
    "status = 'active' AND type IN "
    "('low_stock', 'critical_stock', 'out_of_stock', 'expiry_warning', 'expiry_critical', 'expired')"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Clinics table
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, index=True),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("district", sa.String(100), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("manager_name", sa.String(200), nullable=True),
        sa.Column("website", sa.String(255), nullable=True),
        sa.Column("opening_hours", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )

    # Suppliers table
    op.create_table(
        "suppliers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, index=True),
        sa.Column("contact_person", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("tax_number", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("additional_info", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("color", sa.String(20), nullable=False, server_default="#64748b"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Stock items - current_stock is written only by the ledger
    op.create_table(
        "stock_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("supplier_id", sa.Integer(), sa.ForeignKey("suppliers.id"), nullable=True, index=True),
        sa.Column("name", sa.String(255), nullable=False, index=True),
        sa.Column("code", sa.String(50), nullable=True, index=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("brand", sa.String(100), nullable=True),
        sa.Column("category", sa.String(100), nullable=False, index=True),
        sa.Column("unit", sa.String(20), nullable=False),
        sa.Column("storage_location", sa.String(200), nullable=True),
        sa.Column("purchase_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="TRY"),
        sa.Column("purchase_date", sa.Date(), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True, index=True),
        sa.Column("track_expiry", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("track_batch", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_stock", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("min_stock_level", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("critical_stock_level", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("internal_usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("current_stock >= 0", name="ck_stock_items_non_negative"),
        sa.CheckConstraint(
            "min_stock_level >= 0 AND critical_stock_level >= 0",
            name="ck_stock_items_thresholds_non_negative",
        ),
        sa.UniqueConstraint("clinic_id", "name", "unit", name="uq_stock_items_clinic_name_unit"),
    )

    # Append-only ledger
    op.create_table(
        "ledger_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "stock_item_id", sa.Integer(),
            sa.ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("kind", sa.String(30), nullable=False, index=True),
        sa.Column("delta", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity_before", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.String(500), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("used_by", sa.String(200), nullable=True),
        sa.Column("performed_by", sa.String(200), nullable=False),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )

    # Stock requests
    op.create_table(
        "stock_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("requester_clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("requested_from_clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("stock_id", sa.Integer(), sa.ForeignKey("stock_items.id"), nullable=False, index=True),
        sa.Column("destination_stock_id", sa.Integer(), sa.ForeignKey("stock_items.id"), nullable=True),
        sa.Column("requested_quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("approved_quantity", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("request_reason", sa.Text(), nullable=False),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(200), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by", sa.String(200), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(200), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("performed_by", sa.String(200), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "requester_clinic_id <> requested_from_clinic_id", name="ck_stock_requests_distinct_clinics"
        ),
        sa.CheckConstraint("requested_quantity > 0", name="ck_stock_requests_positive_quantity"),
        sa.CheckConstraint(
            "approved_quantity IS NULL OR (approved_quantity > 0 AND approved_quantity <= requested_quantity)",
            name="ck_stock_requests_approved_within_requested",
        ),
    )

    # Alerts
    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "stock_item_id", sa.Integer(),
            sa.ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=True, index=True,
        ),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=True, index=True),
        sa.Column(
            "stock_request_id", sa.Integer(),
            sa.ForeignKey("stock_requests.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("type", sa.String(30), nullable=False, index=True),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("current_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("threshold_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("days_until_expiry", sa.Integer(), nullable=True),
        sa.Column("resolved_by", sa.String(200), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_alerts_status_created", "alerts", ["status", "created_at"])
    # At most one active condition alert per (stock item, type)
    op.create_index(
        "uq_alerts_active_stock_type",
        "alerts",
        ["stock_item_id", "type"],
        unique=True,
        sqlite_where=sa.text(ACTIVE_CONDITION_PREDICATE),
        postgresql_where=sa.text(ACTIVE_CONDITION_PREDICATE),
    )


def downgrade() -> None:
    op.drop_index("uq_alerts_active_stock_type", table_name="alerts")
    op.drop_index("ix_alerts_status_created", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("stock_requests")
    op.drop_table("ledger_operations")
    op.drop_table("stock_items")
    op.drop_table("suppliers")
    op.drop_table("categories")
    op.drop_table("clinics")
