"""
Initial schema - idempotency ledger, RMA cases, service events

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Idempotency keys
    op.create_table(
        "api_idempotency_keys",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("status_code", sa.Integer),
        sa.Column("response_headers", JSONB),
        sa.Column("response_body", sa.Text),
        sa.Column("locked_until", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("endpoint", "idempotency_key", name="uq_idempotency_endpoint_key"),
        sa.CheckConstraint("state IN ('in_progress', 'completed')", name="ck_idempotency_state"),
    )
    op.create_index("ix_idempotency_state_locked_until", "api_idempotency_keys", ["state", "locked_until"])
    op.create_index("ix_idempotency_expires_at", "api_idempotency_keys", ["expires_at"])

    # 2. RMA cases
    op.create_table(
        "rma_cases",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source", sa.String(40), nullable=False, server_default="manual"),
        sa.Column("submission_channel", sa.String(40), nullable=False, server_default="internal_dashboard"),
        sa.Column("shopify_return_id", sa.String(100), unique=True),
        sa.Column("dedupe_key", sa.String(128), unique=True),
        sa.Column("external_reference", sa.String(150)),
        sa.Column("shopify_order_id", sa.String(100)),
        sa.Column("shopify_order_name", sa.String(100)),
        sa.Column("order_processed_at", sa.DateTime),
        sa.Column("status", sa.String(40), nullable=False, server_default="received"),
        sa.Column("priority", sa.String(20), nullable=False, server_default="normal"),
        sa.Column("sla_due_at", sa.DateTime),
        sa.Column("warranty_status", sa.String(30), nullable=False, server_default="unknown"),
        sa.Column("warranty_basis", sa.String(30), nullable=False, server_default="unknown"),
        sa.Column("warranty_expires_at", sa.DateTime),
        sa.Column("warranty_decision_notes", sa.Text),
        sa.Column("warranty_checked_at", sa.DateTime),
        sa.Column("inbound_carrier", sa.String(120)),
        sa.Column("inbound_tracking_number", sa.String(200)),
        sa.Column("inbound_tracking_url", sa.Text),
        sa.Column("inbound_status", sa.String(80)),
        sa.Column("outbound_carrier", sa.String(120)),
        sa.Column("outbound_tracking_number", sa.String(200)),
        sa.Column("outbound_tracking_url", sa.Text),
        sa.Column("outbound_status", sa.String(80)),
        sa.Column("received_at", sa.DateTime),
        sa.Column("inspected_at", sa.DateTime),
        sa.Column("shipped_back_at", sa.DateTime),
        sa.Column("delivered_back_at", sa.DateTime),
        sa.Column("assigned_owner_name", sa.String(255)),
        sa.Column("assigned_owner_email", sa.String(255)),
        sa.Column("assigned_technician_name", sa.String(255)),
        sa.Column("assigned_technician_email", sa.String(255)),
        sa.Column("assigned_at", sa.DateTime),
        sa.Column("issue_summary", sa.Text, nullable=False),
        sa.Column("issue_details", sa.Text),
        sa.Column("serial_number", sa.String(255)),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("customer_phone", sa.String(50)),
        sa.Column("order_line_items", JSONB),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("closed_at", sa.DateTime),
        sa.CheckConstraint(
            "status IN ('received', 'testing', 'sent_to_manufacturer', 'repaired_replaced', 'back_to_customer')",
            name="ck_rma_status",
        ),
        sa.CheckConstraint(
            "source IN ('manual', 'shopify_return_webhook', 'customer_form')",
            name="ck_rma_source",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'urgent')", name="ck_rma_priority"),
        sa.CheckConstraint(
            "warranty_status IN ('in_warranty', 'out_of_warranty', 'unknown')",
            name="ck_rma_warranty_status",
        ),
        sa.CheckConstraint(
            "warranty_basis IN ('manufacturer', 'extended', 'acl', 'manual_override', 'unknown')",
            name="ck_rma_warranty_basis",
        ),
    )
    op.create_index("ix_rma_cases_status", "rma_cases", ["status"])
    op.create_index("ix_rma_cases_source", "rma_cases", ["source"])
    op.create_index("ix_rma_cases_serial", "rma_cases", ["serial_number"])
    op.create_index("ix_rma_cases_technician", "rma_cases", ["assigned_technician_email"])
    op.create_index("ix_rma_cases_sla_due_at", "rma_cases", ["sla_due_at"])

    # 3. Service events
    op.create_table(
        "rma_service_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("case_id", UUID(as_uuid=True), sa.ForeignKey("rma_cases.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("summary", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_service_events_case_time", "rma_service_events", ["case_id", "created_at"])


def downgrade() -> None:
    op.drop_table("rma_service_events")
    op.drop_table("rma_cases")
    op.drop_table("api_idempotency_keys")
