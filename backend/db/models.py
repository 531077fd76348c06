"""
ServiceOps Database Models

Tables:
  1. api_idempotency_keys  - One row per (endpoint, idempotency key); replay ledger
  2. rma_cases             - Return / service cases and their workflow state
  3. rma_service_events    - Append-only history per case (stage changes, notes, tracking)

Uniqueness that the application relies on for concurrency lives here:
  - (endpoint, idempotency_key) makes gateway acquisition an atomic insert
  - rma_cases.shopify_return_id makes webhook ingestion at-most-once per return
  - rma_cases.dedupe_key does the same for degraded webhooks and customer forms
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

RMA_STATUSES = ("received", "testing", "sent_to_manufacturer", "repaired_replaced", "back_to_customer")
RMA_SOURCES = ("manual", "shopify_return_webhook", "customer_form")
RMA_PRIORITIES = ("low", "normal", "high", "urgent")
WARRANTY_STATUSES = ("in_warranty", "out_of_warranty", "unknown")
WARRANTY_BASES = ("manufacturer", "extended", "acl", "manual_override", "unknown")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Idempotency Keys ────────────────────────────────────────────────────


class IdempotencyRecord(Base):
    __tablename__ = "api_idempotency_keys"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    endpoint = Column(String(255), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    request_hash = Column(String(64), nullable=False)
    state = Column(String(20), nullable=False, default="in_progress")
    status_code = Column(Integer)
    response_headers = Column(JSON)
    response_body = Column(Text)  # exact rendered bytes, so replays are byte-identical
    locked_until = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("endpoint", "idempotency_key", name="uq_idempotency_endpoint_key"),
        CheckConstraint("state IN ('in_progress', 'completed')", name="ck_idempotency_state"),
        Index("ix_idempotency_state_locked_until", "state", "locked_until"),
        Index("ix_idempotency_expires_at", "expires_at"),
    )


# ─── 2. RMA Cases ───────────────────────────────────────────────────────────


class RmaCase(Base):
    __tablename__ = "rma_cases"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)

    # Provenance
    source = Column(String(40), nullable=False, default="manual")
    submission_channel = Column(String(40), nullable=False, default="internal_dashboard")
    shopify_return_id = Column(String(100), unique=True)
    dedupe_key = Column(String(128), unique=True)
    external_reference = Column(String(150))

    # Order
    shopify_order_id = Column(String(100))
    shopify_order_name = Column(String(100))
    order_processed_at = Column(DateTime)

    # Workflow
    status = Column(String(40), nullable=False, default="received")
    priority = Column(String(20), nullable=False, default="normal")
    sla_due_at = Column(DateTime)

    # Warranty
    warranty_status = Column(String(30), nullable=False, default="unknown")
    warranty_basis = Column(String(30), nullable=False, default="unknown")
    warranty_expires_at = Column(DateTime)
    warranty_decision_notes = Column(Text)
    warranty_checked_at = Column(DateTime)

    # Logistics
    inbound_carrier = Column(String(120))
    inbound_tracking_number = Column(String(200))
    inbound_tracking_url = Column(Text)
    inbound_status = Column(String(80))
    outbound_carrier = Column(String(120))
    outbound_tracking_number = Column(String(200))
    outbound_tracking_url = Column(Text)
    outbound_status = Column(String(80))
    received_at = Column(DateTime)
    inspected_at = Column(DateTime)
    shipped_back_at = Column(DateTime)
    delivered_back_at = Column(DateTime)

    # Assignment
    assigned_owner_name = Column(String(255))
    assigned_owner_email = Column(String(255))
    assigned_technician_name = Column(String(255))
    assigned_technician_email = Column(String(255))
    assigned_at = Column(DateTime)

    # Context
    issue_summary = Column(Text, nullable=False)
    issue_details = Column(Text)
    serial_number = Column(String(255))
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    customer_phone = Column(String(50))
    order_line_items = Column(JSON)

    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    closed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(_in_list("status", RMA_STATUSES), name="ck_rma_status"),
        CheckConstraint(_in_list("source", RMA_SOURCES), name="ck_rma_source"),
        CheckConstraint(_in_list("priority", RMA_PRIORITIES), name="ck_rma_priority"),
        CheckConstraint(_in_list("warranty_status", WARRANTY_STATUSES), name="ck_rma_warranty_status"),
        CheckConstraint(_in_list("warranty_basis", WARRANTY_BASES), name="ck_rma_warranty_basis"),
        Index("ix_rma_cases_status", "status"),
        Index("ix_rma_cases_source", "source"),
        Index("ix_rma_cases_serial", "serial_number"),
        Index("ix_rma_cases_technician", "assigned_technician_email"),
        Index("ix_rma_cases_sla_due_at", "sla_due_at"),
    )

    events = relationship(
        "ServiceEvent",
        back_populates="rma_case",
        order_by="ServiceEvent.created_at",
    )


# ─── 3. Service Events ──────────────────────────────────────────────────────


class ServiceEvent(Base):
    __tablename__ = "rma_service_events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    case_id = Column(GUID(), ForeignKey("rma_cases.id"), nullable=False)
    event_type = Column(String(50), nullable=False)
    summary = Column(Text)
    notes = Column(Text)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_service_events_case_time", "case_id", "created_at"),)

    rma_case = relationship("RmaCase", back_populates="events")
