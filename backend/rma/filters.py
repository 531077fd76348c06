"""Case filters shared by the case list and every analytics view."""

from pydantic import BaseModel
from sqlalchemy import Select, func, or_

from db.models import RmaCase


class CaseFilters(BaseModel):
    status: str | None = None
    source: str | None = None
    warranty_status: str | None = None
    priority: str | None = None
    technician_email: str | None = None
    customer_email: str | None = None
    serial_number: str | None = None
    search: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def apply_case_filters(query: Select, filters: CaseFilters) -> Select:
    if status := _clean(filters.status):
        query = query.where(RmaCase.status == status)
    if source := _clean(filters.source):
        query = query.where(RmaCase.source == source)
    if warranty_status := _clean(filters.warranty_status):
        query = query.where(RmaCase.warranty_status == warranty_status)
    if priority := _clean(filters.priority):
        query = query.where(RmaCase.priority == priority)
    if technician_email := _clean(filters.technician_email):
        query = query.where(func.lower(RmaCase.assigned_technician_email) == technician_email.lower())
    if customer_email := _clean(filters.customer_email):
        query = query.where(func.lower(RmaCase.customer_email) == customer_email.lower())
    if serial_number := _clean(filters.serial_number):
        query = query.where(RmaCase.serial_number == serial_number.upper())
    if search := _clean(filters.search):
        pattern = f"%{search}%"
        query = query.where(
            or_(
                RmaCase.issue_summary.ilike(pattern),
                RmaCase.customer_name.ilike(pattern),
                RmaCase.customer_email.ilike(pattern),
                RmaCase.serial_number.ilike(pattern),
                RmaCase.shopify_order_name.ilike(pattern),
                RmaCase.shopify_return_id.ilike(pattern),
            )
        )
    return query
