"""
Case Analytics Engine — read-side views computed from the case set.

Nothing here touches the database or mutates a case: callers load the
filtered case set (and events, for time in stage) and pass `now` in, so the
same scope drives every number a user sees.
"""

from collections import Counter, defaultdict
from datetime import datetime

from db.models import RmaCase, ServiceEvent
from rma.lifecycle import STAGE_ORDER, is_terminal, status_event_type

EXCEPTION_TYPES = (
    "needs_inbound_tracking",
    "needs_outbound_tracking",
    "outbound_in_transit",
    "sla_overdue",
)

REPEAT_SERIAL_LIMIT = 5


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def _round(value: float | None, digits: int = 2) -> float | None:
    return round(value, digits) if value is not None else None


def is_overdue(case: RmaCase, now: datetime) -> bool:
    return case.sla_due_at is not None and case.sla_due_at < now and not is_terminal(case.status)


def classify_exceptions(case: RmaCase, now: datetime) -> list[str]:
    exceptions = []
    if case.status == "received" and not case.inbound_tracking_number:
        exceptions.append("needs_inbound_tracking")
    if case.status == "repaired_replaced" and not case.outbound_tracking_number:
        exceptions.append("needs_outbound_tracking")
    if case.status == "back_to_customer" and case.outbound_tracking_number and case.delivered_back_at is None:
        exceptions.append("outbound_in_transit")
    if is_overdue(case, now):
        exceptions.append("sla_overdue")
    return exceptions


def logistics_exceptions(cases: list[RmaCase], now: datetime) -> dict:
    rows = []
    summary = {exception_type: 0 for exception_type in EXCEPTION_TYPES}
    for case in cases:
        exceptions = classify_exceptions(case, now)
        if not exceptions:
            continue
        for exception_type in exceptions:
            summary[exception_type] += 1
        rows.append(
            {
                "case_id": str(case.id),
                "status": case.status,
                "priority": case.priority,
                "customer_name": case.customer_name,
                "serial_number": case.serial_number,
                "assigned_technician_email": case.assigned_technician_email,
                "sla_due_at": case.sla_due_at.isoformat() if case.sla_due_at else None,
                "exceptions": exceptions,
            }
        )
    return {"total": len(rows), "summary": summary, "rows": rows}


def stage_entered_at(case: RmaCase, events: list[ServiceEvent]) -> datetime:
    """Latest stage-change event into the current status, else case creation."""
    event_type = status_event_type(case.status)
    entries = [event.created_at for event in events if event.event_type == event_type]
    return max(entries) if entries else case.created_at


def time_in_stage(cases: list[RmaCase], events: list[ServiceEvent], now: datetime) -> dict:
    events_by_case: dict = defaultdict(list)
    for event in events:
        events_by_case[event.case_id].append(event)

    rows = []
    hours_by_status: dict[str, list[float]] = defaultdict(list)
    for case in cases:
        entered_at = stage_entered_at(case, events_by_case.get(case.id, []))
        hours = max(0.0, _hours_between(entered_at, now))
        hours_by_status[case.status].append(hours)
        rows.append(
            {
                "case_id": str(case.id),
                "status": case.status,
                "priority": case.priority,
                "stage_entered_at": entered_at.isoformat(),
                "hours_in_stage": round(hours, 2),
                "is_overdue": is_overdue(case, now),
            }
        )

    rows.sort(key=lambda row: row["hours_in_stage"], reverse=True)
    summary = [
        {
            "status": status,
            "count": len(hours_by_status[status]),
            "avg_hours": round(sum(hours_by_status[status]) / len(hours_by_status[status]), 2),
        }
        for status in STAGE_ORDER
        if hours_by_status.get(status)
    ]
    return {"rows": rows, "summary": summary}


def compute_kpis(cases: list[RmaCase], now: datetime) -> dict:
    total = len(cases)
    open_cases = [case for case in cases if not is_terminal(case.status)]
    overdue = sum(1 for case in open_cases if is_overdue(case, now))
    in_warranty = sum(1 for case in cases if case.warranty_status == "in_warranty")
    decided = sum(1 for case in cases if case.warranty_status and case.warranty_status != "unknown")
    high_priority = sum(1 for case in cases if case.priority in ("high", "urgent"))
    exception_cases = sum(1 for case in cases if classify_exceptions(case, now))

    turnaround_days = [
        (case.delivered_back_at - case.received_at).total_seconds() / 86400
        for case in cases
        if is_terminal(case.status)
        and case.delivered_back_at is not None
        and case.received_at is not None
        and case.delivered_back_at >= case.received_at
    ]

    queue_by_technician: Counter = Counter()
    for case in open_cases:
        queue_by_technician[case.assigned_technician_email or "unassigned"] += 1

    serial_counts = Counter(
        case.serial_number.strip().upper() for case in cases if case.serial_number and case.serial_number.strip()
    )
    repeat_serials = sorted(
        ((serial, count) for serial, count in serial_counts.items() if count > 1),
        key=lambda item: (-item[1], item[0]),
    )[:REPEAT_SERIAL_LIMIT]

    return {
        "total_cases": total,
        "open_cases": len(open_cases),
        "overdue_cases": overdue,
        "in_warranty_cases": in_warranty,
        "warranty_hit_rate_pct": _round(in_warranty / decided * 100) if decided else None,
        "high_priority_cases": high_priority,
        "logistics_exception_cases": exception_cases,
        "logistics_exception_rate_pct": _round(exception_cases / total * 100) if total else None,
        "avg_turnaround_days": _round(sum(turnaround_days) / len(turnaround_days)) if turnaround_days else None,
        "queue_by_technician": dict(queue_by_technician),
        "repeat_issue_serials": [
            {"serial_number": serial, "case_count": count} for serial, count in repeat_serials
        ],
    }
