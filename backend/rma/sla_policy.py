"""SLA policy resolution for RMA cases."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from functools import lru_cache

from core.config import get_settings

DEFAULT_SLA_HOURS_BY_PRIORITY = {
    "low": 240,
    "normal": 120,
    "high": 48,
    "urgent": 24,
}


@lru_cache
def _load_override_policy() -> dict:
    """
    Optional override payload from env:
      RMA_SLA_OVERRIDES='{"high": 36, "urgent": 12}'
    """
    raw = get_settings().rma_sla_overrides
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(payload, dict):
        return {}
    return {
        str(key): value
        for key, value in payload.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
    }


def resolve_sla_hours(priority: str | None) -> int:
    priority = priority or "normal"
    overrides = _load_override_policy()
    if priority in overrides:
        return int(overrides[priority])
    if priority in DEFAULT_SLA_HOURS_BY_PRIORITY:
        return DEFAULT_SLA_HOURS_BY_PRIORITY[priority]
    return DEFAULT_SLA_HOURS_BY_PRIORITY["normal"]


def compute_sla_due_at(received_at: datetime, priority: str | None) -> datetime:
    return received_at + timedelta(hours=resolve_sla_hours(priority))
