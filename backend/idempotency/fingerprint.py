"""Request fingerprinting for idempotency-key reuse detection."""

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Key-order-independent JSON encoding of a request body."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def build_request_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
