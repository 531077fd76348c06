"""
Idempotency Gateway — at-most-once execution for external side effects.

Wraps a handler that performs a non-retryable call (Shopify write, Klaviyo
push) so that retries, double-clicks, and network resends with the same
Idempotency-Key never execute it twice.

Contract:
  1. New key        → lock (in_progress), run handler, store response (completed)
  2. in_progress    → IdempotencyInProgressError immediately (never waits)
  3. completed      → same payload: stored response replayed byte-for-byte
                      different payload: IdempotencyConflictError
  4. Handler raises or answers with an error status → record released,
     so the key is retryable rather than wedged.

An error status therefore means "nothing was written". Handlers with
several external writes answer 207 once any of them has landed, which
finalizes the key with the partial result.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from core.config import get_settings
from idempotency.errors import IdempotencyConflictError, IdempotencyInProgressError
from idempotency.fingerprint import build_request_hash
from idempotency.store import AcquireOutcome, IdempotencyStore

logger = structlog.get_logger()

REPLAY_HEADER = "Idempotency-Replayed"


@dataclass
class GatewayResponse:
    """A rendered response. `body` holds the exact bytes (as text) sent to the client."""

    status_code: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    replayed: bool = False

    @classmethod
    def json(cls, payload: Any, status_code: int = 200) -> "GatewayResponse":
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
        return cls(status_code=status_code, body=body)

    @property
    def ok(self) -> bool:
        return self.status_code < 400


Handler = Callable[[], Awaitable[GatewayResponse]]


class IdempotencyGateway:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock,
        *,
        ttl: timedelta | None = None,
        lock_timeout: timedelta | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.store = IdempotencyStore(
            db,
            clock,
            ttl=ttl or timedelta(hours=settings.idempotency_ttl_hours),
            lock_timeout=lock_timeout or timedelta(seconds=settings.idempotency_lock_seconds),
        )

    async def execute(
        self,
        endpoint: str,
        key: str | None,
        payload: Any,
        handler: Handler,
    ) -> GatewayResponse:
        if not key:
            return await handler()

        log = logger.bind(endpoint=endpoint, idempotency_key=key)
        request_hash = build_request_hash(payload)
        acquired = await self.store.acquire(endpoint, key, request_hash)

        if acquired.outcome == AcquireOutcome.CONFLICT:
            log.warning("idempotency.conflict")
            raise IdempotencyConflictError(endpoint, key)
        if acquired.outcome == AcquireOutcome.IN_PROGRESS:
            log.info("idempotency.in_progress")
            raise IdempotencyInProgressError(endpoint, key, acquired.retry_after_seconds)
        if acquired.outcome == AcquireOutcome.REPLAY:
            log.info("idempotency.replay", status_code=acquired.status_code)
            return GatewayResponse(
                status_code=acquired.status_code,
                body=acquired.body or "null",
                headers={**acquired.headers, REPLAY_HEADER: "true"},
                replayed=True,
            )

        record_id = acquired.record_id
        # Publish the lock before running the side effect so concurrent callers see it.
        await self.db.commit()

        try:
            response = await handler()
        except Exception:
            log.warning("idempotency.handler_failed", exc_info=True)
            await self.db.rollback()
            await self.store.release(record_id)
            await self.db.commit()
            raise

        if not response.ok:
            log.info("idempotency.released", status_code=response.status_code)
            await self.store.release(record_id)
            await self.db.commit()
            return response

        await self.store.complete(
            record_id,
            status_code=response.status_code,
            headers=response.headers,
            body=response.body,
        )
        await self.db.commit()
        log.info("idempotency.completed", status_code=response.status_code)
        return response
