"""
Idempotency Store — persistence for the idempotency ledger.

One row per (endpoint, idempotency_key). The only concurrency primitives are:
  - the unique-index INSERT that creates a new in_progress row, and
  - compare-and-swap UPDATEs that take over an expired or abandoned row.

Neither ever waits on another request: losing either race reports IN_PROGRESS.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from db.models import IdempotencyRecord

logger = structlog.get_logger()


class AcquireOutcome(str, Enum):
    ACQUIRED = "acquired"
    REPLAY = "replay"
    IN_PROGRESS = "in_progress"
    CONFLICT = "conflict"


@dataclass
class AcquireResult:
    outcome: AcquireOutcome
    record_id: uuid.UUID | None = None
    status_code: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    retry_after_seconds: int | None = None


class IdempotencyStore:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock,
        *,
        ttl: timedelta,
        lock_timeout: timedelta,
    ):
        self.db = db
        self.clock = clock
        self.ttl = ttl
        self.lock_timeout = lock_timeout

    async def get(self, endpoint: str, key: str) -> IdempotencyRecord | None:
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.endpoint == endpoint,
                IdempotencyRecord.idempotency_key == key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def acquire(self, endpoint: str, key: str, request_hash: str) -> AcquireResult:
        now = self.clock.now()
        log = logger.bind(endpoint=endpoint, idempotency_key=key)
        existing = await self.get(endpoint, key)

        if existing is None:
            return await self._insert(endpoint, key, request_hash)

        if existing.expires_at <= now:
            log.info("idempotency.expired_takeover")
            return await self._take_over(
                existing,
                request_hash,
                IdempotencyRecord.expires_at <= now,
            )

        if existing.state == "in_progress":
            if existing.locked_until > now:
                remaining = max(1, int((existing.locked_until - now).total_seconds()))
                return AcquireResult(AcquireOutcome.IN_PROGRESS, retry_after_seconds=remaining)
            if existing.request_hash != request_hash:
                return AcquireResult(AcquireOutcome.CONFLICT)
            log.warning("idempotency.stale_lock_takeover", locked_until=existing.locked_until.isoformat())
            return await self._take_over(
                existing,
                request_hash,
                (IdempotencyRecord.state == "in_progress") & (IdempotencyRecord.locked_until <= now),
            )

        if existing.request_hash != request_hash:
            return AcquireResult(AcquireOutcome.CONFLICT)

        return AcquireResult(
            AcquireOutcome.REPLAY,
            record_id=existing.id,
            status_code=existing.status_code or 200,
            headers=dict(existing.response_headers or {}),
            body=existing.response_body,
        )

    async def _insert(self, endpoint: str, key: str, request_hash: str) -> AcquireResult:
        now = self.clock.now()
        record = IdempotencyRecord(
            endpoint=endpoint,
            idempotency_key=key,
            request_hash=request_hash,
            state="in_progress",
            locked_until=now + self.lock_timeout,
            expires_at=now + self.ttl,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
                await self.db.flush()
        except IntegrityError:
            # Another request inserted the same key between our read and write.
            logger.info("idempotency.insert_race_lost", endpoint=endpoint, idempotency_key=key)
            return AcquireResult(
                AcquireOutcome.IN_PROGRESS,
                retry_after_seconds=int(self.lock_timeout.total_seconds()),
            )
        return AcquireResult(AcquireOutcome.ACQUIRED, record_id=record.id)

    async def _take_over(self, existing: IdempotencyRecord, request_hash: str, guard) -> AcquireResult:
        now = self.clock.now()
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.id == existing.id, guard)
            .values(
                state="in_progress",
                request_hash=request_hash,
                status_code=None,
                response_headers=None,
                response_body=None,
                locked_until=now + self.lock_timeout,
                expires_at=now + self.ttl,
                created_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return AcquireResult(
                AcquireOutcome.IN_PROGRESS,
                retry_after_seconds=int(self.lock_timeout.total_seconds()),
            )
        return AcquireResult(AcquireOutcome.ACQUIRED, record_id=existing.id)

    async def complete(
        self,
        record_id: uuid.UUID,
        *,
        status_code: int,
        headers: dict[str, str],
        body: str,
    ) -> None:
        now = self.clock.now()
        await self.db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.id == record_id, IdempotencyRecord.state == "in_progress")
            .values(
                state="completed",
                status_code=status_code,
                response_headers=headers,
                response_body=body,
                locked_until=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def release(self, record_id: uuid.UUID) -> None:
        """Drop an in_progress record so a retry with the same key can run the handler."""
        await self.db.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.id == record_id, IdempotencyRecord.state == "in_progress")
            .execution_options(synchronize_session=False)
        )

    async def purge_expired(self) -> int:
        result = await self.db.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.expires_at <= self.clock.now())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
