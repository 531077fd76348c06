"""FastAPI glue for the idempotency gateway."""

from typing import Any

from fastapi import HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from idempotency.errors import IdempotencyConflictError, IdempotencyInProgressError
from idempotency.gateway import Handler, IdempotencyGateway

IDEMPOTENCY_HEADERS = ("idempotency-key", "x-idempotency-key")


def read_idempotency_key(request: Request) -> str | None:
    for header in IDEMPOTENCY_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    return None


async def idempotent_response(
    request: Request,
    db: AsyncSession,
    clock: Clock,
    endpoint: str,
    payload: Any,
    handler: Handler,
) -> Response:
    """Run `handler` behind the gateway and render its stored bytes unchanged."""
    key = read_idempotency_key(request)
    gateway = IdempotencyGateway(db, clock)
    try:
        result = await gateway.execute(endpoint, key, payload, handler)
    except IdempotencyConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())
    except IdempotencyInProgressError as exc:
        headers = {}
        if exc.retry_after_seconds:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail(), headers=headers)

    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type="application/json",
        headers=result.headers,
    )
