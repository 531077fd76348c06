"""Idempotency gateway error taxonomy. Both map to HTTP 409 at the API edge."""


class IdempotencyError(Exception):
    code = "idempotency_error"

    def __init__(self, endpoint: str, key: str, message: str):
        super().__init__(message)
        self.endpoint = endpoint
        self.key = key
        self.message = message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, "idempotency_key": self.key}


class IdempotencyConflictError(IdempotencyError):
    """Key reused with a different request payload. Client defect; never retried."""

    code = "idempotency_key_conflict"

    def __init__(self, endpoint: str, key: str):
        super().__init__(endpoint, key, "Idempotency key reused with different request body")


class IdempotencyInProgressError(IdempotencyError):
    """Another request holding the same key has not finished yet. Retry later."""

    code = "idempotency_in_progress"

    def __init__(self, endpoint: str, key: str, retry_after_seconds: int | None = None):
        super().__init__(endpoint, key, "A request with this idempotency key is already in progress")
        self.retry_after_seconds = retry_after_seconds
