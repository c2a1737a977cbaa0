from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures."""


class ValidationError(SyncError):
    pass


class NotFoundError(SyncError):
    pass


class ApplyError(SyncError):
    """A single operation could not be persisted."""


class DuplicateKeyError(SyncError):
    """Another request already recorded this idempotency key."""

    def __init__(self, user_id: int, idempotency_key: str):
        super().__init__(f"Idempotency key {idempotency_key!r} already recorded")
        self.user_id = user_id
        self.idempotency_key = idempotency_key


class BatchTransactionError(SyncError):
    """The batch transaction could not be opened, run or committed.

    Carries whatever per-operation results were computed before the failure.
    None of them were committed.
    """

    def __init__(self, message: str, results: list | None = None):
        super().__init__(message)
        self.results = results or []


class BatchTimeoutError(BatchTransactionError):
    pass
