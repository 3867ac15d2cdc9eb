# paani/core/errors.py
from __future__ import annotations


class PaaniError(Exception):
    """Base class for domain errors surfaced to API and bot callers."""


class ValidationError(PaaniError):
    pass


class NotFound(PaaniError):
    def __init__(self, kind: str, obj_id: object) -> None:
        super().__init__(f"{kind} {obj_id} not found")
        self.kind = kind
        self.obj_id = obj_id


class CustomerNotFound(NotFound):
    def __init__(self, customer_id: object) -> None:
        super().__init__("customer", customer_id)
        self.customer_id = customer_id


class DuplicateActiveRequest(PaaniError):
    """The customer already has a pending/processing delivery request."""

    def __init__(
        self,
        customer_id: int,
        existing_id: int | None = None,
        existing_status: str | None = None,
    ) -> None:
        super().__init__(f"customer {customer_id} already has an active delivery request")
        self.customer_id = customer_id
        self.existing_id = existing_id
        self.existing_status = existing_status


class StorageConflict(DuplicateActiveRequest):
    """Unique-index rejection from the store; same outcome as the pre-check."""


class InvalidTransition(PaaniError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot move delivery request from {current} to {target}")
        self.current = current
        self.target = target


class RateLimitExceeded(PaaniError):
    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"too many requests for {key}, retry in {retry_after:.0f}s")
        self.key = key
        self.retry_after = retry_after
