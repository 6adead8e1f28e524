"""
Error taxonomy for the ledger core.

Every failure the core reports carries a stable ``code`` the service layer
maps to a response, an ``http_status`` hint, and a ``details`` payload.
Retryable kinds tell the caller to back off and submit again.
"""

from __future__ import annotations

from typing import Any


class PosError(Exception):
    """Base class for declared core failures."""
    code = "POS_ERROR"
    http_status = 500
    retryable = False
    # True when the error was read back from an idempotency record.
    replayed = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.message!r} details={self.details!r}>"


class NotFound(PosError):
    """Referenced entity is absent."""
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class ValidationError(PosError):
    """400-level input problem (malformed request)."""
    code = "VALIDATION_ERROR"
    http_status = 400


class InsufficientStock(PosError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}",
            details={"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class CreditLimitExceeded(PosError):
    code = "CREDIT_LIMIT_EXCEEDED"
    http_status = 409

    def __init__(self, customer_id: str, requested: int, available: int):
        super().__init__(
            f"Credit limit exceeded for customer {customer_id}: requested {requested}, available {available}",
            details={"customer_id": customer_id, "requested": requested, "available": available},
        )
        self.customer_id = customer_id
        self.requested = requested
        self.available = available


class RegisterAlreadyOpen(PosError):
    code = "REGISTER_ALREADY_OPEN"
    http_status = 409

    def __init__(self, register_id: str, session_id: str | None = None):
        super().__init__(
            f"Register {register_id} already has an open session",
            details={"register_id": register_id, "session_id": session_id},
        )


class RegisterClosed(PosError):
    code = "REGISTER_CLOSED"
    http_status = 409


class ConcurrencyConflict(PosError):
    """Lost a compare-and-set on a serialization point; retry."""
    code = "CONCURRENCY_CONFLICT"
    http_status = 409
    retryable = True


class IdempotencyInProgress(PosError):
    """Another attempt holds the idempotency key; retry after backoff."""
    code = "IDEMPOTENCY_IN_PROGRESS"
    http_status = 409
    retryable = True

    def __init__(self, key: str):
        super().__init__(
            f"A request with idempotency key {key!r} is already in progress",
            details={"idempotency_key": key},
        )


_BY_CODE: dict[str, type[PosError]] = {
    cls.code: cls
    for cls in (
        PosError,
        NotFound,
        ValidationError,
        InsufficientStock,
        CreditLimitExceeded,
        RegisterAlreadyOpen,
        RegisterClosed,
        ConcurrencyConflict,
        IdempotencyInProgress,
    )
}


def error_from_dict(payload: dict) -> PosError:
    """Rebuild an error previously serialized with ``to_dict``."""
    cls = _BY_CODE.get(payload.get("code"), PosError)
    # Bypass the specialized constructors; message and details are stored verbatim.
    err = cls.__new__(cls)
    PosError.__init__(err, payload.get("message", ""), payload.get("details") or {})
    err.replayed = True
    for key in ("product_id", "customer_id", "requested", "available"):
        if key in err.details:
            setattr(err, key, err.details[key])
    return err
