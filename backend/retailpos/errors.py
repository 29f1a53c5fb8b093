# Overview: Typed error taxonomy shared by the service layer.

"""
retailpos error hierarchy

    RetailPOSError (base, machine-readable `code`)
    +-- NotFoundError          referenced product/business/location/sale absent
    +-- ValidationError        malformed input (bad magnitude, unknown kind, price < 0)
    +-- ConflictError          uniqueness collision or lifecycle conflict
    +-- IntegrityViolation     ledger invariant would break
    |   +-- InsufficientStockError
    +-- StorageUnavailable     database failure or retries exhausted

ValidationError and ConflictError are also ValueErrors so callers that only
catch ValueError keep working.
"""

from __future__ import annotations


class RetailPOSError(Exception):
    """Base class; every subclass sets a `code`."""

    code: str = "RETAILPOS_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class NotFoundError(RetailPOSError):
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} not found",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class ValidationError(RetailPOSError, ValueError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"


class ConflictError(RetailPOSError, ValueError):
    """409-level conflict (duplicate sale number, reused dedup key, bad status)."""

    code = "CONFLICT"


class IntegrityViolation(RetailPOSError):
    code = "INTEGRITY_VIOLATION"


class InsufficientStockError(IntegrityViolation):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, location_id: int, on_hand: int, requested: int):
        self.product_id = product_id
        self.location_id = location_id
        self.on_hand = on_hand
        self.requested = requested
        super().__init__(
            "movement would make on-hand negative",
            details={
                "product_id": product_id,
                "location_id": location_id,
                "on_hand": on_hand,
                "requested_quantity": requested,
            },
        )


class StorageUnavailable(RetailPOSError):
    code = "STORAGE_UNAVAILABLE"
