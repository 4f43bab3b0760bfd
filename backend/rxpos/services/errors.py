# Overview: Domain error taxonomy shared by the service layer and mapped to HTTP codes by routes.

from __future__ import annotations


class ServiceError(Exception):
    """Base for domain errors; details is a JSON-safe dict returned to callers."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(ServiceError):
    """Raised when a referenced entity does not exist."""


class InsufficientStockError(ServiceError):
    """Requested quantity exceeds the eligible batch total. Nothing was deducted."""


class AllocationRaceError(ServiceError):
    """A batch changed underneath an allocation. Retry the whole composition."""


class InvoiceError(ServiceError):
    """Invalid cart or checkout context."""


class InvalidRedemptionError(ServiceError):
    """Insufficient balance or below the program minimum. Balance untouched."""


class LoyaltyError(ServiceError):
    """Loyalty operation not applicable (inactive program, missing patient)."""


class SyncFailure(ServiceError):
    """Transient remote/network failure during sync; recorded, never raised to the point of sale."""


class InvalidConsignmentOperation(ServiceError):
    """Sale/return that cannot be applied to the consignment. Nothing was mutated."""


class DeliveryError(ServiceError):
    """Illegal delivery status transition or invalid delivery order input."""


_HTTP_STATUS = (
    (NotFoundError, 404),
    (InsufficientStockError, 409),
    (AllocationRaceError, 409),
    (DeliveryError, 409),
    (InvalidRedemptionError, 422),
    (InvalidConsignmentOperation, 422),
    (SyncFailure, 502),
)


def http_status_for(exc: ServiceError) -> int:
    """HTTP status for a domain error; anything unlisted is a 400."""
    for cls, status in _HTTP_STATUS:
        if isinstance(exc, cls):
            return status
    return 400
