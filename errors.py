"""
Service Errors
==============
Error kinds shared by the pricing, cart, order, payment and storage layers.

The HTTP layer maps each kind to a status code; domain modules only raise.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class ValidationError(ServiceError):
    """Bad pricing inputs, malformed payloads, missing checkout fields."""
    pass


class NotFoundError(ServiceError):
    """Cart line, catalog entity or order does not exist."""
    pass


class PaymentError(ServiceError):
    """Wallet not connected, provider rejection, card validation failure."""
    pass


class PersistenceError(ServiceError):
    """Record store unreachable or rejected a write."""
    pass
