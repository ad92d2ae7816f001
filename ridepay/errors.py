"""
Payment errors.

Every error raised by the reconciliation core derives from PaymentError so
entry points can handle the whole family at once.
"""

from __future__ import annotations

from typing import Any


class PaymentError(Exception):
    def __init__(self, message: str, code: str = "PAYMENT_ERROR", details: dict[str, Any] | None = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class BillNotFoundError(PaymentError):
    """No bill matches the external reference."""

    def __init__(self, external_ref: str):
        super().__init__(
            f"Bill not found: {external_ref}",
            code="BILL_NOT_FOUND",
            details={"external_ref": external_ref},
        )
        self.external_ref = external_ref


class TransportError(PaymentError):
    """The provider could not be reached or timed out. Safe to retry."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="GATEWAY_UNAVAILABLE", details=details)


class PayloadValidationError(PaymentError):
    """A provider payload was malformed or missing required fields."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message, code="INVALID_PAYLOAD", details={"payload": payload})


class RaceLostError(PaymentError):
    """Another caller already moved the bill out of a non-terminal status."""

    def __init__(self, external_ref: str):
        super().__init__(
            f"Bill {external_ref} was resolved concurrently",
            code="RACE_LOST",
            details={"external_ref": external_ref},
        )
        self.external_ref = external_ref


class ActivationFailure(PaymentError):
    """
    Payment is confirmed but the subscription side effects could not be
    persisted. The bill stays completed with activation_applied unset so a
    later pass can finish the activation without charging again.
    """

    def __init__(self, external_ref: str, reason: str):
        super().__init__(
            f"Activation failed for {external_ref}: {reason}",
            code="ACTIVATION_FAILED",
            details={"external_ref": external_ref, "reason": reason},
        )
        self.external_ref = external_ref


class InvalidPaymentRequest(PaymentError):
    def __init__(self, message: str):
        super().__init__(message, code="INVALID_PAYMENT_REQUEST")


class PaymentInitiationError(PaymentError):
    def __init__(self, message: str, external_ref: str | None = None):
        super().__init__(
            message,
            code="PAYMENT_INITIATION_FAILED",
            details={"external_ref": external_ref},
        )
        self.external_ref = external_ref
