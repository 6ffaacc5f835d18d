# Overview: Typed pipeline errors and their wire taxonomy.

"""
Error taxonomy surfaced to callers.

Every error that leaves the service layer is a PipelineError. The class
decides the wire `kind` and the HTTP status; the instance carries a human
message and a `details` dict (offending product ids, recomputed totals...).

Lower layers raise their own narrow errors (UnitError, LedgerError,
GatewayError); the order state machine translates them before they reach
a route.
"""

from __future__ import annotations


KIND_VALIDATION = "validation"
KIND_INSUFFICIENT_STOCK = "insufficient_stock"
KIND_TOTAL_MISMATCH = "total_mismatch"
KIND_PAYMENT_REQUIRED = "payment_required"
KIND_PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
KIND_PAYMENT_EXPIRED = "payment_expired"
KIND_DUPLICATE = "duplicate"
KIND_AUTH = "auth"
KIND_CONFLICT = "conflict"
KIND_TRANSIENT = "transient"
KIND_NOT_FOUND = "not_found"

# Kinds a client must not retry automatically
TERMINAL_KINDS = frozenset({
    KIND_VALIDATION,
    KIND_INSUFFICIENT_STOCK,
    KIND_TOTAL_MISMATCH,
    KIND_PAYMENT_REQUIRED,
    KIND_PAYMENT_VERIFICATION_FAILED,
    KIND_PAYMENT_EXPIRED,
    KIND_AUTH,
    KIND_NOT_FOUND,
})


class PipelineError(Exception):
    """Base class for errors that map onto the wire taxonomy."""

    kind = KIND_TRANSIENT
    http_status = 503

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class ValidationFailed(PipelineError):
    kind = KIND_VALIDATION
    http_status = 400


class NotFound(PipelineError):
    kind = KIND_NOT_FOUND
    http_status = 404


class InsufficientStock(PipelineError):
    kind = KIND_INSUFFICIENT_STOCK
    http_status = 409


class TotalMismatch(PipelineError):
    kind = KIND_TOTAL_MISMATCH
    http_status = 409


class PaymentRequired(PipelineError):
    kind = KIND_PAYMENT_REQUIRED
    http_status = 402


class PaymentVerificationFailed(PipelineError):
    kind = KIND_PAYMENT_VERIFICATION_FAILED
    http_status = 400


class PaymentExpired(PipelineError):
    kind = KIND_PAYMENT_EXPIRED
    http_status = 410


class AuthError(PipelineError):
    kind = KIND_AUTH
    http_status = 401


class ForbiddenError(PipelineError):
    kind = KIND_AUTH
    http_status = 403


class ConflictError(PipelineError):
    kind = KIND_CONFLICT
    http_status = 409


class InvalidTransition(ConflictError):
    """An order operation is not permitted from the order's current state."""


class TransientError(PipelineError):
    kind = KIND_TRANSIENT
    http_status = 503


# Lower-layer errors (translated by the order state machine)

class UnitError(ValueError):
    """A quantity cannot be expressed in the requested stock unit."""


class LedgerError(Exception):
    """Stock ledger rejected an append or a rollover."""


class GatewayError(Exception):
    """Payment gateway call failed or returned an unusable response."""
