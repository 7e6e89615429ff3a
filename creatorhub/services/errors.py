"""Error taxonomy for the payment engine.

Every error carries a stable ``code`` and a user-safe ``user_message``; the
constructor ``detail`` is for logs only and never reaches the client.
"""
from typing import Optional


class PaymentError(RuntimeError):
    code = "payment_error"
    http_status = 500
    user_message = "Something went wrong while processing your payment."

    def __init__(self, detail: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail
        if user_message:
            self.user_message = user_message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message}


class SignatureInvalid(PaymentError):
    code = "signature_invalid"
    http_status = 400
    user_message = "Invalid signature."


class MalformedEvent(PaymentError):
    code = "malformed_event"
    http_status = 400
    user_message = "Malformed event payload."


class DuplicateEvent(PaymentError):
    """Already-processed event; callers treat this as success."""
    code = "duplicate_event"
    http_status = 200
    user_message = "Event already processed."


class InvalidStateTransition(PaymentError):
    code = "invalid_state_transition"
    http_status = 409
    user_message = "This action is not available in the current state."


class ProcessorUnavailable(PaymentError):
    code = "processor_unavailable"
    http_status = 503
    user_message = "The payment provider is temporarily unavailable. Please try again."


class ProcessorRejected(PaymentError):
    code = "processor_rejected"
    http_status = 422
    user_message = "The payment provider declined this request."


class ConfigurationError(PaymentError):
    code = "configuration_error"
    http_status = 422
    user_message = "This option has not been configured by the creator."


class ReconciliationMismatch(PaymentError):
    code = "reconciliation_mismatch"
    http_status = 409
    user_message = "Payment records are being reviewed."


class PaymentSetupError(PaymentError):
    code = "payment_setup_error"
    http_status = 400
    user_message = "The payment could not be set up."


class ValidationFailed(PaymentError):
    code = "validation_error"
    http_status = 400
    user_message = "Some fields are invalid."

    def __init__(self, errors, detail: Optional[str] = None):
        super().__init__(detail or "; ".join(errors))
        self.errors = list(errors)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message, "errors": self.errors}


class NotFound(PaymentError):
    code = "not_found"
    http_status = 404
    user_message = "Not found."


class PermissionDenied(PaymentError):
    code = "forbidden"
    http_status = 403
    user_message = "You are not allowed to perform this action."
