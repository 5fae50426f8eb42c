from __future__ import annotations


class EscrowCoreError(Exception):
    """Base error for rejected transitions.

    Every subclass carries a stable machine code, a user-facing message and
    the HTTP status the API layer renders it with.
    """

    code = "ESCROW_CORE_ERROR"
    status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None, *, code: str | None = None, details: dict | None = None):
        self.message = (message or self.default_message).strip()
        if code:
            self.code = code
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EscrowCoreError):
    code = "VALIDATION_ERROR"
    status = 400
    default_message = "Invalid input"


class ForbiddenError(EscrowCoreError):
    code = "FORBIDDEN"
    status = 403
    default_message = "You are not allowed to perform this action"


class NotFoundError(EscrowCoreError):
    code = "NOT_FOUND"
    status = 404
    default_message = "Not found"


class StaleStateError(EscrowCoreError):
    code = "STALE_STATE"
    status = 409
    default_message = "Order already processed. Reload and try again."


class BlockedTransitionError(EscrowCoreError):
    code = "TRANSITION_BLOCKED"
    status = 409
    default_message = "This action is not allowed yet"


class DeliveryCodeError(EscrowCoreError):
    # Deliberately uniform: never say whether the code was wrong, used or absent.
    code = "INVALID_DELIVERY_CODE"
    status = 400
    default_message = "Invalid or expired delivery code"

    def __init__(self):
        super().__init__(self.default_message)


class EscrowStateError(EscrowCoreError):
    code = "INVALID_ESCROW_TRANSITION"
    status = 409
    default_message = "Escrow cannot move to the requested state"


class EscrowIntegrityError(EscrowCoreError):
    code = "ESCROW_INTEGRITY_VIOLATION"
    status = 500
    default_message = "Escrow state diverges from order state"
