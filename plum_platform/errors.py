"""
Billing Errors — Typed failures for SIWE login and payment verification.

Every failure carries a stable machine-readable `kind` and the HTTP status
the API layer answers with. Messages are safe to show to the client.

  BadRequest        400  missing / malformed input
  NotFound          404  unknown plan, unmined transaction
  Forbidden         403  sender is not the authenticated wallet
  Conflict          409  transaction hash already claimed
  Invalid           400  receipt / receiver / chain / value / confirmations
  Unavailable       503  verification not configured, RPC unreachable
  VerificationError 401  SIWE signature / nonce / freshness failure
"""


class PaymentError(Exception):
    """Base class for payment verification failures."""
    kind: str = "payment_error"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message, "kind": self.kind}


class BadRequest(PaymentError):
    kind = "bad_request"
    status_code = 400


class NotFound(PaymentError):
    kind = "not_found"
    status_code = 404


class Forbidden(PaymentError):
    kind = "forbidden"
    status_code = 403


class Conflict(PaymentError):
    kind = "conflict"
    status_code = 409


class Invalid(PaymentError):
    kind = "invalid"
    status_code = 400


class Unavailable(PaymentError):
    kind = "unavailable"
    status_code = 503


class VerificationError(Exception):
    """SIWE login rejected. `reason` is human-readable."""
    kind = "verification_error"
    status_code = 401

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"message": self.reason, "kind": self.kind}
