"""
Error taxonomy for payment orders, fee ledger policy and admin overrides.

Every error carries a stable ``kind`` string that API clients can switch on and a
human readable message. Kinds map onto HTTP status codes in the API layer.
"""

from typing import Optional, Dict, Any


class PaymentError(Exception):
    """Base class for errors surfaced synchronously to callers"""

    kind = "internal"
    category = "internal"

    def __init__(self, message: str, kind: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# Client input errors

class UnauthenticatedError(PaymentError):
    kind = "unauthenticated"
    category = "input"


class InvalidArgumentError(PaymentError):
    kind = "invalid-argument"
    category = "input"


class NotFoundError(PaymentError):
    kind = "not-found"
    category = "input"


# Policy violations

class PermissionDeniedError(PaymentError):
    kind = "permission-denied"
    category = "policy"


class ResourceExhaustedError(PaymentError):
    kind = "resource-exhausted"
    category = "policy"


class FailedPreconditionError(PaymentError):
    kind = "failed-precondition"
    category = "policy"


class AlreadyExistsError(PaymentError):
    kind = "already-exists"
    category = "policy"


class FeeCapExceededError(FailedPreconditionError):
    """Projected outstanding fees would exceed the account's exposure cap"""
    pass


class AccountSuspendedError(FailedPreconditionError):
    pass


# Admin-facing errors

class AdminActionError(PaymentError):
    kind = "failed-precondition"
    category = "admin"


class AlreadyResolvedError(AdminActionError):
    kind = "already-resolved"


HTTP_STATUS_BY_KIND = {
    "invalid-argument": 400,
    "unauthenticated": 401,
    "permission-denied": 403,
    "not-found": 404,
    "already-exists": 409,
    "already-resolved": 409,
    "failed-precondition": 412,
    "resource-exhausted": 429,
}


def http_status_for(error: PaymentError) -> int:
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)
