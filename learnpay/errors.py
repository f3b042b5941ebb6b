# learnpay/errors.py
"""
Typed failures raised by the payment, enrollment and access operations.

Each error carries a stable ``code`` for API clients, a ``category`` that tells
the caller how to react, and the HTTP status used by the routing layer.
"""
from typing import Any, Dict, Optional

VALIDATION = "validation"
POLICY = "policy"
INTEGRITY = "integrity"
AUTHENTICITY = "authenticity"
TRANSIENT = "transient"


class LearnpayError(Exception):
    code = "error"
    category = VALIDATION
    status_code = 400
    retryable = False

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "code": self.code, "category": self.category, "message": self.message}
        body.update(self.detail)
        return body


class ValidationFailed(LearnpayError):
    code = "validation_failed"


class NotFound(LearnpayError):
    code = "not_found"
    category = POLICY
    status_code = 404


class NotPublished(LearnpayError):
    code = "not_published"
    category = POLICY
    status_code = 403


class AlreadySatisfied(LearnpayError):
    code = "already_satisfied"
    category = POLICY
    status_code = 409


class AlreadyEnrolled(LearnpayError):
    code = "already_enrolled"
    category = POLICY
    status_code = 409


class RegistrationFeeRequired(LearnpayError):
    code = "registration_fee_required"
    category = POLICY
    status_code = 402


class Unauthenticated(LearnpayError):
    code = "unauthenticated"
    category = POLICY
    status_code = 401


class AccessDenied(LearnpayError):
    code = "access_denied"
    category = POLICY
    status_code = 403

    def __init__(self, message: str, code: Optional[str] = None, **detail: Any):
        super().__init__(message, **detail)
        if code:
            self.code = code


class AlreadyActive(LearnpayError):
    code = "already_active"
    category = INTEGRITY
    status_code = 409


class InvalidTransition(LearnpayError):
    code = "invalid_transition"
    category = INTEGRITY
    status_code = 409


class SignatureMismatch(LearnpayError):
    code = "signature_mismatch"
    category = AUTHENTICITY


class GatewayUnavailable(LearnpayError):
    code = "gateway_unavailable"
    category = TRANSIENT
    status_code = 503
    retryable = True


class GatewayRejected(LearnpayError):
    code = "gateway_rejected"
    category = TRANSIENT
    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, **detail: Any):
        super().__init__(message, **detail)
        self.upstream_status = upstream_status
        # 5xx from the gateway is worth retrying, 4xx is not
        self.retryable = upstream_status is None or upstream_status >= 500
        self.category = TRANSIENT if self.retryable else VALIDATION


class StoreUnavailable(LearnpayError):
    code = "store_unavailable"
    category = TRANSIENT
    status_code = 503
    retryable = True
