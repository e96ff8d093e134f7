"""Domain errors for the escrow engine.

Services raise these; ``app.main`` translates them into JSON responses with the
status code and error code carried by each class.

    EscrowEngineError
    ├── ValidationError          422  inputs do not reconcile, nothing persisted
    │   └── PlanValidationError       names the failing plan rule
    ├── NotFoundError            404
    ├── NotPermitted             403  actor is not a party to the request
    ├── InvalidState             409  re-query current state and retry
    ├── DisputeActive            409  release/refund frozen until resolved
    ├── EvidenceIncomplete       409  lists missing evidence kinds
    ├── PaymentIncomplete        403  contact reveal precondition not met yet
    ├── PaymentDeclined          402  retry with the same or another method
    ├── VerificationTimeout      408  funds may still clear, retry verification
    ├── GatewayUnavailable       502  no provider accepted the payment
    └── WebhookSignatureError    401
"""

from typing import Any


class EscrowEngineError(Exception):
    status_code: int = 400
    error_code: str = "escrow_error"
    retryable: bool = False

    def __init__(self, detail: str, **details: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.detail, "error": self.error_code}
        if self.retryable:
            body["retryable"] = True
        if self.details:
            body.update(self.details)
        return body


class ValidationError(EscrowEngineError):
    status_code = 422
    error_code = "validation_error"


class PlanValidationError(ValidationError):
    error_code = "plan_invalid"

    def __init__(self, rule: str, detail: str, **details: Any) -> None:
        super().__init__(detail, rule=rule, **details)
        self.rule = rule


class NotFoundError(EscrowEngineError):
    status_code = 404
    error_code = "not_found"


class NotPermitted(EscrowEngineError):
    status_code = 403
    error_code = "not_permitted"


class InvalidState(EscrowEngineError):
    status_code = 409
    error_code = "invalid_state"


class DisputeActive(EscrowEngineError):
    status_code = 409
    error_code = "dispute_active"


class EvidenceIncomplete(EscrowEngineError):
    status_code = 409
    error_code = "evidence_incomplete"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing required evidence: {', '.join(missing)}", missing=missing)
        self.missing = missing


class PaymentIncomplete(EscrowEngineError):
    status_code = 403
    error_code = "payment_incomplete"


class PaymentDeclined(EscrowEngineError):
    status_code = 402
    error_code = "payment_declined"
    retryable = True


class VerificationTimeout(EscrowEngineError):
    status_code = 408
    error_code = "verification_timeout"
    retryable = True


class GatewayUnavailable(EscrowEngineError):
    status_code = 502
    error_code = "gateway_unavailable"
    retryable = True


class WebhookSignatureError(EscrowEngineError):
    status_code = 401
    error_code = "invalid_signature"
