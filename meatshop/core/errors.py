from typing import Any


class DomainError(Exception):
    """Business error with a stable code, rendered by the API error envelope."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(DomainError):
    status_code = 400
    code = "validation_error"


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class BusinessRuleViolation(DomainError):
    status_code = 400
    code = "business_rule_violation"


class InsufficientStock(BusinessRuleViolation):
    code = "insufficient_stock"


class ProductUnavailable(BusinessRuleViolation):
    code = "product_unavailable"


class InvalidStateTransition(BusinessRuleViolation):
    code = "invalid_state_transition"


class ExceedsRefundable(BusinessRuleViolation):
    code = "exceeds_refundable"


class DiscountNotApplicable(BusinessRuleViolation):
    code = "discount_not_applicable"


class GatewayDeclined(DomainError):
    status_code = 400
    code = "gateway_declined"
