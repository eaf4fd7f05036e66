"""
Error taxonomy for the order, plan and reconciliation services.
Every error carries the HTTP status and machine code the API reports for it.
"""


class MarketplaceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(MarketplaceError):
    """Malformed or missing input. `violations` lists every offending field, not just the first."""

    status_code = 400
    code = "validation_error"

    def __init__(self, violations: list[dict], message: str | None = None):
        self.violations = violations
        summary = ", ".join(f"{v['field']}: {v['message']}" for v in violations)
        super().__init__(message or f"Validation error: {summary}")

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["violations"] = self.violations
        return body


class Unauthorized(MarketplaceError):
    status_code = 403
    code = "unauthorized"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class PlanNotFound(NotFound):
    code = "plan_not_found"


class InvalidStatus(MarketplaceError):
    status_code = 400
    code = "invalid_status"


class InvalidOrderStatus(MarketplaceError):
    status_code = 400
    code = "invalid_order_status"


class CannotCancel(MarketplaceError):
    status_code = 400
    code = "cannot_cancel"


class CannotReview(MarketplaceError):
    status_code = 400
    code = "cannot_review"


class AlreadyReviewed(CannotReview):
    status_code = 409
    code = "already_reviewed"


class CannotDowngrade(MarketplaceError):
    status_code = 400
    code = "cannot_downgrade"


class GatewayError(MarketplaceError):
    """Payment provider call failed or the provider is not configured. Input was fine."""

    status_code = 502
    code = "gateway_error"


class SignatureError(MarketplaceError):
    """Webhook authenticity check failed. Never retried."""

    status_code = 400
    code = "invalid_signature"


class RateLimited(MarketplaceError):
    status_code = 429
    code = "rate_limited"
