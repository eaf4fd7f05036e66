"""
Typed request structs. Validation collects every field-level violation
(pydantic reports all errors, not the first) and surfaces them as ValidationError.
"""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from marketplace.errors import ValidationError

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"

PlanName = Literal["free", "basic", "premium", "enterprise"]
PlanType = Literal["monthly", "yearly"]


class ServicePricing(BaseModel):
    type: Literal["hourly", "fixed", "per_sqft"]
    amount: float = Field(..., gt=0)
    currency: str = "USD"
    description: str | None = None


class ServiceDetails(BaseModel):
    title: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    description: str | None = None
    pricing: ServicePricing


class BookingDetails(BaseModel):
    scheduledDate: str = Field(..., description="ISO 8601 date")
    scheduledTime: str = Field(..., pattern=TIME_PATTERN, description="HH:MM")
    duration: float | None = Field(default=None, gt=0, description="Hours")
    address: str = Field(..., min_length=1)
    notes: str | None = None
    specialInstructions: str | None = None

    @field_validator("scheduledDate")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("Scheduled date must be a valid ISO date")
        return v


class Pricing(BaseModel):
    baseAmount: float = Field(..., gt=0)
    taxes: float = Field(default=0, ge=0)
    fees: float = Field(default=0, ge=0)
    discounts: float = Field(default=0, ge=0)
    totalAmount: float = Field(..., gt=0)
    currency: str = "USD"


class OrderMetadata(BaseModel):
    source: str = "web"
    userAgent: str | None = None
    ipAddress: str | None = None
    referralSource: str | None = None


class CreateOrderRequest(BaseModel):
    providerId: str = Field(..., min_length=1)
    listingId: str = Field(..., min_length=1)
    serviceDetails: ServiceDetails
    bookingDetails: BookingDetails
    pricing: Pricing
    estimatedCompletion: str | None = None
    metadata: OrderMetadata | None = None


class StatusUpdate(BaseModel):
    status: str


class PaymentStatusUpdate(BaseModel):
    paymentStatus: str


class CancellationRequest(BaseModel):
    reason: str = ""
    refundAmount: float | None = Field(default=None, ge=0)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1)


class OrderFilters(BaseModel):
    status: str | None = None
    paymentStatus: str | None = None
    customerId: str | None = None
    providerId: str | None = None
    listingId: str | None = None
    dateFrom: str | None = None
    dateTo: str | None = None
    sortBy: Literal["createdAt", "scheduledDate", "totalAmount", "status"] = "createdAt"
    sortOrder: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class PlanCheckoutRequest(BaseModel):
    planName: PlanName
    planType: PlanType
    successUrl: str = Field(..., pattern=r"^https?://.+")
    cancelUrl: str = Field(..., pattern=r"^https?://.+")


class PlanUpgradeRequest(BaseModel):
    newPlanName: PlanName
    newPlanType: PlanType


class FeedbackRequest(BaseModel):
    orderId: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    serviceId: str | None = None


def violations_from(errors: list[dict]) -> list[dict]:
    """Flatten pydantic error dicts into [{field, message}] using dot paths."""
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        message = err.get("msg", "invalid")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        out.append({"field": ".".join(loc) or "body", "message": message})
    return out


def parse_or_raise(model: type[BaseModel], data) -> BaseModel:
    if not isinstance(data, dict):
        raise ValidationError([{"field": "body", "message": "Input should be an object"}])
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(violations_from(e.errors())) from e
