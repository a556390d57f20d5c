"""
Pydantic schemas for subscription management.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .models import SubscriptionStatus, PaymentProvider
from .dates import ensure_utc


# ===== PLAN SCHEMAS =====

class PlanOut(BaseModel):
    """Plan as shown to labs."""
    id: UUID
    name: str
    description: Optional[str] = None
    price: Decimal
    currency: str
    duration_in_days: int
    features: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool

    class Config:
        from_attributes = True


# ===== SUBSCRIPTION SCHEMAS =====

class SubscriptionOut(BaseModel):
    """Subscription record."""
    id: UUID
    tenant_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    payment_provider: PaymentProvider
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    auto_renew: bool

    class Config:
        from_attributes = True

    @field_validator("start_date", "end_date", "paid_at")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)


class SubscriptionCurrent(BaseModel):
    """Current subscription of a lab with its plan."""
    subscription: SubscriptionOut
    plan: PlanOut
    days_remaining: int = Field(..., description="Whole days left, rounded up")


class SubscriptionCheckout(BaseModel):
    """Start a paid purchase."""
    plan_id: UUID = Field(..., description="Plan being purchased")
    payment_provider: PaymentProvider = Field(default=PaymentProvider.RAZORPAY)

    @field_validator("payment_provider")
    @classmethod
    def real_provider(cls, v):
        if v == PaymentProvider.NONE:
            raise ValueError("A paid checkout needs a payment provider")
        return v


class PlanAssignment(BaseModel):
    """Operator assignment of a plan, no payment involved."""
    plan_id: UUID = Field(..., description="Plan to put the lab on")


class PaymentConfirmation(BaseModel):
    """Verified payment for a pending subscription."""
    payment_id: str = Field(..., min_length=1, max_length=255, description="Provider transaction id")


class SubscriptionList(BaseModel):
    subscriptions: List[SubscriptionOut]
    total: int
    limit: int
    offset: int


class CancelResponse(BaseModel):
    cancelled: bool
    subscription: Optional[SubscriptionOut] = None
    message: str
