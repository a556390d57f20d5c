"""
Models for subscription management.
"""
from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Integer, Numeric, ForeignKey, JSON,
    CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from app.database.database import Base
from app.common.mixins import TenantMixin, TimestampMixin
import uuid
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription states."""
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING_PAYMENT = "pending_payment"


class PaymentProvider(str, Enum):
    """Payment providers a subscription can be paid through."""
    NONE = "none"
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    INSTAMOJO = "instamojo"


# Statuses that can govern a lab's entitlements
LIVE_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)

# Statuses that block starting a new trial
OCCUPYING_STATUSES = LIVE_STATUSES + (SubscriptionStatus.PENDING_PAYMENT,)

TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.PENDING_PAYMENT: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.TRIAL: {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELLED: set(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def sources_for(target: SubscriptionStatus) -> list:
    """Statuses from which target is reachable."""
    return [
        source.value for source, targets in ALLOWED_TRANSITIONS.items()
        if SubscriptionStatus(target) in targets
    ]


class Plan(Base, TimestampMixin):
    """
    Subscription plan. Read-only from the lifecycle's point of view;
    looked up by id or by name (e.g. the "Basic" downgrade plan).
    """
    __tablename__ = "plans"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint("duration_in_days > 0", name="ck_plans_duration_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    duration_in_days = Column(Integer, nullable=False)

    # Capability name -> enabled flag or limit
    features = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    subscriptions = relationship("Subscription", back_populates="plan", lazy="raise")

    def __str__(self):
        return f"{self.name} ({self.duration_in_days} days)"


class Subscription(Base, TenantMixin, TimestampMixin):
    """
    One subscription instance of a lab. A lab keeps its whole history;
    rows are superseded, never deleted.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_subscriptions_end_after_start"),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.TRIAL.value)
    payment_provider = Column(String(20), nullable=False, default=PaymentProvider.NONE.value)
    payment_id = Column(String(255), nullable=True, index=True)

    # Price at the time of purchase; the plan may be repriced later
    amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    auto_renew = Column(Boolean, nullable=False, default=False)

    plan = relationship("Plan", back_populates="subscriptions", lazy="raise")

    def __str__(self):
        return f"Subscription {self.id} - {self.status}"

    @property
    def is_live(self) -> bool:
        return self.status in {s.value for s in LIVE_STATUSES}

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}
