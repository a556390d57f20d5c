"""
Subscription management module.

Plan catalog, per-lab subscription lifecycle and the daily expiry sweep.
"""

from .models import Plan, Subscription, SubscriptionStatus, PaymentProvider
from .schemas import (
    PlanOut, SubscriptionOut, SubscriptionCurrent, SubscriptionCheckout,
    PaymentConfirmation, SubscriptionList, CancelResponse
)
from .service import SubscriptionService
from .sweep import ExpirySweeper, SweepReport, SweepOutcome
from . import crud, router

__all__ = [
    # Models
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "PaymentProvider",

    # Schemas
    "PlanOut",
    "SubscriptionOut",
    "SubscriptionCurrent",
    "SubscriptionCheckout",
    "PaymentConfirmation",
    "SubscriptionList",
    "CancelResponse",

    # Lifecycle
    "SubscriptionService",
    "ExpirySweeper",
    "SweepReport",
    "SweepOutcome",

    # Modules
    "crud",
    "router"
]
