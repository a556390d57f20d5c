"""
Subscription lifecycle exceptions.

Each error carries a machine-readable code and the HTTP status the router
should answer with.
"""
from typing import Any, Optional
from uuid import UUID


class SubscriptionError(Exception):
    """Base subscription lifecycle error."""

    def __init__(
        self,
        message: str,
        error_code: str = "SUBSCRIPTION_ERROR",
        status_code: int = 400,
        context: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class LabNotFoundError(SubscriptionError):
    def __init__(self, lab_id: UUID):
        super().__init__(
            f"Lab {lab_id} not found",
            error_code="LAB_NOT_FOUND",
            status_code=404,
            context={"lab_id": str(lab_id)},
        )


class PlanNotFoundError(SubscriptionError):
    def __init__(self, plan_id: Optional[UUID] = None, plan_name: Optional[str] = None):
        context = {}
        if plan_id:
            context["plan_id"] = str(plan_id)
        if plan_name:
            context["plan_name"] = plan_name
        super().__init__(
            "Plan not found or inactive",
            error_code="PLAN_NOT_FOUND",
            status_code=404,
            context=context,
        )


class SubscriptionNotFoundError(SubscriptionError):
    def __init__(self, subscription_id: UUID):
        super().__init__(
            f"Subscription {subscription_id} not found",
            error_code="SUBSCRIPTION_NOT_FOUND",
            status_code=404,
            context={"subscription_id": str(subscription_id)},
        )


class AlreadySubscribedError(SubscriptionError):
    def __init__(self, lab_id: UUID, subscription_id: UUID, status: str):
        super().__init__(
            f"Lab {lab_id} already has a {status} subscription",
            error_code="ALREADY_SUBSCRIBED",
            status_code=409,
            context={"lab_id": str(lab_id), "subscription_id": str(subscription_id), "status": status},
        )


class NotPendingError(SubscriptionError):
    """Raised when a payment confirmation hits a subscription that is not awaiting payment."""

    def __init__(self, subscription_id: UUID, status: str):
        super().__init__(
            f"Subscription {subscription_id} is {status}, not pending payment",
            error_code="NOT_PENDING",
            status_code=409,
            context={"subscription_id": str(subscription_id), "status": status},
        )


class NoActiveSubscriptionError(SubscriptionError):
    def __init__(self, lab_id: UUID):
        super().__init__(
            f"Lab {lab_id} has no active subscription",
            error_code="NO_ACTIVE_SUBSCRIPTION",
            status_code=404,
            context={"lab_id": str(lab_id)},
        )


class SubscriptionExpiredError(SubscriptionError):
    def __init__(self, lab_id: UUID, subscription_id: UUID):
        super().__init__(
            "Subscription expired",
            error_code="SUBSCRIPTION_EXPIRED",
            status_code=403,
            context={"lab_id": str(lab_id), "subscription_id": str(subscription_id)},
        )


class DowngradeError(SubscriptionError):
    """The replacement subscription for an expired trial could not be created."""

    def __init__(self, lab_id: UUID, reason: str):
        super().__init__(
            f"Could not downgrade lab {lab_id}: {reason}",
            error_code="DOWNGRADE_FAILED",
            status_code=500,
            context={"lab_id": str(lab_id)},
        )
