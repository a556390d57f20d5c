"""
Entitlement guard for lab-scoped endpoints.
"""
from typing import Annotated
from fastapi import Depends, HTTPException

from app.dependencies.dbDependecies import async_db_dependency
from app.dependencies.labDependencies import TenantId

from .dates import Clock, utc_now, days_remaining
from .exceptions import SubscriptionError, SubscriptionExpiredError
from .schemas import SubscriptionCurrent, SubscriptionOut, PlanOut
from .service import SubscriptionService


def get_clock() -> Clock:
    return utc_now


async def require_active_subscription(
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
) -> SubscriptionCurrent:
    """
    Let the request through only while the lab has a live, unexpired
    subscription. Answers 403 with NO_ACTIVE_SUBSCRIPTION or
    SUBSCRIPTION_EXPIRED otherwise; a subscription past its end date is
    refused even if the daily sweep has not expired it yet.
    """
    service = SubscriptionService(db, clock=clock)
    try:
        current = await service.get_current(tenant_id)
        if service.is_expired(current.subscription):
            raise SubscriptionExpiredError(tenant_id, current.subscription.id)
    except SubscriptionError as exc:
        raise HTTPException(status_code=403, detail=exc.to_dict())

    return SubscriptionCurrent(
        subscription=SubscriptionOut.model_validate(current.subscription),
        plan=PlanOut.model_validate(current.plan),
        days_remaining=days_remaining(current.subscription.end_date, clock())
    )


ActiveSubscription = Annotated[SubscriptionCurrent, Depends(require_active_subscription)]
