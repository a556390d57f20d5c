"""
API Router for subscription management.
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query
from uuid import UUID

from app.dependencies.dbDependecies import async_db_dependency
from app.dependencies.labDependencies import TenantId

from . import crud, schemas
from .dates import Clock, days_remaining
from .dependencies import ActiveSubscription, get_clock
from .exceptions import SubscriptionError, SubscriptionNotFoundError
from .service import SubscriptionService

router = APIRouter(
    prefix="/subscriptions",
    tags=["Subscriptions"],
    responses={404: {"description": "Not found"}}
)


def _http_error(exc: SubscriptionError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


# ===== PLAN ENDPOINTS =====

@router.get("/plans", response_model=List[schemas.PlanOut])
async def get_plans(
    db: async_db_dependency,
    skip: int = Query(0, ge=0, description="Records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Maximum records to return")
):
    """
    Active public plans. This endpoint needs no tenant context.
    """
    return await crud.get_plans(db=db, skip=skip, limit=limit)


# ===== SUBSCRIPTION ENDPOINTS =====

@router.get("/current", response_model=schemas.SubscriptionCurrent)
async def get_current_subscription(
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Subscription and plan currently governing the lab's entitlements.
    """
    service = SubscriptionService(db, clock=clock)
    try:
        current = await service.get_current(tenant_id)
    except SubscriptionError as exc:
        raise _http_error(exc)

    return schemas.SubscriptionCurrent(
        subscription=schemas.SubscriptionOut.model_validate(current.subscription),
        plan=schemas.PlanOut.model_validate(current.plan),
        days_remaining=days_remaining(current.subscription.end_date, clock())
    )


@router.get("/entitlements", response_model=schemas.SubscriptionCurrent)
async def get_entitlements(current: ActiveSubscription):
    """
    Same view as /current, but refuses (403) labs whose subscription is
    missing or past its end date.
    """
    return current


@router.get("/history", response_model=schemas.SubscriptionList)
async def get_subscription_history(
    tenant_id: TenantId,
    db: async_db_dependency,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100)
):
    """
    Every subscription the lab has had, newest first.
    """
    subscriptions = await SubscriptionService(db).list_history(tenant_id, skip=skip, limit=limit)
    return schemas.SubscriptionList(
        subscriptions=[schemas.SubscriptionOut.model_validate(s) for s in subscriptions],
        total=len(subscriptions),
        limit=limit,
        offset=skip
    )


@router.post("/trial", response_model=schemas.SubscriptionOut, status_code=201)
async def start_trial(
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Start the trial plan. Fails with 409 ALREADY_SUBSCRIBED while the lab
    has a trial, active or pending subscription.
    """
    try:
        return await SubscriptionService(db, clock=clock).start_trial(tenant_id)
    except SubscriptionError as exc:
        raise _http_error(exc)


@router.post("/checkout", response_model=schemas.SubscriptionOut, status_code=201)
async def create_checkout(
    checkout: schemas.SubscriptionCheckout,
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Create a subscription awaiting payment. The lab keeps its current
    subscription until the payment is confirmed.
    """
    try:
        return await SubscriptionService(db, clock=clock).create_pending_subscription(
            tenant_id=tenant_id,
            plan_id=checkout.plan_id,
            payment_provider=checkout.payment_provider
        )
    except SubscriptionError as exc:
        raise _http_error(exc)


@router.post("/{subscription_id}/confirm-payment", response_model=schemas.SubscriptionOut)
async def confirm_payment(
    subscription_id: UUID,
    confirmation: schemas.PaymentConfirmation,
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Called once the payment provider has verified the payment.
    A repeated confirmation answers 409 NOT_PENDING.
    """
    service = SubscriptionService(db, clock=clock)
    subscription = await crud.get_subscription(db, subscription_id)
    if subscription is None or subscription.tenant_id != tenant_id:
        raise _http_error(SubscriptionNotFoundError(subscription_id))

    try:
        return await service.activate_on_payment_confirmed(subscription_id, confirmation.payment_id)
    except SubscriptionError as exc:
        raise _http_error(exc)


@router.post("/assign-plan", response_model=schemas.SubscriptionOut)
async def assign_plan(
    assignment: schemas.PlanAssignment,
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Put the lab on a plan without a payment (operator use). The new
    subscription is active at once and replaces the current one.
    """
    try:
        return await SubscriptionService(db, clock=clock).assign_plan(tenant_id, assignment.plan_id)
    except SubscriptionError as exc:
        raise _http_error(exc)


@router.post("/cancel", response_model=schemas.CancelResponse)
async def cancel_subscription(
    tenant_id: TenantId,
    db: async_db_dependency,
    clock: Clock = Depends(get_clock)
):
    """
    Cancel the current subscription. Cancelling with nothing to cancel
    succeeds and changes nothing.
    """
    try:
        cancelled = await SubscriptionService(db, clock=clock).cancel(tenant_id)
    except SubscriptionError as exc:
        raise _http_error(exc)

    if cancelled is None:
        return schemas.CancelResponse(cancelled=False, message="No active subscription to cancel")
    return schemas.CancelResponse(
        cancelled=True,
        subscription=schemas.SubscriptionOut.model_validate(cancelled),
        message="Subscription cancelled"
    )
