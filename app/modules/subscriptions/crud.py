"""
CRUD operations for subscription management.
"""
from typing import List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, desc, asc

from .models import (
    Plan, Subscription, SubscriptionStatus, PaymentProvider, LIVE_STATUSES, sources_for
)
from .dates import compute_end_date


# ===== PLAN CRUD =====

async def get_plan(db: AsyncSession, plan_id: UUID, public_only: bool = False) -> Optional[Plan]:
    """Active plan by id; public_only also hides plans that are not sold (Trial)."""
    conditions = [Plan.id == plan_id, Plan.is_active == True]
    if public_only:
        conditions.append(Plan.is_public == True)
    result = await db.execute(select(Plan).where(and_(*conditions)))
    return result.scalar_one_or_none()


async def get_plan_by_name(db: AsyncSession, name: str, active_only: bool = True) -> Optional[Plan]:
    """Plan by its unique name."""
    conditions = [Plan.name == name]
    if active_only:
        conditions.append(Plan.is_active == True)
    result = await db.execute(select(Plan).where(and_(*conditions)))
    return result.scalar_one_or_none()


async def get_plans(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 20,
    public_only: bool = True
) -> List[Plan]:
    """Active plans in display order."""
    conditions = [Plan.is_active == True]
    if public_only:
        conditions.append(Plan.is_public == True)

    query = (
        select(Plan)
        .where(and_(*conditions))
        .order_by(asc(Plan.sort_order), asc(Plan.name))
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


# ===== SUBSCRIPTION CRUD =====

async def get_subscription(db: AsyncSession, subscription_id: UUID) -> Optional[Subscription]:
    """Subscription by id, always re-read from the database."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_tenant_id(db: AsyncSession, subscription_id: UUID) -> Optional[UUID]:
    """Owning lab of a subscription, without loading the row into the session."""
    result = await db.execute(
        select(Subscription.tenant_id).where(Subscription.id == subscription_id)
    )
    return result.scalar_one_or_none()


async def get_subscriptions(
    db: AsyncSession,
    tenant_id: UUID,
    skip: int = 0,
    limit: int = 20,
    status: Optional[SubscriptionStatus] = None
) -> List[Subscription]:
    """Subscription history of a lab, newest first."""
    conditions = [Subscription.tenant_id == tenant_id]
    if status:
        conditions.append(Subscription.status == SubscriptionStatus(status).value)

    query = (
        select(Subscription)
        .where(and_(*conditions))
        .order_by(desc(Subscription.start_date), desc(Subscription.created_at))
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


async def get_overdue_subscriptions(db: AsyncSession, now: datetime) -> List[tuple]:
    """
    (id, tenant_id, status) of every trial/active subscription whose end date
    is before now. Plain tuples: the caller works off this snapshot.
    """
    result = await db.execute(
        select(Subscription.id, Subscription.tenant_id, Subscription.status)
        .where(
            and_(
                Subscription.status.in_([s.value for s in LIVE_STATUSES]),
                Subscription.end_date < now
            )
        )
        .order_by(asc(Subscription.end_date), asc(Subscription.id))
    )
    return [tuple(row) for row in result.all()]


def build_subscription(
    tenant_id: UUID,
    plan: Plan,
    status: SubscriptionStatus,
    start_date: datetime,
    payment_provider: PaymentProvider = PaymentProvider.NONE,
    payment_id: Optional[str] = None,
    auto_renew: bool = False,
    paid_at: Optional[datetime] = None
) -> Subscription:
    """
    New, unsaved subscription. The end date and the price snapshot are fixed
    here and never recomputed.
    """
    return Subscription(
        tenant_id=tenant_id,
        plan_id=plan.id,
        status=SubscriptionStatus(status).value,
        start_date=start_date,
        end_date=compute_end_date(start_date, plan.duration_in_days),
        payment_provider=PaymentProvider(payment_provider).value,
        payment_id=payment_id,
        amount=plan.price,
        currency=plan.currency,
        paid_at=paid_at,
        auto_renew=auto_renew
    )


async def transition_status(
    db: AsyncSession,
    subscription_id: UUID,
    target: SubscriptionStatus,
    expected: Optional[List[SubscriptionStatus]] = None,
    **values
) -> bool:
    """
    Compare-and-set status write.

    Moves the subscription to target only if its stored status is still one of
    expected (default: every status target is reachable from). Returns False
    when the row was not in an expected status, so two writers can never both
    win the same transition.
    """
    if expected is None:
        allowed = sources_for(target)
    else:
        allowed = [SubscriptionStatus(s).value for s in expected]
        allowed = [s for s in allowed if s in sources_for(target)]
    if not allowed:
        return False

    result = await db.execute(
        update(Subscription)
        .where(
            and_(
                Subscription.id == subscription_id,
                Subscription.status.in_(allowed)
            )
        )
        .values(status=SubscriptionStatus(target).value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
