"""
Subscription lifecycle: trial start, paid checkout, payment confirmation,
manual plan assignment, cancellation and the current-subscription lookup.

Every operation that moves a lab's current-subscription pointer runs under the
lab's tenant lock and holds the lab row lock, so the retire-old / point-to-new
pair is committed together or not at all.

Writes happen inside a SAVEPOINT on the caller's session. A failed operation
rolls back its own savepoint only; whatever the caller had already flushed is
left alone.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.labs import crud as lab_crud
from app.modules.labs.models import Lab, LabStatus

from . import crud
from .dates import Clock, utc_now, ensure_utc
from .exceptions import (
    AlreadySubscribedError, LabNotFoundError, NoActiveSubscriptionError,
    NotPendingError, PlanNotFoundError, SubscriptionNotFoundError
)
from .locks import TenantLocks, tenant_locks
from .models import (
    Plan, Subscription, SubscriptionStatus, PaymentProvider, LIVE_STATUSES, OCCUPYING_STATUSES
)

logger = logging.getLogger(__name__)


@dataclass
class CurrentSubscription:
    subscription: Subscription
    plan: Plan


class SubscriptionService:
    """Synchronous lifecycle operations invoked by the HTTP layer."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utc_now,
        locks: TenantLocks = tenant_locks,
        trial_plan_name: Optional[str] = None
    ):
        self.db = db
        self.clock = clock
        self.locks = locks
        self.trial_plan_name = trial_plan_name or settings.TRIAL_PLAN_NAME

    async def start_trial(self, tenant_id: UUID) -> Subscription:
        """Put a lab on the trial plan and point it at the new subscription."""
        async with self.locks.hold(tenant_id):
            async with self.db.begin_nested():
                lab = await self._lock_lab(tenant_id)

                current = await self._current_of(lab)
                if current is not None and current.status in {s.value for s in OCCUPYING_STATUSES}:
                    raise AlreadySubscribedError(tenant_id, current.id, current.status)

                trial_plan = await crud.get_plan_by_name(self.db, self.trial_plan_name)
                if trial_plan is None:
                    raise PlanNotFoundError(plan_name=self.trial_plan_name)

                subscription = crud.build_subscription(
                    tenant_id=tenant_id,
                    plan=trial_plan,
                    status=SubscriptionStatus.TRIAL,
                    start_date=self.clock()
                )
                self.db.add(subscription)
                await self.db.flush()

                lab.current_subscription_id = subscription.id
                lab.status = LabStatus.ACTIVE.value
            await self.db.commit()

        await self.db.refresh(subscription)
        logger.info(f"Trial {subscription.id} started for lab {tenant_id}, ends {subscription.end_date}")
        return subscription

    async def create_pending_subscription(
        self,
        tenant_id: UUID,
        plan_id: UUID,
        payment_provider: PaymentProvider = PaymentProvider.RAZORPAY
    ) -> Subscription:
        """
        Record a paid purchase awaiting payment. Only public plans can be
        bought; the lab's pointer is left alone until the payment is confirmed.
        """
        async with self.db.begin_nested():
            lab = await lab_crud.get_lab(self.db, tenant_id)
            if lab is None:
                raise LabNotFoundError(tenant_id)

            plan = await crud.get_plan(self.db, plan_id, public_only=True)
            if plan is None:
                raise PlanNotFoundError(plan_id=plan_id)

            subscription = crud.build_subscription(
                tenant_id=tenant_id,
                plan=plan,
                status=SubscriptionStatus.PENDING_PAYMENT,
                start_date=self.clock(),
                payment_provider=payment_provider
            )
            self.db.add(subscription)
        await self.db.commit()

        await self.db.refresh(subscription)
        logger.info(
            f"Pending subscription {subscription.id} created for lab {tenant_id} "
            f"(plan {plan.name}, {subscription.amount} {subscription.currency}, "
            f"provider {subscription.payment_provider})"
        )
        return subscription

    async def activate_on_payment_confirmed(self, subscription_id: UUID, payment_id: str) -> Subscription:
        """
        Activate a pending subscription once its payment is verified, retire the
        lab's previous current subscription and repoint the lab.

        A second confirmation for the same subscription raises NotPendingError
        and changes nothing.
        """
        tenant_id = await crud.get_subscription_tenant_id(self.db, subscription_id)
        if tenant_id is None:
            raise SubscriptionNotFoundError(subscription_id)

        async with self.locks.hold(tenant_id):
            async with self.db.begin_nested():
                lab = await self._lock_lab(tenant_id)

                activated = await crud.transition_status(
                    self.db,
                    subscription_id,
                    SubscriptionStatus.ACTIVE,
                    expected=[SubscriptionStatus.PENDING_PAYMENT],
                    payment_id=payment_id,
                    paid_at=self.clock()
                )
                if not activated:
                    current_state = await crud.get_subscription(self.db, subscription_id)
                    raise NotPendingError(subscription_id, current_state.status)

                await self._retire_current(lab, keep=subscription_id)
                lab.current_subscription_id = subscription_id
                lab.status = LabStatus.ACTIVE.value
            await self.db.commit()

        subscription = await crud.get_subscription(self.db, subscription_id)
        logger.info(f"Subscription {subscription_id} activated for lab {tenant_id} (payment {payment_id})")
        return subscription

    async def assign_plan(self, tenant_id: UUID, plan_id: UUID) -> Subscription:
        """
        Put a lab on a plan without a payment flow (operator assignment).

        The new subscription is active immediately, starts now, and replaces
        the lab's current subscription the same way a confirmed payment does.
        """
        async with self.locks.hold(tenant_id):
            async with self.db.begin_nested():
                lab = await self._lock_lab(tenant_id)

                plan = await crud.get_plan(self.db, plan_id)
                if plan is None:
                    raise PlanNotFoundError(plan_id=plan_id)

                now = self.clock()
                subscription = crud.build_subscription(
                    tenant_id=tenant_id,
                    plan=plan,
                    status=SubscriptionStatus.ACTIVE,
                    start_date=now,
                    payment_provider=PaymentProvider.NONE,
                    payment_id=settings.MANUAL_ASSIGNMENT_PAYMENT_ID,
                    paid_at=now
                )
                self.db.add(subscription)
                await self.db.flush()

                await self._retire_current(lab, keep=subscription.id)
                lab.current_subscription_id = subscription.id
                lab.status = LabStatus.ACTIVE.value
            await self.db.commit()

        await self.db.refresh(subscription)
        logger.info(
            f"Plan {plan.name} assigned to lab {tenant_id}: subscription {subscription.id} "
            f"active until {subscription.end_date}"
        )
        return subscription

    async def cancel(self, tenant_id: UUID) -> Optional[Subscription]:
        """
        Cancel the lab's current subscription and clear its pointer.

        Cancelling when there is nothing live to cancel is a no-op and returns
        None.
        """
        async with self.locks.hold(tenant_id):
            async with self.db.begin_nested():
                lab = await self._lock_lab(tenant_id)
                current_id = lab.current_subscription_id
                if current_id is not None:
                    cancelled = await crud.transition_status(
                        self.db,
                        current_id,
                        SubscriptionStatus.CANCELLED,
                        expected=list(LIVE_STATUSES)
                    )
                    lab.current_subscription_id = None
                    lab.status = LabStatus.INACTIVE.value

            if current_id is None:
                logger.info(f"Cancel for lab {tenant_id}: no current subscription, nothing to do")
                return None
            await self.db.commit()

        if not cancelled:
            logger.warning(f"Lab {tenant_id} pointed at non-live subscription {current_id}; pointer cleared")
            return None

        logger.info(f"Subscription {current_id} of lab {tenant_id} cancelled")
        return await crud.get_subscription(self.db, current_id)

    async def get_current(self, tenant_id: UUID) -> CurrentSubscription:
        """The subscription and plan currently governing a lab's entitlements."""
        lab = await lab_crud.get_lab(self.db, tenant_id)
        if lab is None:
            raise LabNotFoundError(tenant_id)

        subscription = await self._current_of(lab)
        if subscription is None or not subscription.is_live:
            raise NoActiveSubscriptionError(tenant_id)

        plan = await self.db.get(Plan, subscription.plan_id)
        return CurrentSubscription(subscription=subscription, plan=plan)

    async def list_history(self, tenant_id: UUID, skip: int = 0, limit: int = 20) -> List[Subscription]:
        return await crud.get_subscriptions(self.db, tenant_id, skip=skip, limit=limit)

    def is_expired(self, subscription: Subscription) -> bool:
        """True once the end date has passed, whether or not the sweep has run."""
        return ensure_utc(subscription.end_date) < ensure_utc(self.clock())

    # ===== HELPERS =====

    async def _lock_lab(self, tenant_id: UUID) -> Lab:
        lab = await lab_crud.get_lab_for_update(self.db, tenant_id)
        if lab is None:
            raise LabNotFoundError(tenant_id)
        return lab

    async def _current_of(self, lab: Lab) -> Optional[Subscription]:
        if lab.current_subscription_id is None:
            return None
        return await crud.get_subscription(self.db, lab.current_subscription_id)

    async def _retire_current(self, lab: Lab, keep: UUID) -> None:
        """Cancel the lab's live current subscription unless it is keep."""
        previous_id = lab.current_subscription_id
        if previous_id is None or previous_id == keep:
            return
        retired = await crud.transition_status(
            self.db,
            previous_id,
            SubscriptionStatus.CANCELLED,
            expected=list(LIVE_STATUSES)
        )
        if retired:
            logger.info(f"Subscription {previous_id} of lab {lab.id} retired (cancelled)")
