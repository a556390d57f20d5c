"""
Expiry sweep: expires overdue trial/active subscriptions and applies the
downgrade policy to the labs they governed.

Each overdue subscription is handled in its own transaction under its lab's
tenant lock. A failure on one record is logged and reported; it never stops
the rest of the sweep.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.database.database import AsyncSessionLocal
from app.modules.labs import crud as lab_crud
from app.modules.labs.models import LabStatus

from . import crud
from .dates import Clock, utc_now
from .exceptions import DowngradeError
from .locks import TenantLocks, tenant_locks
from .models import SubscriptionStatus, PaymentProvider

logger = logging.getLogger(__name__)


class SweepOutcome(str, Enum):
    DOWNGRADED = "downgraded"              # Trial expired, lab moved to the default plan
    DEACTIVATED = "deactivated"            # Lab left without a subscription
    DOWNGRADE_FAILED = "downgrade_failed"  # Downgrade attempted, fell back to deactivation
    SUPERSEDED = "superseded"              # Expired, but the lab already points elsewhere
    LAB_MISSING = "lab_missing"            # Expired, but its lab row no longer exists
    SKIPPED = "skipped"                    # No longer trial/active when processed
    FAILED = "failed"


@dataclass
class SweepRecordResult:
    subscription_id: UUID
    tenant_id: UUID
    previous_status: str
    outcome: SweepOutcome
    new_subscription_id: Optional[UUID] = None
    error: Optional[str] = None


@dataclass
class SweepReport:
    now: datetime
    results: List[SweepRecordResult] = field(default_factory=list)

    @property
    def selected(self) -> int:
        return len(self.results)

    @property
    def expired(self) -> int:
        return sum(
            1 for r in self.results
            if r.outcome not in (SweepOutcome.SKIPPED, SweepOutcome.FAILED)
        )

    def count(self, outcome: SweepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def failures(self) -> List[SweepRecordResult]:
        return [r for r in self.results if r.outcome == SweepOutcome.FAILED]

    def summary(self) -> dict:
        return {
            "now": self.now.isoformat(),
            "selected": self.selected,
            "expired": self.expired,
            **{outcome.value: self.count(outcome) for outcome in SweepOutcome},
            "failed_tenants": [str(r.tenant_id) for r in self.failures],
        }


class ExpirySweeper:
    """Reconciles subscriptions whose end date has passed."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        clock: Clock = utc_now,
        locks: TenantLocks = tenant_locks,
        default_plan_name: Optional[str] = None,
        downgrade_payment_id: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.locks = locks
        self.default_plan_name = default_plan_name or settings.DEFAULT_PLAN_NAME
        self.downgrade_payment_id = downgrade_payment_id or settings.AUTO_DOWNGRADE_PAYMENT_ID

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep. Selection is a snapshot taken at the start: anything
        created or extended afterwards waits for the next run. Errors taking the
        snapshot propagate so the caller can retry the whole job.
        """
        now = now or self.clock()
        logger.info(f"Subscription expiry sweep started (now={now.isoformat()})")

        async with self.session_factory() as db:
            snapshot = await crud.get_overdue_subscriptions(db, now)

        report = SweepReport(now=now)
        if not snapshot:
            logger.info("Subscription expiry sweep: no expired subscriptions found")
            return report

        logger.info(f"Subscription expiry sweep: {len(snapshot)} expired subscription(s) selected")

        for subscription_id, tenant_id, status in snapshot:
            try:
                result = await self._process(subscription_id, tenant_id, status, now)
            except Exception as exc:
                logger.exception(
                    f"Failed to process expired subscription {subscription_id} for lab {tenant_id}: {exc}"
                )
                result = SweepRecordResult(
                    subscription_id=subscription_id,
                    tenant_id=tenant_id,
                    previous_status=status,
                    outcome=SweepOutcome.FAILED,
                    error=str(exc)
                )
            report.results.append(result)

        logger.info(f"Subscription expiry sweep finished: {report.summary()}")
        return report

    async def _process(self, subscription_id: UUID, tenant_id: UUID, status: str, now: datetime) -> SweepRecordResult:
        async with self.locks.hold(tenant_id):
            wants_downgrade = status == SubscriptionStatus.TRIAL.value
            try:
                return await self._expire(subscription_id, tenant_id, status, now, downgrade=wants_downgrade)
            except DowngradeError as exc:
                logger.error(f"{exc.message}; deactivating lab instead")
                result = await self._expire(subscription_id, tenant_id, status, now, downgrade=False)
                if result.outcome == SweepOutcome.DEACTIVATED:
                    result.outcome = SweepOutcome.DOWNGRADE_FAILED
                    result.error = exc.message
                return result

    async def _expire(
        self,
        subscription_id: UUID,
        tenant_id: UUID,
        status: str,
        now: datetime,
        downgrade: bool
    ) -> SweepRecordResult:
        """Expire one subscription and repoint its lab, all in one transaction."""
        result = SweepRecordResult(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            previous_status=status,
            outcome=SweepOutcome.SKIPPED
        )

        async with self.session_factory() as db:
            try:
                # Lab row first, same lock order as the lifecycle operations
                lab = await lab_crud.get_lab_for_update(db, tenant_id)

                expired = await crud.transition_status(
                    db,
                    subscription_id,
                    SubscriptionStatus.EXPIRED,
                    expected=[SubscriptionStatus(status)]
                )
                if not expired:
                    await db.rollback()
                    logger.info(f"Subscription {subscription_id} is no longer {status}; skipped")
                    return result

                if lab is None:
                    logger.warning(f"Subscription {subscription_id} expired; lab {tenant_id} not found")
                    result.outcome = SweepOutcome.LAB_MISSING
                elif lab.current_subscription_id != subscription_id:
                    logger.info(
                        f"Subscription {subscription_id} expired; lab {tenant_id} currently points at "
                        f"{lab.current_subscription_id}, no lab update needed"
                    )
                    result.outcome = SweepOutcome.SUPERSEDED
                elif downgrade:
                    replacement = await self._create_downgrade_subscription(db, tenant_id, now)
                    lab.current_subscription_id = replacement.id
                    lab.status = LabStatus.ACTIVE.value
                    result.outcome = SweepOutcome.DOWNGRADED
                    result.new_subscription_id = replacement.id
                    logger.info(
                        f"Expired trial {subscription_id}: lab {tenant_id} downgraded to "
                        f"{self.default_plan_name} subscription {replacement.id}"
                    )
                else:
                    lab.current_subscription_id = None
                    lab.status = LabStatus.INACTIVE.value
                    result.outcome = SweepOutcome.DEACTIVATED
                    logger.info(f"Expired {status} subscription {subscription_id}: lab {tenant_id} set inactive")

                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return result

    async def _create_downgrade_subscription(self, db: AsyncSession, tenant_id: UUID, now: datetime):
        """Create the default-plan subscription that replaces an expired trial."""
        plan = await crud.get_plan_by_name(db, self.default_plan_name, active_only=False)
        if plan is None:
            raise DowngradeError(tenant_id, f"{self.default_plan_name} plan not found")
        if not plan.is_active:
            raise DowngradeError(tenant_id, f"{self.default_plan_name} plan is inactive")

        replacement = crud.build_subscription(
            tenant_id=tenant_id,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            payment_provider=PaymentProvider.NONE,
            payment_id=self.downgrade_payment_id,
            auto_renew=False
        )
        try:
            db.add(replacement)
            await db.flush()
        except Exception as exc:
            raise DowngradeError(tenant_id, f"could not save replacement subscription: {exc}") from exc
        return replacement


async def run_expiry_sweep(now: Optional[datetime] = None) -> SweepReport:
    """Sweep against the application database."""
    return await ExpirySweeper(AsyncSessionLocal).run(now)
