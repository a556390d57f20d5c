"""
Tests for the subscriptions module.

Covers:
- End-date arithmetic and days remaining
- Status state machine and compare-and-set writes
- Lifecycle operations (trial, checkout, payment confirmation, manual assignment, cancel)
- The daily expiry sweep and its downgrade policy
- The in-process scheduler and the Celery wiring
- HTTP endpoints and the entitlement guard
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from pydantic import ValidationError

from app.core.celery import build_beat_schedule, sweep_crontab
from app.core.config import Settings, settings
from app.modules.labs import crud as lab_crud
from app.modules.labs.models import Lab, LabStatus
from app.modules.subscriptions import crud
from app.modules.subscriptions.dates import compute_end_date, days_remaining, ensure_utc
from app.modules.subscriptions.exceptions import (
    AlreadySubscribedError, DowngradeError, LabNotFoundError, NoActiveSubscriptionError,
    NotPendingError, PlanNotFoundError, SubscriptionNotFoundError
)
from app.modules.subscriptions.locks import TenantLocks
from app.modules.subscriptions.models import (
    Subscription, SubscriptionStatus, PaymentProvider, can_transition
)
from app.modules.subscriptions.scheduler import SubscriptionExpiryScheduler
from app.modules.subscriptions.seed_plans import seed_plans
from app.modules.subscriptions.service import SubscriptionService
from app.modules.subscriptions.sweep import ExpirySweeper, SweepOutcome, SweepReport


UTC = timezone.utc


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# ===== DATES =====

class TestEndDates:

    def test_adds_calendar_days(self):
        assert compute_end_date(utc(2024, 3, 1, 12, 0), 30, "UTC") == utc(2024, 3, 31, 12, 0)
        assert compute_end_date(utc(2024, 2, 15, 9, 30), 14, "UTC") == utc(2024, 2, 29, 9, 30)

    def test_keeps_local_time_across_dst(self):
        """New York moves to daylight time on 2024-03-10; noon stays noon."""
        start = utc(2024, 3, 1, 17, 0)  # 12:00 EST
        end = compute_end_date(start, 14, "America/New_York")
        assert end == utc(2024, 3, 15, 16, 0)  # 12:00 EDT
        assert end.tzinfo is not None

    def test_naive_start_is_treated_as_utc(self):
        assert compute_end_date(datetime(2024, 1, 1), 1, "UTC") == utc(2024, 1, 2)

    @pytest.mark.parametrize("duration", [0, -1, 1.5, "14", True])
    def test_rejects_invalid_durations(self, duration):
        with pytest.raises(ValueError):
            compute_end_date(utc(2024, 1, 1), duration, "UTC")

    def test_days_remaining_rounds_up(self):
        now = utc(2024, 3, 1, 12, 0)
        assert days_remaining(now + timedelta(days=2), now) == 2
        assert days_remaining(now + timedelta(days=1, seconds=1), now) == 2
        assert days_remaining(now + timedelta(minutes=5), now) == 1
        assert days_remaining(now, now) == 0
        assert days_remaining(now - timedelta(days=3), now) == 0


# ===== STATE MACHINE =====

class TestStatusTransitions:

    def test_allowed_transitions(self):
        assert can_transition(SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED)
        assert can_transition(SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELLED)
        assert can_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
        assert can_transition(SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.ACTIVE)

    def test_terminal_statuses_never_move(self):
        for target in SubscriptionStatus:
            assert not can_transition(SubscriptionStatus.EXPIRED, target)
            assert not can_transition(SubscriptionStatus.CANCELLED, target)

    def test_trial_cannot_become_active(self):
        assert not can_transition(SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)

    async def test_compare_and_set_refuses_unexpected_status(self, db_session, plans, make_lab, make_subscription, fetch):
        lab = await make_lab()
        subscription = await make_subscription(lab, plans["Trial"], SubscriptionStatus.EXPIRED)

        moved = await crud.transition_status(db_session, subscription.id, SubscriptionStatus.CANCELLED)
        await db_session.commit()

        assert moved is False
        assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.EXPIRED.value

    async def test_compare_and_set_only_wins_once(self, db_session, plans, make_lab, make_subscription):
        lab = await make_lab()
        subscription = await make_subscription(lab, plans["Trial"], SubscriptionStatus.TRIAL)

        first = await crud.transition_status(
            db_session, subscription.id, SubscriptionStatus.EXPIRED, expected=[SubscriptionStatus.TRIAL]
        )
        second = await crud.transition_status(
            db_session, subscription.id, SubscriptionStatus.EXPIRED, expected=[SubscriptionStatus.TRIAL]
        )
        await db_session.commit()

        assert first is True
        assert second is False


class TestTenantLocks:

    async def test_serialises_same_tenant(self):
        locks = TenantLocks()
        tenant_id = uuid4()
        events = []

        async def worker(name):
            async with locks.hold(tenant_id):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0

    async def test_different_tenants_do_not_block(self):
        locks = TenantLocks()
        async with locks.hold(uuid4()):
            async with locks.hold(uuid4()):
                assert len(locks) == 2
        assert len(locks) == 0


# ===== PLAN SEEDING =====

class TestSeedPlans:

    async def test_seeds_catalog(self, db_session, plans):
        assert set(plans) == {"Trial", "Basic", "Premium"}
        assert plans["Trial"].duration_in_days == 14
        assert plans["Trial"].is_public is False
        assert plans["Premium"].price == Decimal("999")

    async def test_is_idempotent(self, db_session, plans):
        await seed_plans(db_session)

        all_plans = await crud.get_plans(db_session, limit=100, public_only=False)
        assert len(all_plans) == 3

    async def test_public_listing_hides_trial(self, db_session, plans):
        public = await crud.get_plans(db_session)
        assert [p.name for p in public] == ["Basic", "Premium"]


# ===== LIFECYCLE =====

class TestStartTrial:

    async def test_starts_trial_and_points_lab(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)

        subscription = await service.start_trial(lab.id)

        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert subscription.plan_id == plans["Trial"].id
        assert ensure_utc(subscription.start_date) == clock.now
        assert ensure_utc(subscription.end_date) == clock.now + timedelta(days=14)

        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == subscription.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_second_trial_is_rejected(self, db_session, plans, make_lab, clock, locks, lab_subscriptions):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        first = await service.start_trial(lab.id)

        with pytest.raises(AlreadySubscribedError) as exc_info:
            await service.start_trial(lab.id)

        assert exc_info.value.error_code == "ALREADY_SUBSCRIBED"
        assert exc_info.value.status_code == 409
        assert [s.id for s in await lab_subscriptions(lab.id)] == [first.id]

    async def test_active_subscription_blocks_trial(self, db_session, plans, make_lab, make_subscription, clock, locks):
        lab = await make_lab()
        await make_subscription(lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=clock.now)

        with pytest.raises(AlreadySubscribedError):
            await SubscriptionService(db_session, clock=clock, locks=locks).start_trial(lab.id)

    async def test_missing_trial_plan(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks, trial_plan_name="Does Not Exist")

        with pytest.raises(PlanNotFoundError):
            await service.start_trial(lab.id)

    async def test_unknown_lab(self, db_session, plans, clock, locks):
        with pytest.raises(LabNotFoundError):
            await SubscriptionService(db_session, clock=clock, locks=locks).start_trial(uuid4())


class TestPaymentConfirmation:

    async def test_checkout_leaves_current_subscription_alone(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)

        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        assert pending.status == SubscriptionStatus.PENDING_PAYMENT.value
        assert pending.payment_provider == PaymentProvider.RAZORPAY.value
        assert ensure_utc(pending.end_date) == clock.now + timedelta(days=30)
        assert (await fetch(Lab, lab.id)).current_subscription_id == trial.id

    async def test_checkout_unknown_plan(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        with pytest.raises(PlanNotFoundError):
            await SubscriptionService(db_session, clock=clock, locks=locks).create_pending_subscription(lab.id, uuid4())

    async def test_checkout_refuses_hidden_trial_plan(self, db_session, plans, make_lab, clock, locks, lab_subscriptions):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)

        with pytest.raises(PlanNotFoundError):
            await service.create_pending_subscription(lab.id, plans["Trial"].id)

        assert await lab_subscriptions(lab.id) == []

    async def test_checkout_snapshots_price(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)

        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        assert pending.amount == Decimal("999")
        assert pending.currency == "INR"
        assert pending.paid_at is None

        clock.advance(hours=1)
        activated = await service.activate_on_payment_confirmed(pending.id, "pay_123")
        assert ensure_utc(activated.paid_at) == clock.now

    async def test_activation_retires_previous_subscription(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)
        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        activated = await service.activate_on_payment_confirmed(pending.id, "pay_123")

        assert activated.status == SubscriptionStatus.ACTIVE.value
        assert activated.payment_id == "pay_123"
        assert (await fetch(Subscription, trial.id)).status == SubscriptionStatus.CANCELLED.value
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == pending.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_activation_keeps_checkout_dates(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)
        checkout_end = ensure_utc(pending.end_date)
        clock.advance(days=2)

        activated = await service.activate_on_payment_confirmed(pending.id, "pay_123")

        assert ensure_utc(activated.end_date) == checkout_end

    async def test_repeated_confirmation_is_not_pending(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)
        await service.activate_on_payment_confirmed(pending.id, "pay_123")

        with pytest.raises(NotPendingError) as exc_info:
            await service.activate_on_payment_confirmed(pending.id, "pay_456")

        assert exc_info.value.error_code == "NOT_PENDING"
        stored = await fetch(Subscription, pending.id)
        assert stored.status == SubscriptionStatus.ACTIVE.value
        assert stored.payment_id == "pay_123"

    async def test_concurrent_confirmations_activate_once(self, session_factory, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        async with session_factory() as session:
            pending = await SubscriptionService(session, clock=clock, locks=locks).create_pending_subscription(
                lab.id, plans["Premium"].id
            )

        async def confirm(payment_id):
            async with session_factory() as session:
                service = SubscriptionService(session, clock=clock, locks=locks)
                return await service.activate_on_payment_confirmed(pending.id, payment_id)

        results = await asyncio.gather(confirm("pay_a"), confirm("pay_b"), return_exceptions=True)

        winners = [r for r in results if isinstance(r, Subscription)]
        losers = [r for r in results if isinstance(r, NotPendingError)]
        assert len(winners) == 1
        assert len(losers) == 1
        stored = await fetch(Subscription, pending.id)
        assert stored.payment_id == winners[0].payment_id
        assert (await fetch(Lab, lab.id)).current_subscription_id == pending.id

    async def test_unknown_subscription(self, db_session, plans, clock, locks):
        with pytest.raises(SubscriptionNotFoundError):
            await SubscriptionService(db_session, clock=clock, locks=locks).activate_on_payment_confirmed(uuid4(), "pay")


class TestAssignPlan:

    async def test_assignment_replaces_current_subscription(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)
        trial_id = trial.id

        assigned = await service.assign_plan(lab.id, plans["Premium"].id)

        assert assigned.status == SubscriptionStatus.ACTIVE.value
        assert assigned.plan_id == plans["Premium"].id
        assert assigned.payment_provider == PaymentProvider.NONE.value
        assert assigned.payment_id == "manual_assignment"
        assert assigned.amount == Decimal("999")
        assert ensure_utc(assigned.paid_at) == clock.now
        assert ensure_utc(assigned.end_date) == clock.now + timedelta(days=30)
        assert (await fetch(Subscription, trial_id)).status == SubscriptionStatus.CANCELLED.value

        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == assigned.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_assignment_activates_lab_without_subscription(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()

        assigned = await SubscriptionService(db_session, clock=clock, locks=locks).assign_plan(lab.id, plans["Basic"].id)

        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == assigned.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_inactive_plan_cannot_be_assigned(self, db_session, plans, make_lab, clock, locks, fetch):
        plans["Premium"].is_active = False
        await db_session.commit()
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)

        with pytest.raises(PlanNotFoundError):
            await service.assign_plan(lab.id, plans["Premium"].id)

        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == trial.id
        assert (await fetch(Subscription, trial.id)).status == SubscriptionStatus.TRIAL.value


class TestCallerSession:
    """Lifecycle operations only ever commit or roll back their own work."""

    async def test_activation_keeps_callers_flushed_changes(self, db_session, plans, make_lab, clock, locks, fetch):
        other = await make_lab("Other Lab")
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)
        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        other.name = "Renamed Lab"
        await db_session.flush()
        await service.activate_on_payment_confirmed(pending.id, "pay_123")
        await db_session.commit()

        assert (await fetch(Lab, other.id)).name == "Renamed Lab"
        # Instances held by the caller are still loaded
        assert trial.id is not None
        assert other.name == "Renamed Lab"

    async def test_failed_operation_keeps_callers_flushed_changes(self, db_session, plans, make_lab, clock, locks, fetch):
        other = await make_lab("Other Lab")
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        first = await service.start_trial(lab.id)

        other.name = "Renamed Lab"
        await db_session.flush()
        with pytest.raises(AlreadySubscribedError):
            await service.start_trial(lab.id)
        await db_session.commit()

        assert (await fetch(Lab, other.id)).name == "Renamed Lab"
        assert (await fetch(Lab, lab.id)).current_subscription_id == first.id
        assert lab.name is not None


class TestCancel:

    async def test_cancel_clears_pointer(self, db_session, plans, make_lab, clock, locks, fetch):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)

        cancelled = await service.cancel(lab.id)

        assert cancelled.id == trial.id
        assert cancelled.status == SubscriptionStatus.CANCELLED.value
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id is None
        assert stored_lab.status == LabStatus.INACTIVE.value

    async def test_cancel_twice_is_a_no_op(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        await service.start_trial(lab.id)
        await service.cancel(lab.id)

        assert await service.cancel(lab.id) is None

    async def test_trial_can_restart_after_cancel(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        await service.start_trial(lab.id)
        await service.cancel(lab.id)

        restarted = await service.start_trial(lab.id)
        assert restarted.status == SubscriptionStatus.TRIAL.value


class TestCurrentSubscription:

    async def test_returns_subscription_and_plan(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)

        current = await service.get_current(lab.id)

        assert current.subscription.id == trial.id
        assert current.plan.name == "Trial"

    async def test_no_subscription(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        with pytest.raises(NoActiveSubscriptionError):
            await SubscriptionService(db_session, clock=clock, locks=locks).get_current(lab.id)

    async def test_is_expired_ignores_sweep(self, db_session, plans, make_lab, make_subscription, clock):
        lab = await make_lab()
        subscription = await make_subscription(lab, plans["Trial"], end_date=clock.now - timedelta(seconds=1))

        assert SubscriptionService(db_session, clock=clock).is_expired(subscription) is True

    async def test_history_newest_first(self, db_session, plans, make_lab, clock, locks):
        lab = await make_lab()
        service = SubscriptionService(db_session, clock=clock, locks=locks)
        trial = await service.start_trial(lab.id)
        clock.advance(days=1)
        pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        history = await service.list_history(lab.id)

        assert [s.id for s in history] == [pending.id, trial.id]


# ===== EXPIRY SWEEP =====

class TestExpirySweep:

    @pytest.fixture
    def sweeper(self, session_factory, clock, locks):
        return ExpirySweeper(session_factory, clock=clock, locks=locks)

    async def test_trial_is_downgraded_to_basic(self, plans, make_lab, make_subscription, sweeper, clock, fetch, lab_subscriptions):
        lab = await make_lab()
        trial = await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1, 12, 0))

        report = await sweeper.run()

        assert report.count(SweepOutcome.DOWNGRADED) == 1
        assert (await fetch(Subscription, trial.id)).status == SubscriptionStatus.EXPIRED.value

        subscriptions = await lab_subscriptions(lab.id)
        assert len(subscriptions) == 2
        replacement = subscriptions[-1]
        assert replacement.id == report.results[0].new_subscription_id
        assert replacement.plan_id == plans["Basic"].id
        assert replacement.status == SubscriptionStatus.ACTIVE.value
        assert replacement.payment_provider == PaymentProvider.NONE.value
        assert replacement.payment_id == "auto_downgrade_from_trial"
        assert replacement.auto_renew is False
        assert ensure_utc(replacement.start_date) == clock.now
        assert ensure_utc(replacement.end_date) == utc(2024, 3, 31, 12, 0)

        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == replacement.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_expired_paid_subscription_deactivates_lab(self, plans, make_lab, make_subscription, sweeper, fetch, lab_subscriptions):
        lab = await make_lab()
        active = await make_subscription(lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=utc(2024, 1, 1))

        report = await sweeper.run()

        assert report.count(SweepOutcome.DEACTIVATED) == 1
        assert (await fetch(Subscription, active.id)).status == SubscriptionStatus.EXPIRED.value
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id is None
        assert stored_lab.status == LabStatus.INACTIVE.value
        assert len(await lab_subscriptions(lab.id)) == 1

    async def test_non_current_subscription_is_expired_without_touching_lab(
        self, plans, make_lab, make_subscription, sweeper, clock, fetch
    ):
        lab = await make_lab()
        old_trial = await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))
        current = await make_subscription(lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=clock.now)

        report = await sweeper.run()

        assert report.count(SweepOutcome.SUPERSEDED) == 1
        assert (await fetch(Subscription, old_trial.id)).status == SubscriptionStatus.EXPIRED.value
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == current.id
        assert stored_lab.status == LabStatus.ACTIVE.value

    async def test_leaves_live_and_pending_subscriptions_alone(self, plans, make_lab, make_subscription, sweeper, clock, fetch):
        lab = await make_lab()
        due_now = await make_subscription(lab, plans["Premium"], SubscriptionStatus.ACTIVE, end_date=clock.now)
        other = await make_lab()
        pending = await make_subscription(
            other, plans["Premium"], SubscriptionStatus.PENDING_PAYMENT, start_date=utc(2024, 1, 1), current=False
        )

        report = await sweeper.run()

        assert report.selected == 0
        assert (await fetch(Subscription, due_now.id)).status == SubscriptionStatus.ACTIVE.value
        assert (await fetch(Subscription, pending.id)).status == SubscriptionStatus.PENDING_PAYMENT.value

    async def test_second_run_finds_nothing(self, plans, make_lab, make_subscription, sweeper, lab_subscriptions):
        labs = [await make_lab() for _ in range(3)]
        for lab in labs:
            await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))

        first = await sweeper.run()
        second = await sweeper.run()

        assert first.expired == 3
        assert second.selected == 0
        for lab in labs:
            assert len(await lab_subscriptions(lab.id)) == 2

    async def test_inactive_basic_plan_falls_back_to_deactivation(
        self, db_session, plans, make_lab, make_subscription, sweeper, fetch, lab_subscriptions
    ):
        plans["Basic"].is_active = False
        await db_session.commit()
        lab = await make_lab()
        trial = await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))

        report = await sweeper.run()

        result = report.results[0]
        assert result.outcome == SweepOutcome.DOWNGRADE_FAILED
        assert "inactive" in result.error
        assert (await fetch(Subscription, trial.id)).status == SubscriptionStatus.EXPIRED.value
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id is None
        assert stored_lab.status == LabStatus.INACTIVE.value
        assert len(await lab_subscriptions(lab.id)) == 1

    async def test_missing_basic_plan_falls_back_to_deactivation(
        self, session_factory, plans, make_lab, make_subscription, clock, locks, fetch
    ):
        lab = await make_lab()
        await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))
        sweeper = ExpirySweeper(session_factory, clock=clock, locks=locks, default_plan_name="Starter")

        report = await sweeper.run()

        assert report.count(SweepOutcome.DOWNGRADE_FAILED) == 1
        assert (await fetch(Lab, lab.id)).status == LabStatus.INACTIVE.value

    async def test_failed_downgrade_leaves_no_partial_writes(
        self, plans, make_lab, make_subscription, sweeper, fetch, lab_subscriptions, monkeypatch
    ):
        original = ExpirySweeper._create_downgrade_subscription

        async def save_then_fail(self, db, tenant_id, now):
            await original(self, db, tenant_id, now)
            raise DowngradeError(tenant_id, "payment gateway unavailable")

        monkeypatch.setattr(ExpirySweeper, "_create_downgrade_subscription", save_then_fail)
        lab = await make_lab()
        trial = await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))

        report = await sweeper.run()

        assert report.results[0].outcome == SweepOutcome.DOWNGRADE_FAILED
        subscriptions = await lab_subscriptions(lab.id)
        assert [s.id for s in subscriptions] == [trial.id]
        assert subscriptions[0].status == SubscriptionStatus.EXPIRED.value
        assert (await fetch(Lab, lab.id)).current_subscription_id is None

    async def test_one_failure_does_not_stop_the_sweep(
        self, plans, make_lab, make_subscription, sweeper, fetch, monkeypatch
    ):
        broken_lab = await make_lab()
        healthy_lab = await make_lab()
        broken = await make_subscription(broken_lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=utc(2024, 1, 1))
        healthy = await make_subscription(healthy_lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=utc(2024, 1, 2))

        original = lab_crud.get_lab_for_update

        async def flaky_get_lab_for_update(db, lab_id):
            if lab_id == broken_lab.id:
                raise RuntimeError("connection reset")
            return await original(db, lab_id)

        monkeypatch.setattr(lab_crud, "get_lab_for_update", flaky_get_lab_for_update)

        report = await sweeper.run()

        outcomes = {r.subscription_id: r.outcome for r in report.results}
        assert outcomes[broken.id] == SweepOutcome.FAILED
        assert outcomes[healthy.id] == SweepOutcome.DEACTIVATED
        assert report.summary()["failed_tenants"] == [str(broken_lab.id)]
        assert (await fetch(Subscription, broken.id)).status == SubscriptionStatus.ACTIVE.value
        assert (await fetch(Subscription, healthy.id)).status == SubscriptionStatus.EXPIRED.value

    async def test_record_changed_after_snapshot_is_skipped(
        self, db_session, plans, make_lab, make_subscription, sweeper, clock, locks, monkeypatch
    ):
        lab = await make_lab()
        await make_subscription(lab, plans["Trial"], start_date=utc(2024, 2, 1))
        original = crud.get_overdue_subscriptions

        async def snapshot_then_cancel(db, now):
            rows = await original(db, now)
            await SubscriptionService(db_session, clock=clock, locks=locks).cancel(lab.id)
            return rows

        monkeypatch.setattr(crud, "get_overdue_subscriptions", snapshot_then_cancel)

        report = await sweeper.run()

        assert report.results[0].outcome == SweepOutcome.SKIPPED
        assert report.expired == 0

    async def test_subscription_of_deleted_lab_is_expired(self, plans, make_subscription, sweeper, fetch):
        orphan = await make_subscription(
            SimpleNamespace(id=uuid4()), plans["Premium"], SubscriptionStatus.ACTIVE,
            start_date=utc(2024, 1, 1), current=False
        )

        report = await sweeper.run()

        assert report.results[0].outcome == SweepOutcome.LAB_MISSING
        assert report.expired == 1
        assert (await fetch(Subscription, orphan.id)).status == SubscriptionStatus.EXPIRED.value

    async def test_trial_runs_out_into_basic(self, db_session, plans, make_lab, sweeper, clock, locks, fetch):
        lab = await make_lab()
        trial = await SubscriptionService(db_session, clock=clock, locks=locks).start_trial(lab.id)
        assert ensure_utc(trial.end_date) == utc(2024, 3, 15, 12, 0)

        clock.advance(days=14, seconds=1)
        report = await sweeper.run()

        assert report.results[0].outcome == SweepOutcome.DOWNGRADED
        replacement = await fetch(Subscription, report.results[0].new_subscription_id)
        assert replacement.plan_id == plans["Basic"].id
        assert replacement.status == SubscriptionStatus.ACTIVE.value
        assert ensure_utc(replacement.start_date) == utc(2024, 3, 15, 12, 0, 1)
        assert ensure_utc(replacement.end_date) == utc(2024, 4, 14, 12, 0, 1)
        assert (await fetch(Subscription, trial.id)).status == SubscriptionStatus.EXPIRED.value
        assert (await fetch(Lab, lab.id)).current_subscription_id == replacement.id

    async def test_sweep_and_payment_confirmation_serialise(
        self, session_factory, plans, make_lab, sweeper, clock, locks, fetch, lab_subscriptions
    ):
        lab = await make_lab()
        async with session_factory() as session:
            service = SubscriptionService(session, clock=clock, locks=locks)
            trial = await service.start_trial(lab.id)
            clock.advance(days=14, seconds=1)
            pending = await service.create_pending_subscription(lab.id, plans["Premium"].id)

        async def confirm():
            async with session_factory() as session:
                return await SubscriptionService(session, clock=clock, locks=locks).activate_on_payment_confirmed(
                    pending.id, "pay_123"
                )

        report, activated = await asyncio.gather(sweeper.run(), confirm())

        # Whichever ran first, the paid subscription ends up governing the lab
        assert activated.status == SubscriptionStatus.ACTIVE.value
        assert report.count(SweepOutcome.FAILED) == 0
        stored_lab = await fetch(Lab, lab.id)
        assert stored_lab.current_subscription_id == pending.id
        assert stored_lab.status == LabStatus.ACTIVE.value

        live = [
            s.id for s in await lab_subscriptions(lab.id)
            if s.status in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value)
        ]
        assert live == [pending.id]
        assert (await fetch(Subscription, trial.id)).status in (
            SubscriptionStatus.EXPIRED.value, SubscriptionStatus.CANCELLED.value
        )

    async def test_snapshot_failure_propagates(self, sweeper, monkeypatch):
        async def unreachable(db, now):
            raise ConnectionError("database unreachable")

        monkeypatch.setattr(crud, "get_overdue_subscriptions", unreachable)

        with pytest.raises(ConnectionError):
            await sweeper.run()


# ===== SCHEDULING =====

class BlockingSweeper:
    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0

    async def run(self, now=None):
        self.calls += 1
        await self.release.wait()
        return SweepReport(now=now)


class TestScheduler:

    def test_rejects_invalid_cron(self):
        with pytest.raises(ValueError):
            SubscriptionExpiryScheduler(BlockingSweeper(), cron="every day")

    def test_next_run_is_next_midnight(self):
        scheduler = SubscriptionExpiryScheduler(BlockingSweeper(), cron="0 0 * * *", tz_name="UTC")
        assert ensure_utc(scheduler.next_run_after(utc(2024, 3, 1, 12, 0))) == utc(2024, 3, 2)

    def test_next_run_uses_schedule_timezone(self):
        scheduler = SubscriptionExpiryScheduler(BlockingSweeper(), cron="0 0 * * *", tz_name="Asia/Kolkata")
        assert ensure_utc(scheduler.next_run_after(utc(2024, 3, 1, 12, 0))) == utc(2024, 3, 1, 18, 30)

    async def test_runs_never_overlap(self, clock):
        sweeper = BlockingSweeper()
        scheduler = SubscriptionExpiryScheduler(sweeper, clock=clock)

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0)
        second = await scheduler.run_once()
        sweeper.release.set()
        report = await first

        assert second is None
        assert sweeper.calls == 1
        assert report.now == clock.now
        assert scheduler.last_report is report

    async def test_start_and_stop(self, clock):
        scheduler = SubscriptionExpiryScheduler(BlockingSweeper(), clock=clock)

        scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running


class TestCeleryWiring:

    def test_crontab_from_cron_expression(self):
        schedule = sweep_crontab("30 2 * * 1")
        assert schedule.minute == {30}
        assert schedule.hour == {2}
        assert schedule.day_of_week == {1}

    def test_beat_schedule_only_in_celery_mode(self, monkeypatch):
        monkeypatch.setattr(settings, "SUBSCRIPTION_SWEEP_MODE", "celery")
        schedule = build_beat_schedule()
        assert schedule["expire-subscriptions"]["task"] == "app.modules.subscriptions.tasks.expire_subscriptions"

        monkeypatch.setattr(settings, "SUBSCRIPTION_SWEEP_MODE", "inprocess")
        assert build_beat_schedule() == {}

    def test_task_returns_summary(self, monkeypatch):
        from app.modules.subscriptions import tasks

        now = utc(2024, 3, 1)

        async def fake_sweep():
            return SweepReport(now=now)

        monkeypatch.setattr(tasks, "run_expiry_sweep", fake_sweep)

        result = tasks.expire_subscriptions.apply().get()

        assert result["status"] == "completed"
        assert result["selected"] == 0
        assert result["failed_tenants"] == []

    def test_settings_validation(self):
        with pytest.raises(ValidationError):
            Settings(SUBSCRIPTION_SWEEP_MODE="hourly")
        with pytest.raises(ValidationError):
            Settings(SUBSCRIPTION_SWEEP_CRON="0 0 * *")
        assert Settings(SUBSCRIPTION_SWEEP_MODE="INPROCESS").SUBSCRIPTION_SWEEP_MODE == "inprocess"


# ===== HTTP =====

class TestSubscriptionEndpoints:

    @staticmethod
    def headers(lab):
        return {"X-Lab-ID": str(lab.id)}

    async def test_plans_need_no_tenant(self, client, plans):
        response = await client.get("/subscriptions/plans")

        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["Basic", "Premium"]

    async def test_missing_tenant_header(self, client, plans):
        response = await client.get("/subscriptions/current")
        assert response.status_code == 400

    async def test_trial_flow(self, client, plans, make_lab, clock):
        lab = await make_lab()

        response = await client.post("/subscriptions/trial", headers=self.headers(lab))
        assert response.status_code == 201
        assert response.json()["status"] == "trial"

        response = await client.post("/subscriptions/trial", headers=self.headers(lab))
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "ALREADY_SUBSCRIBED"

        response = await client.get("/subscriptions/current", headers=self.headers(lab))
        body = response.json()
        assert response.status_code == 200
        assert body["plan"]["name"] == "Trial"
        assert body["days_remaining"] == 14

    async def test_checkout_and_confirm(self, client, plans, make_lab):
        lab = await make_lab()

        response = await client.post(
            "/subscriptions/checkout",
            json={"plan_id": str(plans["Premium"].id), "payment_provider": "stripe"},
            headers=self.headers(lab)
        )
        assert response.status_code == 201
        subscription_id = response.json()["id"]

        response = await client.post(
            f"/subscriptions/{subscription_id}/confirm-payment",
            json={"payment_id": "pi_123"},
            headers=self.headers(lab)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        response = await client.post(
            f"/subscriptions/{subscription_id}/confirm-payment",
            json={"payment_id": "pi_123"},
            headers=self.headers(lab)
        )
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "NOT_PENDING"

    async def test_checkout_requires_provider(self, client, plans, make_lab):
        lab = await make_lab()
        response = await client.post(
            "/subscriptions/checkout",
            json={"plan_id": str(plans["Premium"].id), "payment_provider": "none"},
            headers=self.headers(lab)
        )
        assert response.status_code == 422

    async def test_checkout_hidden_plan(self, client, plans, make_lab):
        lab = await make_lab()
        response = await client.post(
            "/subscriptions/checkout",
            json={"plan_id": str(plans["Trial"].id)},
            headers=self.headers(lab)
        )
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "PLAN_NOT_FOUND"

    async def test_assign_plan(self, client, plans, make_lab):
        lab = await make_lab()
        await client.post("/subscriptions/trial", headers=self.headers(lab))

        response = await client.post(
            "/subscriptions/assign-plan",
            json={"plan_id": str(plans["Premium"].id)},
            headers=self.headers(lab)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert body["payment_provider"] == "none"
        assert body["currency"] == "INR"

        response = await client.get("/subscriptions/current", headers=self.headers(lab))
        assert response.json()["subscription"]["id"] == body["id"]

        response = await client.post(
            "/subscriptions/assign-plan",
            json={"plan_id": str(uuid4())},
            headers=self.headers(lab)
        )
        assert response.status_code == 404

    async def test_confirm_other_labs_subscription(self, client, plans, make_lab):
        owner = await make_lab()
        intruder = await make_lab()
        response = await client.post(
            "/subscriptions/checkout",
            json={"plan_id": str(plans["Premium"].id)},
            headers=self.headers(owner)
        )

        response = await client.post(
            f"/subscriptions/{response.json()['id']}/confirm-payment",
            json={"payment_id": "pi_123"},
            headers=self.headers(intruder)
        )
        assert response.status_code == 404

    async def test_cancel_and_history(self, client, plans, make_lab):
        lab = await make_lab()
        await client.post("/subscriptions/trial", headers=self.headers(lab))

        response = await client.post("/subscriptions/cancel", headers=self.headers(lab))
        assert response.json()["cancelled"] is True

        response = await client.post("/subscriptions/cancel", headers=self.headers(lab))
        assert response.status_code == 200
        assert response.json()["cancelled"] is False

        response = await client.get("/subscriptions/history", headers=self.headers(lab))
        body = response.json()
        assert body["total"] == 1
        assert body["subscriptions"][0]["status"] == "cancelled"


class TestEntitlementGuard:

    async def test_live_subscription_passes(self, client, plans, make_lab, make_subscription, clock):
        lab = await make_lab()
        await make_subscription(lab, plans["Premium"], SubscriptionStatus.ACTIVE, start_date=clock.now)

        response = await client.get("/subscriptions/entitlements", headers={"X-Lab-ID": str(lab.id)})

        assert response.status_code == 200
        assert response.json()["plan"]["features"]["report_export"] is True

    async def test_no_subscription_is_forbidden(self, client, plans, make_lab):
        lab = await make_lab()

        response = await client.get("/subscriptions/entitlements", headers={"X-Lab-ID": str(lab.id)})

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "NO_ACTIVE_SUBSCRIPTION"

    async def test_overdue_subscription_is_forbidden_before_sweep(self, client, plans, make_lab, make_subscription, clock):
        lab = await make_lab()
        await make_subscription(lab, plans["Trial"], end_date=clock.now - timedelta(minutes=1))

        response = await client.get("/subscriptions/entitlements", headers={"X-Lab-ID": str(lab.id)})

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "SUBSCRIPTION_EXPIRED"
