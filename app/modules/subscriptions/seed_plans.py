"""
Seed the subscription plan catalog.

Creates the Trial, Basic and Premium plans. Plans are matched by name, so the
script can be re-run safely: existing plans are updated in place.

    python -m app.modules.subscriptions.seed_plans
"""
import asyncio
import logging
from decimal import Decimal
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.database import AsyncSessionLocal, create_tables
from app.modules.subscriptions.models import Plan

logger = logging.getLogger(__name__)

PREMIUM_FEATURES = {
    "max_admins": 5,
    "max_technicians": 8,
    "unlimited_patients_and_reports": True,
    "finance_management": True,
    "custom_branding": True,
    "whatsapp_report_sending": True,
    "doctor_patient_count": True,
    "personal_website": True,
    "report_export": True,
}

PLANS_DATA = [
    {
        "name": "Trial",
        "description": "Full access to Premium features for a limited time.",
        "price": Decimal("0"),
        "currency": "INR",
        "duration_in_days": 14,
        "features": dict(PREMIUM_FEATURES),
        "is_public": False,  # Started through /subscriptions/trial, not sold
        "sort_order": 0
    },
    {
        "name": "Basic",
        "description": "Essential features for small labs.",
        "price": Decimal("0"),
        "currency": "INR",
        "duration_in_days": 30,
        "features": {
            "max_admins": 1,
            "max_technicians": 1,
            "unlimited_patients_and_reports": True,
            "finance_management": True,
            "custom_branding": False,
            "whatsapp_report_sending": False,
            "doctor_patient_count": False,
            "personal_website": False,
            "report_export": False,
        },
        "is_public": True,
        "sort_order": 1
    },
    {
        "name": "Premium",
        "description": "Advanced features for growing labs.",
        "price": Decimal("999"),
        "currency": "INR",
        "duration_in_days": 30,
        "features": dict(PREMIUM_FEATURES),
        "is_public": True,
        "sort_order": 2
    },
]


async def seed_plans(db: AsyncSession) -> List[Plan]:
    """Create or update the default plans."""
    seeded = []
    try:
        for plan_data in PLANS_DATA:
            result = await db.execute(select(Plan).where(Plan.name == plan_data["name"]))
            existing_plan = result.scalar_one_or_none()

            if existing_plan:
                logger.info(f"Plan {plan_data['name']} already exists, updating...")
                for key, value in plan_data.items():
                    setattr(existing_plan, key, value)
                existing_plan.is_active = True
                seeded.append(existing_plan)
            else:
                logger.info(f"Creating plan {plan_data['name']}...")
                plan = Plan(**plan_data, is_active=True)
                db.add(plan)
                seeded.append(plan)

        await db.commit()
        logger.info("All plans seeded successfully!")

    except Exception as e:
        logger.error(f"Error seeding plans: {e}")
        await db.rollback()
        raise

    return seeded


async def main():
    logger.info("Starting subscription plans seeding...")
    await create_tables()
    async with AsyncSessionLocal() as db:
        await seed_plans(db)
    logger.info("Subscription plans seeding completed!")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
