"""
Lab lookups used by the subscription lifecycle.
"""
from typing import Optional
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Lab, LabStatus


async def get_lab(db: AsyncSession, lab_id: UUID) -> Optional[Lab]:
    result = await db.execute(
        select(Lab)
        .where(Lab.id == lab_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_lab_for_update(db: AsyncSession, lab_id: UUID) -> Optional[Lab]:
    """
    Load a lab and lock its row for the rest of the transaction.

    Always re-reads the row so a pointer changed by another session is never
    served from the identity map.
    """
    result = await db.execute(
        select(Lab)
        .where(Lab.id == lab_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_lab(
    db: AsyncSession,
    name: str,
    status: LabStatus = LabStatus.PENDING_APPROVAL
) -> Lab:
    lab = Lab(name=name, status=status.value)
    db.add(lab)
    await db.commit()
    await db.refresh(lab)
    return lab
