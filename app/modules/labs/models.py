from app.database.database import Base
from app.common.mixins import TimestampMixin
from sqlalchemy import Column, String, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from enum import Enum
import uuid


class LabStatus(str, Enum):
    """Tenant-level account status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_APPROVAL = "pending_approval"
    SUSPENDED = "suspended"


class Lab(Base, TimestampMixin):
    """
    A tenant. current_subscription_id points at the subscription that
    currently governs the lab's entitlements; it is maintained by the
    subscription lifecycle, never by the database.
    """
    __tablename__ = "labs"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=LabStatus.PENDING_APPROVAL.value, index=True)
    current_subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.id"),
        nullable=True
    )

    def __str__(self):
        return f"{self.name} ({self.status})"
