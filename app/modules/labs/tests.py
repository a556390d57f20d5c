"""
Tests for lab lookups and the tenant header middleware.
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.modules.labs import crud
from app.modules.labs.models import LabStatus


class TestLabCrud:

    async def test_create_lab_defaults_to_pending_approval(self, db_session):
        lab = await crud.create_lab(db_session, "Central Diagnostics")

        assert lab.status == LabStatus.PENDING_APPROVAL.value
        assert lab.current_subscription_id is None

    async def test_lab_names_are_unique(self, db_session):
        await crud.create_lab(db_session, "Central Diagnostics")

        with pytest.raises(IntegrityError):
            await crud.create_lab(db_session, "Central Diagnostics")

    async def test_lookups_reread_the_row(self, db_session, session_factory):
        lab = await crud.create_lab(db_session, "Central Diagnostics", LabStatus.ACTIVE)

        async with session_factory() as other:
            stored = await crud.get_lab_for_update(other, lab.id)
            stored.status = LabStatus.SUSPENDED.value
            await other.commit()

        assert (await crud.get_lab(db_session, lab.id)).status == LabStatus.SUSPENDED.value

    async def test_unknown_lab(self, db_session):
        assert await crud.get_lab(db_session, uuid4()) is None
        assert await crud.get_lab_for_update(db_session, uuid4()) is None


class TestTenantMiddleware:

    async def test_health_needs_no_tenant(self, client):
        response = await client.get("/health")
        assert response.status_code == 200

    async def test_rejects_malformed_lab_id(self, client):
        response = await client.get("/subscriptions/current", headers={"X-Lab-ID": "not-a-uuid"})

        assert response.status_code == 400
        assert "UUID" in response.json()["detail"]

    async def test_echoes_tenant_id(self, client, db_session):
        lab = await crud.create_lab(db_session, "Central Diagnostics")

        response = await client.get("/subscriptions/history", headers={"X-Lab-ID": str(lab.id)})

        assert response.status_code == 200
        assert response.headers["X-Tenant-ID"] == str(lab.id)
