"""
Per-tenant mutual exclusion for the retire-old / point-to-new sequences.

This serialises writers inside one process; across processes the same
sequences also take a row lock on the lab (SELECT ... FOR UPDATE).
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict
from uuid import UUID


class TenantLocks:
    """Registry of one asyncio.Lock per tenant id."""

    def __init__(self):
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._waiters: Dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: UUID):
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._waiters[tenant_id] = self._waiters.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[tenant_id] -= 1
            if self._waiters[tenant_id] == 0:
                # Nobody else holds or waits on it
                del self._waiters[tenant_id]
                del self._locks[tenant_id]

    def __len__(self) -> int:
        return len(self._locks)


tenant_locks = TenantLocks()
