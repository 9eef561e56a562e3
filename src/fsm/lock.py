"""Per-user lock with lease expiry.

One inbound message holds the lock for its user while it reads and mutates
pending state. Leases self-expire so a crashed worker cannot wedge a user,
and release only succeeds for the holder token that acquired the lease.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from src.config import settings
from src.exceptions import LockBusyException, TransientInfraException
from src.fsm.models import LockLease, expiry_after, utcnow
from src.integrations.supabase import SupabaseClient, supabase_client
from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.lock")


def user_lock_key(tenant_id: str, user_id: str) -> str:
    return f"lock:{tenant_id}:{user_id}"


# ============================================================================
# Backends
# ============================================================================


class MemoryLockBackend:
    """Process-local lease table for tests and local development."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._guard = asyncio.Lock()
        self._clock = clock

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        async with self._guard:
            now = self._clock()
            current = self._leases.get(key)
            if current and current[0] != token and current[1] > now:
                return False
            self._leases[key] = (token, expiry_after(seconds=ttl_seconds, now=now))
            return True

    async def release(self, key: str, token: str) -> bool:
        async with self._guard:
            current = self._leases.get(key)
            if not current or current[0] != token:
                return False
            del self._leases[key]
            return True

    async def purge_expired(self) -> int:
        async with self._guard:
            now = self._clock()
            expired = [k for k, (_, exp) in self._leases.items() if exp <= now]
            for key in expired:
                del self._leases[key]
            return len(expired)

    def holder(self, key: str) -> Optional[str]:
        current = self._leases.get(key)
        return current[0] if current else None


class SupabaseLockBackend:
    """Lease rows in `user_locks`, acquired through the `acquire_user_lock` RPC.

    The RPC upserts the row and only takes it over when the existing lease is
    expired or already belongs to the same holder.
    """

    def __init__(self, db: SupabaseClient = supabase_client):
        self.db = db

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        response = await self.db.rpc(
            "acquire_user_lock",
            {"p_lock_key": key, "p_holder": token, "p_ttl_seconds": int(ttl_seconds)},
        )
        return bool(response.data)

    async def release(self, key: str, token: str) -> bool:
        query = self.db.table("user_locks").delete().eq("lock_key", key).eq("holder", token)
        response = await self.db.execute(query, "release_lock")
        return bool(response.data)

    async def purge_expired(self) -> int:
        query = self.db.table("user_locks").delete().lt("expires_at", utcnow().isoformat())
        response = await self.db.execute(query, "purge_locks")
        return len(response.data or [])


# ============================================================================
# User lock
# ============================================================================


class UserLock:
    """Acquire/release facade with bounded waiting and a busy policy."""

    def __init__(
        self,
        backend,
        ttl_seconds: Optional[float] = None,
        wait_seconds: Optional[float] = None,
        retry_interval: Optional[float] = None,
        busy_policy: Optional[str] = None,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.lock_ttl_seconds
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.lock_wait_seconds
        self.retry_interval = retry_interval if retry_interval is not None else settings.lock_retry_interval_seconds
        self.busy_policy = busy_policy or settings.lock_busy_policy

    async def acquire(self, key: str) -> LockLease:
        """Acquire the lease for `key`, waiting up to `wait_seconds`.

        Raises:
            LockBusyException: Still contended after the wait and the busy
                policy is "reply"
        """
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds

        while True:
            if await self.backend.try_acquire(key, token, self.ttl_seconds):
                logger.debug("Lock acquired", lock_key=key, token=token)
                return LockLease(
                    key=key,
                    token=token,
                    expires_at=expiry_after(seconds=self.ttl_seconds),
                )
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.retry_interval)

        if self.busy_policy == "fail_open":
            logger.warning("Lock still busy, proceeding without it", lock_key=key)
            return LockLease(
                key=key,
                token=token,
                expires_at=expiry_after(seconds=self.ttl_seconds),
                bypassed=True,
            )

        logger.warning("Lock busy", lock_key=key, waited_seconds=self.wait_seconds)
        raise LockBusyException(key)

    async def release(self, lease: LockLease) -> None:
        if lease.bypassed:
            return
        try:
            released = await self.backend.release(lease.key, lease.token)
        except TransientInfraException as e:
            logger.warning("Lock release failed, lease will expire", lock_key=lease.key, error=str(e))
            return
        if not released:
            # Lease expired and was taken over; the new holder keeps it.
            logger.warning("Lock lease lost before release", lock_key=lease.key, token=lease.token)
        else:
            logger.debug("Lock released", lock_key=lease.key, token=lease.token)

    async def renew(self, lease: LockLease) -> bool:
        """Push the lease expiry forward. False once another holder has it."""
        if not await self.backend.try_acquire(lease.key, lease.token, self.ttl_seconds):
            return False
        lease.expires_at = expiry_after(seconds=self.ttl_seconds)
        return True

    async def _keep_alive(self, lease: LockLease) -> None:
        interval = self.ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.renew(lease)
            except TransientInfraException as e:
                logger.warning("Lock renewal failed, will retry", lock_key=lease.key, error=str(e))
                continue
            if not renewed:
                logger.warning("Lock lease lost while held", lock_key=lease.key, token=lease.token)
                return

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[LockLease]:
        """Hold the lock for the duration of the block; always released.

        The lease is renewed every third of its TTL while the block runs, so
        slow media work inside the block cannot outlive it.
        """
        lease = await self.acquire(key)
        heartbeat = None if lease.bypassed else asyncio.create_task(self._keep_alive(lease))
        try:
            yield lease
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            await self.release(lease)

    async def purge_expired(self) -> int:
        return await self.backend.purge_expired()
