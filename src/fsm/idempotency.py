"""Idempotency guard keyed by the transport's provider message id.

The id is claimed before any executor runs. A redelivery of a completed
message replays the stored reply, and a redelivery that races an in-flight
claim is told to wait. Neither re-invokes an executor.
"""

import asyncio
import hashlib
from datetime import datetime
from typing import Callable, Dict, Optional

from src.config import settings
from src.fsm.models import (
    IdempotencyDecision,
    IdempotencyRecord,
    IdempotencyStatus,
    Reply,
    expiry_after,
    utcnow,
)
from src.integrations.supabase import SupabaseClient, supabase_client
from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.idempotency")


def reply_hash(reply: Reply) -> str:
    return hashlib.sha256(reply.render().encode("utf-8")).hexdigest()


# ============================================================================
# Backends
# ============================================================================


class MemoryIdempotencyStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._guard = asyncio.Lock()
        self._clock = clock

    async def claim(self, record: IdempotencyRecord) -> Optional[IdempotencyRecord]:
        """Insert `record` if absent. Returns the existing live record otherwise."""
        async with self._guard:
            existing = self._records.get(record.provider_message_id)
            if existing and existing.expires_at > self._clock():
                return existing
            self._records[record.provider_message_id] = record
            return None

    async def complete(
        self, provider_message_id: str, reply: Reply, result_hash: str, expires_at: datetime
    ) -> None:
        async with self._guard:
            record = self._records.get(provider_message_id)
            if record is None:
                return
            self._records[provider_message_id] = record.model_copy(update={
                "status": IdempotencyStatus.COMPLETED.value,
                "reply": reply,
                "result_hash": result_hash,
                "expires_at": expires_at,
            })

    async def delete(self, provider_message_id: str) -> None:
        async with self._guard:
            self._records.pop(provider_message_id, None)

    async def get(self, provider_message_id: str) -> Optional[IdempotencyRecord]:
        return self._records.get(provider_message_id)

    async def purge_expired(self) -> int:
        async with self._guard:
            now = self._clock()
            expired = [k for k, r in self._records.items() if r.expires_at <= now]
            for key in expired:
                del self._records[key]
            return len(expired)


class SupabaseIdempotencyStore:
    """Rows in `idempotency_records` (primary key provider_message_id)."""

    TABLE = "idempotency_records"

    def __init__(self, db: SupabaseClient = supabase_client):
        self.db = db

    async def claim(self, record: IdempotencyRecord) -> Optional[IdempotencyRecord]:
        row = record.model_dump(mode="json")
        query = self.db.table(self.TABLE).upsert(
            row, on_conflict="provider_message_id", ignore_duplicates=True
        )
        response = await self.db.execute(query, "claim_idempotency")
        if response.data:
            return None

        existing = await self.get(record.provider_message_id)
        if existing is None or existing.expires_at <= utcnow():
            # Expired row still occupying the key: take it over.
            query = self.db.table(self.TABLE).upsert(row, on_conflict="provider_message_id")
            await self.db.execute(query, "reclaim_idempotency")
            return None
        return existing

    async def complete(
        self, provider_message_id: str, reply: Reply, result_hash: str, expires_at: datetime
    ) -> None:
        query = self.db.table(self.TABLE).update({
            "status": IdempotencyStatus.COMPLETED.value,
            "reply": reply.model_dump(mode="json"),
            "result_hash": result_hash,
            "expires_at": expires_at.isoformat(),
        }).eq("provider_message_id", provider_message_id)
        await self.db.execute(query, "complete_idempotency")

    async def delete(self, provider_message_id: str) -> None:
        query = self.db.table(self.TABLE).delete().eq("provider_message_id", provider_message_id)
        await self.db.execute(query, "delete_idempotency")

    async def get(self, provider_message_id: str) -> Optional[IdempotencyRecord]:
        query = self.db.table(self.TABLE).select("*").eq("provider_message_id", provider_message_id).limit(1)
        response = await self.db.execute(query, "get_idempotency")
        if not response.data:
            return None
        return IdempotencyRecord(**response.data[0])

    async def purge_expired(self) -> int:
        query = self.db.table(self.TABLE).delete().lt("expires_at", utcnow().isoformat())
        response = await self.db.execute(query, "purge_idempotency")
        return len(response.data or [])


# ============================================================================
# Guard
# ============================================================================


class IdempotencyGuard:
    """At-most-once gate in front of the executors.

    A fresh claim only lives for `claim_ttl_seconds`, so a worker that dies
    mid-message frees the id quickly. Completing the claim extends it to the
    full `ttl_hours` replay window.
    """

    def __init__(
        self,
        store,
        ttl_hours: Optional[int] = None,
        claim_ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ttl_hours = ttl_hours if ttl_hours is not None else settings.idempotency_ttl_hours
        self.claim_ttl_seconds = (
            claim_ttl_seconds if claim_ttl_seconds is not None else settings.idempotency_claim_ttl_seconds
        )
        # Expiry must be computed on the same clock the store compares against
        self.clock = clock or getattr(store, "_clock", utcnow)

    async def should_process(self, provider_message_id: str, user_id: str) -> IdempotencyDecision:
        """Claim the id, or report how an earlier delivery of it went."""
        now = self.clock()
        record = IdempotencyRecord(
            provider_message_id=provider_message_id,
            user_id=user_id,
            first_seen_at=now,
            expires_at=expiry_after(seconds=self.claim_ttl_seconds, now=now),
        )
        existing = await self.store.claim(record)
        if existing is None:
            return IdempotencyDecision(process=True)

        if existing.status == IdempotencyStatus.COMPLETED.value and existing.reply is not None:
            logger.info(
                "Duplicate delivery, replaying cached reply",
                provider_message_id=provider_message_id,
                user_id=user_id,
                result_hash=existing.result_hash,
            )
            return IdempotencyDecision(process=False, cached_reply=existing.reply)

        logger.info(
            "Duplicate delivery while original is in flight",
            provider_message_id=provider_message_id,
            user_id=user_id,
        )
        return IdempotencyDecision(process=False, in_flight=True)

    async def complete(self, provider_message_id: str, reply: Reply) -> None:
        expires_at = expiry_after(hours=self.ttl_hours, now=self.clock())
        await self.store.complete(provider_message_id, reply, reply_hash(reply), expires_at)

    async def release(self, provider_message_id: str) -> None:
        """Forget an in-progress claim after a failure that applied nothing."""
        await self.store.delete(provider_message_id)
        logger.info("Idempotency claim released", provider_message_id=provider_message_id)

    async def purge_expired(self) -> int:
        return await self.store.purge_expired()
