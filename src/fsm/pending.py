"""Durable store for pending actions.

Rows are keyed by (tenant_id, user_id, kind): opening a second action of the
same kind replaces the first, while different kinds coexist. Expired rows are
invisible to every read, whether or not the cleanup task has removed them.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from src.fsm.models import PendingAction, PendingStatus, kind_value, utcnow
from src.integrations.supabase import SupabaseClient, supabase_client
from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.pending")

PendingKey = Tuple[str, str, str]


def _key(action: PendingAction) -> PendingKey:
    return (action.tenant_id, action.user_id, kind_value(action.kind))


def _newest_first(actions: List[PendingAction]) -> List[PendingAction]:
    return sorted(actions, key=lambda a: a.created_at, reverse=True)


class MemoryPendingActionStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._rows: Dict[PendingKey, PendingAction] = {}
        self._guard = asyncio.Lock()
        self._clock = clock

    async def upsert(self, action: PendingAction) -> PendingAction:
        async with self._guard:
            self._rows[_key(action)] = action
        return action

    async def get(self, tenant_id: str, user_id: str, kind: str) -> Optional[PendingAction]:
        # Yield like a real store round-trip would
        await asyncio.sleep(0)
        action = self._rows.get((tenant_id, user_id, kind_value(kind)))
        if action is None or action.is_expired(self._clock()):
            return None
        return action

    async def list_for_user(self, tenant_id: str, user_id: str) -> List[PendingAction]:
        """All unexpired actions for the user, newest first."""
        await asyncio.sleep(0)
        now = self._clock()
        actions = [
            a for (t, u, _), a in self._rows.items()
            if t == tenant_id and u == user_id and not a.is_expired(now)
        ]
        return _newest_first(actions)

    async def delete(self, tenant_id: str, user_id: str, kind: str) -> bool:
        async with self._guard:
            return self._rows.pop((tenant_id, user_id, kind_value(kind)), None) is not None

    async def delete_all(self, tenant_id: str, user_id: str) -> int:
        async with self._guard:
            keys = [k for k in self._rows if k[0] == tenant_id and k[1] == user_id]
            for key in keys:
                del self._rows[key]
            return len(keys)

    async def purge_expired(self) -> int:
        async with self._guard:
            now = self._clock()
            keys = [k for k, a in self._rows.items() if a.is_expired(now)]
            for key in keys:
                del self._rows[key]
            return len(keys)


class SupabasePendingActionStore:
    """Rows in `pending_actions` with a unique (tenant_id, user_id, kind)."""

    TABLE = "pending_actions"

    def __init__(self, db: SupabaseClient = supabase_client):
        self.db = db

    async def upsert(self, action: PendingAction) -> PendingAction:
        row = action.model_dump(mode="json")
        query = self.db.table(self.TABLE).upsert(row, on_conflict="tenant_id,user_id,kind")
        await self.db.execute(query, "upsert_pending")
        return action

    async def get(self, tenant_id: str, user_id: str, kind: str) -> Optional[PendingAction]:
        query = (
            self.db.table(self.TABLE).select("*")
            .eq("tenant_id", tenant_id).eq("user_id", user_id).eq("kind", kind_value(kind))
            .gt("expires_at", utcnow().isoformat())
            .limit(1)
        )
        response = await self.db.execute(query, "get_pending")
        if not response.data:
            return None
        return PendingAction(**response.data[0])

    async def list_for_user(self, tenant_id: str, user_id: str) -> List[PendingAction]:
        query = (
            self.db.table(self.TABLE).select("*")
            .eq("tenant_id", tenant_id).eq("user_id", user_id)
            .gt("expires_at", utcnow().isoformat())
            .order("created_at", desc=True)
        )
        response = await self.db.execute(query, "list_pending")
        return [PendingAction(**row) for row in response.data or []]

    async def delete(self, tenant_id: str, user_id: str, kind: str) -> bool:
        query = (
            self.db.table(self.TABLE).delete()
            .eq("tenant_id", tenant_id).eq("user_id", user_id).eq("kind", kind_value(kind))
        )
        response = await self.db.execute(query, "delete_pending")
        return bool(response.data)

    async def delete_all(self, tenant_id: str, user_id: str) -> int:
        query = self.db.table(self.TABLE).delete().eq("tenant_id", tenant_id).eq("user_id", user_id)
        response = await self.db.execute(query, "delete_all_pending")
        return len(response.data or [])

    async def purge_expired(self) -> int:
        query = self.db.table(self.TABLE).delete().lt("expires_at", utcnow().isoformat())
        response = await self.db.execute(query, "purge_pending")
        return len(response.data or [])


def live_actions(actions: List[PendingAction]) -> List[PendingAction]:
    return [a for a in actions if a.status == PendingStatus.LIVE.value]


def parked_actions(actions: List[PendingAction]) -> List[PendingAction]:
    return [a for a in actions if a.status == PendingStatus.PARKED.value]
