"""Persistence for the records the executors write: jobs, transactions,
time entries and tasks.

Transactions are insert-if-absent on (tenant_id, source_message_id), so a
confirmation that runs twice for the same originating message records one
row.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.fsm.models import utcnow
from src.integrations.supabase import SupabaseClient, supabase_client
from src.utils.logger import log


class MemoryLedgerStore:
    """Process-local ledger for tests and local development."""

    def __init__(self):
        self.jobs: Dict[str, List[Dict[str, Any]]] = {}
        self.active_jobs: Dict[tuple, int] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.time_entries: List[Dict[str, Any]] = []
        self.tasks: Dict[str, List[Dict[str, Any]]] = {}
        self._guard = asyncio.Lock()

    # === Jobs ===

    async def create_job(self, tenant_id: str, name: str) -> Dict[str, Any]:
        async with self._guard:
            jobs = self.jobs.setdefault(tenant_id, [])
            job = {"tenant_id": tenant_id, "job_no": len(jobs) + 1, "name": name, "created_at": utcnow().isoformat()}
            jobs.append(job)
            return job

    async def list_jobs(self, tenant_id: str) -> List[Dict[str, Any]]:
        return list(self.jobs.get(tenant_id, []))

    async def get_job(self, tenant_id: str, job_no: int) -> Optional[Dict[str, Any]]:
        return next((j for j in self.jobs.get(tenant_id, []) if j["job_no"] == job_no), None)

    async def set_active_job(self, tenant_id: str, user_id: str, job_no: int) -> None:
        self.active_jobs[(tenant_id, user_id)] = job_no

    async def get_active_job(self, tenant_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        job_no = self.active_jobs.get((tenant_id, user_id))
        return await self.get_job(tenant_id, job_no) if job_no else None

    # === Transactions ===

    async def insert_transaction(self, row: Dict[str, Any]) -> bool:
        async with self._guard:
            for existing in self.transactions:
                if (existing["tenant_id"], existing["source_message_id"]) == (row["tenant_id"], row["source_message_id"]):
                    return False
            self.transactions.append(dict(row))
            return True

    # === Time entries ===

    async def add_time_entry(self, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._guard:
            entry = dict(row, id=len(self.time_entries) + 1)
            self.time_entries.append(entry)
            return entry

    async def list_time_entries(self, tenant_id: str, user_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        entries = [
            e for e in self.time_entries
            if e["tenant_id"] == tenant_id and e["user_id"] == user_id
            and (since is None or datetime.fromisoformat(e["at"]) >= since)
        ]
        return sorted(entries, key=lambda e: (e["at"], e["id"]))

    async def last_time_entry(self, tenant_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        entries = await self.list_time_entries(tenant_id, user_id)
        return entries[-1] if entries else None

    async def update_time_entry_job(self, entry_id: int, job_no: int) -> bool:
        async with self._guard:
            for entry in self.time_entries:
                if entry["id"] == entry_id:
                    entry["job_no"] = job_no
                    return True
            return False

    # === Tasks ===

    async def create_task(self, tenant_id: str, user_id: str, title: str) -> Dict[str, Any]:
        async with self._guard:
            tasks = self.tasks.setdefault(tenant_id, [])
            task = {"tenant_id": tenant_id, "user_id": user_id, "task_no": len(tasks) + 1, "title": title, "done": False}
            tasks.append(task)
            return task

    async def list_open_tasks(self, tenant_id: str, user_id: str) -> List[Dict[str, Any]]:
        return [t for t in self.tasks.get(tenant_id, []) if t["user_id"] == user_id and not t["done"]]

    async def complete_task(self, tenant_id: str, task_no: int) -> Optional[Dict[str, Any]]:
        async with self._guard:
            for task in self.tasks.get(tenant_id, []):
                if task["task_no"] == task_no and not task["done"]:
                    task["done"] = True
                    return task
            return None


class SupabaseLedgerStore:
    """Ledger tables in Supabase."""

    def __init__(self, db: SupabaseClient = supabase_client):
        self.db = db

    # === Jobs ===

    async def create_job(self, tenant_id: str, name: str) -> Dict[str, Any]:
        response = await self.db.rpc("create_job", {"p_tenant_id": tenant_id, "p_name": name})
        job = response.data[0] if isinstance(response.data, list) else response.data
        log.info(f"✅ Job #{job['job_no']} created for tenant {tenant_id}")
        return job

    async def list_jobs(self, tenant_id: str) -> List[Dict[str, Any]]:
        query = self.db.table("jobs").select("*").eq("tenant_id", tenant_id).order("job_no")
        response = await self.db.execute(query, "list_jobs")
        return response.data or []

    async def get_job(self, tenant_id: str, job_no: int) -> Optional[Dict[str, Any]]:
        query = self.db.table("jobs").select("*").eq("tenant_id", tenant_id).eq("job_no", job_no).limit(1)
        response = await self.db.execute(query, "get_job")
        return response.data[0] if response.data else None

    async def set_active_job(self, tenant_id: str, user_id: str, job_no: int) -> None:
        query = self.db.table("active_jobs").upsert(
            {"tenant_id": tenant_id, "user_id": user_id, "job_no": job_no, "updated_at": utcnow().isoformat()},
            on_conflict="tenant_id,user_id",
        )
        await self.db.execute(query, "set_active_job")

    async def get_active_job(self, tenant_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        query = self.db.table("active_jobs").select("job_no").eq("tenant_id", tenant_id).eq("user_id", user_id).limit(1)
        response = await self.db.execute(query, "get_active_job")
        if not response.data:
            return None
        return await self.get_job(tenant_id, response.data[0]["job_no"])

    # === Transactions ===

    async def insert_transaction(self, row: Dict[str, Any]) -> bool:
        query = self.db.table("transactions").upsert(
            row, on_conflict="tenant_id,source_message_id", ignore_duplicates=True
        )
        response = await self.db.execute(query, "insert_transaction")
        return bool(response.data)

    # === Time entries ===

    async def add_time_entry(self, row: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.db.execute(self.db.table("time_entries").insert(row), "add_time_entry")
        return response.data[0]

    async def list_time_entries(self, tenant_id: str, user_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        query = self.db.table("time_entries").select("*").eq("tenant_id", tenant_id).eq("user_id", user_id)
        if since is not None:
            query = query.gte("at", since.isoformat())
        response = await self.db.execute(query.order("at").order("id"), "list_time_entries")
        return response.data or []

    async def last_time_entry(self, tenant_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        query = (
            self.db.table("time_entries").select("*")
            .eq("tenant_id", tenant_id).eq("user_id", user_id)
            .order("at", desc=True).order("id", desc=True).limit(1)
        )
        response = await self.db.execute(query, "last_time_entry")
        return response.data[0] if response.data else None

    async def update_time_entry_job(self, entry_id: int, job_no: int) -> bool:
        query = self.db.table("time_entries").update({"job_no": job_no}).eq("id", entry_id)
        response = await self.db.execute(query, "move_time_entry")
        return bool(response.data)

    # === Tasks ===

    async def create_task(self, tenant_id: str, user_id: str, title: str) -> Dict[str, Any]:
        response = await self.db.rpc("create_task", {"p_tenant_id": tenant_id, "p_user_id": user_id, "p_title": title})
        return response.data[0] if isinstance(response.data, list) else response.data

    async def list_open_tasks(self, tenant_id: str, user_id: str) -> List[Dict[str, Any]]:
        query = (
            self.db.table("tasks").select("*")
            .eq("tenant_id", tenant_id).eq("user_id", user_id).eq("done", False)
            .order("task_no")
        )
        response = await self.db.execute(query, "list_tasks")
        return response.data or []

    async def complete_task(self, tenant_id: str, task_no: int) -> Optional[Dict[str, Any]]:
        query = (
            self.db.table("tasks").update({"done": True})
            .eq("tenant_id", tenant_id).eq("task_no", task_no).eq("done", False)
        )
        response = await self.db.execute(query, "complete_task")
        return response.data[0] if response.data else None
