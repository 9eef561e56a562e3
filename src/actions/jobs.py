"""Job executor: create, list, activate, and move the last time log."""
import re
from datetime import datetime
from typing import Any, Dict, Optional

from src.actions.base import ExecutionContext, WorkflowExecutor
from src.actions.parsing import local_now
from src.config import settings
from src.exceptions import ErrorCode, ValidationException
from src.fsm.models import (
    ExecutorResult,
    IntentResult,
    PendingAction,
    PendingKind,
    Reply,
    kind_value,
)
from src.utils.fuzzy_matcher import fuzzy_match_job
from src.utils.logger import log

_JOB_NO_RE = re.compile(r"^(?:#|jobno\s)\s?(\d+)$", re.IGNORECASE)


class JobExecutor(WorkflowExecutor):
    family = "job"
    kinds = (PendingKind.MOVE_LAST_LOG.value,)

    async def find_job(self, ctx: ExecutionContext, reference: Optional[str]) -> Dict[str, Any]:
        """Job by "#N" number or by (fuzzy) name; ValidationException if unknown."""
        reference = (reference or "").strip()
        job = None
        match = _JOB_NO_RE.match(reference)
        if match:
            job = await self.ledger.get_job(ctx.tenant_id, int(match.group(1)))
        elif reference:
            jobs = await self.ledger.list_jobs(ctx.tenant_id)
            job = fuzzy_match_job(reference, jobs, settings.fuzzy_match_floor)
        if job is None:
            raise ValidationException(
                "job",
                f"⚠️ I couldn't find a job called \"{reference}\". Send \"list jobs\" to see them.",
                error_code=ErrorCode.UNKNOWN_REFERENCE,
            )
        return job

    async def handle(
        self,
        ctx: ExecutionContext,
        intent: IntentResult,
        pending: Optional[PendingAction] = None,
    ) -> ExecutorResult:
        action = intent.intent.split(".", 1)[1]
        name = intent.args.get("name")

        if action == "create":
            if not name:
                raise ValidationException("name", "⚠️ What should the job be called? e.g. \"create job Roof Repair\".")
            job = await self.ledger.create_job(ctx.tenant_id, name)
            await self.ledger.set_active_job(ctx.tenant_id, ctx.user_id, job["job_no"])
            return ExecutorResult(
                reply=Reply(text=f"✅ Created job #{job['job_no']} {job['name']} and set it active."),
                side_effect_applied=True,
            )

        if action == "list":
            jobs = await self.ledger.list_jobs(ctx.tenant_id)
            if not jobs:
                return ExecutorResult(reply=Reply(text="No jobs yet. Create one with \"create job Roof Repair\"."))
            active = await self.ledger.get_active_job(ctx.tenant_id, ctx.user_id)
            active_no = active["job_no"] if active else None
            lines = [
                f"#{job['job_no']} {job['name']}" + (" (active)" if job["job_no"] == active_no else "")
                for job in jobs
            ]
            return ExecutorResult(reply=Reply(text="📋 Jobs:\n" + "\n".join(lines)))

        if action == "active":
            active = await self.ledger.get_active_job(ctx.tenant_id, ctx.user_id)
            text = f"Active job: #{active['job_no']} {active['name']}" if active else "No active job set."
            return ExecutorResult(reply=Reply(text=text))

        if action == "set_active":
            job = await self.find_job(ctx, name)
            await self.ledger.set_active_job(ctx.tenant_id, ctx.user_id, job["job_no"])
            return ExecutorResult(
                reply=Reply(text=f"✅ Active job set to #{job['job_no']} {job['name']}."),
                side_effect_applied=True,
            )

        if action == "move_last_log":
            return await self._draft_move(ctx, name, replacing=pending is not None)

        raise self._unsupported(f"handle:{action}", pending)

    async def _draft_move(self, ctx: ExecutionContext, reference: Optional[str], replacing: bool = False) -> ExecutorResult:
        entry = await self.ledger.last_time_entry(ctx.tenant_id, ctx.user_id)
        if entry is None:
            raise ValidationException("log", "⚠️ You don't have a time log to move yet.")
        job = await self.find_job(ctx, reference)
        payload = {
            "entry_id": entry["id"],
            "entry_type": entry["type"],
            "entry_at": entry["at"],
            "job_no": job["job_no"],
            "job_name": job["name"],
        }
        return ExecutorResult(
            reply=self._move_prompt(payload),
            pending=self.open_pending(PendingKind.MOVE_LAST_LOG, payload),
            clear_pending=replacing,
        )

    async def confirm(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        if kind_value(pending.kind) != PendingKind.MOVE_LAST_LOG.value:
            raise self._unsupported("confirm", pending)
        payload = pending.payload
        moved = await self.ledger.update_time_entry_job(payload["entry_id"], payload["job_no"])
        if not moved:
            return ExecutorResult(reply=Reply(text="That time log no longer exists."), clear_pending=True)
        log.info(f"🔀 Moved time entry {payload['entry_id']} to job #{payload['job_no']}")
        return ExecutorResult(
            reply=Reply(text=f"✅ Moved your last log to #{payload['job_no']} {payload['job_name']}."),
            side_effect_applied=True,
            clear_pending=True,
        )

    async def apply_edit(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        job = await self.find_job(ctx, ctx.text)
        payload = dict(pending.payload, job_no=job["job_no"], job_name=job["name"])
        return ExecutorResult(
            reply=self._move_prompt(payload),
            pending=self.open_pending(PendingKind.MOVE_LAST_LOG, payload),
        )

    def _move_prompt(self, payload: Dict[str, Any]) -> Reply:
        at = datetime.fromisoformat(payload["entry_at"]).astimezone(local_now().tzinfo)
        when = at.strftime("%a %I:%M %p").replace(" 0", " ")
        entry = payload["entry_type"].replace("_", " ")
        return Reply(
            text=f"Move your last log ({entry}, {when}) to #{payload['job_no']} {payload['job_name']}?",
            options=["yes", "edit", "cancel"],
        )

    def prompt(self, pending: PendingAction) -> Reply:
        return self._move_prompt(pending.payload)

    def describe(self, pending: PendingAction) -> str:
        return f"log move (to #{pending.payload.get('job_no')})"

    def edit_prompt(self, pending: PendingAction) -> Reply:
        return Reply(text="✏️ Okay, which job should the log move to?", options=["cancel"])
