"""Task executor: single-message commands, no pending actions."""
from typing import Optional

from src.actions.base import ExecutionContext, WorkflowExecutor
from src.exceptions import ErrorCode, ValidationException
from src.fsm.models import ExecutorResult, IntentResult, PendingAction, Reply


class TaskExecutor(WorkflowExecutor):
    family = "task"

    async def handle(
        self,
        ctx: ExecutionContext,
        intent: IntentResult,
        pending: Optional[PendingAction] = None,
    ) -> ExecutorResult:
        action = intent.intent.split(".", 1)[1]

        if action == "create":
            task = await self.ledger.create_task(ctx.tenant_id, ctx.user_id, intent.args["title"])
            return ExecutorResult(
                reply=Reply(text=f"✅ Task #{task['task_no']} added: {task['title']}"),
                side_effect_applied=True,
            )

        if action == "list":
            tasks = await self.ledger.list_open_tasks(ctx.tenant_id, ctx.user_id)
            if not tasks:
                return ExecutorResult(reply=Reply(text="🎉 No open tasks."))
            lines = [f"#{t['task_no']} {t['title']}" for t in tasks]
            return ExecutorResult(reply=Reply(text="📝 Your tasks:\n" + "\n".join(lines)))

        if action == "done":
            number = intent.args["number"]
            task = await self.ledger.complete_task(ctx.tenant_id, number)
            if task is None:
                raise ValidationException(
                    "task", f"⚠️ No open task #{number}.", error_code=ErrorCode.UNKNOWN_REFERENCE
                )
            return ExecutorResult(
                reply=Reply(text=f"✅ Done: #{task['task_no']} {task['title']}"),
                side_effect_applied=True,
            )

        raise self._unsupported(f"handle:{action}", pending)
