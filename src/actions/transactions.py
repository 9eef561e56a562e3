"""Expense and revenue executors.

Both follow the same workflow: draft → confirm (yes / edit / change job /
cancel) → one transaction row keyed by the message that opened the draft.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from src.actions.base import CONFIRM_OPTIONS, ExecutionContext, WorkflowExecutor
from src.actions.parsing import (
    parse_amount,
    parse_counterparty,
    parse_item,
    split_job_hint,
)
from src.config import settings
from src.exceptions import ErrorCode, ValidationException
from src.fsm.models import (
    ExecutorResult,
    IntentResult,
    PendingAction,
    PendingKind,
    Reply,
    SelectionKind,
    kind_value,
    utcnow,
)
from src.utils.fuzzy_matcher import fuzzy_match_job
from src.utils.logger import log

MAX_AMOUNT = Decimal("1000000")

_STAMPED_RE = re.compile(r"^(?:#|jobno\s)\s?(\d+)\b", re.IGNORECASE)
_INDEX_RE = re.compile(r"^(\d+)$")


def format_money(amount: Any) -> str:
    return f"${Decimal(str(amount)):,.2f}"


def validated_amount(raw: Any) -> Decimal:
    """Amount as a 2-place Decimal, or a ValidationException."""
    try:
        amount = Decimal(str(raw)) if raw is not None else None
    except InvalidOperation:
        amount = None
    if amount is None:
        raise ValidationException(
            "amount",
            "⚠️ I couldn't find an amount. Send it like \"$45 at Home Depot\".",
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    if amount <= 0 or amount >= MAX_AMOUNT:
        raise ValidationException(
            "amount",
            f"⚠️ {format_money(amount)} doesn't look right. Send the correct amount.",
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    return amount.quantize(Decimal("0.01"))


class TransactionExecutor(WorkflowExecutor):
    """Shared draft/confirm workflow for money-bearing messages."""

    direction = ""
    confirm_kind = ""
    pick_kind = ""
    counterparty_key = ""
    counterparty_word = ""

    @property
    def kinds(self):
        return (self.confirm_kind, self.pick_kind)

    @property
    def change_job_kinds(self):
        return (self.confirm_kind,)

    @property
    def auto_advance_kinds(self):
        return (self.confirm_kind,)

    # === Drafting ===

    async def _resolve_job(self, ctx: ExecutionContext, job_hint: Optional[str]) -> Optional[Dict[str, Any]]:
        if job_hint:
            jobs = await self.ledger.list_jobs(ctx.tenant_id)
            job = fuzzy_match_job(job_hint, jobs, settings.fuzzy_match_floor)
            if job:
                return job
        return await self.ledger.get_active_job(ctx.tenant_id, ctx.user_id)

    async def _draft(self, ctx: ExecutionContext, args: Dict[str, Any], source_message_id: str) -> Dict[str, Any]:
        amount = validated_amount(args.get("amount"))
        job = await self._resolve_job(ctx, args.get("job_hint"))
        return {
            "amount": str(amount),
            self.counterparty_key: args.get(self.counterparty_key),
            "item": args.get("item"),
            "job_no": job["job_no"] if job else None,
            "job_name": job["name"] if job else None,
            "description": ctx.text,
            "source_message_id": source_message_id,
        }

    async def handle(
        self,
        ctx: ExecutionContext,
        intent: IntentResult,
        pending: Optional[PendingAction] = None,
    ) -> ExecutorResult:
        payload = await self._draft(ctx, intent.args, ctx.provider_message_id)
        reply = self._confirm_prompt(payload)
        if pending is not None:
            reply = Reply(text=f"✏️ Replaced the pending {self.direction}.\n{reply.text}", options=reply.options)
        log.info(f"📝 Drafted {self.direction} {format_money(payload['amount'])} for {ctx.user_id}")
        return ExecutorResult(
            reply=reply,
            pending=self.open_pending(self.confirm_kind, payload),
            clear_pending=pending is not None,
        )

    # === Confirmation ===

    async def confirm(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        if kind_value(pending.kind) != self.confirm_kind:
            raise self._unsupported("confirm", pending)
        payload = pending.payload
        amount = validated_amount(payload.get("amount"))

        row = {
            "tenant_id": ctx.tenant_id,
            "user_id": ctx.user_id,
            "kind": self.direction,
            "amount": str(amount),
            "counterparty": payload.get(self.counterparty_key),
            "item": payload.get("item"),
            "job_no": payload.get("job_no"),
            "description": payload.get("description"),
            "source_message_id": payload["source_message_id"],
            "created_at": utcnow().isoformat(),
        }
        inserted = await self.ledger.insert_transaction(row)
        summary = self._summary(payload)
        if inserted:
            log.info(f"✅ {self.direction.title()} recorded: {summary}")
            text = f"✅ {self.direction.title()} recorded: {summary}"
        else:
            log.info(f"↩️ {self.direction.title()} already recorded for {payload['source_message_id']}")
            text = f"✅ Already recorded: {summary}"
        return ExecutorResult(reply=Reply(text=text), side_effect_applied=inserted, clear_pending=True)

    async def apply_edit(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        remainder, job_hint = split_job_hint(ctx.text)
        args: Dict[str, Any] = {"amount": parse_amount(remainder), "job_hint": job_hint}
        args[self.counterparty_key] = parse_counterparty(remainder) or pending.payload.get(self.counterparty_key)
        args["item"] = parse_item(remainder) or pending.payload.get("item")

        payload = await self._draft(ctx, args, pending.payload["source_message_id"])
        if not job_hint and pending.payload.get("job_no"):
            payload["job_no"] = pending.payload["job_no"]
            payload["job_name"] = pending.payload.get("job_name")

        reply = self._confirm_prompt(payload)
        return ExecutorResult(
            reply=Reply(text=f"✏️ Updated.\n{reply.text}", options=reply.options),
            pending=self.open_pending(self.confirm_kind, payload),
            auto_advance=True,
        )

    # === Job picking ===

    async def change_job(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        jobs = await self.ledger.list_jobs(ctx.tenant_id)
        if not jobs:
            return ExecutorResult(
                reply=Reply(text="You don't have any jobs yet. Create one with \"create job Roof Repair\".")
            )
        payload = dict(pending.payload, job_options=[job["job_no"] for job in jobs])
        payload["job_labels"] = {str(job["job_no"]): job["name"] for job in jobs}
        spec = self.open_pending(self.pick_kind, payload)
        return ExecutorResult(
            reply=self._pick_prompt(payload),
            pending=spec,
            clear_pending=True,
        )

    async def accept_value(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        if kind_value(pending.kind) != self.pick_kind:
            raise self._unsupported("accept_value", pending)

        job = await self._picked_job(ctx, pending.payload)
        if job is None:
            raise ValidationException(
                "job",
                "⚠️ I couldn't find that job. Reply with a number from the list, or cancel.",
                error_code=ErrorCode.UNKNOWN_REFERENCE,
            )

        payload = {k: v for k, v in pending.payload.items() if k not in ("job_options", "job_labels")}
        payload["job_no"] = job["job_no"]
        payload["job_name"] = job["name"]
        return ExecutorResult(
            reply=self._confirm_prompt(payload),
            pending=self.open_pending(self.confirm_kind, payload),
            clear_pending=True,
        )

    async def _picked_job(self, ctx: ExecutionContext, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Resolve the user's pick against the list snapshot or job numbers."""
        options: List[int] = payload.get("job_options") or []
        selection = ctx.message.selection

        if selection is not None and selection.value is not None:
            if selection.kind == SelectionKind.BUSINESS_KEY.value:
                return await self.ledger.get_job(ctx.tenant_id, selection.value)
            if selection.kind == SelectionKind.ROW_INDEX.value:
                return await self._job_at_row(ctx, options, selection.value)

        text = ctx.text.strip()
        stamped = _STAMPED_RE.match(text)
        if stamped:
            return await self.ledger.get_job(ctx.tenant_id, int(stamped.group(1)))
        index = _INDEX_RE.match(text)
        if index:
            return await self._job_at_row(ctx, options, int(index.group(1)))

        jobs = await self.ledger.list_jobs(ctx.tenant_id)
        return fuzzy_match_job(text, jobs, settings.fuzzy_match_floor)

    async def _job_at_row(self, ctx: ExecutionContext, options: List[int], row: int) -> Optional[Dict[str, Any]]:
        if not 1 <= row <= len(options):
            return None
        return await self.ledger.get_job(ctx.tenant_id, options[row - 1])

    # === Rendering ===

    def _summary(self, payload: Dict[str, Any]) -> str:
        parts = [format_money(payload["amount"])]
        if payload.get(self.counterparty_key):
            parts.append(f"{self.counterparty_word} {payload[self.counterparty_key]}")
        if payload.get("item"):
            parts.append(f"({payload['item']})")
        if payload.get("job_no"):
            parts.append(f"· job #{payload['job_no']} {payload.get('job_name') or ''}".rstrip())
        return " ".join(parts)

    def _confirm_prompt(self, payload: Dict[str, Any]) -> Reply:
        return Reply(
            text=f"Confirm {self.direction}: {self._summary(payload)}?",
            options=CONFIRM_OPTIONS[:2] + ["change job"] + CONFIRM_OPTIONS[2:],
        )

    def _pick_prompt(self, payload: Dict[str, Any]) -> Reply:
        labels = payload.get("job_labels") or {}
        lines = [
            f"{row}. #{job_no} {labels.get(str(job_no), '')}".rstrip()
            for row, job_no in enumerate(payload.get("job_options") or [], start=1)
        ]
        return Reply(
            text=f"Which job is this {self.direction} for?\n" + "\n".join(lines) + "\nReply with the number.",
            options=["cancel"],
        )

    def prompt(self, pending: PendingAction) -> Reply:
        if kind_value(pending.kind) == self.pick_kind:
            return self._pick_prompt(pending.payload)
        return self._confirm_prompt(pending.payload)

    def describe(self, pending: PendingAction) -> str:
        payload = pending.payload
        label = format_money(payload.get("amount", 0))
        if payload.get(self.counterparty_key):
            label += f", {payload[self.counterparty_key]}"
        return f"{self.direction} ({label})"

    def edit_prompt(self, pending: PendingAction) -> Reply:
        return Reply(
            text=f"✏️ Okay, send the corrected {self.direction} (e.g. \"$45 at Home Depot\").",
            options=["cancel"],
        )


class ExpenseExecutor(TransactionExecutor):
    family = "expense"
    direction = "expense"
    confirm_kind = PendingKind.CONFIRM_EXPENSE.value
    pick_kind = PendingKind.PICK_JOB_FOR_EXPENSE.value
    counterparty_key = "vendor"
    counterparty_word = "at"


class RevenueExecutor(TransactionExecutor):
    family = "revenue"
    direction = "revenue"
    confirm_kind = PendingKind.CONFIRM_REVENUE.value
    pick_kind = PendingKind.PICK_JOB_FOR_REVENUE.value
    counterparty_key = "payer"
    counterparty_word = "from"
