"""Time-clock executor: shifts, breaks, drives and the weekly timesheet."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.actions.base import ExecutionContext, WorkflowExecutor
from src.actions.parsing import local_now, parse_clock_time
from src.exceptions import ErrorCode, ValidationException
from src.fsm.models import (
    ExecutorResult,
    IntentResult,
    PendingAction,
    PendingKind,
    Reply,
    kind_value,
)
from src.utils.logger import log

ENTRY_TYPES = ("clock_in", "clock_out", "break_start", "break_stop", "drive_start", "drive_stop")

_CONFIRMATIONS = {
    "clock_in": "✅ Clocked in",
    "clock_out": "✅ Clocked out",
    "break_start": "☕ Break started",
    "break_stop": "✅ Break ended",
    "drive_start": "🚚 Drive started",
    "drive_stop": "✅ Drive ended",
}


def _fmt_time(at: datetime) -> str:
    return at.strftime("%I:%M %p").lstrip("0")


def _fmt_when(at: datetime, now: datetime) -> str:
    """Clock time, with the day when it is not today."""
    days = (now.date() - at.date()).days
    if days == 0:
        return _fmt_time(at)
    if days == 1:
        return f"{_fmt_time(at)} yesterday"
    return f"{_fmt_time(at)} on {at.strftime('%a %b %d')}"


def _parse_at(entry: Dict[str, Any]) -> datetime:
    return datetime.fromisoformat(entry["at"])


class TimeclockExecutor(WorkflowExecutor):
    family = "timeclock"
    kinds = (PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME.value,)

    async def _open_shift(self, ctx: ExecutionContext) -> Optional[Dict[str, Any]]:
        """The clock-in entry of the current shift, if one is open."""
        entries = await self.ledger.list_time_entries(ctx.tenant_id, ctx.user_id)
        shift = None
        for entry in entries:
            if entry["type"] == "clock_in":
                shift = entry
            elif entry["type"] == "clock_out":
                shift = None
        return shift

    def _resolve_time(self, time_text: Optional[str], now: datetime, after: Optional[datetime] = None) -> datetime:
        if not time_text:
            return now
        at = parse_clock_time(time_text, now, after=after)
        if at is None:
            raise ValidationException(
                "time", "⚠️ I couldn't read that time. Try 5pm or 17:30.", error_code=ErrorCode.INVALID_TIME
            )
        if at > now:
            raise ValidationException(
                "time", f"⚠️ {_fmt_time(at)} is in the future. Send the time you actually finished.",
                error_code=ErrorCode.INVALID_TIME,
            )
        return at

    async def _record(self, ctx: ExecutionContext, entry_type: str, at: datetime) -> Dict[str, Any]:
        active = await self.ledger.get_active_job(ctx.tenant_id, ctx.user_id)
        entry = await self.ledger.add_time_entry({
            "tenant_id": ctx.tenant_id,
            "user_id": ctx.user_id,
            "type": entry_type,
            "at": at.astimezone(timezone.utc).isoformat(),
            "job_no": active["job_no"] if active else None,
            "source_message_id": ctx.provider_message_id,
        })
        log.info(f"🕒 {entry_type} recorded for {ctx.user_id} at {at.isoformat()}")
        return entry

    async def handle(
        self,
        ctx: ExecutionContext,
        intent: IntentResult,
        pending: Optional[PendingAction] = None,
    ) -> ExecutorResult:
        action = intent.intent.split(".", 1)[1]
        if action == "timesheet":
            return ExecutorResult(reply=await self._timesheet(ctx))

        now = local_now()
        shift = await self._open_shift(ctx)

        if action == "clock_in":
            if shift is not None:
                since = _parse_at(shift).astimezone(now.tzinfo)
                raise ValidationException("shift", f"⚠️ You're already clocked in since {_fmt_time(since)}.")
            at = self._resolve_time(intent.args.get("time_text"), now)
            await self._record(ctx, "clock_in", at)
            return ExecutorResult(reply=Reply(text=f"{_CONFIRMATIONS['clock_in']} at {_fmt_time(at)}."), side_effect_applied=True)

        if shift is None:
            return ExecutorResult(reply=Reply(text="You're not clocked in. Send \"clock in\" to start a shift."))

        if action == "clock_out" and intent.args.get("forgot") and not intent.args.get("time_text"):
            started = _parse_at(shift).astimezone(now.tzinfo)
            payload = {"shift_started_at": shift["at"], "source_message_id": ctx.provider_message_id}
            return ExecutorResult(
                reply=Reply(text=f"🕒 No problem. What time did you finish? (shift started {_fmt_time(started)})", options=["cancel"]),
                pending=self.open_pending(PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME, payload),
            )

        if action not in ENTRY_TYPES:
            raise self._unsupported(f"handle:{action}", pending)

        at = self._resolve_time(intent.args.get("time_text"), now, after=_parse_at(shift))
        await self._record(ctx, action, at)
        return ExecutorResult(
            reply=Reply(text=f"{_CONFIRMATIONS[action]} at {_fmt_when(at, now)}."),
            side_effect_applied=True,
            clear_pending=pending is not None,
        )

    async def accept_value(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        if kind_value(pending.kind) != PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME.value:
            raise self._unsupported("accept_value", pending)

        now = local_now()
        started = datetime.fromisoformat(pending.payload["shift_started_at"])
        at = self._resolve_time(ctx.text, now, after=started)
        if at <= started:
            raise ValidationException(
                "time", "⚠️ That's before your shift started. What time did you finish?",
                error_code=ErrorCode.INVALID_TIME,
            )

        if await self._open_shift(ctx) is None:
            return ExecutorResult(reply=Reply(text="That shift is already closed."), clear_pending=True)

        await self._record(ctx, "clock_out", at)
        return ExecutorResult(
            reply=Reply(text=f"{_CONFIRMATIONS['clock_out']} at {_fmt_when(at, now)}."),
            side_effect_applied=True,
            clear_pending=True,
        )

    def prompt(self, pending: PendingAction) -> Reply:
        started = datetime.fromisoformat(pending.payload["shift_started_at"]).astimezone(local_now().tzinfo)
        return Reply(
            text=f"🕒 What time did you clock out? (shift started {_fmt_time(started)})",
            options=["cancel"],
        )

    def describe(self, pending: PendingAction) -> str:
        return "clock-out time"

    async def _timesheet(self, ctx: ExecutionContext) -> Reply:
        now = local_now()
        week_start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
        entries = await self.ledger.list_time_entries(ctx.tenant_id, ctx.user_id, since=week_start)
        worked, shifts = summarize_hours(entries, now)
        return Reply(text=f"🕒 This week: {worked.total_seconds() / 3600:.1f} h across {shifts} shift(s).")


def summarize_hours(entries: List[Dict[str, Any]], now: datetime):
    """Worked time (shifts minus breaks) and shift count for ordered entries."""
    worked = timedelta()
    shifts = 0
    shift_start = None
    break_start = None
    for entry in entries:
        at = _parse_at(entry)
        kind = entry["type"]
        if kind == "clock_in":
            shift_start, break_start = at, None
            shifts += 1
        elif kind == "break_start" and shift_start is not None:
            break_start = at
        elif kind == "break_stop" and break_start is not None:
            worked -= at - break_start
            break_start = None
        elif kind == "clock_out" and shift_start is not None:
            if break_start is not None:
                worked -= at - break_start
            worked += at - shift_start
            shift_start, break_start = None, None
    if shift_start is not None:
        worked += now - shift_start
    return worked, shifts
