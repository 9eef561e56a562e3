"""Tests for the time-clock, job and task executors."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from src.actions.base import ExecutionContext
from src.actions.jobs import JobExecutor
from src.actions.ledger import MemoryLedgerStore
from src.actions.parsing import parse_clock_time
from src.actions.tasks import TaskExecutor
from src.actions.timeclock import TimeclockExecutor, summarize_hours
from src.exceptions import ErrorCode, ValidationException
from src.fsm.models import (
    IntentKind,
    IntentResult,
    NormalizedMessage,
    PendingAction,
    PendingKind,
    expiry_after,
)

TENANT = "15550000000"
USER = "14165550100"
TZ = ZoneInfo("America/Toronto")
NOW = datetime(2026, 3, 10, 18, 0, tzinfo=TZ)


def _ctx(text: str = "", sid: str = "SMexec1") -> ExecutionContext:
    return ExecutionContext(
        tenant_id=TENANT,
        user_id=USER,
        from_number="whatsapp:+14165550100",
        message=NormalizedMessage(text=text, provider_message_id=sid),
    )


def _intent(intent: str, **args) -> IntentResult:
    return IntentResult(kind=IntentKind.COMMAND, intent=intent, confidence=1.0, args=args)


def _as_pending(executor, result) -> PendingAction:
    spec = result.pending
    return PendingAction(
        tenant_id=TENANT,
        user_id=USER,
        kind=spec.kind,
        payload=spec.payload,
        expires_at=expiry_after(minutes=30),
    )


def _entry(entry_type: str, at: datetime) -> dict:
    return {
        "tenant_id": TENANT,
        "user_id": USER,
        "type": entry_type,
        "at": at.astimezone(timezone.utc).isoformat(),
        "job_no": None,
        "source_message_id": f"SM{entry_type}",
    }


@pytest.fixture
def ledger():
    return MemoryLedgerStore()


@pytest.fixture
def fixed_now(monkeypatch):
    monkeypatch.setattr("src.actions.timeclock.local_now", lambda: NOW)
    return NOW


# ============================================================================
# Time clock
# ============================================================================


class TestTimeclockExecutor:
    @pytest.mark.asyncio
    async def test_clock_in_records_entry(self, ledger, fixed_now):
        executor = TimeclockExecutor(ledger)

        result = await executor.handle(_ctx("clock in"), _intent("timeclock.clock_in"))

        assert result.reply.text == "✅ Clocked in at 6:00 PM."
        assert result.side_effect_applied is True
        assert ledger.time_entries[0]["type"] == "clock_in"
        assert ledger.time_entries[0]["source_message_id"] == "SMexec1"

    @pytest.mark.asyncio
    async def test_clock_in_uses_active_job(self, ledger, fixed_now):
        job = await ledger.create_job(TENANT, "Roof Repair")
        await ledger.set_active_job(TENANT, USER, job["job_no"])

        await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_in"))

        assert ledger.time_entries[0]["job_no"] == 1

    @pytest.mark.asyncio
    async def test_clock_in_twice_is_rejected(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))

        with pytest.raises(ValidationException) as exc_info:
            await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_in"))

        assert "already clocked in since 8:00 AM" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_clock_out_without_shift(self, ledger, fixed_now):
        result = await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_out"))
        assert result.reply.text.startswith("You're not clocked in")
        assert result.side_effect_applied is False

    @pytest.mark.asyncio
    async def test_clock_out_at_explicit_time(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))

        result = await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_out", time_text="5pm"))

        assert result.reply.text == "✅ Clocked out at 5:00 PM."
        out = ledger.time_entries[-1]
        assert out["type"] == "clock_out"
        assert datetime.fromisoformat(out["at"]) == NOW.replace(hour=17)

    @pytest.mark.asyncio
    async def test_future_time_is_rejected(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))

        with pytest.raises(ValidationException) as exc_info:
            await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_out", time_text="7pm"))

        assert exc_info.value.error_code == ErrorCode.INVALID_TIME

    @pytest.mark.asyncio
    async def test_forgot_clock_out_asks_for_time(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))
        executor = TimeclockExecutor(ledger)

        result = await executor.handle(_ctx("forgot to clock out"), _intent("timeclock.clock_out", forgot=True))

        assert result.pending.kind == PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME.value
        assert "shift started 8:00 AM" in result.reply.text
        assert result.side_effect_applied is False
        assert len(ledger.time_entries) == 1

    @pytest.mark.asyncio
    async def test_accept_value_closes_shift(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))
        executor = TimeclockExecutor(ledger)
        opened = await executor.handle(_ctx(), _intent("timeclock.clock_out", forgot=True))
        pending = _as_pending(executor, opened)

        result = await executor.accept_value(_ctx("5pm", sid="SMexec2"), pending)

        assert result.reply.text == "✅ Clocked out at 5:00 PM."
        assert result.clear_pending is True
        assert result.side_effect_applied is True

    @pytest.mark.asyncio
    async def test_accept_value_before_shift_start(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))
        executor = TimeclockExecutor(ledger)
        pending = _as_pending(executor, await executor.handle(_ctx(), _intent("timeclock.clock_out", forgot=True)))

        with pytest.raises(ValidationException) as exc_info:
            await executor.accept_value(_ctx("7am"), pending)

        assert "before your shift started" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_accept_value_unreadable_time(self, ledger, fixed_now):
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))
        executor = TimeclockExecutor(ledger)
        pending = _as_pending(executor, await executor.handle(_ctx(), _intent("timeclock.clock_out", forgot=True)))

        with pytest.raises(ValidationException):
            await executor.accept_value(_ctx("after lunch"), pending)

    @pytest.mark.asyncio
    async def test_break_needs_open_shift(self, ledger, fixed_now):
        result = await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.break_start"))
        assert "not clocked in" in result.reply.text

    @pytest.mark.asyncio
    async def test_timesheet(self, ledger, fixed_now):
        for entry_type, hour, minute in [
            ("clock_in", 8, 0),
            ("break_start", 12, 0),
            ("break_stop", 12, 30),
            ("clock_out", 17, 0),
        ]:
            await ledger.add_time_entry(_entry(entry_type, NOW.replace(hour=hour, minute=minute)))

        result = await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.timesheet"))

        assert result.reply.text == "🕒 This week: 8.5 h across 1 shift(s)."


class TestSummarizeHours:
    def test_open_shift_counts_until_now(self):
        entries = [_entry("clock_in", NOW - timedelta(hours=2))]
        worked, shifts = summarize_hours(entries, NOW)
        assert worked == timedelta(hours=2)
        assert shifts == 1

    def test_unclosed_break_ends_with_shift(self):
        entries = [
            _entry("clock_in", NOW.replace(hour=8)),
            _entry("break_start", NOW.replace(hour=16)),
            _entry("clock_out", NOW.replace(hour=17)),
        ]
        worked, _ = summarize_hours(entries, NOW)
        assert worked == timedelta(hours=8)


# ============================================================================
# Overnight shifts
# ============================================================================

MORNING_AFTER = datetime(2026, 3, 11, 7, 30, tzinfo=TZ)
SHIFT_START = datetime(2026, 3, 10, 8, 0, tzinfo=TZ)


@pytest.fixture
def morning_after(monkeypatch):
    monkeypatch.setattr("src.actions.timeclock.local_now", lambda: MORNING_AFTER)
    return MORNING_AFTER


class TestOvernightClockOut:
    async def _forgot(self, ledger):
        await ledger.add_time_entry(_entry("clock_in", SHIFT_START))
        executor = TimeclockExecutor(ledger)
        opened = await executor.handle(_ctx("forgot to clock out"), _intent("timeclock.clock_out", forgot=True))
        return executor, _as_pending(executor, opened)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["5pm", "5pm yesterday", "yesterday at 5", "5"])
    async def test_time_lands_on_the_shift_day(self, ledger, morning_after, text):
        executor, pending = await self._forgot(ledger)

        result = await executor.accept_value(_ctx(text, sid="SMexec2"), pending)

        assert result.reply.text == "✅ Clocked out at 5:00 PM yesterday."
        out = ledger.time_entries[-1]
        assert datetime.fromisoformat(out["at"]) == datetime(2026, 3, 10, 17, 0, tzinfo=TZ)

    @pytest.mark.asyncio
    async def test_tonight_is_still_in_the_future(self, ledger, morning_after):
        executor, pending = await self._forgot(ledger)

        with pytest.raises(ValidationException) as exc_info:
            await executor.accept_value(_ctx("5pm tonight"), pending)

        assert "in the future" in exc_info.value.user_message
        assert len(ledger.time_entries) == 1

    @pytest.mark.asyncio
    async def test_explicit_clock_out_on_open_overnight_shift(self, ledger, morning_after):
        await ledger.add_time_entry(_entry("clock_in", SHIFT_START))

        result = await TimeclockExecutor(ledger).handle(_ctx(), _intent("timeclock.clock_out", time_text="11pm"))

        assert result.reply.text == "✅ Clocked out at 11:00 PM yesterday."
        assert datetime.fromisoformat(ledger.time_entries[-1]["at"]) == datetime(2026, 3, 10, 23, 0, tzinfo=TZ)


class TestParseClockTime:
    def test_bare_hour_prefers_latest_past_reading(self):
        assert parse_clock_time("5", NOW) == NOW.replace(hour=17)
        assert parse_clock_time("9", NOW) == NOW.replace(hour=9)

    def test_explicit_meridiem_and_24_hour(self):
        assert parse_clock_time("5:30 pm", NOW) == NOW.replace(hour=17, minute=30)
        assert parse_clock_time("17:30", NOW) == NOW.replace(hour=17, minute=30)
        assert parse_clock_time("7pm", NOW) == NOW.replace(hour=19)

    def test_day_words(self):
        yesterday = NOW - timedelta(days=1)
        assert parse_clock_time("yesterday 9", NOW) == yesterday.replace(hour=21)
        assert parse_clock_time("9 last night", NOW) == yesterday.replace(hour=21)
        assert parse_clock_time("8 this morning", NOW) == NOW.replace(hour=8)
        assert parse_clock_time("9 tonight", NOW) == NOW.replace(hour=21)

    def test_after_picks_first_reading_past_the_anchor(self):
        at = parse_clock_time("6", MORNING_AFTER, after=SHIFT_START)
        assert at == datetime(2026, 3, 10, 18, 0, tzinfo=TZ)

    def test_after_falls_back_to_today(self):
        assert parse_clock_time("7am", NOW, after=NOW.replace(hour=8)) == NOW.replace(hour=7)

    def test_unreadable(self):
        assert parse_clock_time("after lunch", NOW) is None
        assert parse_clock_time("25:00", NOW) is None


# ============================================================================
# Jobs
# ============================================================================


class TestJobExecutor:
    @pytest.mark.asyncio
    async def test_create_sets_active(self, ledger):
        result = await JobExecutor(ledger).handle(_ctx(), _intent("job.create", name="Roof Repair"))

        assert result.reply.text == "✅ Created job #1 Roof Repair and set it active."
        assert (await ledger.get_active_job(TENANT, USER))["name"] == "Roof Repair"

    @pytest.mark.asyncio
    async def test_create_requires_name(self, ledger):
        with pytest.raises(ValidationException):
            await JobExecutor(ledger).handle(_ctx(), _intent("job.create"))

    @pytest.mark.asyncio
    async def test_list_marks_active(self, ledger):
        executor = JobExecutor(ledger)
        await executor.handle(_ctx(), _intent("job.create", name="Roof Repair"))
        await executor.handle(_ctx(), _intent("job.create", name="Front Porch"))

        result = await executor.handle(_ctx(), _intent("job.list"))

        assert result.reply.text == "📋 Jobs:\n#1 Roof Repair\n#2 Front Porch (active)"

    @pytest.mark.asyncio
    async def test_list_empty(self, ledger):
        result = await JobExecutor(ledger).handle(_ctx(), _intent("job.list"))
        assert result.reply.text.startswith("No jobs yet")

    @pytest.mark.asyncio
    async def test_set_active_by_fuzzy_name(self, ledger):
        executor = JobExecutor(ledger)
        await ledger.create_job(TENANT, "Roof Repair")
        await ledger.create_job(TENANT, "Front Porch")

        result = await executor.handle(_ctx(), _intent("job.set_active", name="front porch"))

        assert result.reply.text == "✅ Active job set to #2 Front Porch."
        active = await executor.handle(_ctx(), _intent("job.active"))
        assert active.reply.text == "Active job: #2 Front Porch"

    @pytest.mark.asyncio
    async def test_set_active_by_number(self, ledger):
        await ledger.create_job(TENANT, "Roof Repair")
        result = await JobExecutor(ledger).handle(_ctx(), _intent("job.set_active", name="#1"))
        assert "#1 Roof Repair" in result.reply.text

    @pytest.mark.asyncio
    async def test_unknown_job(self, ledger):
        await ledger.create_job(TENANT, "Roof Repair")
        with pytest.raises(ValidationException) as exc_info:
            await JobExecutor(ledger).handle(_ctx(), _intent("job.set_active", name="Basement"))
        assert exc_info.value.error_code == ErrorCode.UNKNOWN_REFERENCE

    @pytest.mark.asyncio
    async def test_move_last_log_needs_a_log(self, ledger):
        await ledger.create_job(TENANT, "Front Porch")
        with pytest.raises(ValidationException):
            await JobExecutor(ledger).handle(_ctx(), _intent("job.move_last_log", name="Front Porch"))

    @pytest.mark.asyncio
    async def test_move_last_log_confirm(self, ledger):
        executor = JobExecutor(ledger)
        await ledger.create_job(TENANT, "Roof Repair")
        await ledger.create_job(TENANT, "Front Porch")
        entry = await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))

        drafted = await executor.handle(_ctx(), _intent("job.move_last_log", name="Front Porch"))

        assert drafted.pending.kind == PendingKind.MOVE_LAST_LOG.value
        assert drafted.reply.text.endswith("to #2 Front Porch?")
        assert drafted.reply.options == ["yes", "edit", "cancel"]
        assert ledger.time_entries[0]["job_no"] is None

        confirmed = await executor.confirm(_ctx("yes"), _as_pending(executor, drafted))

        assert confirmed.reply.text == "✅ Moved your last log to #2 Front Porch."
        assert confirmed.clear_pending is True
        assert ledger.time_entries[0]["id"] == entry["id"]
        assert ledger.time_entries[0]["job_no"] == 2

    @pytest.mark.asyncio
    async def test_move_last_log_edit_picks_new_job(self, ledger):
        executor = JobExecutor(ledger)
        await ledger.create_job(TENANT, "Roof Repair")
        await ledger.create_job(TENANT, "Front Porch")
        await ledger.add_time_entry(_entry("clock_in", NOW.replace(hour=8)))
        drafted = await executor.handle(_ctx(), _intent("job.move_last_log", name="Front Porch"))

        edited = await executor.apply_edit(_ctx("Roof Repair"), _as_pending(executor, drafted))

        assert edited.pending.payload["job_no"] == 1
        assert edited.reply.text.endswith("to #1 Roof Repair?")


# ============================================================================
# Tasks
# ============================================================================


class TestTaskExecutor:
    @pytest.mark.asyncio
    async def test_create_list_done(self, ledger):
        executor = TaskExecutor(ledger)

        created = await executor.handle(_ctx(), _intent("task.create", title="buy nails"))
        await executor.handle(_ctx(), _intent("task.create", title="call inspector"))
        assert created.reply.text == "✅ Task #1 added: buy nails"

        listed = await executor.handle(_ctx(), _intent("task.list"))
        assert listed.reply.text == "📝 Your tasks:\n#1 buy nails\n#2 call inspector"

        done = await executor.handle(_ctx(), _intent("task.done", number=1))
        assert done.reply.text == "✅ Done: #1 buy nails"

        listed = await executor.handle(_ctx(), _intent("task.list"))
        assert listed.reply.text == "📝 Your tasks:\n#2 call inspector"

    @pytest.mark.asyncio
    async def test_empty_list(self, ledger):
        result = await TaskExecutor(ledger).handle(_ctx(), _intent("task.list"))
        assert result.reply.text == "🎉 No open tasks."

    @pytest.mark.asyncio
    async def test_done_unknown_task(self, ledger):
        with pytest.raises(ValidationException) as exc_info:
            await TaskExecutor(ledger).handle(_ctx(), _intent("task.done", number=9))
        assert exc_info.value.user_message == "⚠️ No open task #9."

    def test_tasks_own_no_pending_kinds(self, ledger):
        assert not TaskExecutor(ledger).owns(PendingKind.CONFIRM_EXPENSE)
