"""Unit tests for the pending-action router."""

from typing import Optional

import pytest

from src.config import settings
from src.fsm.models import (
    ListSelection,
    NormalizedMessage,
    PendingAction,
    PendingKind,
    PendingStatus,
    SelectionKind,
    expiry_after,
)
from src.fsm.routing import PendingActionRouter, RouteAction, is_value_kind

TENANT = "15550000000"
USER = "14165550100"


def _message(text: str, replied_to: Optional[str] = None, selection: Optional[ListSelection] = None) -> NormalizedMessage:
    return NormalizedMessage(
        text=text,
        provider_message_id="SMroute1",
        replied_to_message_id=replied_to,
        selection=selection,
    )


def _pending(kind: PendingKind, minutes_ago: int = 0, **updates) -> PendingAction:
    created = expiry_after(minutes=-minutes_ago)
    fields = dict(
        tenant_id=TENANT,
        user_id=USER,
        kind=kind,
        payload={"amount": "45.00", "vendor": "Home Depot", "source_message_id": "SMsrc"},
        created_at=created,
        expires_at=expiry_after(minutes=30, now=created),
    )
    fields.update(updates)
    return PendingAction(**fields)


@pytest.fixture
def router(cascade):
    return PendingActionRouter(cascade)


class TestValueKinds:
    def test_pickers_and_clock_out_time_await_values(self):
        assert is_value_kind(PendingKind.PICK_JOB_FOR_EXPENSE)
        assert is_value_kind("timeclock_need_clock_out_time")

    def test_confirmations_do_not(self):
        assert not is_value_kind(PendingKind.CONFIRM_EXPENSE)
        assert not is_value_kind(PendingKind.MOVE_LAST_LOG)


class TestIdleRouting:
    @pytest.mark.asyncio
    async def test_no_actions_reclassifies(self, router):
        decision = await router.route(_message("yes"), [])
        assert decision.action == RouteAction.RECLASSIFY
        assert decision.pending is None

    @pytest.mark.asyncio
    async def test_resume_unparks_most_recent_parked(self, router):
        older = _pending(PendingKind.CONFIRM_REVENUE, minutes_ago=5, status=PendingStatus.PARKED)
        newer = _pending(PendingKind.CONFIRM_EXPENSE, minutes_ago=1, status=PendingStatus.PARKED)

        decision = await router.route(_message("resume"), [newer, older])

        assert decision.action == RouteAction.UNPARK
        assert decision.pending.kind == PendingKind.CONFIRM_EXPENSE.value

    @pytest.mark.asyncio
    async def test_parked_actions_ignore_other_text(self, router):
        parked = _pending(PendingKind.CONFIRM_EXPENSE, status=PendingStatus.PARKED)
        decision = await router.route(_message("yes"), [parked])
        assert decision.action == RouteAction.RECLASSIFY


class TestControlTokens:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("yes", RouteAction.CONFIRM),
            ("YES ", RouteAction.CONFIRM),
            ("edit", RouteAction.EDIT_START),
            ("skip", RouteAction.PARK),
            ("change job", RouteAction.CHANGE_JOB),
            ("resume", RouteAction.RESUME),
            ("show", RouteAction.RESUME),
        ],
    )
    async def test_tokens_on_confirmation(self, router, text, expected):
        decision = await router.route(_message(text), [_pending(PendingKind.CONFIRM_EXPENSE)])
        assert decision.action == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["yes", "edit"])
    async def test_yes_and_edit_restate_a_value_prompt(self, router, text):
        decision = await router.route(_message(text), [_pending(PendingKind.PICK_JOB_FOR_EXPENSE)])
        assert decision.action == RouteAction.RESTATE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["yeah", "ok", "sure", "yes please"])
    async def test_near_misses_never_confirm(self, router, text):
        decision = await router.route(_message(text), [_pending(PendingKind.CONFIRM_EXPENSE)])
        assert decision.action == RouteAction.RESTATE

    @pytest.mark.asyncio
    async def test_most_recent_live_action_is_current(self, router):
        older = _pending(PendingKind.CONFIRM_REVENUE, minutes_ago=10)
        newer = _pending(PendingKind.MOVE_LAST_LOG, minutes_ago=1)

        decision = await router.route(_message("yes"), [newer, older])

        assert decision.action == RouteAction.CONFIRM
        assert decision.pending.kind == PendingKind.MOVE_LAST_LOG.value

    @pytest.mark.asyncio
    async def test_parked_actions_never_receive_tokens(self, router):
        parked = _pending(PendingKind.CONFIRM_REVENUE, minutes_ago=0, status=PendingStatus.PARKED)
        live = _pending(PendingKind.CONFIRM_EXPENSE, minutes_ago=3)

        decision = await router.route(_message("yes"), [parked, live])

        assert decision.pending.kind == PendingKind.CONFIRM_EXPENSE.value


class TestFreeText:
    @pytest.mark.asyncio
    async def test_other_family_command_nudges(self, router):
        decision = await router.route(_message("clock in"), [_pending(PendingKind.CONFIRM_EXPENSE)])
        assert decision.action == RouteAction.NUDGE
        assert decision.intent.intent == "timeclock.clock_in"

    @pytest.mark.asyncio
    async def test_same_family_command_forwards(self, router):
        decision = await router.route(
            _message("spent $50 on nails at Lowes"), [_pending(PendingKind.CONFIRM_EXPENSE)]
        )
        assert decision.action == RouteAction.FORWARD
        assert decision.intent.args["amount"] == "50"

    @pytest.mark.asyncio
    async def test_editing_applies_free_text(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, editing=True)
        decision = await router.route(_message("$50 at Lowes"), [pending])
        assert decision.action == RouteAction.EDIT_APPLY

    @pytest.mark.asyncio
    async def test_editing_still_nudges_on_other_family(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, editing=True)
        decision = await router.route(_message("clock in"), [pending])
        assert decision.action == RouteAction.NUDGE

    @pytest.mark.asyncio
    async def test_value_kind_takes_free_text_as_value(self, router):
        pending = _pending(PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME)
        decision = await router.route(_message("5pm"), [pending])
        assert decision.action == RouteAction.VALUE

    @pytest.mark.asyncio
    async def test_value_kind_takes_list_selection(self, router):
        selection = ListSelection(kind=SelectionKind.ROW_INDEX, value=2, raw_id="jobix_2", label="Front Porch")
        pending = _pending(PendingKind.PICK_JOB_FOR_EXPENSE)

        decision = await router.route(_message("Front Porch", selection=selection), [pending])

        assert decision.action == RouteAction.VALUE
        assert decision.intent is None

    @pytest.mark.asyncio
    async def test_router_never_uses_the_fallback(self, router, fallback):
        await router.route(_message("hmm not sure about that"), [_pending(PendingKind.CONFIRM_EXPENSE)])
        assert fallback.calls == []


class TestAutoAdvance:
    @pytest.mark.asyncio
    async def test_correlated_reply_confirms(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, auto_advance_expected_id="SMout7")

        decision = await router.route(_message("looks right", replied_to="SMout7"), [pending])

        assert decision.action == RouteAction.CONFIRM
        assert decision.auto_advanced is True
        assert decision.consume_auto_advance is True

    @pytest.mark.asyncio
    async def test_uncorrelated_reply_consumes_without_confirming(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, auto_advance_expected_id="SMout7")

        decision = await router.route(_message("looks right", replied_to="SMout3"), [pending])

        assert decision.action == RouteAction.RESTATE
        assert decision.auto_advanced is False
        assert decision.consume_auto_advance is True

    @pytest.mark.asyncio
    async def test_no_quoted_message_never_confirms(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, auto_advance_expected_id="SMout7")
        decision = await router.route(_message("looks right"), [pending])
        assert decision.action == RouteAction.RESTATE

    @pytest.mark.asyncio
    async def test_tokens_still_win_over_auto_advance(self, router):
        pending = _pending(PendingKind.CONFIRM_EXPENSE, auto_advance_expected_id="SMout7")
        decision = await router.route(_message("edit", replied_to="SMout7"), [pending])
        assert decision.action == RouteAction.EDIT_START
        assert decision.consume_auto_advance is True

    @pytest.mark.asyncio
    async def test_disabled_flag_turns_off_auto_advance(self, router, monkeypatch):
        monkeypatch.setattr(settings, "enable_auto_advance", False)
        pending = _pending(PendingKind.CONFIRM_EXPENSE, auto_advance_expected_id="SMout7")

        decision = await router.route(_message("looks right", replied_to="SMout7"), [pending])

        assert decision.action == RouteAction.RESTATE

