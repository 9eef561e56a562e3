"""Pending-action router.

Decides what an inbound message means for the user's open workflows:
continue the most recent live pending action, park or un-park one, or hand
the message back for fresh classification. The router never mutates state;
it returns a `RouteDecision` the engine applies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from src.config import settings
from src.fsm.models import (
    VALUE_AWAITING_KINDS,
    ControlToken,
    IntentKind,
    IntentResult,
    NormalizedMessage,
    PendingAction,
    kind_value,
    match_control_token,
)
from src.fsm.pending import live_actions, parked_actions
from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.routing")


class RouteAction(str, Enum):
    CONFIRM = "confirm"
    EDIT_START = "edit_start"
    EDIT_APPLY = "edit_apply"
    VALUE = "value"
    CHANGE_JOB = "change_job"
    RESUME = "resume"
    PARK = "park"
    UNPARK = "unpark"
    RESTATE = "restate"
    NUDGE = "nudge"
    FORWARD = "forward"
    RECLASSIFY = "reclassify"


@dataclass
class RouteDecision:
    """What to do with a message, and which pending action it applies to.

    Attributes:
        action: Routing outcome
        pending: The pending action the outcome applies to (None for RECLASSIFY)
        intent: Classification, when the router had to classify the text
        auto_advanced: CONFIRM came from a correlated reply after an edit
        consume_auto_advance: The pending action's auto-advance flag must be
            cleared whatever the outcome
    """

    action: RouteAction
    pending: Optional[PendingAction] = None
    intent: Optional[IntentResult] = None
    auto_advanced: bool = False
    consume_auto_advance: bool = False


def is_value_kind(kind) -> bool:
    return kind_value(kind) in VALUE_AWAITING_KINDS


class PendingActionRouter:
    """Route a message against the user's unexpired pending actions."""

    def __init__(self, classifier):
        self.classifier = classifier

    async def route(self, message: NormalizedMessage, actions: List[PendingAction]) -> RouteDecision:
        """Route `message`.

        Args:
            message: Normalized inbound message
            actions: The user's unexpired pending actions, newest first

        Returns:
            RouteDecision for the engine to apply
        """
        live = live_actions(actions)
        token = match_control_token(message.text)

        if not live:
            parked = parked_actions(actions)
            if token == ControlToken.RESUME and parked:
                return self._decide(RouteAction.UNPARK, parked[0])
            return RouteDecision(action=RouteAction.RECLASSIFY)

        # Most recent live action wins; tokens are scoped to it alone
        current = live[0]
        consume = current.auto_advance_expected_id is not None

        if token is None and consume and self._auto_advance_matches(message, current):
            return self._decide(
                RouteAction.CONFIRM, current, auto_advanced=True, consume=True
            )

        if token is not None:
            return self._decide(self._for_token(token, current), current, consume=consume)

        value_kind = is_value_kind(current.kind)
        if value_kind and message.selection is not None:
            return self._decide(RouteAction.VALUE, current, consume=consume)

        intent = await self.classifier.classify(
            message.text, has_live_pending=True, allow_fallback=False
        )
        is_command = intent.kind == IntentKind.COMMAND.value
        same_family = is_command and intent.family == current.family

        if is_command and not same_family:
            action = RouteAction.NUDGE
        elif current.editing:
            action = RouteAction.EDIT_APPLY
        elif same_family:
            action = RouteAction.FORWARD
        elif value_kind:
            action = RouteAction.VALUE
        else:
            # Near-misses like "yeah" or "ok" never confirm
            action = RouteAction.RESTATE

        return self._decide(action, current, intent=intent, consume=consume)

    @staticmethod
    def _for_token(token: ControlToken, current: PendingAction) -> RouteAction:
        value_kind = is_value_kind(current.kind)
        if token == ControlToken.YES:
            return RouteAction.RESTATE if value_kind else RouteAction.CONFIRM
        if token == ControlToken.EDIT:
            return RouteAction.RESTATE if value_kind else RouteAction.EDIT_START
        if token == ControlToken.RESUME:
            return RouteAction.RESUME
        if token == ControlToken.SKIP:
            return RouteAction.PARK
        if token == ControlToken.CHANGE_JOB:
            return RouteAction.CHANGE_JOB
        # CANCEL is handled globally before routing
        return RouteAction.RESTATE

    @staticmethod
    def _auto_advance_matches(message: NormalizedMessage, current: PendingAction) -> bool:
        if not settings.enable_auto_advance:
            return False
        matched = (
            message.replied_to_message_id is not None
            and message.replied_to_message_id == current.auto_advance_expected_id
        )
        logger.info(
            "Auto-advance check",
            kind=kind_value(current.kind),
            expected_id=current.auto_advance_expected_id,
            replied_to=message.replied_to_message_id,
            matched=matched,
        )
        return matched

    @staticmethod
    def _decide(
        action: RouteAction,
        pending: PendingAction,
        intent: Optional[IntentResult] = None,
        auto_advanced: bool = False,
        consume: bool = False,
    ) -> RouteDecision:
        logger.debug(
            "Routed message",
            action=action.value,
            kind=kind_value(pending.kind),
            intent=intent.intent if intent else None,
        )
        return RouteDecision(
            action=action,
            pending=pending,
            intent=intent,
            auto_advanced=auto_advanced,
            consume_auto_advance=consume,
        )
