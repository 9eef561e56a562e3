"""Conversation engine with transition validation.

The engine applies router decisions and executor results to the pending-action
store. It is the only place that writes pending actions, and it checks every
resulting state change against TRANSITION_RULES.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from src.actions.base import ExecutionContext, WorkflowExecutor
from src.config import settings
from src.exceptions import ContractException, ErrorCode, ValidationException
from src.fsm.models import (
    KIND_FAMILY,
    ControlToken,
    ExecutorResult,
    IntentKind,
    IntentResult,
    MessageSource,
    PendingAction,
    PendingStatus,
    Reply,
    RouterState,
    TransitionRule,
    expiry_after,
    is_hard_cancel,
    kind_value,
    match_control_token,
    utcnow,
)
from src.fsm.pending import live_actions
from src.fsm.routing import PendingActionRouter, RouteAction, RouteDecision
from src.services import reply as copy
from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.core")


# ============================================================================
# Transition Rules Definition
# ============================================================================

IDLE = RouterState.IDLE
AWAITING = RouterState.AWAITING_CONTROL

TRANSITION_RULES: List[TransitionRule] = [
    # From IDLE
    TransitionRule(from_state=IDLE, to_state=IDLE, trigger="command", description="Command completed in one message"),
    TransitionRule(from_state=IDLE, to_state=AWAITING, trigger="command", description="Executor needs another message"),
    TransitionRule(from_state=IDLE, to_state=IDLE, trigger="no_match", description="Capability summary, nothing opened"),
    TransitionRule(from_state=IDLE, to_state=IDLE, trigger="validation_error", description="Command rejected with a corrective prompt"),
    TransitionRule(from_state=IDLE, to_state=AWAITING, trigger="unpark", description="resume brings back a parked action"),
    # From AWAITING_CONTROL
    TransitionRule(from_state=AWAITING, to_state=IDLE, trigger="confirm", description="yes applied the last live action"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="confirm", description="yes applied one of several live actions"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="validation_error", description="Corrective prompt, pending kept"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="edit_start", description="Next free text replaces the payload"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="edit_apply", description="Payload replaced, awaiting yes"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="resume", description="Current prompt re-emitted"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="restate", description="Non-token reply, prompt restated"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="nudge", description="Unrelated command while pending"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="change_job", description="Job picker opened"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="forward", description="Same-family message replaced the draft"),
    TransitionRule(from_state=AWAITING, to_state=IDLE, trigger="forward", description="Same-family message completed the workflow"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="value", description="Awaited value accepted, workflow continues"),
    TransitionRule(from_state=AWAITING, to_state=IDLE, trigger="value", description="Awaited value completed the workflow"),
    TransitionRule(from_state=AWAITING, to_state=IDLE, trigger="park", description="skip parked the last live action"),
    TransitionRule(from_state=AWAITING, to_state=AWAITING, trigger="park", description="skip parked one of several live actions"),
    # Global transitions (from any state)
    TransitionRule(from_state=None, to_state=IDLE, trigger="hard_cancel", description="cancel/stop/no discards every pending action"),
]


def validate_transition(
    from_state: RouterState, to_state: RouterState, trigger: str
) -> Tuple[bool, Optional[str]]:
    """Check a state change against TRANSITION_RULES.

    Returns:
        Tuple of (is_valid, error_message)
    """
    from_state = RouterState(from_state)
    to_state = RouterState(to_state)
    for rule in TRANSITION_RULES:
        if (
            (rule.from_state is None or rule.from_state == from_state.value)
            and rule.to_state == to_state.value
            and rule.trigger == trigger
        ):
            return True, None
    return False, f"Invalid transition: {from_state.value} -> {to_state.value} (trigger: {trigger})"


def state_of(actions: Iterable[PendingAction]) -> RouterState:
    return RouterState.AWAITING_CONTROL if live_actions(list(actions)) else RouterState.IDLE


@dataclass
class EngineOutcome:
    """Result of handling one normalized message.

    Attributes:
        reply: What to send back
        side_effect_applied: A business mutation was committed
        auto_advance_kind: Pending kind whose outbound prompt id should be
            recorded for auto-advance
    """

    reply: Reply
    side_effect_applied: bool = False
    auto_advance_kind: Optional[str] = None


# ============================================================================
# ConversationEngine
# ============================================================================


class ConversationEngine:
    """Route, execute and persist one message's effect on a user's workflows."""

    def __init__(
        self,
        pending_store,
        cascade,
        executors: Iterable[WorkflowExecutor],
        router: Optional[PendingActionRouter] = None,
    ):
        self.pending_store = pending_store
        self.cascade = cascade
        self.router = router or PendingActionRouter(cascade)
        self.executors: Dict[str, WorkflowExecutor] = {e.family: e for e in executors}

    # === Lookup ===

    def executor_for_kind(self, kind) -> WorkflowExecutor:
        family = KIND_FAMILY.get(kind_value(kind))
        executor = self.executors.get(family)
        if executor is None or not executor.owns(kind):
            raise ContractException(
                f"No executor owns pending kind {kind_value(kind)}",
                error_code=ErrorCode.EXECUTOR_NOT_FOUND,
            )
        return executor

    def executor_for_intent(self, intent: IntentResult) -> WorkflowExecutor:
        executor = self.executors.get(intent.family)
        if executor is None:
            raise ContractException(
                f"No executor for intent {intent.intent}",
                error_code=ErrorCode.EXECUTOR_NOT_FOUND,
            )
        return executor

    # === Entry point ===

    async def handle(self, ctx: ExecutionContext) -> EngineOutcome:
        """Handle one normalized message for (tenant, user).

        Raises:
            TransientInfraException: A store or collaborator was unavailable
            ContractException: Programming error; nothing should be retried
        """
        message = ctx.message

        if message.media_failed and not message.text:
            if message.source == MessageSource.AUDIO.value:
                return EngineOutcome(reply=copy.voice_note_failed())
            return EngineOutcome(reply=copy.media_unreadable())

        if is_hard_cancel(message.text):
            return await self._cancel_all(ctx)

        actions = await self.pending_store.list_for_user(ctx.tenant_id, ctx.user_id)
        from_state = state_of(actions)

        if actions:
            decision = await self.router.route(message, actions)
        else:
            decision = RouteDecision(action=RouteAction.RECLASSIFY)

        try:
            outcome, trigger = await self._dispatch(ctx, decision)
        except ValidationException as e:
            outcome = await self._on_validation_error(ctx, decision, e)
            trigger = "validation_error"

        after = await self.pending_store.list_for_user(ctx.tenant_id, ctx.user_id)
        self._log_transition(ctx, from_state, state_of(after), trigger, decision)
        return outcome

    async def arm_auto_advance(self, tenant_id: str, user_id: str, kind: str, outbound_id: str) -> None:
        """Record the outbound prompt id a reply must quote to auto-confirm."""
        pending = await self.pending_store.get(tenant_id, user_id, kind)
        if pending is None:
            return
        await self.pending_store.upsert(
            pending.model_copy(update={"auto_advance_expected_id": outbound_id})
        )
        logger.info("Auto-advance armed", user_id=user_id, kind=kind, expected_id=outbound_id)

    # === Hard cancel ===

    async def _cancel_all(self, ctx: ExecutionContext) -> EngineOutcome:
        actions = await self.pending_store.list_for_user(ctx.tenant_id, ctx.user_id)
        from_state = state_of(actions)
        count = await self.pending_store.delete_all(ctx.tenant_id, ctx.user_id)
        self._log_transition(ctx, from_state, RouterState.IDLE, "hard_cancel", None, cleared=count)
        if count == 0:
            return EngineOutcome(reply=copy.nothing_to_cancel())
        return EngineOutcome(reply=copy.cancelled(count))

    # === Dispatch ===

    async def _dispatch(self, ctx: ExecutionContext, decision: RouteDecision) -> Tuple[EngineOutcome, str]:
        action = decision.action
        if action == RouteAction.RECLASSIFY:
            return await self._classify_and_execute(ctx)

        pending = decision.pending
        if decision.consume_auto_advance:
            pending = pending.model_copy(update={"auto_advance_expected_id": None})
            await self.pending_store.upsert(pending)

        executor = self.executor_for_kind(pending.kind)
        trigger = action.value

        if action == RouteAction.CONFIRM:
            if decision.auto_advanced:
                logger.info("Auto-advance confirmed", user_id=ctx.user_id, kind=kind_value(pending.kind))
            result = await executor.confirm(ctx, pending)
            return await self._apply(ctx, executor, result, pending), trigger

        if action == RouteAction.EDIT_START:
            await self.pending_store.upsert(pending.model_copy(update={"editing": True}))
            return EngineOutcome(reply=executor.edit_prompt(pending)), trigger

        if action == RouteAction.EDIT_APPLY:
            result = await executor.apply_edit(ctx, pending)
            return await self._apply(ctx, executor, result, pending), trigger

        if action == RouteAction.VALUE:
            result = await executor.accept_value(ctx, pending)
            return await self._apply(ctx, executor, result, pending), trigger

        if action == RouteAction.CHANGE_JOB:
            if not executor.supports_change_job(pending.kind):
                return EngineOutcome(reply=executor.prompt(pending)), "restate"
            result = await executor.change_job(ctx, pending)
            return await self._apply(ctx, executor, result, pending), trigger

        if action == RouteAction.FORWARD:
            result = await executor.handle(ctx, decision.intent, pending)
            return await self._apply(ctx, executor, result, pending), trigger

        if action == RouteAction.PARK:
            await self.pending_store.upsert(pending.model_copy(update={"status": PendingStatus.PARKED}))
            return EngineOutcome(reply=copy.parked(executor.describe(pending))), trigger

        if action == RouteAction.UNPARK:
            pending = pending.model_copy(update={"status": PendingStatus.LIVE, "created_at": utcnow()})
            await self.pending_store.upsert(pending)
            return EngineOutcome(reply=executor.prompt(pending)), trigger

        if action == RouteAction.NUDGE:
            return EngineOutcome(reply=copy.nudge(executor.describe(pending))), trigger

        # RESUME and RESTATE both re-emit the current prompt
        return EngineOutcome(reply=executor.prompt(pending)), trigger

    async def _classify_and_execute(self, ctx: ExecutionContext) -> Tuple[EngineOutcome, str]:
        token = match_control_token(ctx.text)
        if token == ControlToken.RESUME:
            return EngineOutcome(reply=copy.nothing_to_resume()), "no_match"
        if token is not None:
            return EngineOutcome(reply=copy.capability_summary()), "no_match"

        intent = await self.cascade.classify(ctx.text, has_live_pending=False)
        if intent.kind != IntentKind.COMMAND.value:
            return EngineOutcome(reply=copy.capability_summary()), "no_match"

        executor = self.executor_for_intent(intent)
        result = await executor.handle(ctx, intent)
        return await self._apply(ctx, executor, result, None), "command"

    # === Applying results ===

    async def _apply(
        self,
        ctx: ExecutionContext,
        executor: WorkflowExecutor,
        result: ExecutorResult,
        current: Optional[PendingAction],
    ) -> EngineOutcome:
        if result.clear_pending and current is not None:
            await self.pending_store.delete(ctx.tenant_id, ctx.user_id, current.kind)

        auto_advance_kind = None
        spec = result.pending
        if spec is not None:
            if not executor.owns(spec.kind):
                raise ContractException(
                    f"{type(executor).__name__} returned pending kind {kind_value(spec.kind)} it does not own",
                    error_code=ErrorCode.PENDING_KIND_NOT_OWNED,
                )
            now = utcnow()
            await self.pending_store.upsert(PendingAction(
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                kind=spec.kind,
                payload=spec.payload,
                source_message_id=ctx.provider_message_id,
                created_at=now,
                expires_at=expiry_after(minutes=spec.ttl_minutes or settings.pending_ttl_minutes, now=now),
            ))
            if result.auto_advance and settings.enable_auto_advance and executor.supports_auto_advance(spec.kind):
                auto_advance_kind = kind_value(spec.kind)

        return EngineOutcome(
            reply=result.reply,
            side_effect_applied=result.side_effect_applied,
            auto_advance_kind=auto_advance_kind,
        )

    async def _on_validation_error(
        self, ctx: ExecutionContext, decision: RouteDecision, error: ValidationException
    ) -> EngineOutcome:
        """Corrective prompt; a failed confirm re-opens the draft for editing."""
        pending = decision.pending
        logger.info(
            "Validation error",
            user_id=ctx.user_id,
            action=decision.action.value,
            field=error.field,
            reason=error.reason,
        )
        if pending is None:
            return EngineOutcome(reply=Reply(text=error.user_message))

        if decision.action == RouteAction.CONFIRM:
            executor = self.executor_for_kind(pending.kind)
            await self.pending_store.upsert(
                pending.model_copy(update={"editing": True, "auto_advance_expected_id": None})
            )
            hint = executor.edit_prompt(pending)
            return EngineOutcome(reply=Reply(text=f"{error.user_message}\n{hint.text}", options=hint.options))

        return EngineOutcome(reply=Reply(text=error.user_message, options=["cancel"]))

    def _log_transition(
        self,
        ctx: ExecutionContext,
        from_state: RouterState,
        to_state: RouterState,
        trigger: str,
        decision: Optional[RouteDecision],
        **extra,
    ) -> None:
        is_valid, error = validate_transition(from_state, to_state, trigger)
        kind = kind_value(decision.pending.kind) if decision and decision.pending else None
        logger.log_transition(
            user_id=ctx.user_id,
            from_state=RouterState(from_state).value,
            to_state=RouterState(to_state).value,
            trigger=trigger,
            success=is_valid,
            error=error,
            kind=kind,
            provider_message_id=ctx.provider_message_id,
            **extra,
        )
        if not is_valid:
            logger.error("Transition outside the rule table", trigger=trigger, error=error)
