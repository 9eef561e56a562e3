"""Workflow executor contract.

An executor owns one intent family: it performs the business mutation and
opens or clears its own pending-action kinds by returning them in an
`ExecutorResult`. It never decides whether text is a control token; the
router does that and calls the matching method.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

from src.exceptions import ContractException, ErrorCode
from src.fsm.models import (
    ExecutorResult,
    IntentResult,
    NormalizedMessage,
    PendingAction,
    PendingActionSpec,
    Reply,
    kind_value,
)

CONFIRM_OPTIONS = ["yes", "edit", "cancel"]


@dataclass
class ExecutionContext:
    """Who sent what, passed to every executor call."""

    tenant_id: str
    user_id: str
    from_number: str
    message: NormalizedMessage

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def provider_message_id(self) -> str:
        return self.message.provider_message_id


class WorkflowExecutor:
    """Base class; subclasses override the operations their kinds support."""

    family: str = ""
    kinds: Tuple[str, ...] = ()
    auto_advance_kinds: Tuple[str, ...] = ()
    change_job_kinds: Tuple[str, ...] = ()

    def __init__(self, ledger):
        self.ledger = ledger

    def owns(self, kind) -> bool:
        return kind_value(kind) in self.kinds

    def supports_change_job(self, kind) -> bool:
        return kind_value(kind) in self.change_job_kinds

    def supports_auto_advance(self, kind) -> bool:
        return kind_value(kind) in self.auto_advance_kinds

    # === Operations ===

    async def handle(
        self,
        ctx: ExecutionContext,
        intent: IntentResult,
        pending: Optional[PendingAction] = None,
    ) -> ExecutorResult:
        """Run a freshly classified command (or a same-family correction)."""
        raise NotImplementedError

    async def confirm(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        raise self._unsupported("confirm", pending)

    async def apply_edit(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        raise self._unsupported("apply_edit", pending)

    async def accept_value(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        raise self._unsupported("accept_value", pending)

    async def change_job(self, ctx: ExecutionContext, pending: PendingAction) -> ExecutorResult:
        raise self._unsupported("change_job", pending)

    def prompt(self, pending: PendingAction) -> Reply:
        """The question this pending action is waiting on."""
        raise self._unsupported("prompt", pending)

    def describe(self, pending: PendingAction) -> str:
        """Short label used in nudges, e.g. "expense ($45.00, Home Depot)"."""
        return kind_value(pending.kind).replace("_", " ")

    def edit_prompt(self, pending: PendingAction) -> Reply:
        return Reply(text="✏️ Okay, send the corrected details.", options=["cancel"])

    # === Helpers ===

    def open_pending(self, kind, payload, ttl_minutes: Optional[int] = None) -> PendingActionSpec:
        if not self.owns(kind):
            raise ContractException(
                f"{type(self).__name__} cannot open pending kind {kind_value(kind)}",
                error_code=ErrorCode.PENDING_KIND_NOT_OWNED,
            )
        return PendingActionSpec(kind=kind, payload=payload, ttl_minutes=ttl_minutes)

    def _unsupported(self, operation: str, pending: Optional[PendingAction]) -> ContractException:
        kind = kind_value(pending.kind) if pending else None
        return ContractException(
            f"{type(self).__name__}.{operation} not supported for kind {kind}",
            error_code=ErrorCode.INVALID_TRANSITION,
        )
