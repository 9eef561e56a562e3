"""Pydantic models for the conversation state machine.

This module defines the records kept in the durable stores (pending actions,
idempotency records, lock leases), the ephemeral message models that flow
through the pipeline, and the closed set of control tokens.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RouterState(str, Enum):
    """Conversation state for one user.

    - IDLE: no live pending action (parked ones may exist)
    - AWAITING_CONTROL: at least one live pending action awaits a reply
    """
    IDLE = "idle"
    AWAITING_CONTROL = "awaiting_control"


class PendingKind(str, Enum):
    """Kinds of open multi-turn workflows."""
    CONFIRM_EXPENSE = "confirm_expense"
    PICK_JOB_FOR_EXPENSE = "pick_job_for_expense"
    CONFIRM_REVENUE = "confirm_revenue"
    PICK_JOB_FOR_REVENUE = "pick_job_for_revenue"
    MOVE_LAST_LOG = "move_last_log"
    TIMECLOCK_NEED_CLOCK_OUT_TIME = "timeclock_need_clock_out_time"


class PendingStatus(str, Enum):
    LIVE = "live"
    PARKED = "parked"


# Intent family that owns each pending kind
KIND_FAMILY: Dict[str, str] = {
    PendingKind.CONFIRM_EXPENSE.value: "expense",
    PendingKind.PICK_JOB_FOR_EXPENSE.value: "expense",
    PendingKind.CONFIRM_REVENUE.value: "revenue",
    PendingKind.PICK_JOB_FOR_REVENUE.value: "revenue",
    PendingKind.MOVE_LAST_LOG.value: "job",
    PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME.value: "timeclock",
}

# Kinds whose next free-text message is the awaited value itself
VALUE_AWAITING_KINDS = frozenset({
    PendingKind.PICK_JOB_FOR_EXPENSE.value,
    PendingKind.PICK_JOB_FOR_REVENUE.value,
    PendingKind.TIMECLOCK_NEED_CLOCK_OUT_TIME.value,
})


# ============================================================================
# Control tokens
# ============================================================================


class ControlToken(str, Enum):
    """Closed set of exact-match replies with state-transition meaning."""
    YES = "yes"
    EDIT = "edit"
    CANCEL = "cancel"
    RESUME = "resume"
    SKIP = "skip"
    CHANGE_JOB = "change_job"


# Exact surfaces only. "yeah", "ok", "sure" are deliberately absent.
CONTROL_SURFACES: Dict[str, ControlToken] = {
    "yes": ControlToken.YES,
    "edit": ControlToken.EDIT,
    "cancel": ControlToken.CANCEL,
    "stop": ControlToken.CANCEL,
    "no": ControlToken.CANCEL,
    "resume": ControlToken.RESUME,
    "show": ControlToken.RESUME,
    "skip": ControlToken.SKIP,
    "change job": ControlToken.CHANGE_JOB,
    "change_job": ControlToken.CHANGE_JOB,
}

HARD_CANCEL_SURFACES = frozenset({"cancel", "stop", "no"})


def match_control_token(text: Optional[str]) -> Optional[ControlToken]:
    """Return the control token for `text` by trimmed, lowercased equality."""
    if not text:
        return None
    return CONTROL_SURFACES.get(text.strip().lower())


def is_hard_cancel(text: Optional[str]) -> bool:
    return bool(text) and text.strip().lower() in HARD_CANCEL_SURFACES


# ============================================================================
# Durable records
# ============================================================================


class PendingAction(BaseModel):
    """Open multi-turn workflow, keyed by (tenant_id, user_id, kind).

    Attributes:
        payload: Opaque to everything except the executor that created it
        status: live, or parked by "skip" until "resume"
        editing: Next free-text message replaces the payload
        auto_advance_expected_id: Outbound provider id a reply must quote to
            count as an implicit "yes"
        source_message_id: Provider id of the message that opened the workflow
    """
    tenant_id: str
    user_id: str
    kind: PendingKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: PendingStatus = PendingStatus.LIVE
    editing: bool = False
    auto_advance_expected_id: Optional[str] = None
    source_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    class Config:
        use_enum_values = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def family(self) -> str:
        return KIND_FAMILY[kind_value(self.kind)]


class PendingActionSpec(BaseModel):
    """Request from an executor to open (or replace) a pending action."""
    kind: PendingKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    ttl_minutes: Optional[int] = None

    class Config:
        use_enum_values = True


class LockLease(BaseModel):
    """Lease on the per-user lock."""
    key: str
    token: str
    acquired_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    bypassed: bool = False  # fail-open: proceeded without holding the lock


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Reply(BaseModel):
    """Plain-text reply with optional quick-reply options."""
    text: str
    options: List[str] = Field(default_factory=list)

    def render(self) -> str:
        if not self.options:
            return self.text
        return f"{self.text}\n\nReply: {' · '.join(self.options)}"


class IdempotencyRecord(BaseModel):
    """One processed (or in-flight) provider message id."""
    provider_message_id: str
    user_id: str
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    reply: Optional[Reply] = None
    result_hash: Optional[str] = None
    first_seen_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    class Config:
        use_enum_values = True


class IdempotencyDecision(BaseModel):
    process: bool
    cached_reply: Optional[Reply] = None
    in_flight: bool = False


# ============================================================================
# Ephemeral message models
# ============================================================================


class MediaRef(BaseModel):
    url: str
    content_type: str = ""

    @property
    def is_audio(self) -> bool:
        return self.content_type.startswith("audio/")

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


class InboundMessage(BaseModel):
    """Transport-neutral inbound envelope."""
    provider_message_id: str
    user_id: str
    tenant_id: str
    from_number: str
    body: str = ""
    media: List[MediaRef] = Field(default_factory=list)
    button_payload: Optional[str] = None
    button_text: Optional[str] = None
    list_id: Optional[str] = None
    list_title: Optional[str] = None
    replied_to_message_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class SelectionKind(str, Enum):
    """How a list-selection id refers to its item."""
    ROW_INDEX = "row_index"        # position in a rendered list, not durable
    BUSINESS_KEY = "business_key"  # durable key such as a job number
    OPAQUE = "opaque"


class ListSelection(BaseModel):
    kind: SelectionKind
    value: Optional[int] = None
    raw_id: str = ""
    label: str = ""

    class Config:
        use_enum_values = True


class MessageSource(str, Enum):
    TEXT = "text"
    BUTTON = "button"
    LIST = "list"
    AUDIO = "audio"
    IMAGE = "image"


class NormalizedMessage(BaseModel):
    """Canonical text plus ids, produced by the normalizer."""
    text: str
    provider_message_id: str
    media_refs: List[MediaRef] = Field(default_factory=list)
    source: MessageSource = MessageSource.TEXT
    selection: Optional[ListSelection] = None
    replied_to_message_id: Optional[str] = None
    media_failed: bool = False

    class Config:
        use_enum_values = True


# ============================================================================
# Classification
# ============================================================================


class IntentKind(str, Enum):
    """Tag of the classifier's result variant."""
    HARD_CANCEL = "hard_cancel"
    CONTROL = "control"
    COMMAND = "command"
    NO_MATCH = "no_match"


class ClassifierStage(str, Enum):
    HARD_CONTROL = "hard_control"
    CONTROL_TOKEN = "control_token"
    DOMAIN_CUE = "domain_cue"
    FUZZY = "fuzzy"
    FALLBACK = "fallback"
    NONE = "none"


class IntentResult(BaseModel):
    """Tagged classifier output.

    Attributes:
        kind: Variant tag
        intent: Dotted intent name for commands, e.g. "expense.add"
        confidence: 0.0 to 1.0
        args: Slots extracted by the stage that claimed the message
        stage: Which cascade stage produced this result
        token: Control token for CONTROL results
    """
    kind: IntentKind
    intent: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    args: Dict[str, Any] = Field(default_factory=dict)
    stage: ClassifierStage = ClassifierStage.NONE
    token: Optional[ControlToken] = None

    class Config:
        use_enum_values = True

    @property
    def family(self) -> Optional[str]:
        if not self.intent:
            return None
        return self.intent.split(".", 1)[0]

    @classmethod
    def no_match(cls) -> "IntentResult":
        return cls(kind=IntentKind.NO_MATCH, stage=ClassifierStage.NONE)


# ============================================================================
# Executors and transitions
# ============================================================================


class ExecutorResult(BaseModel):
    """What an executor hands back to the engine.

    Attributes:
        reply: Message for the user
        side_effect_applied: A business mutation was committed
        pending: Open or replace a pending action of the executor's own kind
        clear_pending: Delete the pending action being handled
        auto_advance: Arm auto-advance after an accepted edit
    """
    reply: Reply
    side_effect_applied: bool = False
    pending: Optional[PendingActionSpec] = None
    clear_pending: bool = False
    auto_advance: bool = False


class TransitionRule(BaseModel):
    """A valid router state transition.

    Attributes:
        from_state: Source state (or None for any state)
        to_state: Target state
        trigger: What triggers this transition
        description: Human-readable description of the transition
    """
    from_state: Optional[RouterState] = None
    to_state: RouterState
    trigger: str
    description: str

    class Config:
        use_enum_values = True


def expiry_after(minutes: int = 0, hours: int = 0, seconds: float = 0, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(minutes=minutes, hours=hours, seconds=seconds)


def kind_value(kind) -> str:
    """Plain string for a pending kind given as enum member or value."""
    return kind.value if isinstance(kind, Enum) else str(kind)
