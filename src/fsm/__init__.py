"""Conversation state machine: per-user lock, idempotency guard, pending
actions, router and engine.

Only the leaf modules are re-exported here. Import the engine from
`src.fsm.core` and the router from `src.fsm.routing`.
"""

from src.fsm.idempotency import IdempotencyGuard
from src.fsm.lock import UserLock, user_lock_key
from src.fsm.models import (
    ControlToken,
    PendingAction,
    PendingKind,
    PendingStatus,
    Reply,
    RouterState,
    TransitionRule,
)

__all__ = [
    "ControlToken",
    "IdempotencyGuard",
    "PendingAction",
    "PendingKind",
    "PendingStatus",
    "Reply",
    "RouterState",
    "TransitionRule",
    "UserLock",
    "user_lock_key",
]
