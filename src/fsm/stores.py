"""Backend selection for the durable stores."""

from dataclasses import dataclass
from typing import Any, Optional

from src.actions.ledger import MemoryLedgerStore, SupabaseLedgerStore
from src.config import settings
from src.exceptions import ContractException, ErrorCode
from src.fsm.idempotency import MemoryIdempotencyStore, SupabaseIdempotencyStore
from src.fsm.lock import MemoryLockBackend, SupabaseLockBackend
from src.fsm.pending import MemoryPendingActionStore, SupabasePendingActionStore
from src.utils.logger import log


@dataclass
class StateBackends:
    pending: Any
    idempotency: Any
    lock: Any
    ledger: Any


def build_backends(backend: Optional[str] = None) -> StateBackends:
    """Build all stores for `backend` ("supabase" or "memory")."""
    backend = backend or settings.state_backend
    if backend == "memory":
        log.warning("⚠️ Using in-memory state backend; state is lost on restart")
        return StateBackends(
            pending=MemoryPendingActionStore(),
            idempotency=MemoryIdempotencyStore(),
            lock=MemoryLockBackend(),
            ledger=MemoryLedgerStore(),
        )
    if backend == "supabase":
        return StateBackends(
            pending=SupabasePendingActionStore(),
            idempotency=SupabaseIdempotencyStore(),
            lock=SupabaseLockBackend(),
            ledger=SupabaseLedgerStore(),
        )
    raise ContractException(
        f"Unknown state backend: {backend}",
        error_code=ErrorCode.CONFIGURATION_ERROR,
    )
