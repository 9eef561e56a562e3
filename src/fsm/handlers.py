"""Expiry cleanup for the durable state stores.

Every read already ignores expired rows; this task only reclaims space.
"""

from typing import Dict

from src.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.handlers")


async def run_cleanup_task(pending_store, guard, lock) -> Dict[str, int]:
    """Delete expired pending actions, idempotency records and lock leases.

    Args:
        pending_store: Pending-action store
        guard: IdempotencyGuard
        lock: UserLock

    Returns:
        Number of rows removed per store
    """
    stats = {
        "pending_actions": await pending_store.purge_expired(),
        "idempotency_records": await guard.purge_expired(),
        "user_locks": await lock.purge_expired(),
    }
    logger.debug("Cleanup task completed", **stats)
    return stats
