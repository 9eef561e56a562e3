"""Message processing handler with the safety timer."""
import asyncio
from typing import Optional, Set

from src.config import settings
from src.fsm.models import InboundMessage
from src.handlers.message_pipeline import MessagePipeline, get_pipeline
from src.services import reply as copy
from src.utils.logger import log

# Strong references to pipeline tasks until they finish; the loop only keeps weak ones.
_background_tasks: Set[asyncio.Task] = set()


async def process_inbound_message(
    inbound: InboundMessage,
    pipeline: Optional[MessagePipeline] = None,
    timeout: Optional[float] = None,
) -> None:
    """Process an inbound message, guaranteeing the user hears back in time.

    The pipeline runs as its own task. If it has not finished within the
    safety timeout the user gets a "still working" reply right away, and the
    task keeps running to send the real reply when it is done.

    Args:
        inbound: Transport-neutral inbound envelope
        pipeline: Pipeline to use (defaults to the process-wide one)
        timeout: Safety timeout in seconds (defaults to settings)
    """
    pipeline = pipeline or get_pipeline()
    timeout = timeout if timeout is not None else settings.safety_timeout_seconds
    task = asyncio.create_task(pipeline.process(inbound))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning(
            f"⏱️ Message {inbound.provider_message_id} still running after {timeout}s; "
            "sending interim reply"
        )
        await pipeline.emitter.emit(inbound.from_number, copy.still_working())
        task.add_done_callback(_log_late_failure)
    except Exception as e:
        log.exception(f"❌ Error processing message {inbound.provider_message_id}: {e}")
        await pipeline.emitter.emit(inbound.from_number, copy.apology())


def _log_late_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        log.warning("⚠️ Late message task was cancelled")
        return
    error = task.exception()
    if error is not None:
        log.error(f"❌ Late message task failed: {error}")
