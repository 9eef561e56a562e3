"""Message processing pipeline.

One inbound message runs through discrete stages while its user's lock is
held:

    lock → idempotency claim → normalize → engine (router / cascade /
    executor) → record reply → emit reply → arm auto-advance → unlock

Stage failures come back as `Result`s so the reply for each failure family
is decided in one place.
"""

from dataclasses import dataclass
from typing import Optional

from src.actions.base import ExecutionContext
from src.actions.jobs import JobExecutor
from src.actions.tasks import TaskExecutor
from src.actions.timeclock import TimeclockExecutor
from src.actions.transactions import ExpenseExecutor, RevenueExecutor
from src.exceptions import (
    LedgerlineException,
    LockBusyException,
    TransientInfraException,
)
from src.fsm.core import ConversationEngine, EngineOutcome
from src.fsm.idempotency import IdempotencyGuard
from src.fsm.lock import UserLock, user_lock_key
from src.fsm.models import InboundMessage, Reply
from src.fsm.stores import StateBackends, build_backends
from src.services import reply as copy
from src.services.intent import IntentCascade, intent_cascade
from src.services.normalizer import MessageNormalizer, message_normalizer
from src.services.reply import ReplyEmitter, reply_emitter
from src.services.retry import retry_transient_once
from src.utils.logger import log
from src.utils.result import Result
from src.utils.structured_logger import set_trace_id


@dataclass
class PipelineOutcome:
    """What happened to one inbound message."""

    reply: Reply
    processed: bool
    side_effect_applied: bool = False
    outbound_id: Optional[str] = None


class MessagePipeline:
    """Pipeline for processing inbound WhatsApp messages."""

    def __init__(
        self,
        lock: UserLock,
        guard: IdempotencyGuard,
        normalizer: MessageNormalizer,
        engine: ConversationEngine,
        emitter: ReplyEmitter,
    ):
        self.lock = lock
        self.guard = guard
        self.normalizer = normalizer
        self.engine = engine
        self.emitter = emitter

    @classmethod
    def from_backends(
        cls,
        backends: StateBackends,
        cascade: Optional[IntentCascade] = None,
        normalizer: Optional[MessageNormalizer] = None,
        emitter: Optional[ReplyEmitter] = None,
        **lock_options,
    ) -> "MessagePipeline":
        """Wire the pipeline, engine and executors over one set of stores."""
        ledger = backends.ledger
        cascade = cascade or intent_cascade
        engine = ConversationEngine(
            pending_store=backends.pending,
            cascade=cascade,
            executors=[
                ExpenseExecutor(ledger),
                RevenueExecutor(ledger),
                TimeclockExecutor(ledger),
                JobExecutor(ledger),
                TaskExecutor(ledger),
            ],
        )
        return cls(
            lock=UserLock(backends.lock, **lock_options),
            guard=IdempotencyGuard(backends.idempotency),
            normalizer=normalizer or message_normalizer,
            engine=engine,
            emitter=emitter or reply_emitter,
        )

    async def process(self, inbound: InboundMessage) -> Result[PipelineOutcome]:
        """Process one inbound message and emit exactly one reply for it.

        Args:
            inbound: Transport-neutral inbound envelope

        Returns:
            Result with the PipelineOutcome, or the failure that decided the
            reply
        """
        trace_id = set_trace_id()
        log.info(
            f"📥 Message {inbound.provider_message_id} from {inbound.user_id} "
            f"(tenant {inbound.tenant_id}, trace {trace_id})"
        )
        key = user_lock_key(inbound.tenant_id, inbound.user_id)

        try:
            async with self.lock.hold(key):
                return await self._process_locked(inbound, trace_id)
        except LockBusyException as e:
            log.warning(f"🔒 Lock busy for {inbound.user_id}, message {inbound.provider_message_id}")
            await self._emit(inbound, copy.busy())
            return Result.from_exception(e)
        except TransientInfraException as e:
            log.error(f"❌ Lock store unavailable for {inbound.user_id}: {e}")
            await self._emit(inbound, copy.try_again())
            return Result.from_exception(e)

    async def _process_locked(self, inbound: InboundMessage, trace_id: str) -> Result[PipelineOutcome]:
        # Stage 1: idempotency claim
        try:
            decision = await retry_transient_once(
                lambda: self.guard.should_process(inbound.provider_message_id, inbound.user_id)
            )
        except TransientInfraException as e:
            log.error(f"❌ Idempotency store unavailable: {e}")
            await self._emit(inbound, copy.try_again())
            return Result.from_exception(e)

        if not decision.process:
            reply = decision.cached_reply or copy.still_working()
            outbound_id = await self._emit(inbound, reply)
            return Result.ok(PipelineOutcome(reply=reply, processed=False, outbound_id=outbound_id))

        # Stage 2: normalize and run the engine
        result = await self._execute(inbound)

        # Stage 3: record the outcome under the claimed id
        if result.success:
            outcome: EngineOutcome = result.data
            reply = outcome.reply
            await self._complete(inbound, reply)
        elif isinstance(result.exception, TransientInfraException):
            reply = copy.try_again()
            await self._release(inbound)
        else:
            log.error(
                f"❌ Message {inbound.provider_message_id} failed "
                f"[{result.error_code}] {result.error_message} (trace {trace_id})"
            )
            reply = copy.apology(trace_id)
            await self._complete(inbound, reply)

        # Stage 4: reply, then correlate auto-advance with the outbound id
        outbound_id = await self._emit(inbound, reply)
        if result.success and result.data.auto_advance_kind:
            if outbound_id:
                await self._arm_auto_advance(inbound, result.data.auto_advance_kind, outbound_id)
            else:
                log.warning("⚠️ No outbound id for edited prompt; auto-advance not armed")

        if not result.success:
            return result
        return Result.ok(PipelineOutcome(
            reply=reply,
            processed=True,
            side_effect_applied=result.data.side_effect_applied,
            outbound_id=outbound_id,
        ))

    async def _execute(self, inbound: InboundMessage) -> Result[EngineOutcome]:
        try:
            message = await self.normalizer.normalize(inbound)
            log.info(f"📝 Normalized ({message.source}): '{message.text[:80]}'")
            ctx = ExecutionContext(
                tenant_id=inbound.tenant_id,
                user_id=inbound.user_id,
                from_number=inbound.from_number,
                message=message,
            )
            outcome = await retry_transient_once(lambda: self.engine.handle(ctx))
            return Result.ok(outcome)
        except LedgerlineException as e:
            log.warning(f"⚠️ {type(e).__name__}: {e.to_dict()}")
            return Result.from_exception(e)
        except Exception as e:
            log.exception(f"❌ Unexpected error processing {inbound.provider_message_id}: {e}")
            return Result.from_exception(e)

    async def _complete(self, inbound: InboundMessage, reply: Reply) -> None:
        try:
            await retry_transient_once(lambda: self.guard.complete(inbound.provider_message_id, reply))
        except TransientInfraException as e:
            log.error(f"❌ Could not store reply for {inbound.provider_message_id}; claim expires on its own: {e}")

    async def _release(self, inbound: InboundMessage) -> None:
        try:
            await self.guard.release(inbound.provider_message_id)
        except TransientInfraException as e:
            log.error(f"❌ Could not release claim for {inbound.provider_message_id}: {e}")

    async def _arm_auto_advance(self, inbound: InboundMessage, kind: str, outbound_id: str) -> None:
        try:
            await self.engine.arm_auto_advance(inbound.tenant_id, inbound.user_id, kind, outbound_id)
        except TransientInfraException as e:
            log.warning(f"⚠️ Auto-advance not armed for {inbound.user_id}: {e}")

    async def _emit(self, inbound: InboundMessage, reply: Reply) -> Optional[str]:
        return await self.emitter.emit(inbound.from_number, reply)


_pipeline: Optional[MessagePipeline] = None


def get_pipeline() -> MessagePipeline:
    """Process-wide pipeline over the configured state backend."""
    global _pipeline
    if _pipeline is None:
        _pipeline = MessagePipeline.from_backends(build_backends())
    return _pipeline


def set_pipeline(pipeline: Optional[MessagePipeline]) -> None:
    global _pipeline
    _pipeline = pipeline
