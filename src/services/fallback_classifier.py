"""Last-resort intent classifier backed by an OpenAI tool call.

The model only sees a closed set of tools and is told to call one only when
it is at least 95% sure. Anything else (a plain-text answer, an unknown tool,
a timeout, an API error) is treated as "no opinion".
"""
import json
from typing import Any, Dict, List, Optional

from langsmith import traceable
from openai import AsyncOpenAI

from src.actions.parsing import parse_amount
from src.config import settings
from src.fsm.models import ClassifierStage, IntentKind, IntentResult
from src.services.retry import with_timeout_default
from src.utils.logger import log

SYSTEM_PROMPT = (
    "You are a STRICT command router for a contractor's bookkeeping assistant. "
    "Only call a tool if you are more than 95% confident the message is that command. "
    "Otherwise, reply with the plain text 'none'. "
    "Never infer money amounts. Never invent people, vendors or job names."
)

TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "timeclock_clock_in",
            "description": "The user is starting work now (clock in / punch in).",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "timeclock_clock_out",
            "description": "The user is finishing work (clock out / punch out).",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "job_create",
            "description": "Create a new job with the given name.",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "expense_add",
            "description": "Record money the user spent. Amount must appear in the message.",
            "parameters": {
                "type": "object",
                "properties": {"amount": {"type": "number"}, "vendor": {"type": "string"}},
                "required": ["amount"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "revenue_add",
            "description": "Record money the user received. Amount must appear in the message.",
            "parameters": {
                "type": "object",
                "properties": {"amount": {"type": "number"}, "payer": {"type": "string"}},
                "required": ["amount"],
                "additionalProperties": False,
            },
        },
    },
]

TOOL_INTENTS = {
    "timeclock_clock_in": "timeclock.clock_in",
    "timeclock_clock_out": "timeclock.clock_out",
    "job_create": "job.create",
    "expense_add": "expense.add",
    "revenue_add": "revenue.add",
}


class FallbackClassifier:
    """Tool-call classifier with a closed schema and a decline path."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    @property
    def enabled(self) -> bool:
        return self._client is not None or settings.llm_fallback_enabled

    async def classify(self, text: str) -> Optional[IntentResult]:
        """Classify `text`, or return None for a decline / no opinion."""
        if not self.enabled or not text:
            return None
        return await with_timeout_default(
            self._classify(text),
            settings.fallback_timeout_seconds,
            None,
            "Fallback classifier",
        )

    @traceable(name="fallback_intent_router", tags=["intent", "fallback"])
    async def _classify(self, text: str) -> Optional[IntentResult]:
        response = await self.client.chat.completions.create(
            model=settings.fallback_model,
            temperature=settings.fallback_temperature,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            tools=TOOLS,
            tool_choice="auto",
        )
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        if not tool_calls:
            log.info(f"🤖 Fallback declined: {(message.content or '').strip()[:40]}")
            return None

        call = tool_calls[0]
        intent = TOOL_INTENTS.get(call.function.name)
        if intent is None:
            log.warning(f"🤖 Fallback returned unknown tool '{call.function.name}', ignoring")
            return None

        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            log.warning("🤖 Fallback returned unparseable arguments, ignoring")
            return None

        if intent in ("expense.add", "revenue.add"):
            # Amount must be literally present in the message
            amount = parse_amount(text)
            if amount is None:
                log.info("🤖 Fallback proposed a money intent without an amount in the text, declining")
                return None
            args["amount"] = str(amount)

        log.info(f"🤖 Fallback classified as {intent}")
        return IntentResult(
            kind=IntentKind.COMMAND,
            intent=intent,
            confidence=0.95,
            args=args,
            stage=ClassifierStage.FALLBACK,
        )


# Global instance
fallback_classifier = FallbackClassifier()
