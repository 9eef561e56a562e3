"""Intent classifier cascade.

Stages run in order and the first one to claim the message wins:

1. global hard controls (cancel / stop / no)
2. exact control tokens, only while a live pending action exists
3. deterministic domain cues per family
4. fuzzy match against the synonym catalog
5. tool-call fallback, only when nothing above cleared the fuzzy floor
"""
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.actions.parsing import (
    parse_amount,
    parse_counterparty,
    parse_item,
    split_job_hint,
)
from src.config import settings
from src.fsm.models import (
    ClassifierStage,
    IntentKind,
    IntentResult,
    is_hard_cancel,
    match_control_token,
)
from src.services.fallback_classifier import FallbackClassifier, fallback_classifier
from src.utils.fuzzy_matcher import best_catalog_match
from src.utils.logger import log

# ============================================================================
# Stage 3: domain cues
# ============================================================================

_TIME_ARG_RE = re.compile(r"\bat\s+(\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)?)(?=\s|$|[.!?,])", re.IGNORECASE)

TIMECLOCK_RULES: List[Tuple[str, re.Pattern]] = [
    ("timeclock.clock_out", re.compile(r"\bforgot\s+(?:to\s+)?(?:clock|punch)\s*out\b", re.IGNORECASE)),
    ("timeclock.clock_in", re.compile(r"^(?:clock|punch)(?:ed|ing)?\s*in\b|^start(?:ing)?\s+(?:my\s+)?shift\b", re.IGNORECASE)),
    ("timeclock.clock_out", re.compile(r"^(?:clock|punch)(?:ed|ing)?\s*out\b|^end(?:ing)?\s+(?:my\s+)?shift\b", re.IGNORECASE)),
    ("timeclock.break_start", re.compile(r"^(?:start(?:ing)?|taking|on)\s+(?:a\s+|my\s+)?break\b|^break\s+start\b", re.IGNORECASE)),
    ("timeclock.break_stop", re.compile(r"^(?:end(?:ing)?|stop(?:ping)?|back\s+from)\s+(?:my\s+)?break\b|^break\s+(?:stop|end|over)\b", re.IGNORECASE)),
    ("timeclock.drive_start", re.compile(r"^start(?:ing)?\s+(?:the\s+)?drive\b|^drive\s+start\b", re.IGNORECASE)),
    ("timeclock.drive_stop", re.compile(r"^(?:stop(?:ping)?|end(?:ing)?)\s+(?:the\s+)?drive\b|^drive\s+(?:stop|end)\b", re.IGNORECASE)),
    ("timeclock.timesheet", re.compile(r"\btime\s*sheet\b|^my\s+hours\b|^hours\s+this\s+week\b", re.IGNORECASE)),
]

JOB_RULES: List[Tuple[str, re.Pattern]] = [
    ("job.move_last_log", re.compile(r"^move\s+(?:the\s+)?last\s+log\s+to\s+(?:job\s+)?(?P<name>.+?)[.!]?$", re.IGNORECASE)),
    ("job.active", re.compile(r"^(?:what(?:'s|\s+is)\s+(?:my\s+|the\s+)?)?active\s+job\s*\??$", re.IGNORECASE)),
    ("job.set_active", re.compile(r"^(?:set\s+)?active\s+job\s*(?:to|=|:)?\s*(?P<name>.+?)[.!]?$|^(?:switch|change)\s+to\s+job\s+(?P<name2>.+?)[.!]?$", re.IGNORECASE)),
    ("job.create", re.compile(r"^(?:create|new|add|start)\s+(?:a\s+)?(?:new\s+)?job\s*[:\-]?\s*(?P<name>.+?)[.!]?$", re.IGNORECASE)),
    ("job.list", re.compile(r"^(?:list|show|my|all)\s+(?:my\s+)?jobs$|^jobs$", re.IGNORECASE)),
]

TASK_RULES: List[Tuple[str, re.Pattern]] = [
    ("task.create", re.compile(r"^task\s*[-:]\s*(?P<title>.+)$", re.IGNORECASE)),
    ("task.list", re.compile(r"^(?:my|show|list)\s+(?:my\s+)?tasks?$|^tasks$", re.IGNORECASE)),
    ("task.done", re.compile(r"^done\s+#?(?P<number>\d+)$", re.IGNORECASE)),
]

EXPENSE_CUE_RE = re.compile(r"\b(?:spent|spend|paid|bought|buy|purchased|purchase|expense|exp|cost|costs)\b", re.IGNORECASE)
STRONG_EXPENSE_RE = re.compile(r"\b(?:spent|bought|purchased|paid\s+for)\b", re.IGNORECASE)
REVENUE_CUE_RE = re.compile(r"\b(?:received|receive|revenue|rev|got\s+paid|payment\s+from|deposit|deposited|invoice\s+paid)\b", re.IGNORECASE)
REVENUE_VERB_RE = re.compile(r"\b(?:received|got\s+paid|deposited)\b", re.IGNORECASE)
RECEIVED_CHEQUE_RE = re.compile(
    r"\breceived\b.*\b(?:cheque|check|deposit|e-?transfer)\b|\b(?:cheque|check|deposit|e-?transfer)\b.*\breceived\b",
    re.IGNORECASE,
)


def _first_group(match: re.Match, *names: str) -> Optional[str]:
    for name in names:
        value = match.groupdict().get(name)
        if value:
            return value.strip()
    return None


def _match_timeclock(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    for intent, pattern in TIMECLOCK_RULES:
        if pattern.search(text):
            args: Dict[str, Any] = {}
            time_match = _TIME_ARG_RE.search(text)
            if time_match:
                args["time_text"] = time_match.group(1).strip()
            if re.search(r"\bforgot\b", text, re.IGNORECASE):
                args["forgot"] = True
            return intent, args
    return None


def _match_job(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    for intent, pattern in JOB_RULES:
        match = pattern.search(text)
        if match:
            name = _first_group(match, "name", "name2")
            return intent, ({"name": name} if name else {})
    return None


def _match_task(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    for intent, pattern in TASK_RULES:
        match = pattern.search(text)
        if match:
            args: Dict[str, Any] = {}
            if match.groupdict().get("title"):
                args["title"] = match.group("title").strip()
            if match.groupdict().get("number"):
                args["number"] = int(match.group("number"))
            return intent, args
    return None


def resolve_finance_family(text: str) -> Optional[str]:
    """Pick expense or revenue from lexical cues; None when neither is present.

    When both families' cues appear: an explicit "received + cheque/deposit"
    pattern means revenue, otherwise a strong expense verb means expense,
    otherwise a revenue verb means revenue, otherwise expense.
    """
    expense = bool(EXPENSE_CUE_RE.search(text))
    revenue = bool(REVENUE_CUE_RE.search(text))
    if expense and revenue:
        if RECEIVED_CHEQUE_RE.search(text):
            return "revenue"
        if STRONG_EXPENSE_RE.search(text):
            return "expense"
        return "revenue" if REVENUE_VERB_RE.search(text) else "expense"
    if expense:
        return "expense"
    if revenue:
        return "revenue"
    return None


def _match_finance(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    amount = parse_amount(text)
    if amount is None:
        return None
    family = resolve_finance_family(text)
    if family is None:
        return None

    remainder, job_hint = split_job_hint(text)
    args: Dict[str, Any] = {"amount": str(amount)}
    counterparty = parse_counterparty(remainder)
    if counterparty:
        args["vendor" if family == "expense" else "payer"] = counterparty
    item = parse_item(remainder)
    if item and family == "expense":
        args["item"] = item
    if job_hint:
        args["job_hint"] = job_hint
    return f"{family}.add", args


# Checked in this order; the first family with a positive cue claims the message
DOMAIN_MATCHERS: List[Tuple[str, Callable[[str], Optional[Tuple[str, Dict[str, Any]]]]]] = [
    ("timeclock", _match_timeclock),
    ("job", _match_job),
    ("task", _match_task),
    ("finance", _match_finance),
]


def match_domain_cues(text: str) -> Optional[IntentResult]:
    for family, matcher in DOMAIN_MATCHERS:
        matched = matcher(text)
        if matched:
            intent, args = matched
            log.debug(f"🎯 Domain cue ({family}) → {intent} {args}")
            return IntentResult(
                kind=IntentKind.COMMAND,
                intent=intent,
                confidence=1.0,
                args=args,
                stage=ClassifierStage.DOMAIN_CUE,
            )
    return None


# ============================================================================
# Stage 4: synonym catalog
# ============================================================================

SYNONYM_CATALOG: List[Tuple[str, str]] = [
    ("clock in", "timeclock.clock_in"),
    ("punch in", "timeclock.clock_in"),
    ("start shift", "timeclock.clock_in"),
    ("start my shift", "timeclock.clock_in"),
    ("clock out", "timeclock.clock_out"),
    ("punch out", "timeclock.clock_out"),
    ("end shift", "timeclock.clock_out"),
    ("end my shift", "timeclock.clock_out"),
    ("start break", "timeclock.break_start"),
    ("end break", "timeclock.break_stop"),
    ("start drive", "timeclock.drive_start"),
    ("end drive", "timeclock.drive_stop"),
    ("timesheet", "timeclock.timesheet"),
    ("timesheet week", "timeclock.timesheet"),
    ("list jobs", "job.list"),
    ("show jobs", "job.list"),
    ("my jobs", "job.list"),
    ("active job", "job.active"),
    ("my tasks", "task.list"),
    ("show tasks", "task.list"),
    ("list tasks", "task.list"),
]


def match_catalog(text: str, floor: float) -> Optional[IntentResult]:
    best = best_catalog_match(text, SYNONYM_CATALOG, floor)
    if best is None:
        return None
    synonym, intent, score = best
    return IntentResult(
        kind=IntentKind.COMMAND,
        intent=intent,
        confidence=round(score, 3),
        args={"synonym": synonym},
        stage=ClassifierStage.FUZZY,
    )


# ============================================================================
# Cascade
# ============================================================================


class IntentCascade:
    """Ordered, short-circuiting classifier."""

    def __init__(self, fallback: Optional[FallbackClassifier] = None, fuzzy_floor: Optional[float] = None):
        self.fallback = fallback or fallback_classifier
        self.fuzzy_floor = fuzzy_floor if fuzzy_floor is not None else settings.fuzzy_match_floor

    async def classify(
        self,
        text: str,
        has_live_pending: bool = False,
        allow_fallback: bool = True,
    ) -> IntentResult:
        """Classify normalized text.

        Args:
            text: Normalized message text
            has_live_pending: Enables the exact control-token stage
            allow_fallback: Whether the tool-call stage may run
        """
        text = (text or "").strip()
        if not text:
            return IntentResult.no_match()

        if is_hard_cancel(text):
            return IntentResult(
                kind=IntentKind.HARD_CANCEL,
                confidence=1.0,
                stage=ClassifierStage.HARD_CONTROL,
            )

        if has_live_pending:
            token = match_control_token(text)
            if token is not None:
                return IntentResult(
                    kind=IntentKind.CONTROL,
                    token=token,
                    confidence=1.0,
                    stage=ClassifierStage.CONTROL_TOKEN,
                )

        result = match_domain_cues(text)
        if result:
            return result

        result = match_catalog(text, self.fuzzy_floor)
        if result:
            return result

        if allow_fallback:
            result = await self.fallback.classify(text)
            if result:
                return result

        log.info(f"🤷 No intent matched for '{text[:40]}'")
        return IntentResult.no_match()


# Global instance
intent_cascade = IntentCascade()
