"""Small extractors shared by the classifier and the executors."""

import re
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from src.config import settings

_DOLLAR_AMOUNT_RE = re.compile(r"\$\s?(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)")
_WORD_AMOUNT_RE = re.compile(r"\b(\d+(?:\.\d{1,2})?)\s*(?:dollars?|bucks)\b", re.IGNORECASE)
_DECIMAL_AMOUNT_RE = re.compile(r"(?<![\d:/])\b(\d+\.\d{2})\b(?![\d:/])")

_JOB_HINT_RE = re.compile(
    r"\s+(?:for|on)\s+(?:the\s+)?(?:job\s+(?P<a>.+?)|(?P<b>.+?)\s+job)[.!]?$",
    re.IGNORECASE,
)
_COUNTERPARTY_RE = re.compile(r"\b(?:at|from)\s+(.+?)[.!]?$", re.IGNORECASE)
_ITEM_RE = re.compile(r"\bon\s+(.+?)\s+(?:at|from)\b", re.IGNORECASE)

_CLOCK_TIME_RE = re.compile(
    r"\b(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<ampm>a\.?m\.?|p\.?m\.?)?(?=\s|$|[.!?,])",
    re.IGNORECASE,
)

_DAY_WORD_RE = re.compile(
    r"\b(yesterday|last\s+night|today|tonight|this\s+(?:morning|afternoon|evening))\b",
    re.IGNORECASE,
)
_DAY_WORDS = {
    "yesterday": (1, None),
    "last night": (1, "pm"),
    "today": (0, None),
    "tonight": (0, "pm"),
    "this morning": (0, "am"),
    "this afternoon": (0, "pm"),
    "this evening": (0, "pm"),
}


def parse_amount(text: str) -> Optional[Decimal]:
    """First money amount in the text: $45, $1,200.50, 45 dollars, 45.00."""
    if not text:
        return None
    for pattern in (_DOLLAR_AMOUNT_RE, _WORD_AMOUNT_RE, _DECIMAL_AMOUNT_RE):
        match = pattern.search(text)
        if match:
            try:
                return Decimal(match.group(1).replace(",", ""))
            except InvalidOperation:
                return None
    return None


def split_job_hint(text: str):
    """Split a trailing "for job X" / "for the X job" clause off the text."""
    match = _JOB_HINT_RE.search(text or "")
    if not match:
        return text, None
    hint = (match.group("a") or match.group("b") or "").strip()
    return text[: match.start()].strip(), hint or None


def parse_counterparty(text: str) -> Optional[str]:
    """Vendor or payer named after "at" / "from"."""
    match = _COUNTERPARTY_RE.search(text or "")
    if not match:
        return None
    name = match.group(1).strip(" ,.")
    if not name or parse_amount(name) is not None:
        return None
    return name[:60]


def parse_item(text: str) -> Optional[str]:
    match = _ITEM_RE.search(text or "")
    return match.group(1).strip() if match else None


def local_now() -> datetime:
    return datetime.now(ZoneInfo(settings.default_timezone))


def _day_word(text: str):
    """(days back, meridiem bias) for a day word in the text, else None."""
    match = _DAY_WORD_RE.search(text or "")
    if not match:
        return None
    word = re.sub(r"\s+", " ", match.group(1).lower())
    return _DAY_WORDS[word]


def _time_candidates(match) -> List[Tuple[int, int]]:
    """Possible (hour, minute) readings of one clock-time match, morning first."""
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    ampm = (match.group("ampm") or "").lower().replace(".", "")
    if minute > 59 or hour > 23:
        return []
    if ampm:
        if not 1 <= hour <= 12:
            return []
        return [(hour % 12 + (12 if ampm == "pm" else 0), minute)]
    if hour > 12 or hour == 0:
        return [(hour, minute)]
    return [(hour % 12, minute), (hour % 12 + 12, minute)]


def _on_day(now: datetime, days_back: int, hour: int, minute: int) -> datetime:
    return (now - timedelta(days=days_back)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def parse_clock_time(
    text: str,
    now: Optional[datetime] = None,
    after: Optional[datetime] = None,
) -> Optional[datetime]:
    """Resolve "5pm", "5:30 pm", "17:30" to a local datetime.

    "yesterday" / "last night" move the time back a day, and "tonight" /
    "this morning" settle whether a bare "5" means am or pm. Without a day
    word the time is today's, unless `after` is given: then it is the first
    reading later than `after` that is not in the future, so "5pm" sent the
    morning after an open shift lands on the evening the shift started.

    A 12-hour time without am/pm is otherwise read as the latest of its
    morning and afternoon readings that is not in the future (so "5" at
    18:00 is 17:00).
    """
    now = now or local_now()
    day_word = _day_word(text)
    for match in _CLOCK_TIME_RE.finditer(text or ""):
        readings = _time_candidates(match)
        if not readings:
            continue

        if day_word is not None:
            days_back, bias = day_word
            if bias is not None and len(readings) == 2:
                readings = [readings[1] if bias == "pm" else readings[0]]
            options = [_on_day(now, days_back, h, m) for h, m in readings]
        else:
            if after is not None:
                start = after.astimezone(now.tzinfo)
                span = max((now.date() - start.date()).days, 0)
                for days_back in range(span, -1, -1):
                    for h, m in readings:
                        at = _on_day(now, days_back, h, m)
                        if start < at <= now:
                            return at
            options = [_on_day(now, 0, h, m) for h, m in readings]

        past = [at for at in options if at <= now]
        return past[-1] if past else options[0]
    return None
