"""Deterministic post-correction for transcribed and OCR'd text.

Speech-to-text output is close to what the user said but not to what the
router expects: spoken amounts, filler words, misheard trade vocabulary and
picker ids read back aloud. These passes fix those before classification.
"""

import re
from typing import List, Optional, Tuple

# ============================================================================
# Spoken money
# ============================================================================

_UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
}
_TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
_SCALES = {"hundred": 100, "thousand": 1000}

_NUM = "|".join(list(_UNITS) + list(_TENS) + list(_SCALES))
_LEAD = rf"(?:{_NUM}|a(?=\s+(?:hundred|thousand)))"
_PHRASE = rf"{_LEAD}(?:[\s-]+(?:and[\s-]+)?(?:{_NUM}))*"

_SPOKEN_MONEY_RE = re.compile(
    rf"\b({_PHRASE})\s+(?:dollars?|bucks)(?:\s+and\s+({_PHRASE})\s+cents?)?\b",
    re.IGNORECASE,
)
_DIGIT_MONEY_RE = re.compile(r"(?<![$\d.])\b(\d+(?:\.\d{1,2})?)\s+(?:dollars?|bucks)\b", re.IGNORECASE)


def words_to_number(phrase: str) -> Optional[int]:
    """Convert "two hundred and fifty" to 250. Returns None if no number word."""
    total = 0
    current = 0
    seen = False
    for token in re.split(r"[\s-]+", phrase.lower().strip()):
        if not token or token == "and":
            continue
        if token == "a":
            current = max(current, 1)
            continue
        if token in _UNITS:
            current += _UNITS[token]
        elif token in _TENS:
            current += _TENS[token]
        elif token == "hundred":
            current = max(current, 1) * 100
        elif token == "thousand":
            total += max(current, 1) * 1000
            current = 0
        else:
            return None
        seen = True
    return total + current if seen else None


def _format_money(dollars: int, cents: int = 0) -> str:
    if cents:
        return f"${dollars}.{cents:02d}"
    return f"${dollars}"


def normalize_transcript_money(text: str) -> str:
    """Rewrite spoken or digit amounts followed by "dollars" as $N."""
    if not text:
        return text

    def _spoken(match: re.Match) -> str:
        dollars = words_to_number(match.group(1))
        if dollars is None:
            return match.group(0)
        cents = words_to_number(match.group(2)) if match.group(2) else 0
        return _format_money(dollars, min(cents or 0, 99))

    text = _SPOKEN_MONEY_RE.sub(_spoken, text)
    return _DIGIT_MONEY_RE.sub(lambda m: f"${m.group(1)}", text)


# ============================================================================
# Filler, vocabulary, typos
# ============================================================================

_LEADING_FILLER_RE = re.compile(r"^(?:(?:uh+|um+|ok(?:ay)?|so|well)\b[\s,.]*)+", re.IGNORECASE)

_TRADE_TERMS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bgen[\s-]?tech\b", re.IGNORECASE), "Gentek"),
    (re.compile(r"\bsighting\b", re.IGNORECASE), "siding"),
    (re.compile(r"\bsoffet\b", re.IGNORECASE), "soffit"),
    (re.compile(r"\bfacia\b", re.IGNORECASE), "fascia"),
    (re.compile(r"\beaves\s+trough\b", re.IGNORECASE), "eavestrough"),
]

_TYPOS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\blotters\b", re.IGNORECASE), "ladders"),
    (re.compile(r"\bshingle's\b", re.IGNORECASE), "shingles"),
    (re.compile(r"\bhome\s+hardwear\b", re.IGNORECASE), "Home Hardware"),
]

_PICKER_TOKEN_RE = re.compile(r"\b(jobno|jobix)_(\d+)\b", re.IGNORECASE)
_LEGACY_ROW_ID_RE = re.compile(r"\bjob_\d+_[0-9a-z]+\b", re.IGNORECASE)


def strip_leading_filler(text: str) -> str:
    return _LEADING_FILLER_RE.sub("", text or "").strip()


def correct_trade_terms(text: str) -> str:
    for pattern, replacement in _TRADE_TERMS:
        text = pattern.sub(replacement, text)
    return text


def fix_common_typos(text: str) -> str:
    for pattern, replacement in _TYPOS:
        text = pattern.sub(replacement, text)
    return text


def scrub_picker_tokens(text: str) -> str:
    """Make read-back picker ids harmless: jobno_6 -> "jobno 6", drop row ids."""
    text = _PICKER_TOKEN_RE.sub(lambda m: f"{m.group(1).lower()} {m.group(2)}", text)
    text = _LEGACY_ROW_ID_RE.sub("", text)
    return re.sub(r"\s{2,}", " ", text).strip()


def post_correct(text: Optional[str]) -> str:
    """Full correction pass applied to transcript and OCR text."""
    if not text:
        return ""
    text = strip_leading_filler(text)
    text = normalize_transcript_money(text)
    text = correct_trade_terms(text)
    text = fix_common_typos(text)
    return scrub_picker_tokens(text)
