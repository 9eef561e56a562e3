"""Fuzzy matching against the command synonym catalog and job names."""

from difflib import SequenceMatcher
from typing import Dict, Iterable, List, Optional, Tuple

from src.utils.logger import log


def calculate_similarity(str1: str, str2: str) -> float:
    """Calculate similarity ratio between two strings (0.0 to 1.0).

    Args:
        str1: First string
        str2: Second string

    Returns:
        Similarity ratio (1.0 = exact match, 0.0 = no match)
    """
    if not str1 or not str2:
        return 0.0

    s1 = " ".join(str1.lower().split())
    s2 = " ".join(str2.lower().split())

    if s1 == s2:
        return 1.0

    return SequenceMatcher(None, s1, s2).ratio()


def best_catalog_match(
    text: str, catalog: Iterable[Tuple[str, str]], floor: float
) -> Optional[Tuple[str, str, float]]:
    """Best (synonym, intent, score) at or above `floor`.

    Ties on score go to the longer synonym, which is the more specific one.
    """
    if not text:
        return None

    best: Optional[Tuple[str, str, float]] = None
    for synonym, intent in catalog:
        score = calculate_similarity(text, synonym)
        if score < floor:
            continue
        if (
            best is None
            or score > best[2]
            or (score == best[2] and len(synonym) > len(best[0]))
        ):
            best = (synonym, intent, score)

    if best:
        log.debug(f"🔍 Catalog match '{text}' → '{best[0]}' ({best[1]}, {best[2]:.2f})")
    return best


def fuzzy_match_job(
    user_input: str, jobs: List[Dict], threshold: float = 0.80
) -> Optional[Dict]:
    """Find the job whose name best matches the user's input.

    Args:
        user_input: Job name as the user typed or said it
        jobs: Job dicts with 'job_no' and 'name'
        threshold: Minimum similarity threshold (0.0-1.0)

    Returns:
        The matching job dict, or None if nothing clears the threshold
    """
    if not user_input or not jobs:
        return None

    best_match = None
    best_score = 0.0
    for job in jobs:
        name = job.get("name", "")
        score = calculate_similarity(user_input, name)
        if score > best_score:
            best_score = score
            best_match = job

    if best_match and best_score >= threshold:
        log.info(f"✅ Job match: '{user_input}' → '{best_match['name']}' ({best_score:.2f})")
        return best_match

    log.debug(f"❌ No job match for '{user_input}' (best: {best_score:.2f})")
    return None
