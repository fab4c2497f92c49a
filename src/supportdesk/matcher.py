"""
FAQ matching for incoming user messages.

Each FAQ entry is scored against the query with three additive signals:
- the whole query contained in the FAQ question (strongest)
- every FAQ keyword contained in the query
- every query word (longer than two characters) found in the question,
  answer or keywords, counted once per word

The highest scoring entry wins, ties going to the entry seen first. The raw
score is normalized into a confidence in [0, 1] against a fixed ceiling.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from supportdesk.models import FAQEntry, MatchResult


@dataclass(frozen=True)
class MatchingPolicy:
    """Weights and normalization constants for FAQ scoring."""

    phrase_weight: int = 10
    keyword_weight: int = 5
    word_weight: int = 1
    # Words shorter than this are noise ("is", "my", "to")
    min_token_length: int = 3
    # One phrase match plus one keyword match
    score_ceiling: float = 15.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MatchingPolicy":
        return cls(score_ceiling=float(config.get("FAQ_SCORE_CEILING", cls.score_ceiling)))


DEFAULT_MATCHING_POLICY = MatchingPolicy()


def tokenize(query: str, min_length: int = 3) -> List[str]:
    """Split a lowercased query on whitespace, dropping short tokens."""
    return [word for word in query.lower().split() if len(word) >= min_length]


def score_faq(query: str, faq: FAQEntry, policy: MatchingPolicy = DEFAULT_MATCHING_POLICY) -> int:
    """
    Score a single FAQ entry against a query.

    Args:
        query: Raw user query
        faq: FAQ entry to score
        policy: Scoring weights

    Returns:
        Non-negative additive score
    """
    query_lower = query.lower()
    question = faq.question.lower()
    answer = faq.answer.lower()
    keywords = [keyword.lower() for keyword in faq.keywords]

    score = 0

    if query_lower in question:
        score += policy.phrase_weight

    for keyword in keywords:
        if keyword in query_lower:
            score += policy.keyword_weight

    for word in tokenize(query_lower, policy.min_token_length):
        if word in question or word in answer or any(word in keyword for keyword in keywords):
            score += policy.word_weight

    return score


def normalize_score(score: int, policy: MatchingPolicy = DEFAULT_MATCHING_POLICY) -> float:
    """Map a raw score onto [0, 1], saturating at the policy ceiling."""
    if score <= 0:
        return 0.0
    return min(score / policy.score_ceiling, 1.0)


def match(query: str, faqs: Sequence[FAQEntry], policy: Optional[MatchingPolicy] = None) -> MatchResult:
    """
    Find the best matching FAQ entry for a query.

    Args:
        query: Raw user query
        faqs: Candidate FAQ entries, in scan order
        policy: Scoring weights, defaults to DEFAULT_MATCHING_POLICY

    Returns:
        MatchResult with the best entry (or none) and its confidence
    """
    policy = policy or DEFAULT_MATCHING_POLICY

    best_match: Optional[FAQEntry] = None
    best_score = 0

    for faq in faqs:
        score = score_faq(query, faq, policy)
        # Strictly greater: the first entry scanned keeps a tie
        if score > best_score:
            best_score = score
            best_match = faq

    return MatchResult(
        faq=best_match,
        confidence=normalize_score(best_score, policy),
        score=best_score
    )
