"""
Escalation and answer decisions for a single chat turn.

The decision engine runs an ordered rule chain over the query, the matcher
result and the recent conversation history. The first rule that fires
produces the verdict:

1. Explicit escalation request (angry user, asks for a human)
2. Repeated low-confidence answers in the recent window
3. Long or multi-question query the knowledge base cannot answer
4. Confident FAQ match, answered from the knowledge base
5. Fallback asking the user to rephrase

The engine holds no state between calls. Session status changes implied by
an escalating verdict are applied by the caller.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from loguru import logger

from supportdesk.matcher import MatchingPolicy, match
from supportdesk.models import (
    DecisionRule, EscalationReason, FAQEntry, MatchResult, MessageRole, Verdict
)
from supportdesk.utils import sanitize_for_logging


ESCALATION_PHRASES: Tuple[str, ...] = (
    'complaint', 'angry', 'upset', 'frustrated', 'terrible', 'awful',
    'disappointed', 'speak to manager', 'human', 'real person'
)

HUMAN_REQUEST_RESPONSE = (
    "I understand you'd like to speak with a human representative. Let me connect you "
    "with our support team who can better assist you with this matter."
)

REPEATED_FAILURE_RESPONSE = (
    "I apologize, but I'm having difficulty providing the information you need. Let me "
    "escalate this to our support team who can give you more detailed assistance."
)

COMPLEX_QUESTION_RESPONSE = (
    "Your question involves several topics that would be best addressed by our support "
    "team. I'm escalating this conversation so a representative can provide comprehensive "
    "assistance."
)

# Must contain LOW_CONFIDENCE_MARKER, the repeated failure rule counts it
FALLBACK_RESPONSE = (
    "I'm not sure I fully understand your question. Could you please rephrase it or "
    "provide more details? Alternatively, I can connect you with our support team for "
    "more specific assistance."
)

LOW_CONFIDENCE_MARKER = "not sure"
CONTEXT_PREFIX = "Based on your question, "
CLOSING_LINE = "\n\nIs there anything else I can help you with?"


@dataclass(frozen=True)
class EscalationPolicy:
    """Tunable knobs of the decision rule chain."""

    confidence_threshold: float = 0.3
    escalation_phrases: Tuple[str, ...] = ESCALATION_PHRASES
    window_turns: int = 4
    low_confidence_marker: str = LOW_CONFIDENCE_MARKER
    low_confidence_limit: int = 2
    complex_word_limit: int = 30
    complex_question_limit: int = 2

    human_request_response: str = HUMAN_REQUEST_RESPONSE
    repeated_failure_response: str = REPEATED_FAILURE_RESPONSE
    complex_question_response: str = COMPLEX_QUESTION_RESPONSE
    fallback_response: str = FALLBACK_RESPONSE
    context_prefix: str = CONTEXT_PREFIX
    closing_line: str = CLOSING_LINE

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EscalationPolicy":
        return cls(
            confidence_threshold=float(config.get("FAQ_CONFIDENCE_THRESHOLD", cls.confidence_threshold)),
            window_turns=int(config.get("ESCALATION_WINDOW_TURNS", cls.window_turns)),
            low_confidence_limit=int(config.get("LOW_CONFIDENCE_ESCALATION_COUNT", cls.low_confidence_limit)),
            complex_word_limit=int(config.get("COMPLEX_QUERY_WORD_LIMIT", cls.complex_word_limit)),
            complex_question_limit=int(config.get("COMPLEX_QUERY_QUESTION_LIMIT", cls.complex_question_limit)),
        )


DEFAULT_ESCALATION_POLICY = EscalationPolicy()


def turn_fields(turn: Any) -> Tuple[str, str]:
    """
    Read (role, content) from a history turn.

    Accepts HistoryTurn/ChatMessage objects and plain mappings. Missing or
    malformed fields come back as empty strings so a bad row never matches
    any rule.
    """
    if isinstance(turn, Mapping):
        role, content = turn.get("role"), turn.get("content")
    else:
        role, content = getattr(turn, "role", None), getattr(turn, "content", None)

    if isinstance(role, MessageRole):
        role = role.value
    return (role if isinstance(role, str) else "", content if isinstance(content, str) else "")


def find_escalation_phrase(query: str, policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY) -> Optional[str]:
    """Return the first escalation phrase contained in the query, if any."""
    query_lower = query.lower()
    for phrase in policy.escalation_phrases:
        if phrase in query_lower:
            return phrase
    return None


def count_low_confidence_turns(history: Sequence[Any], policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY) -> int:
    """Count fallback answers among the last window_turns history entries."""
    window = list(history)[-policy.window_turns:]
    count = 0
    for turn in window:
        role, content = turn_fields(turn)
        if role == MessageRole.ASSISTANT.value and policy.low_confidence_marker in content:
            count += 1
    return count


def is_complex_query(query: str, policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY) -> bool:
    """Whether the query is long or asks several questions at once."""
    word_count = len(query.split())
    question_count = query.count('?')
    return word_count > policy.complex_word_limit or question_count > policy.complex_question_limit


def last_user_content(history: Sequence[Any]) -> Optional[str]:
    """Content of the most recent user turn in the history, if any."""
    for turn in reversed(list(history)):
        role, content = turn_fields(turn)
        if role == MessageRole.USER.value:
            return content
    return None


def compose_answer(query: str, faq: FAQEntry, history: Sequence[Any],
                   policy: EscalationPolicy = DEFAULT_ESCALATION_POLICY) -> str:
    """Build the FAQ answer, prefixed when the user moved on to a new question."""
    prefix = ""
    previous = last_user_content(history)
    if previous is not None and previous.lower() != query.lower():
        prefix = policy.context_prefix
    return f"{prefix}{faq.answer}{policy.closing_line}"


def decide(query: str, matched: MatchResult, history: Sequence[Any],
           policy: Optional[EscalationPolicy] = None) -> Verdict:
    """
    Decide between an automatic answer and escalation for one turn.

    Args:
        query: Current user message
        matched: Matcher result for the query
        history: Prior turns, oldest first, not including the current query
        policy: Rule chain knobs, defaults to DEFAULT_ESCALATION_POLICY

    Returns:
        Verdict for this turn
    """
    policy = policy or DEFAULT_ESCALATION_POLICY

    phrase = find_escalation_phrase(query, policy)
    if phrase is not None:
        logger.debug("Escalation phrase detected", phrase=phrase)
        return Verdict(
            response=policy.human_request_response,
            escalate=True,
            reason=EscalationReason.USER_REQUEST.value,
            rule=DecisionRule.ESCALATION_REQUEST
        )

    low_confidence_count = count_low_confidence_turns(history, policy)
    if low_confidence_count >= policy.low_confidence_limit:
        logger.debug("Repeated low-confidence answers", count=low_confidence_count)
        return Verdict(
            response=policy.repeated_failure_response,
            escalate=True,
            reason=EscalationReason.REPEATED_LOW_CONFIDENCE.value,
            rule=DecisionRule.REPEATED_LOW_CONFIDENCE
        )

    if is_complex_query(query, policy) and matched.confidence < policy.confidence_threshold:
        return Verdict(
            response=policy.complex_question_response,
            escalate=True,
            reason=EscalationReason.COMPLEX_QUESTION.value,
            rule=DecisionRule.COMPLEX_QUESTION
        )

    if matched.matched and matched.confidence >= policy.confidence_threshold:
        return Verdict(
            response=compose_answer(query, matched.faq, history, policy),
            escalate=False,
            rule=DecisionRule.FAQ_ANSWER
        )

    return Verdict(
        response=policy.fallback_response,
        escalate=False,
        rule=DecisionRule.FALLBACK
    )


class DecisionEngine:
    """Matcher and rule chain bundled with their policies."""

    def __init__(self, matching_policy: Optional[MatchingPolicy] = None,
                 escalation_policy: Optional[EscalationPolicy] = None):
        self.matching_policy = matching_policy or MatchingPolicy()
        self.escalation_policy = escalation_policy or EscalationPolicy()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DecisionEngine":
        engine = cls(MatchingPolicy.from_config(config), EscalationPolicy.from_config(config))
        logger.info(
            "DecisionEngine initialized",
            score_ceiling=engine.matching_policy.score_ceiling,
            confidence_threshold=engine.escalation_policy.confidence_threshold,
            window_turns=engine.escalation_policy.window_turns
        )
        return engine

    def match(self, query: str, faqs: Sequence[FAQEntry]) -> MatchResult:
        return match(query, faqs, self.matching_policy)

    def decide(self, query: str, matched: MatchResult, history: Sequence[Any]) -> Verdict:
        return decide(query, matched, history, self.escalation_policy)

    def evaluate(self, query: str, faqs: Sequence[FAQEntry],
                 history: Sequence[Any]) -> Tuple[MatchResult, Verdict]:
        """Match the query and decide the verdict for one turn."""
        matched = self.match(query, faqs)
        verdict = self.decide(query, matched, history)

        logger.info(
            "Turn decided",
            query_preview=sanitize_for_logging(query, 80),
            matched_faq_id=matched.faq.id if matched.faq else None,
            confidence=matched.confidence,
            rule=verdict.rule.value,
            escalate=verdict.escalate
        )
        return matched, verdict
