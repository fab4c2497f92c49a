"""Tests for the escalation rule chain."""

import pytest

from supportdesk.decision import (
    CLOSING_LINE,
    CONTEXT_PREFIX,
    FALLBACK_RESPONSE,
    LOW_CONFIDENCE_MARKER,
    DecisionEngine,
    EscalationPolicy,
    count_low_confidence_turns,
    decide,
    find_escalation_phrase,
    is_complex_query,
    turn_fields,
)
from supportdesk.models import (
    DecisionRule, EscalationReason, FAQEntry, HistoryTurn, MatchResult, MessageRole
)


LONG_QUERY = " ".join(["details"] * 31)


def user(content):
    return HistoryTurn(role=MessageRole.USER, content=content)


def assistant(content):
    return HistoryTurn(role=MessageRole.ASSISTANT, content=content)


@pytest.fixture
def confident(hours_faq):
    return MatchResult(faq=hours_faq, confidence=0.8, score=12)


@pytest.fixture
def no_match():
    return MatchResult()


class TestEscalationRequest:

    def test_human_request_escalates(self, no_match):
        verdict = decide("can I talk to a human please", no_match, [])
        assert verdict.escalate is True
        assert verdict.reason == "User requested human support"
        assert verdict.rule == DecisionRule.ESCALATION_REQUEST

    def test_fires_even_for_verbatim_faq_question(self):
        faq = FAQEntry(id="h", question="Can I talk to a human?", answer="Yes.", keywords=["talk"])
        engine = DecisionEngine()
        matched, verdict = engine.evaluate("Can I talk to a human?", [faq], [])
        assert matched.confidence == 1.0
        assert verdict.escalate is True
        assert verdict.reason == EscalationReason.USER_REQUEST.value

    @pytest.mark.parametrize("query", [
        "I have a COMPLAINT", "this is terrible", "I want to speak to manager now",
        "get me a real person", "I'm really frustrated"
    ])
    def test_phrases_are_case_insensitive(self, query, confident):
        assert decide(query, confident, []).rule == DecisionRule.ESCALATION_REQUEST

    def test_checked_before_repeated_failures(self, no_match):
        history = [user("a"), assistant(FALLBACK_RESPONSE), user("b"), assistant(FALLBACK_RESPONSE)]
        verdict = decide("I am upset", no_match, history)
        assert verdict.reason == EscalationReason.USER_REQUEST.value

    def test_find_escalation_phrase(self):
        assert find_escalation_phrase("so AWFUL") == "awful"
        assert find_escalation_phrase("what are your hours") is None


class TestRepeatedLowConfidence:

    def test_two_fallbacks_escalate_even_when_confident(self, confident):
        history = [user("a"), assistant(FALLBACK_RESPONSE), user("b"), assistant(FALLBACK_RESPONSE)]
        verdict = decide("what are your hours", confident, history)
        assert verdict.escalate is True
        assert verdict.reason == "Multiple low-confidence responses"
        assert verdict.rule == DecisionRule.REPEATED_LOW_CONFIDENCE

    def test_only_last_four_turns_count(self, confident):
        history = [
            assistant(FALLBACK_RESPONSE),
            user("a"), assistant("Here you go"), user("b"), assistant(FALLBACK_RESPONSE)
        ]
        assert count_low_confidence_turns(history) == 1
        assert decide("what are your hours", confident, history).escalate is False

    def test_user_turns_with_marker_ignored(self, confident):
        history = [user("I'm not sure"), user("still not sure"), assistant("ok"), user("not sure")]
        assert count_low_confidence_turns(history) == 0
        assert decide("what are your hours", confident, history).rule == DecisionRule.FAQ_ANSWER

    def test_plain_dict_history(self, no_match):
        history = [
            {"role": "assistant", "content": "I'm not sure about that"},
            {"role": "assistant", "content": "Still not sure"},
        ]
        assert decide("hello", no_match, history).rule == DecisionRule.REPEATED_LOW_CONFIDENCE

    def test_fallback_text_carries_marker(self):
        assert LOW_CONFIDENCE_MARKER in FALLBACK_RESPONSE
        assert LOW_CONFIDENCE_MARKER in EscalationPolicy().fallback_response


class TestComplexQuestion:

    def test_long_low_confidence_query_escalates(self, hours_faq):
        matched = MatchResult(faq=hours_faq, confidence=0.2, score=3)
        verdict = decide(LONG_QUERY, matched, [])
        assert verdict.escalate is True
        assert verdict.reason == "Complex multi-part question"
        assert verdict.rule == DecisionRule.COMPLEX_QUESTION

    def test_long_confident_query_is_answered(self, hours_faq):
        matched = MatchResult(faq=hours_faq, confidence=0.5, score=8)
        verdict = decide(LONG_QUERY, matched, [])
        assert verdict.escalate is False
        assert verdict.rule == DecisionRule.FAQ_ANSWER

    def test_three_question_marks(self, no_match):
        assert is_complex_query("a? b? c?")
        assert decide("a? b? c?", no_match, []).rule == DecisionRule.COMPLEX_QUESTION

    def test_limits_are_exclusive(self, no_match):
        assert not is_complex_query(" ".join(["word"] * 30))
        assert not is_complex_query("one? two?")
        assert decide("one? two?", no_match, []).rule == DecisionRule.FALLBACK


class TestAnswerAndFallback:

    def test_confident_match_returns_answer(self, confident, hours_faq):
        verdict = decide("what are your hours", confident, [])
        assert verdict.escalate is False
        assert verdict.reason is None
        assert verdict.response == hours_faq.answer + CLOSING_LINE

    def test_threshold_is_inclusive(self, hours_faq):
        matched = MatchResult(faq=hours_faq, confidence=0.3, score=4)
        assert decide("opening", matched, []).rule == DecisionRule.FAQ_ANSWER

    def test_prefix_when_previous_user_turn_differs(self, confident, hours_faq):
        history = [user("How do I reset my password?"), assistant("Use the link.")]
        verdict = decide("what are your hours", confident, history)
        assert verdict.response.startswith(CONTEXT_PREFIX + hours_faq.answer)

    def test_no_prefix_for_repeated_question(self, confident, hours_faq):
        history = [user("What Are Your Hours"), assistant("We are open...")]
        verdict = decide("what are your hours", confident, history)
        assert verdict.response.startswith(hours_faq.answer)

    def test_no_prefix_without_user_turn(self, confident, hours_faq):
        verdict = decide("what are your hours", confident, [assistant("Welcome!")])
        assert verdict.response.startswith(hours_faq.answer)

    def test_fallback_without_match(self, no_match):
        verdict = decide("hmm", no_match, [])
        assert verdict.escalate is False
        assert verdict.rule == DecisionRule.FALLBACK
        assert verdict.response == FALLBACK_RESPONSE

    def test_fallback_below_threshold(self, hours_faq):
        matched = MatchResult(faq=hours_faq, confidence=0.2, score=3)
        assert decide("opening", matched, []).rule == DecisionRule.FALLBACK


class TestMalformedHistory:

    def test_malformed_rows_never_raise(self, no_match):
        history = [
            {"role": "assistant"},
            {"content": "not sure"},
            None,
            42,
            {"role": None, "content": 5},
            {"role": "assistant", "content": None},
        ]
        verdict = decide("hmm", no_match, history)
        assert verdict.rule == DecisionRule.FALLBACK

    def test_turn_fields(self):
        assert turn_fields(assistant("hi")) == ("assistant", "hi")
        assert turn_fields({"role": "user", "content": "x"}) == ("user", "x")
        assert turn_fields(object()) == ("", "")


class TestPolicy:

    def test_threshold_override(self, hours_faq):
        matched = MatchResult(faq=hours_faq, confidence=0.6, score=9)
        strict = EscalationPolicy(confidence_threshold=0.7)
        assert decide("what are your hours", matched, [], strict).rule == DecisionRule.FALLBACK

    def test_window_override(self, confident):
        history = [assistant(FALLBACK_RESPONSE), user("a"), user("b"), user("c"), assistant(FALLBACK_RESPONSE)]
        assert decide("what are your hours", confident, history).escalate is False
        wide = EscalationPolicy(window_turns=5)
        assert decide("what are your hours", confident, history, wide).escalate is True

    def test_from_config(self):
        policy = EscalationPolicy.from_config({
            "FAQ_CONFIDENCE_THRESHOLD": 0.5,
            "ESCALATION_WINDOW_TURNS": 6,
            "LOW_CONFIDENCE_ESCALATION_COUNT": 3,
            "COMPLEX_QUERY_WORD_LIMIT": 50,
            "COMPLEX_QUERY_QUESTION_LIMIT": 4,
        })
        assert policy.confidence_threshold == 0.5
        assert policy.window_turns == 6
        assert policy.low_confidence_limit == 3
        assert policy.complex_word_limit == 50
        assert policy.complex_question_limit == 4

    def test_engine_from_config(self):
        engine = DecisionEngine.from_config({"FAQ_SCORE_CEILING": 20.0, "FAQ_CONFIDENCE_THRESHOLD": 0.4})
        assert engine.matching_policy.score_ceiling == 20.0
        assert engine.escalation_policy.confidence_threshold == 0.4


class TestEngineEvaluate:

    def test_business_hours_example(self, faqs, hours_faq):
        matched, verdict = DecisionEngine().evaluate("what are your hours", faqs, [])
        assert matched.faq.id == "faq_hours"
        assert matched.confidence > 0.3
        assert verdict.escalate is False
        assert hours_faq.answer in verdict.response

    def test_third_low_confidence_turn_escalates(self, faqs):
        engine = DecisionEngine()
        history = []
        for query in ("xyzzy plugh", "quux frobnicate"):
            _, verdict = engine.evaluate(query, faqs, history)
            assert verdict.rule == DecisionRule.FALLBACK
            history += [user(query), assistant(verdict.response)]

        _, verdict = engine.evaluate("what are your hours", faqs, history)
        assert verdict.reason == EscalationReason.REPEATED_LOW_CONFIDENCE.value
