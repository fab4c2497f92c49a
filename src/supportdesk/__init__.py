"""
Support Desk
Customer support chat backend with FAQ matching and human escalation
"""

__version__ = "1.0.0"

# FAQ matching
from .matcher import (
    MatchingPolicy,
    match,
    score_faq,
    normalize_score
)

# Escalation decisions
from .decision import (
    DecisionEngine,
    EscalationPolicy,
    decide
)

# Knowledge base and conversation storage
from .faqs import FAQRepository, KnowledgeBaseError, get_faq_repository
from .store import (
    ConversationStore,
    InMemoryConversationStore,
    StoreMetrics,
    StoreError,
    SessionNotFoundError,
    get_conversation_store
)

# Turn processing
from .service import ChatService, ChatServiceError, get_chat_service

from .models import (
    FAQEntry, HistoryTurn, MatchResult, Verdict, DecisionRule, EscalationReason,
    ChatMessage, ChatSession, SessionStatus, MessageRole,
    ChatRequest, ChatResponse, ErrorResponse
)
from .utils import initialize_app, ConfigurationError

__all__ = [
    # Matcher
    "MatchingPolicy",
    "match",
    "score_faq",
    "normalize_score",

    # Decision engine
    "DecisionEngine",
    "EscalationPolicy",
    "decide",

    # Storage
    "FAQRepository",
    "KnowledgeBaseError",
    "get_faq_repository",
    "ConversationStore",
    "InMemoryConversationStore",
    "StoreMetrics",
    "StoreError",
    "SessionNotFoundError",
    "get_conversation_store",

    # Service
    "ChatService",
    "ChatServiceError",
    "get_chat_service",

    # Models and Utils
    "FAQEntry",
    "HistoryTurn",
    "MatchResult",
    "Verdict",
    "DecisionRule",
    "EscalationReason",
    "ChatMessage",
    "ChatSession",
    "SessionStatus",
    "MessageRole",
    "ChatRequest",
    "ChatResponse",
    "ErrorResponse",
    "initialize_app",
    "ConfigurationError"
]
