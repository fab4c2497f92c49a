"""
Pydantic data models for the Support Desk chat service.

This module defines all data structures used throughout the application,
including the value types exchanged with the matcher and decision engine,
the records kept by the conversation store and the API request/response models.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Literal, Any
from pydantic import BaseModel, Field, validator
from enum import Enum
import re


SESSION_ID_PATTERN = r'^[a-zA-Z0-9_-]{8,64}$'


# UTC datetime factory function
def utc_now():
    """Factory function to get current UTC datetime."""
    return datetime.now(timezone.utc)


# Enums for controlled vocabulary
class MessageRole(str, Enum):
    """Message roles in conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionStatus(str, Enum):
    """Lifecycle status of a chat session."""
    ACTIVE = "active"          # Automated handling in progress
    ESCALATED = "escalated"    # Handed off to human support, terminal for automation
    RESOLVED = "resolved"      # Closed by the user starting over


class DecisionRule(str, Enum):
    """The decision engine rule that produced a verdict."""
    ESCALATION_REQUEST = "escalation_request"
    REPEATED_LOW_CONFIDENCE = "repeated_low_confidence"
    COMPLEX_QUESTION = "complex_question"
    FAQ_ANSWER = "faq_answer"
    FALLBACK = "fallback"


class EscalationReason(str, Enum):
    """Reason codes attached to escalating verdicts."""
    USER_REQUEST = "User requested human support"
    REPEATED_LOW_CONFIDENCE = "Multiple low-confidence responses"
    COMPLEX_QUESTION = "Complex multi-part question"


# Knowledge base and decision engine value types
class FAQEntry(BaseModel):
    """One knowledge-base item."""
    id: str = Field(..., min_length=1, description="Unique FAQ identifier")
    question: str = Field(..., description="Question text")
    answer: str = Field(..., description="Answer text returned to the user")
    category: str = Field(default="general", description="Category label")
    keywords: List[str] = Field(default_factory=list, description="Ordered keyword strings")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "faq_business_hours",
                "question": "What are your business hours?",
                "answer": "We are open Monday to Friday, 9am to 6pm.",
                "category": "general",
                "keywords": ["hours", "open", "business hours"]
            }
        }


class HistoryTurn(BaseModel):
    """One turn of the conversation window inspected by the decision engine."""
    role: MessageRole = Field(..., description="Role of the message sender")
    content: str = Field(default="", description="Message content")


class MatchResult(BaseModel):
    """Best FAQ match for a query with its normalized confidence."""
    faq: Optional[FAQEntry] = Field(None, description="Best matching FAQ, absent if nothing scored above zero")
    confidence: float = Field(0.0, ge=0.0, le=1.0, description="Normalized confidence [0,1]")
    score: int = Field(0, ge=0, description="Raw additive score of the best match")

    @property
    def matched(self) -> bool:
        return self.faq is not None


class Verdict(BaseModel):
    """Per-turn output of the decision engine."""
    response: str = Field(..., description="Response text for the user")
    escalate: bool = Field(False, description="Whether the conversation goes to human support")
    reason: Optional[str] = Field(None, description="Escalation reason code")
    rule: DecisionRule = Field(..., description="Rule that produced this verdict")


# Conversation store records
class MessageMetadata(BaseModel):
    """Decision details attached to assistant messages."""
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    matched_faq_id: Optional[str] = None
    matched_faq_category: Optional[str] = None
    rule: Optional[DecisionRule] = None
    escalation_reason: Optional[str] = None
    request_id: Optional[str] = None


class ChatMessage(BaseModel):
    """A persisted message of a chat session."""
    id: str = Field(..., description="Unique message identifier")
    session_id: str = Field(..., description="Owning session identifier")
    role: MessageRole = Field(..., description="Role of the message sender")
    content: str = Field(..., description="Message content")
    metadata: MessageMetadata = Field(default_factory=MessageMetadata, description="Decision metadata")
    created_at: datetime = Field(default_factory=utc_now, description="Message timestamp")

    def to_turn(self) -> HistoryTurn:
        return HistoryTurn(role=self.role, content=self.content)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "session_id": "session_abc123def456",
                "role": "assistant",
                "content": "We are open Monday to Friday, 9am to 6pm.\n\nIs there anything else I can help you with?",
                "metadata": {
                    "confidence": 0.8,
                    "matched_faq_id": "faq_business_hours",
                    "matched_faq_category": "general",
                    "rule": "faq_answer"
                },
                "created_at": "2025-08-27T10:30:45.123Z"
            }
        }


class ChatSession(BaseModel):
    """A chat session and its escalation state."""
    id: str = Field(..., description="Session identifier")
    user_id: str = Field(..., description="Owning user identifier")
    status: SessionStatus = Field(SessionStatus.ACTIVE, description="Session lifecycle status")
    escalated: bool = Field(False, description="Whether the session was handed to human support")
    escalation_reason: Optional[str] = Field(None, description="Reason recorded on escalation")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class SessionSummary(BaseModel):
    """Summary information about a session for list endpoints."""
    session: ChatSession
    message_count: int = Field(..., ge=0)
    last_message_preview: Optional[str] = Field(None, max_length=100)

    @classmethod
    def build(cls, session: ChatSession, messages: List[ChatMessage]) -> "SessionSummary":
        """Create summary from a session and its messages."""
        preview = None
        if messages:
            content = messages[-1].content
            preview = content[:97] + "..." if len(content) > 100 else content
        return cls(session=session, message_count=len(messages), last_message_preview=preview)


# API-specific models
class ChatRequest(BaseModel):
    """Request model for the chat endpoint."""
    message: str = Field(..., max_length=4000, description="User message content")
    user_id: str = Field(..., alias="userId", description="User identifier")
    session_id: Optional[str] = Field(None, alias="sessionId", description="Session identifier for conversation continuity")

    @validator('message')
    def validate_message(cls, v):
        if not v or v.isspace():
            raise ValueError('Message cannot be empty or only whitespace')
        return v.strip()

    @validator('user_id')
    def validate_user_id(cls, v):
        v = v.strip() if v else v
        if not v or len(v) > 128:
            raise ValueError('User ID must be 1-128 characters')
        return v

    @validator('session_id')
    def validate_session_id(cls, v):
        if v is not None and not re.match(SESSION_ID_PATTERN, v):
            raise ValueError('Session ID must be 8-64 alphanumeric characters with optional hyphens/underscores')
        return v

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "sessionId": "session_abc123def456",
                "userId": "user_jane_doe",
                "message": "What are your business hours?"
            }
        }


class ChatResponse(BaseModel):
    """Response model for the chat endpoint."""
    session_id: str = Field(..., alias="sessionId", description="Session identifier")
    message: ChatMessage = Field(..., description="Persisted assistant message")
    escalated: bool = Field(..., description="Whether the session was escalated by this turn")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Matcher confidence for this turn")

    class Config:
        populate_by_name = True


class StartSessionRequest(BaseModel):
    """Request model for starting over with a fresh session."""
    user_id: str = Field(..., alias="userId", min_length=1, max_length=128)

    class Config:
        populate_by_name = True


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "VALIDATION_ERROR",
                "message": "Missing required fields",
                "details": {"fields": ["userId"]},
                "request_id": "a1b2c3d4",
                "timestamp": "2025-08-27T10:30:45.123Z"
            }
        }


class HealthResponse(BaseModel):
    """Health check response model."""
    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall system health status")
    timestamp: str = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Application version")
    services: Dict[str, str] = Field(default_factory=dict, description="Individual service health statuses")
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Detailed health check results")


class SystemMetrics(BaseModel):
    """System metrics response model."""
    timestamp: str = Field(..., description="Metrics collection timestamp")
    uptime_seconds: float = Field(default=0.0)

    total_sessions: int = Field(default=0)
    active_sessions: int = Field(default=0)
    escalated_sessions: int = Field(default=0)
    resolved_sessions: int = Field(default=0)
    total_messages: int = Field(default=0)
    total_turns: int = Field(default=0)

    escalation_rate: float = Field(default=0.0, ge=0.0, le=1.0, description="Share of turns that escalated")
    avg_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    avg_response_time_ms: float = Field(default=0.0)
    rule_distribution: Dict[str, int] = Field(default_factory=dict, description="Verdict count by decision rule")
    escalation_reasons: Dict[str, int] = Field(default_factory=dict, description="Escalation count by reason")
    memory_usage_mb: float = Field(default=0.0)
