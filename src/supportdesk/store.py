"""
Conversation storage for chat sessions, messages and metrics.

This module provides:
- The ConversationStore contract used by the chat service
- An in-memory implementation safe for concurrent asyncio use

Key Features:
- Atomic turn recording (user message, assistant message and session status
  change are written together or not at all)
- Session lifecycle: active -> escalated, active -> resolved
- TTL based cleanup of idle sessions in a background worker
- Metrics on turns, decision rules, escalations and memory usage
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any

import psutil
from loguru import logger

from supportdesk.models import (
    ChatMessage,
    ChatSession,
    HistoryTurn,
    MessageMetadata,
    MessageRole,
    SessionStatus,
    SessionSummary,
    Verdict,
)
from supportdesk.utils import generate_message_id, generate_session_id, get_config


class StoreError(Exception):
    """Raised when the conversation store cannot complete an operation."""
    pass


class SessionNotFoundError(StoreError):
    """Raised when a session does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionStateError(StoreError):
    """Raised when a write is not allowed in the session's current status."""

    def __init__(self, session_id: str, status: SessionStatus):
        super().__init__(f"Session {session_id} is {status.value}")
        self.session_id = session_id
        self.status = status


@dataclass
class StoreMetrics:
    """Metrics tracked by the conversation store."""
    total_sessions: int = 0
    total_messages: int = 0
    total_turns: int = 0
    escalated_turns: int = 0
    memory_usage_mb: float = 0.0
    avg_confidence: float = 0.0
    avg_response_time_ms: float = 0.0

    rule_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    escalation_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Keep the last 1000 samples
    confidences: deque = field(default_factory=lambda: deque(maxlen=1000))
    response_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    @property
    def escalation_rate(self) -> float:
        if not self.total_turns:
            return 0.0
        return self.escalated_turns / self.total_turns


class ConversationStore(ABC):
    """Storage contract consumed by the chat service."""

    @abstractmethod
    async def create_session(self, user_id: str, session_id: Optional[str] = None) -> ChatSession:
        """Create a new active session for a user."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        """Get a session by id, or None."""

    @abstractmethod
    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        """Get the most recently created active session of a user, or None."""

    @abstractmethod
    async def list_sessions(self, user_id: Optional[str] = None, limit: int = 50,
                            offset: int = 0) -> List[SessionSummary]:
        """List sessions, most recently updated first."""

    @abstractmethod
    async def fetch_recent_turns(self, session_id: str, limit: int) -> List[HistoryTurn]:
        """Get up to `limit` most recent turns of a session, oldest first."""

    @abstractmethod
    async def get_messages(self, session_id: str, since: Optional[datetime] = None) -> List[ChatMessage]:
        """Get all messages of a session, optionally only those created after `since`."""

    @abstractmethod
    async def record_turn(self, session_id: str, user_message: str, verdict: Verdict,
                          metadata: MessageMetadata) -> ChatMessage:
        """Persist a user message, its reply and the resulting session status together."""

    @abstractmethod
    async def resolve_session(self, session_id: str) -> ChatSession:
        """Mark an active session as resolved."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages."""

    @abstractmethod
    async def cleanup_expired_sessions(self) -> int:
        """Remove sessions idle for longer than the TTL."""

    @abstractmethod
    async def get_metrics(self) -> StoreMetrics:
        """Get current store metrics."""

    @abstractmethod
    async def get_session_counts(self) -> Dict[str, int]:
        """Count sessions by status."""

    async def record_response_time(self, duration_ms: float) -> None:
        """Record the processing time of one chat turn."""

    async def get_health_status(self) -> Dict[str, Any]:
        return {"status": "healthy"}

    async def close(self) -> None:
        """Release background resources."""


class InMemoryConversationStore(ConversationStore):
    """Thread-safe in-memory storage for sessions, messages and metrics."""

    def __init__(self, cleanup_interval_minutes: int = 60, conversation_ttl_hours: int = 24):
        """Initialize the conversation store.

        Args:
            cleanup_interval_minutes: How often to run cleanup (default: 60 minutes)
            conversation_ttl_hours: How long to keep idle sessions (default: 24 hours)
        """
        self._sessions: Dict[str, ChatSession] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._metrics = StoreMetrics()
        self._lock = asyncio.Lock()

        # Configuration
        self.cleanup_interval = timedelta(minutes=cleanup_interval_minutes)
        self.conversation_ttl = timedelta(hours=conversation_ttl_hours)

        # Background cleanup task (started when first async method is called)
        self._cleanup_task = None
        self._tasks_started = False

    def _ensure_background_tasks_started(self):
        """Ensure background tasks are started (call from async methods)."""
        if self._tasks_started:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop running, retried on the next async call
            return

        async def cleanup_worker():
            while True:
                await asyncio.sleep(self.cleanup_interval.total_seconds())
                try:
                    removed = await self.cleanup_expired_sessions()
                    if removed:
                        logger.info("Expired sessions removed", removed=removed)
                except StoreError as e:
                    logger.error("Cleanup task error", error=str(e))

        self._cleanup_task = loop.create_task(cleanup_worker())
        self._tasks_started = True

    def _require_session(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def create_session(self, user_id: str, session_id: Optional[str] = None) -> ChatSession:
        """Create a new active session.

        Args:
            user_id: Owning user identifier
            session_id: Optional session ID, generated if not provided

        Returns:
            New ChatSession object

        Raises:
            StoreError: If the session ID is already taken
        """
        self._ensure_background_tasks_started()

        session_id = session_id or generate_session_id()

        async with self._lock:
            if session_id in self._sessions:
                raise StoreError(f"Session {session_id} already exists")

            session = ChatSession(id=session_id, user_id=user_id)
            self._sessions[session_id] = session
            self._messages[session_id] = []
            self._metrics.total_sessions += 1

        logger.info("Session created", session_id=session_id, user_id=user_id)
        return session.model_copy()

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        async with self._lock:
            active = [
                s for s in self._sessions.values()
                if s.user_id == user_id and s.status == SessionStatus.ACTIVE
            ]
            if not active:
                return None
            return max(active, key=lambda s: s.created_at).model_copy()

    async def list_sessions(self, user_id: Optional[str] = None, limit: int = 50,
                            offset: int = 0) -> List[SessionSummary]:
        """List sessions with optional user filtering.

        Args:
            user_id: Optional user ID filter
            limit: Maximum number of sessions to return
            offset: Number of sessions to skip

        Returns:
            List of SessionSummary objects
        """
        async with self._lock:
            sessions = list(self._sessions.values())

            if user_id:
                sessions = [s for s in sessions if s.user_id == user_id]

            sessions.sort(key=lambda s: s.updated_at, reverse=True)
            paginated = sessions[offset:offset + limit]

            return [
                SessionSummary.build(s.model_copy(), list(self._messages.get(s.id, [])))
                for s in paginated
            ]

    async def fetch_recent_turns(self, session_id: str, limit: int) -> List[HistoryTurn]:
        async with self._lock:
            self._require_session(session_id)
            messages = self._messages[session_id][-limit:] if limit > 0 else []
            return [m.to_turn() for m in messages]

    async def get_messages(self, session_id: str, since: Optional[datetime] = None) -> List[ChatMessage]:
        async with self._lock:
            self._require_session(session_id)
            messages = self._messages[session_id]
            if since is not None:
                if since.tzinfo is None:
                    since = since.replace(tzinfo=timezone.utc)
                messages = [m for m in messages if m.created_at > since]
            return [m.model_copy() for m in messages]

    async def record_turn(self, session_id: str, user_message: str, verdict: Verdict,
                          metadata: MessageMetadata) -> ChatMessage:
        """Persist one complete turn.

        Args:
            session_id: Session identifier
            user_message: The user's message content
            verdict: Decision engine verdict for the message
            metadata: Decision metadata stored on the assistant message

        Returns:
            The persisted assistant message

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionStateError: If the session is no longer active
        """
        async with self._lock:
            session = self._require_session(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise SessionStateError(session_id, session.status)

            now = datetime.now(timezone.utc)
            user_record = ChatMessage(
                id=generate_message_id(),
                session_id=session_id,
                role=MessageRole.USER,
                content=user_message,
                metadata=MessageMetadata(request_id=metadata.request_id),
                created_at=now
            )
            assistant_record = ChatMessage(
                id=generate_message_id(),
                session_id=session_id,
                role=MessageRole.ASSISTANT,
                content=verdict.response,
                metadata=metadata,
                created_at=now
            )

            updates: Dict[str, Any] = {"updated_at": now}
            if verdict.escalate:
                updates.update(
                    status=SessionStatus.ESCALATED,
                    escalated=True,
                    escalation_reason=verdict.reason
                )

            self._messages[session_id].extend([user_record, assistant_record])
            self._sessions[session_id] = session.model_copy(update=updates)

            self._metrics.total_messages += 2
            self._metrics.total_turns += 1
            self._metrics.rule_counts[verdict.rule.value] += 1
            if metadata.confidence is not None:
                self._metrics.confidences.append(metadata.confidence)
                self._metrics.avg_confidence = sum(self._metrics.confidences) / len(self._metrics.confidences)
            if verdict.escalate:
                self._metrics.escalated_turns += 1
                self._metrics.escalation_reasons[verdict.reason or "unspecified"] += 1

            return assistant_record.model_copy()

    async def resolve_session(self, session_id: str) -> ChatSession:
        """Mark a session as resolved.

        Escalated sessions stay escalated; resolving an already resolved
        session is a no-op.
        """
        async with self._lock:
            session = self._require_session(session_id)
            if session.status == SessionStatus.ACTIVE:
                session = session.model_copy(update={
                    "status": SessionStatus.RESOLVED,
                    "updated_at": datetime.now(timezone.utc)
                })
                self._sessions[session_id] = session
                logger.info("Session resolved", session_id=session_id)
            return session.model_copy()

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            if session_id in self._sessions:
                del self._sessions[session_id]
                self._messages.pop(session_id, None)
                return True
            return False

    async def cleanup_expired_sessions(self) -> int:
        """Remove sessions idle for longer than the TTL.

        Returns:
            Number of sessions removed
        """
        cutoff_time = datetime.now(timezone.utc) - self.conversation_ttl

        async with self._lock:
            expired = [
                session_id for session_id, session in self._sessions.items()
                if session.updated_at < cutoff_time
            ]
            for session_id in expired:
                del self._sessions[session_id]
                self._messages.pop(session_id, None)

        return len(expired)

    async def record_response_time(self, duration_ms: float):
        async with self._lock:
            self._metrics.response_times.append(duration_ms)
            self._metrics.avg_response_time_ms = (
                sum(self._metrics.response_times) / len(self._metrics.response_times)
            )

    def _count_sessions_by_status(self) -> Dict[str, int]:
        # Caller holds the lock
        counts = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status.value] += 1
        return counts

    async def get_session_counts(self) -> Dict[str, int]:
        async with self._lock:
            return self._count_sessions_by_status()

    async def get_metrics(self) -> StoreMetrics:
        """Get current store metrics.

        Returns:
            Current StoreMetrics object
        """
        async with self._lock:
            self._update_memory_metrics()
            return self._metrics

    def _update_memory_metrics(self):
        """Update memory usage metrics."""
        try:
            process = psutil.Process()
            self._metrics.memory_usage_mb = process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            # Keep the old value
            logger.warning("Could not read memory usage", error=str(e))

    async def get_health_status(self) -> Dict[str, Any]:
        """Get health status of the store.

        Returns:
            Dictionary containing health information
        """
        async with self._lock:
            self._update_memory_metrics()

            memory_status = "healthy"
            if self._metrics.memory_usage_mb > 1000:
                memory_status = "critical"
            elif self._metrics.memory_usage_mb > 500:
                memory_status = "warning"

            return {
                "status": "healthy" if memory_status != "critical" else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "memory": {
                    "status": memory_status,
                    "usage_mb": self._metrics.memory_usage_mb
                },
                "storage": {
                    "sessions": self._count_sessions_by_status(),
                    "total_messages": self._metrics.total_messages
                }
            }

    async def close(self):
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
        self._tasks_started = False


# Global store instance
_store_instance: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get the global conversation store instance.

    Returns:
        ConversationStore instance
    """
    global _store_instance
    if _store_instance is None:
        config = get_config()
        _store_instance = InMemoryConversationStore(
            cleanup_interval_minutes=config.get("CLEANUP_INTERVAL_MINUTES", 60),
            conversation_ttl_hours=config.get("CONVERSATION_TTL_HOURS", 24)
        )
    return _store_instance


__all__ = [
    'ConversationStore',
    'InMemoryConversationStore',
    'StoreMetrics',
    'StoreError',
    'SessionNotFoundError',
    'SessionStateError',
    'get_conversation_store',
]
