"""
Chat turn processing for the Support Desk service.

This module sits between the HTTP API and the decision engine:
1. Resolves or creates the chat session for the request
2. Refuses new turns for sessions that left automated handling
3. Fetches the recent history and the FAQ knowledge base
4. Runs the matcher and decision engine
5. Persists the user message, the reply and any escalation in one write

Turns of the same session are processed one at a time so that history reads
and writes never interleave. If any step fails nothing is written.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger

from supportdesk.decision import DecisionEngine
from supportdesk.faqs import FAQRepository, KnowledgeBaseError, get_faq_repository
from supportdesk.models import (
    ChatMessage, ChatRequest, ChatResponse, ChatSession, MatchResult, MessageMetadata, SessionStatus,
    Verdict
)
from supportdesk.store import (
    ConversationStore, SessionNotFoundError, SessionStateError, StoreError,
    get_conversation_store
)
from supportdesk.utils import Timer, get_config, sanitize_for_logging


class ChatServiceError(Exception):
    """Base error for chat processing, carrying an HTTP-equivalent status."""
    status_code = 500
    error_code = "CHAT_SERVICE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(ChatServiceError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class SessionAccessError(ChatServiceError):
    status_code = 403
    error_code = "SESSION_FORBIDDEN"


class SessionMissingError(ChatServiceError):
    status_code = 404
    error_code = "SESSION_NOT_FOUND"


class SessionClosedError(ChatServiceError):
    status_code = 409
    error_code = "SESSION_CLOSED"

    def __init__(self, session: ChatSession):
        if session.status == SessionStatus.ESCALATED:
            message = "This conversation has been escalated to our support team"
        else:
            message = f"This conversation is {session.status.value}"
        super().__init__(message)
        self.session = session


class DownstreamError(ChatServiceError):
    status_code = 500
    error_code = "DOWNSTREAM_ERROR"


class ChatService:
    """Processes chat turns against the conversation store and knowledge base."""

    def __init__(self, store: ConversationStore, faq_repository: FAQRepository,
                 engine: Optional[DecisionEngine] = None, history_limit: int = 10):
        self.store = store
        self.faq_repository = faq_repository
        self.engine = engine or DecisionEngine()
        self.history_limit = history_limit
        # Locks exist only while a turn of the session is running or waiting
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._lock_holders[session_id] = self._lock_holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[session_id] -= 1
            if not self._lock_holders[session_id]:
                del self._lock_holders[session_id]
                del self._session_locks[session_id]

    async def _resolve_session(self, request: ChatRequest) -> Tuple[ChatSession, bool]:
        """Return the session for the request and whether it was created for it."""
        if not request.session_id:
            return await self.store.create_session(request.user_id), True

        session = await self.store.get_session(request.session_id)
        if session is None:
            raise SessionMissingError(f"Session '{request.session_id}' not found")
        if session.user_id != request.user_id:
            raise SessionAccessError("Session does not belong to this user")
        return session, False

    async def _discard_session(self, session_id: str, request_id: Optional[str]) -> None:
        try:
            await self.store.delete_session(session_id)
        except StoreError as e:
            logger.error("Failed to discard new session", error=str(e), session_id=session_id,
                         request_id=request_id)

    async def handle_message(self, request: ChatRequest, request_id: Optional[str] = None) -> ChatResponse:
        """
        Process one user message end to end.

        A session created for this message is removed again when the turn
        fails, so a failed first message leaves nothing behind.

        Args:
            request: Validated chat request
            request_id: Optional request identifier for tracing

        Returns:
            ChatResponse with the persisted assistant message

        Raises:
            ChatServiceError: With the HTTP-equivalent status of the failure
        """
        if not request.user_id or not request.message:
            raise InvalidRequestError("Missing required fields")

        try:
            session, created = await self._resolve_session(request)
        except StoreError as e:
            logger.error("Session lookup failed", error=str(e), request_id=request_id)
            raise DownstreamError("Failed to load chat session") from e

        try:
            with Timer("chat turn") as timer:
                matched, verdict, assistant_message = await self._process_turn(session, request, request_id)
        except ChatServiceError:
            if created:
                await self._discard_session(session.id, request_id)
            raise

        await self.store.record_response_time(timer.duration_ms)

        if verdict.escalate:
            logger.warning(
                "Session escalated to human support",
                session_id=session.id,
                reason=verdict.reason,
                request_id=request_id
            )

        logger.info(
            "Chat turn completed",
            session_id=session.id,
            request_id=request_id,
            message_preview=sanitize_for_logging(request.message, 50),
            rule=verdict.rule.value,
            confidence=matched.confidence,
            escalated=verdict.escalate,
            processing_time_ms=timer.duration_ms
        )

        return ChatResponse(
            session_id=session.id,
            message=assistant_message,
            escalated=verdict.escalate,
            confidence=matched.confidence
        )

    async def _process_turn(self, session: ChatSession, request: ChatRequest,
                            request_id: Optional[str]) -> Tuple[MatchResult, Verdict, ChatMessage]:
        async with self._session_lock(session.id):
            current = None
            try:
                # Status may have changed while waiting for the lock
                current = await self.store.get_session(session.id)
                if current is None:
                    raise SessionMissingError(f"Session '{session.id}' not found")
                if not current.is_active:
                    raise SessionClosedError(current)

                history = await self.store.fetch_recent_turns(session.id, self.history_limit)
                faqs = await self.faq_repository.get_faqs()

                matched, verdict = self.engine.evaluate(request.message, faqs, history)

                metadata = MessageMetadata(
                    confidence=matched.confidence,
                    matched_faq_id=matched.faq.id if matched.matched else None,
                    matched_faq_category=matched.faq.category if matched.matched else None,
                    rule=verdict.rule,
                    escalation_reason=verdict.reason,
                    request_id=request_id
                )
                assistant_message = await self.store.record_turn(
                    session.id, request.message, verdict, metadata
                )

            except SessionStateError as e:
                raise SessionClosedError(await self.store.get_session(session.id) or current) from e
            except SessionNotFoundError as e:
                raise SessionMissingError(str(e)) from e
            except KnowledgeBaseError as e:
                logger.error("FAQ fetch failed", error=str(e), session_id=session.id, request_id=request_id)
                raise DownstreamError("Failed to load the knowledge base") from e
            except StoreError as e:
                logger.error("Conversation store failed", error=str(e), session_id=session.id, request_id=request_id)
                raise DownstreamError("Failed to save the conversation") from e

        return matched, verdict, assistant_message

    async def start_new_session(self, user_id: str) -> ChatSession:
        """Resolve the user's current active session and open a fresh one."""
        try:
            current = await self.store.get_active_session(user_id)
            if current is not None:
                await self.store.resolve_session(current.id)
            return await self.store.create_session(user_id)
        except StoreError as e:
            logger.error("Failed to start new session", error=str(e), user_id=user_id)
            raise DownstreamError("Failed to start a new session") from e

    async def resolve_session(self, session_id: str) -> ChatSession:
        try:
            return await self.store.resolve_session(session_id)
        except SessionNotFoundError as e:
            raise SessionMissingError(str(e)) from e

    async def delete_session(self, session_id: str) -> None:
        """Remove a session and its messages."""
        async with self._session_lock(session_id):
            if not await self.store.delete_session(session_id):
                raise SessionMissingError(f"Session '{session_id}' not found")
        logger.info("Session deleted", session_id=session_id)

    async def get_session(self, session_id: str) -> ChatSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionMissingError(f"Session '{session_id}' not found")
        return session

    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        return await self.store.get_active_session(user_id)

    async def get_messages(self, session_id: str, since: Optional[datetime] = None) -> List[ChatMessage]:
        try:
            return await self.store.get_messages(session_id, since)
        except SessionNotFoundError as e:
            raise SessionMissingError(str(e)) from e


# Global service instance
_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Get the global chat service, wired from configuration."""
    global _chat_service
    if _chat_service is None:
        config = get_config()
        _chat_service = ChatService(
            store=get_conversation_store(),
            faq_repository=get_faq_repository(),
            engine=DecisionEngine.from_config(config),
            history_limit=config.get("HISTORY_FETCH_LIMIT", 10)
        )
    return _chat_service
