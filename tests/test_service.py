"""Tests for end-to-end chat turn processing."""

import asyncio

import pytest

from supportdesk.decision import CONTEXT_PREFIX, FALLBACK_RESPONSE
from supportdesk.faqs import FAQRepository
from supportdesk.models import ChatRequest, DecisionRule, MessageRole, SessionStatus
from supportdesk.service import (
    ChatService, DownstreamError, SessionAccessError, SessionClosedError, SessionMissingError
)


def chat(message, user_id="user_1", session_id=None):
    return ChatRequest(message=message, user_id=user_id, session_id=session_id)


class TestHandleMessage:

    async def test_creates_session_and_answers(self, service, store, hours_faq):
        response = await service.handle_message(chat("what are your hours"), request_id="req12345")

        assert response.escalated is False
        assert response.confidence == pytest.approx(0.6)
        assert hours_faq.answer in response.message.content
        assert response.message.metadata.matched_faq_id == "faq_hours"
        assert response.message.metadata.request_id == "req12345"

        session = await store.get_session(response.session_id)
        assert session.user_id == "user_1"
        assert session.status == SessionStatus.ACTIVE

        messages = await store.get_messages(response.session_id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == "what are your hours"

    async def test_continues_existing_session(self, service, store):
        first = await service.handle_message(chat("what are your hours"))
        second = await service.handle_message(chat("how do I reset my password", session_id=first.session_id))

        assert second.session_id == first.session_id
        assert len(await store.get_messages(first.session_id)) == 4

    async def test_context_prefix_on_new_question(self, service):
        first = await service.handle_message(chat("how do I reset my password"))
        second = await service.handle_message(chat("what are your hours", session_id=first.session_id))
        assert second.message.content.startswith(CONTEXT_PREFIX)

    async def test_escalation_closes_session(self, service, store):
        response = await service.handle_message(chat("I want to talk to a human"))

        assert response.escalated is True
        assert response.message.metadata.rule == DecisionRule.ESCALATION_REQUEST
        session = await store.get_session(response.session_id)
        assert session.status == SessionStatus.ESCALATED
        assert session.escalation_reason == "User requested human support"

        with pytest.raises(SessionClosedError) as exc_info:
            await service.handle_message(chat("hello?", session_id=response.session_id))
        assert exc_info.value.status_code == 409
        assert len(await store.get_messages(response.session_id)) == 2

    async def test_repeated_fallbacks_escalate(self, service):
        first = await service.handle_message(chat("xyzzy plugh"))
        assert first.message.content == FALLBACK_RESPONSE

        second = await service.handle_message(chat("quux frobnicate", session_id=first.session_id))
        assert second.escalated is False

        third = await service.handle_message(chat("what are your hours", session_id=first.session_id))
        assert third.escalated is True
        assert third.message.metadata.escalation_reason == "Multiple low-confidence responses"

    async def test_unknown_session(self, service):
        with pytest.raises(SessionMissingError):
            await service.handle_message(chat("hello", session_id="session_doesnotexist"))

    async def test_session_of_other_user(self, service):
        response = await service.handle_message(chat("what are your hours", user_id="alice"))
        with pytest.raises(SessionAccessError):
            await service.handle_message(chat("hello", user_id="mallory", session_id=response.session_id))

    async def test_knowledge_base_failure_persists_nothing(self, store, tmp_path):
        service = ChatService(store=store, faq_repository=FAQRepository(path=tmp_path / "missing.json"))
        session = await store.create_session("user_1")

        with pytest.raises(DownstreamError) as exc_info:
            await service.handle_message(chat("what are your hours", session_id=session.id))
        assert exc_info.value.status_code == 500
        assert await store.get_messages(session.id) == []

    async def test_failed_first_message_leaves_no_session(self, store, tmp_path):
        service = ChatService(store=store, faq_repository=FAQRepository(path=tmp_path / "missing.json"))

        with pytest.raises(DownstreamError):
            await service.handle_message(chat("what are your hours"))
        assert await store.list_sessions(user_id="user_1") == []
        assert await service.get_active_session("user_1") is None

    async def test_concurrent_turns_are_serialized(self, service, store):
        first = await service.handle_message(chat("what are your hours"))

        await asyncio.gather(*[
            service.handle_message(chat(f"what are your hours {i}", session_id=first.session_id))
            for i in range(5)
        ])

        messages = await store.get_messages(first.session_id)
        assert len(messages) == 12
        roles = [m.role for m in messages]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT] * 6


class TestSessionLifecycle:

    async def test_start_new_session_resolves_previous(self, service, store):
        response = await service.handle_message(chat("what are your hours"))

        fresh = await service.start_new_session("user_1")
        assert fresh.id != response.session_id
        assert (await store.get_session(response.session_id)).status == SessionStatus.RESOLVED
        assert (await service.get_active_session("user_1")).id == fresh.id

    async def test_resolve_session(self, service):
        session = await service.start_new_session("user_1")
        resolved = await service.resolve_session(session.id)
        assert resolved.status == SessionStatus.RESOLVED

        with pytest.raises(SessionClosedError):
            await service.handle_message(chat("hi", session_id=session.id))

    async def test_missing_session_lookups(self, service):
        with pytest.raises(SessionMissingError):
            await service.get_session("session_doesnotexist")
        with pytest.raises(SessionMissingError):
            await service.get_messages("session_doesnotexist")
        with pytest.raises(SessionMissingError):
            await service.resolve_session("session_doesnotexist")

    async def test_messages_since(self, service):
        response = await service.handle_message(chat("what are your hours"))
        since = response.message.created_at

        await asyncio.sleep(0.01)
        await service.handle_message(chat("how do I reset my password", session_id=response.session_id))

        newer = await service.get_messages(response.session_id, since=since)
        assert [m.role for m in newer] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert newer[0].content == "how do I reset my password"

    async def test_delete_session(self, service, store):
        response = await service.handle_message(chat("what are your hours"))
        await service.delete_session(response.session_id)

        assert await store.get_session(response.session_id) is None
        with pytest.raises(SessionMissingError):
            await service.delete_session(response.session_id)


class TestSessionLocks:

    async def test_locks_released_after_turns(self, service):
        for i in range(20):
            await service.handle_message(chat("I want to talk to a human", user_id=f"user_{i}"))
        await service.handle_message(chat("what are your hours"))

        assert service._session_locks == {}
        assert service._lock_holders == {}

    async def test_locks_released_after_concurrent_turns(self, service):
        first = await service.handle_message(chat("what are your hours"))
        await asyncio.gather(*[
            service.handle_message(chat(f"what are your hours {i}", session_id=first.session_id))
            for i in range(5)
        ])
        assert service._session_locks == {}

    async def test_locks_released_after_failed_turn(self, service):
        response = await service.handle_message(chat("I want to talk to a human"))
        with pytest.raises(SessionClosedError):
            await service.handle_message(chat("hello?", session_id=response.session_id))
        assert service._session_locks == {}
