"""Shared fixtures for the Support Desk test suite."""

import json

import pytest

from supportdesk.decision import DecisionEngine
from supportdesk.faqs import FAQRepository
from supportdesk.models import FAQEntry
from supportdesk.service import ChatService
from supportdesk.store import InMemoryConversationStore


FAQ_DATA = [
    {
        "id": "faq_hours",
        "question": "What are your business hours?",
        "answer": "We are open Monday to Friday, 9am to 6pm.",
        "category": "general",
        "keywords": ["hours", "open", "business hours"]
    },
    {
        "id": "faq_password",
        "question": "How do I reset my password?",
        "answer": "Use the Forgot password link on the sign-in page.",
        "category": "account",
        "keywords": ["password", "reset", "forgot"]
    },
    {
        "id": "faq_refund",
        "question": "What is your refund policy?",
        "answer": "Refunds are available within 30 days of purchase.",
        "category": "billing",
        "keywords": ["refund", "money back"]
    }
]


@pytest.fixture
def faqs():
    return [FAQEntry(**item) for item in FAQ_DATA]


@pytest.fixture
def hours_faq(faqs):
    return faqs[0]


@pytest.fixture
def faq_file(tmp_path):
    path = tmp_path / "faqs.json"
    path.write_text(json.dumps(FAQ_DATA), encoding="utf-8")
    return path


@pytest.fixture
def faq_repository(faq_file):
    return FAQRepository(path=faq_file, cache_ttl_seconds=300)


@pytest.fixture
async def store():
    conversation_store = InMemoryConversationStore()
    yield conversation_store
    await conversation_store.close()


@pytest.fixture
def service(store, faq_repository):
    return ChatService(store=store, faq_repository=faq_repository, engine=DecisionEngine(), history_limit=10)
