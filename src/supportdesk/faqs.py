"""
FAQ knowledge base loading and caching.

FAQ entries are read from a JSON file (a list of objects with id, question,
answer, category and keywords) and cached in memory for a configurable TTL.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Dict, List, Optional, Any

from loguru import logger
from pydantic import ValidationError

from supportdesk.models import FAQEntry
from supportdesk.utils import get_config


DEFAULT_FAQ_PATH = Path(__file__).parent / "data" / "faqs.json"


class KnowledgeBaseError(Exception):
    """Raised when the FAQ knowledge base cannot be loaded."""
    pass


def parse_faqs(raw: Any) -> List[FAQEntry]:
    """
    Validate raw JSON data into FAQ entries.

    Raises:
        KnowledgeBaseError: If the payload is not a list of valid entries
    """
    if isinstance(raw, dict) and "faqs" in raw:
        raw = raw["faqs"]
    if not isinstance(raw, list):
        raise KnowledgeBaseError("FAQ data must be a list of entries")

    entries = []
    seen_ids = set()
    for index, item in enumerate(raw):
        try:
            entry = FAQEntry(**item)
        except (TypeError, ValidationError) as e:
            raise KnowledgeBaseError(f"Invalid FAQ entry at position {index}: {e}") from e
        if entry.id in seen_ids:
            raise KnowledgeBaseError(f"Duplicate FAQ id: {entry.id}")
        seen_ids.add(entry.id)
        entries.append(entry)
    return entries


class FAQRepository:
    """Cached read access to the FAQ knowledge base."""

    def __init__(self, path: Optional[Path] = None, cache_ttl_seconds: int = 300):
        self.path = Path(path) if path else DEFAULT_FAQ_PATH
        self.cache_ttl_seconds = cache_ttl_seconds
        self._faqs: Optional[List[FAQEntry]] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def load(self) -> List[FAQEntry]:
        """
        Read and validate the FAQ file.

        Raises:
            KnowledgeBaseError: If the file is missing or malformed
        """
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise KnowledgeBaseError(f"FAQ file not found: {self.path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise KnowledgeBaseError(f"Could not read FAQ file {self.path}: {e}") from e

        faqs = parse_faqs(raw)
        logger.info("FAQ knowledge base loaded", path=str(self.path), faq_count=len(faqs))
        return faqs

    def _is_fresh(self) -> bool:
        if self._faqs is None:
            return False
        if self.cache_ttl_seconds <= 0:
            return True
        return (time.monotonic() - self._loaded_at) < self.cache_ttl_seconds

    async def get_faqs(self, category: Optional[str] = None) -> List[FAQEntry]:
        """
        Get all FAQ entries, reloading the file when the cache expired.

        Args:
            category: Optional case-insensitive category filter
        """
        async with self._lock:
            if not self._is_fresh():
                self._faqs = self.load()
                self._loaded_at = time.monotonic()
            faqs = list(self._faqs)

        if category:
            faqs = [faq for faq in faqs if faq.category.lower() == category.lower()]
        return faqs

    async def reload(self) -> int:
        """Force a reload from disk, returning the number of entries."""
        async with self._lock:
            self._faqs = self.load()
            self._loaded_at = time.monotonic()
            return len(self._faqs)

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "loaded": self._faqs is not None,
            "faq_count": len(self._faqs) if self._faqs is not None else 0,
            "cache_ttl_seconds": self.cache_ttl_seconds
        }


# Global repository instance
_faq_repository: Optional[FAQRepository] = None


def get_faq_repository() -> FAQRepository:
    """Get the global FAQ repository, creating it from configuration."""
    global _faq_repository
    if _faq_repository is None:
        config = get_config()
        _faq_repository = FAQRepository(
            path=config.get("FAQ_DATA_PATH") or None,
            cache_ttl_seconds=config.get("FAQ_CACHE_TTL_SECONDS", 300)
        )
    return _faq_repository
