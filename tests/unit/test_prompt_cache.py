"""Unit tests for the prompt cache.

Tests cover:
- Fingerprint determinism and stage separation
- Hit counting on lookup
- TTL expiry and lazy deletion
- Upsert-by-fingerprint deduplication
- Maintenance cleanup and statistics
- Store failures surfacing as CacheError
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from services.cache.service import (
    CLASSIFY_PREFIX,
    DUPLICATE_PREFIX,
    EXTRACT_PREFIX,
    CacheError,
    PromptCache,
    fingerprint,
)


@pytest.fixture
def cache(session_factory: sessionmaker[Session], clock) -> PromptCache:
    return PromptCache(session_factory, default_ttl_ms=300_000, clock=clock)


class TestFingerprint:
    def test_is_deterministic(self) -> None:
        assert fingerprint(CLASSIFY_PREFIX, ["abc"]) == fingerprint(CLASSIFY_PREFIX, ["abc"])

    def test_is_sha256_hex(self) -> None:
        digest = fingerprint(EXTRACT_PREFIX, ["abc"])
        assert len(digest) == 64
        int(digest, 16)

    def test_stage_prefix_separates_keys(self) -> None:
        assert fingerprint(CLASSIFY_PREFIX, ["abc"]) != fingerprint(EXTRACT_PREFIX, ["abc"])

    def test_page_order_matters(self) -> None:
        assert fingerprint(EXTRACT_PREFIX, ["a", "b"]) != fingerprint(EXTRACT_PREFIX, ["b", "a"])

    def test_dict_key_order_does_not_matter(self) -> None:
        first = {"vendor_name": "Acme", "invoice_number": "1001"}
        second = {"invoice_number": "1001", "vendor_name": "Acme"}
        assert fingerprint(DUPLICATE_PREFIX, first) == fingerprint(DUPLICATE_PREFIX, second)


class TestLookup:
    def test_miss_on_empty_cache(self, cache: PromptCache) -> None:
        assert cache.lookup("missing") is None

    def test_hit_returns_value_and_counts(self, cache: PromptCache) -> None:
        cache.store("hash-1", '{"is_invoice": true}', tokens_saved=150)

        first = cache.lookup("hash-1")
        second = cache.lookup("hash-1")

        assert first is not None and second is not None
        assert first.cached_response == '{"is_invoice": true}'
        assert first.cache_hits == 1
        assert second.cache_hits == 2

    def test_entry_live_at_exact_ttl(self, cache: PromptCache, clock) -> None:
        cache.store("hash-1", "value", ttl_ms=1_000)
        clock.advance(milliseconds=1_000)

        assert cache.lookup("hash-1") is not None

    def test_expired_entry_is_miss_and_removed(self, cache: PromptCache, clock) -> None:
        cache.store("hash-1", "value")
        clock.advance(milliseconds=300_001)

        assert cache.lookup("hash-1") is None
        assert cache.get_by_id("hash-1") is None

    def test_is_valid(self, cache: PromptCache, clock) -> None:
        cache.store("hash-1", "value", ttl_ms=10)
        assert cache.is_valid("hash-1") is True

        clock.advance(milliseconds=11)
        assert cache.is_valid("hash-1") is False


class TestStore:
    def test_store_uses_fingerprint_as_id(self, cache: PromptCache) -> None:
        cache.store("hash-1", "value", tokens_saved=42)

        entry = cache.get_by_id("hash-1")
        assert entry is not None
        assert entry.prompt_hash == "hash-1"
        assert entry.tokens_saved == 42
        assert entry.ttl_ms == 300_000
        assert entry.cache_hits == 0

    def test_restore_overwrites_instead_of_duplicating(self, cache: PromptCache) -> None:
        cache.store("hash-1", "old")
        cache.lookup("hash-1")
        cache.store("hash-1", "new")

        assert cache.stats().total_entries == 1
        entry = cache.get_by_id("hash-1")
        assert entry is not None
        assert entry.cached_response == "new"
        assert entry.cache_hits == 0

    def test_restore_resets_age(self, cache: PromptCache, clock) -> None:
        cache.store("hash-1", "old", ttl_ms=1_000)
        clock.advance(milliseconds=900)
        cache.store("hash-1", "new", ttl_ms=1_000)
        clock.advance(milliseconds=900)

        value = cache.lookup("hash-1")
        assert value is not None
        assert value.cached_response == "new"

    def test_zero_ttl_is_kept(self, cache: PromptCache, clock) -> None:
        cache.store("hash-1", "value", ttl_ms=0)

        entry = cache.get_by_id("hash-1")
        assert entry is not None
        assert entry.ttl_ms == 0

        clock.advance(milliseconds=1)
        assert cache.lookup("hash-1") is None

    def test_delete(self, cache: PromptCache) -> None:
        cache.store("hash-1", "value")
        cache.delete("hash-1")
        assert cache.lookup("hash-1") is None

    def test_delete_by_id(self, cache: PromptCache) -> None:
        cache.store("hash-1", "value")
        cache.delete_by_id("hash-1")
        assert cache.get_by_id("hash-1") is None


class TestMaintenance:
    def test_cleanup_removes_only_expired(self, cache: PromptCache, clock) -> None:
        cache.store("short", "value", ttl_ms=1_000)
        cache.store("long", "value", ttl_ms=60_000)
        clock.advance(milliseconds=5_000)

        assert cache.cleanup_expired() == 1
        assert cache.get_by_id("short") is None
        assert cache.get_by_id("long") is not None

    def test_cleanup_on_empty_cache(self, cache: PromptCache) -> None:
        assert cache.cleanup_expired() == 0

    def test_stats(self, cache: PromptCache) -> None:
        cache.store("a", "value", tokens_saved=100)
        cache.store("b", "value", tokens_saved=10)
        cache.lookup("a")
        cache.lookup("a")
        cache.lookup("b")

        stats = cache.stats()

        assert stats.total_entries == 2
        assert stats.total_hits == 3
        assert stats.total_tokens_saved == 210
        assert stats.average_hits_per_entry == 1.5

    def test_stats_empty(self, cache: PromptCache) -> None:
        stats = cache.stats()
        assert stats.total_entries == 0
        assert stats.average_hits_per_entry == 0.0


def test_store_failure_raises_cache_error() -> None:
    session = MagicMock()
    session.__enter__.return_value = session
    session.get.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    cache = PromptCache(MagicMock(return_value=session))

    with pytest.raises(CacheError, match="store failed"):
        cache.store("hash-1", "value")


def test_lookup_failure_raises_cache_error() -> None:
    session = MagicMock()
    session.__enter__.return_value = session
    session.scalars.side_effect = OperationalError("SELECT", {}, Exception("no such table"))
    cache = PromptCache(MagicMock(return_value=session))

    with pytest.raises(CacheError, match="lookup failed"):
        cache.lookup("hash-1")
