"""Content-addressed prompt cache with TTL expiry and hit counting.

Entries are keyed by a fingerprint of the stage-tagged request payload.
Expired entries are removed lazily when a lookup finds them, or in bulk by
an explicit ``cleanup_expired`` maintenance pass.

Every public method raises ``CacheError`` on storage failure; callers treat
the cache as an optimization and swallow those errors.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.cache.models import DEFAULT_TTL_MS, PromptCacheEntry
from services.shared.database import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

CLASSIFY_PREFIX = "Classify::"
EXTRACT_PREFIX = "Extract::"
DUPLICATE_PREFIX = "Duplicate::"


class CacheError(Exception):
    """Raised when the cache store cannot be read or written."""


class CachedValue(BaseModel):
    """A live cache entry as returned by ``lookup``."""

    id: str
    prompt_hash: str
    cached_response: str
    cache_hits: int
    tokens_saved: int
    ttl_ms: int
    created_at: datetime


class CacheStats(BaseModel):
    total_entries: int
    total_hits: int
    total_tokens_saved: int
    average_hits_per_entry: float


def fingerprint(stage_prefix: str, payload: Any) -> str:
    """Deterministic SHA-256 digest of a stage prefix plus its JSON payload.

    Args:
        stage_prefix: Stage tag (e.g. ``Classify::``) keeping stages apart
        payload: JSON-serializable stage input

    Returns:
        Hex digest used as both cache key and entry id
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256((stage_prefix + canonical).encode("utf-8")).hexdigest()


def _to_value(entry: PromptCacheEntry) -> CachedValue:
    return CachedValue(
        id=entry.id,
        prompt_hash=entry.prompt_hash,
        cached_response=entry.cached_response,
        cache_hits=entry.cache_hits,
        tokens_saved=entry.tokens_saved,
        ttl_ms=entry.ttl_ms,
        created_at=as_utc(entry.created_at),
    )


class PromptCache:
    """Prompt cache backed by the ``prompt_cache`` table."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        default_ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize prompt cache.

        Args:
            session_factory: Session factory for the backing database
            default_ttl_ms: Lifetime applied when ``store`` gets no explicit TTL
            clock: Time source, injectable for expiry tests
        """
        self._session_factory = session_factory
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock

    def _is_expired(self, entry: PromptCacheEntry, now: datetime) -> bool:
        return now - as_utc(entry.created_at) > timedelta(milliseconds=entry.ttl_ms)

    def lookup(self, prompt_hash: str) -> CachedValue | None:
        """Find a live entry for the fingerprint and count the hit.

        An expired entry is deleted and reported as a miss.

        Args:
            prompt_hash: Fingerprint from ``fingerprint()``

        Returns:
            The cached value with its incremented hit count, or None on miss

        Raises:
            CacheError: If the store fails
        """
        try:
            with self._session_factory() as session:
                entry = session.scalars(
                    select(PromptCacheEntry)
                    .where(PromptCacheEntry.prompt_hash == prompt_hash)
                    .order_by(PromptCacheEntry.created_at.desc())
                    .limit(1)
                ).first()

                if entry is None:
                    return None

                if self._is_expired(entry, self._clock()):
                    session.execute(
                        delete(PromptCacheEntry).where(PromptCacheEntry.prompt_hash == prompt_hash)
                    )
                    session.commit()
                    logger.debug(f"Prompt cache entry {prompt_hash[:12]} expired and was removed")
                    return None

                session.execute(
                    update(PromptCacheEntry)
                    .where(PromptCacheEntry.id == entry.id)
                    .values(cache_hits=PromptCacheEntry.cache_hits + 1)
                )
                session.commit()
                session.refresh(entry)
                return _to_value(entry)
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache lookup failed: {e}") from e

    def store(
        self,
        prompt_hash: str,
        cached_response: str,
        ttl_ms: int | None = None,
        tokens_saved: int = 0,
    ) -> None:
        """Upsert a response under the fingerprint.

        The entry id is the fingerprint itself, so storing the same request
        twice overwrites the previous row and resets its age and hit count.

        Raises:
            CacheError: If the store fails
        """
        try:
            with self._session_factory() as session:
                entry = session.get(PromptCacheEntry, prompt_hash)
                if entry is None:
                    entry = PromptCacheEntry(id=prompt_hash)
                    session.add(entry)
                entry.prompt_hash = prompt_hash
                entry.cached_response = cached_response
                entry.tokens_saved = tokens_saved
                entry.cache_hits = 0
                entry.ttl_ms = self.default_ttl_ms if ttl_ms is None else ttl_ms
                entry.created_at = self._clock()
                session.commit()
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache store failed: {e}") from e

    def get_by_id(self, entry_id: str) -> CachedValue | None:
        """Fetch an entry by id without TTL checks or hit counting."""
        try:
            with self._session_factory() as session:
                entry = session.get(PromptCacheEntry, entry_id)
                return _to_value(entry) if entry is not None else None
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache read failed: {e}") from e

    def delete(self, prompt_hash: str) -> None:
        try:
            with self._session_factory() as session:
                session.execute(
                    delete(PromptCacheEntry).where(PromptCacheEntry.prompt_hash == prompt_hash)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache delete failed: {e}") from e

    def delete_by_id(self, entry_id: str) -> None:
        try:
            with self._session_factory() as session:
                session.execute(delete(PromptCacheEntry).where(PromptCacheEntry.id == entry_id))
                session.commit()
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache delete failed: {e}") from e

    def cleanup_expired(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed
        """
        try:
            with self._session_factory() as session:
                now = self._clock()
                expired_ids = [
                    entry.id
                    for entry in session.scalars(select(PromptCacheEntry))
                    if self._is_expired(entry, now)
                ]
                if expired_ids:
                    session.execute(
                        delete(PromptCacheEntry).where(PromptCacheEntry.id.in_(expired_ids))
                    )
                    session.commit()
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache cleanup failed: {e}") from e

        logger.info(f"Removed {len(expired_ids)} expired prompt cache entries")
        return len(expired_ids)

    def stats(self) -> CacheStats:
        """Aggregate entry, hit and saved-token counts.

        Saved tokens count every hit as one avoided model call of the size
        recorded when the entry was stored.
        """
        try:
            with self._session_factory() as session:
                total_entries, total_hits, total_tokens_saved = session.execute(
                    select(
                        func.count(PromptCacheEntry.id),
                        func.coalesce(func.sum(PromptCacheEntry.cache_hits), 0),
                        func.coalesce(
                            func.sum(PromptCacheEntry.cache_hits * PromptCacheEntry.tokens_saved),
                            0,
                        ),
                    )
                ).one()
        except SQLAlchemyError as e:
            raise CacheError(f"Prompt cache stats failed: {e}") from e

        average = round(total_hits / total_entries, 2) if total_entries else 0.0
        return CacheStats(
            total_entries=total_entries,
            total_hits=total_hits,
            total_tokens_saved=total_tokens_saved,
            average_hits_per_entry=average,
        )

    def is_valid(self, prompt_hash: str) -> bool:
        """Check whether a live entry exists. Counts as a hit when it does."""
        return self.lookup(prompt_hash) is not None
