"""ORM model for cached model responses."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from services.shared.database import Base

DEFAULT_TTL_MS = 5 * 60 * 1000


class PromptCacheEntry(Base):
    __tablename__ = "prompt_cache"

    # Derived from the fingerprint, so re-storing the same request overwrites
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    prompt_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cached_response: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_saved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cache_hits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ttl_ms: Mapped[int] = mapped_column(Integer, default=DEFAULT_TTL_MS, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
