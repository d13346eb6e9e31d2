"""
Cache models for decoded transcripts.

Entries live in memory only. Each entry wraps one Transcript under a
(video_id, language) key together with its creation time and TTL.
"""

from dataclasses import dataclass

from pydantic import BaseModel, Field

from caption.models.schemas import Transcript


@dataclass(frozen=True)
class CacheKey:
    """Cache key: video id plus requested language."""

    video_id: str
    language: str

    def __str__(self) -> str:
        return f"{self.video_id}:{self.language}"


@dataclass
class CacheEntry:
    """Single cached transcript.

    Attributes:
        transcript: Cached transcript
        created_at: Clock reading when the entry was stored
        ttl: Lifetime in seconds
    """

    transcript: Transcript
    created_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """Check whether the entry has outlived its TTL.

        Args:
            now: Current clock reading (same clock as created_at)

        Returns:
            True if the entry must be treated as a miss
        """
        return now >= self.expires_at


class CacheStats(BaseModel):
    """Counters describing cache behaviour since startup."""

    size: int = Field(..., ge=0, description="Entries currently stored")
    capacity: int | None = Field(default=None, description="Hard limit (None = unbounded)")
    ttl: float = Field(..., description="Default TTL in seconds")
    hits: int = 0
    misses: int = 0
    expirations: int = Field(default=0, description="Entries dropped on read after TTL")
    evictions: int = Field(default=0, description="Entries dropped by LRU capacity limit")

    @property
    def hit_rate(self) -> float | None:
        total = self.hits + self.misses
        if total == 0:
            return None
        return self.hits / total
