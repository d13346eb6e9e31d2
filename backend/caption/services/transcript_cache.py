"""
In-memory transcript cache with TTL and optional LRU capacity.

Keys are (video_id, requested language). Reads never reach the upstream.
Expired entries are dropped lazily when read; when a capacity is set the
least recently used entry is evicted on insert, regardless of its TTL.

Every operation is a short O(1) critical section on an OrderedDict.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from caption.config import Settings
from caption.models.cache import CacheEntry, CacheKey, CacheStats
from caption.models.schemas import Transcript, VideoReference

logger = logging.getLogger(__name__)


class TranscriptCache:
    """
    Keyed store of decoded transcripts.

    Example:
        cache = TranscriptCache(ttl=3600, capacity=1000)
        cache.put(transcript)
        hit = cache.get(VideoReference(video_id="dQw4w9WgXcQ"), "en")
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        capacity: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            ttl: Default entry lifetime in seconds
            capacity: Hard entry limit (None = unbounded)
            clock: Monotonic time source
        """
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        if capacity is not None and capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self.ttl = ttl
        self.capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expirations = 0
        self._evictions = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> "TranscriptCache":
        """Create TranscriptCache from application settings."""
        return cls(ttl=settings.cache_ttl, capacity=settings.cache_capacity, clock=clock)

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def key_for(video: VideoReference | str, language: str) -> CacheKey:
        video_id = video if isinstance(video, str) else video.video_id
        return CacheKey(video_id=video_id, language=language)

    def get(self, video: VideoReference | str, language: str) -> Transcript | None:
        """
        Look up a transcript.

        Args:
            video: Video reference or bare id
            language: Requested language the entry was stored under

        Returns:
            Cached Transcript, or None on miss or expiry
        """
        key = self.key_for(video, language)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug(f"Cache entry expired: {key}")
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.transcript

    def put(self, transcript: Transcript, ttl: float | None = None) -> None:
        """
        Store a transcript under its video id and requested language.

        Args:
            transcript: Transcript to cache
            ttl: Lifetime override in seconds (default: cache TTL)
        """
        key = self.key_for(transcript.video, transcript.requested_language)
        entry = CacheEntry(
            transcript=transcript,
            created_at=self._clock(),
            ttl=ttl if ttl is not None else self.ttl,
        )

        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)

            if self.capacity is not None:
                while len(self._entries) > self.capacity:
                    evicted, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug(f"Cache evicted (LRU): {evicted}")

        logger.debug(f"Cached transcript {key} ({len(transcript.cues)} cues)")

    def invalidate(self, video_id: str) -> int:
        """
        Drop every entry for a video.

        Args:
            video_id: Video id

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = [key for key in self._entries if key.video_id == video_id]
            for key in keys:
                del self._entries[key]

        if keys:
            logger.info(f"Invalidated {len(keys)} cache entries for {video_id}")
        return len(keys)

    def clear(self) -> None:
        """Drop all entries (counters are kept)."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        """Current size and counters."""
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                capacity=self.capacity,
                ttl=self.ttl,
                hits=self._hits,
                misses=self._misses,
                expirations=self._expirations,
                evictions=self._evictions,
            )
