"""
Pydantic models for transcript retrieval.

Exports:
    - Domain models (VideoReference, Transcript, TranscriptCue, etc.)
    - Cache models (CacheEntry, CacheKey, CacheStats)
"""

from caption.models.cache import CacheEntry, CacheKey, CacheStats
from caption.models.schemas import (
    CaptionTrackDescriptor,
    RawCaptionPayload,
    TrackListing,
    Transcript,
    TranscriptCue,
    VideoDetails,
    VideoReference,
)

__all__ = [
    # Domain models
    "VideoReference",
    "CaptionTrackDescriptor",
    "TrackListing",
    "RawCaptionPayload",
    "TranscriptCue",
    "Transcript",
    "VideoDetails",
    # Cache models
    "CacheEntry",
    "CacheKey",
    "CacheStats",
]
