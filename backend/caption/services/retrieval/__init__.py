"""
Retrieval module for transcript requests.

This package contains the retrieval components:
- orchestrator: State machine from cache check to cache store
- retry_policy: Bounded tenacity retry controllers

Example:
    from caption.services.retrieval import TranscriptRetriever

    async with TranscriptRetriever.from_settings() as retriever:
        transcript = await retriever.get_transcript("dQw4w9WgXcQ", "en")

    # With metadata
    result = await retriever.retrieve("https://youtu.be/dQw4w9WgXcQ", timeout=30)
    print(result.cached, result.upstream_calls)
"""

from .orchestrator import (
    RetrievalResult,
    RetrievalState,
    TranscriptRetriever,
    get_retriever,
    set_retriever,
)
from .retry_policy import QuotaBackoff, rotation_retrying

__all__ = [
    # Main retriever
    "TranscriptRetriever",
    "RetrievalResult",
    "RetrievalState",
    "get_retriever",
    "set_retriever",
    # Retry policies
    "QuotaBackoff",
    "rotation_retrying",
]
