"""
Cache API routes.

Provides endpoints for:
- GET /api/cache - Cache statistics
- DELETE /api/cache/{video_id} - Drop every cached language of a video
"""

import logging

from fastapi import APIRouter

from caption.models.cache import CacheStats
from caption.services.retrieval import get_retriever
from caption.utils.video_id import validate_video_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("", response_model=CacheStats)
async def get_cache_stats() -> CacheStats:
    """
    Get transcript cache statistics.

    Returns:
        CacheStats with size, capacity and hit/miss counters
    """
    return get_retriever().cache.stats()


@router.delete("/{video_id}")
async def invalidate_video(video_id: str) -> dict:
    """
    Invalidate cached transcripts of a video.

    Args:
        video_id: Video identifier

    Returns:
        Number of removed entries

    Raises:
        400: Invalid video id
    """
    video_id = validate_video_id(video_id)
    removed = get_retriever().cache.invalidate(video_id)

    logger.info(f"Invalidated {removed} cached transcript(s) for {video_id}")
    return {"video_id": video_id, "removed": removed}
