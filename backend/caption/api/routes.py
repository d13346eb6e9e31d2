"""
HTTP API routes for transcript retrieval.

Provides endpoints for:
- Fetching a transcript by video id or URL (POST /transcript)
- Fetching a transcript by video id (GET /api/transcript/{video_id})
"""

import logging

from fastapi import APIRouter

from caption.errors import InvalidVideoReference
from caption.models.schemas import TranscriptRequest, TranscriptResponse
from caption.services.retrieval import get_retriever
from caption.utils.video_id import extract_video_id, validate_video_id

logger = logging.getLogger(__name__)
router = APIRouter(tags=["transcript"])


@router.get("/")
async def root() -> dict:
    """Greeting."""
    return {"message": "Welcome to v1-caption!"}


@router.post("/transcript", response_model=TranscriptResponse)
async def get_transcript(request: TranscriptRequest) -> TranscriptResponse:
    """
    Fetch the transcript of a video.

    Exactly one of video_id or video_url must be given.

    Args:
        request: TranscriptRequest

    Returns:
        TranscriptResponse (language may be substituted)

    Raises:
        400: Both or neither of video_id / video_url, or invalid reference
        404: Video not found or captions disabled
        429: Rate limited (Retry-After header set)
        502/503: Upstream failures
    """
    if request.video_id and request.video_url:
        raise InvalidVideoReference("Provide either video_id or video_url, not both")
    if not request.video_id and not request.video_url:
        raise InvalidVideoReference("Either video_id or video_url must be provided")

    if request.video_url:
        video_id = extract_video_id(request.video_url)
    else:
        video_id = validate_video_id(request.video_id.strip())

    return await _fetch(video_id, request.language)


@router.get("/api/transcript/{video_id}", response_model=TranscriptResponse)
async def get_transcript_by_id(
    video_id: str,
    language: str | None = None,
) -> TranscriptResponse:
    """
    Fetch the transcript of a video by id.

    Args:
        video_id: 11-character video id
        language: Preferred language (default from settings)

    Returns:
        TranscriptResponse
    """
    return await _fetch(video_id, language)


async def _fetch(video_id: str, language: str | None) -> TranscriptResponse:
    retriever = get_retriever()
    result = await retriever.retrieve(
        validate_video_id(video_id),
        language,
        timeout=retriever.settings.request_timeout,
    )
    return TranscriptResponse.from_transcript(result.transcript, cached=result.cached)
