"""
Video identifier validation and extraction from YouTube URLs.

Accepted inputs:
    dQw4w9WgXcQ                                   (bare 11-character id)
    https://www.youtube.com/watch?v=dQw4w9WgXcQ   (watch URL, extra params allowed)
    https://youtu.be/dQw4w9WgXcQ?t=42             (short URL)
"""

import re

from caption.errors import InvalidVideoReference

VIDEO_ID_LENGTH = 11
VIDEO_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{11}")


def validate_video_id(video_id: str) -> str:
    """
    Validate a bare video id.

    Args:
        video_id: Candidate id

    Returns:
        The id unchanged

    Raises:
        InvalidVideoReference: If length or characters are wrong
    """
    if len(video_id) != VIDEO_ID_LENGTH:
        raise InvalidVideoReference(
            f"video_id must be exactly {VIDEO_ID_LENGTH} characters"
        )

    invalid_chars = sorted({c for c in video_id if not (c.isascii() and (c.isalnum() or c in "-_"))})
    if invalid_chars:
        raise InvalidVideoReference(
            f"video_id contains invalid characters: {invalid_chars}"
        )

    return video_id


def extract_video_id(url: str) -> str:
    """
    Extract and validate the video id from a watch or short URL.

    Args:
        url: youtube.com/watch or youtu.be URL

    Returns:
        Validated video id

    Raises:
        InvalidVideoReference: If the URL is not a supported YouTube URL
            or carries an invalid id
    """
    url = url.strip()

    if "youtube.com/watch" in url:
        candidate = _between(url, "v=", "&")
    elif "youtu.be/" in url:
        candidate = _between(url, "youtu.be/", "?")
    else:
        raise InvalidVideoReference(
            "invalid YouTube URL: must be youtube.com/watch or youtu.be URL"
        )

    if candidate is None or not VIDEO_ID_PATTERN.fullmatch(candidate):
        raise InvalidVideoReference(
            "invalid YouTube URL: could not extract valid video ID"
        )
    return candidate


def _between(text: str, start: str, stop: str) -> str | None:
    """Return the part of text after start and before the next stop (or end)."""
    if start not in text:
        return None
    return text.split(start, 1)[1].split(stop, 1)[0]
