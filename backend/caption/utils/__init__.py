"""
Shared utilities.

Modules:
    video_id: Video id validation and URL extraction
    format_utils: View counts, timestamps, masked proxy URLs
"""

from caption.utils.format_utils import (
    format_views,
    mask_proxy_url,
    seconds_to_timestamp,
)
from caption.utils.video_id import extract_video_id, validate_video_id

__all__ = [
    # video_id
    "validate_video_id",
    "extract_video_id",
    # format_utils
    "format_views",
    "seconds_to_timestamp",
    "mask_proxy_url",
]
