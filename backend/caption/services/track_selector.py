"""
Caption track selection policy.

Order of preference for a requested language:
1. exact language code (manual before generated)
2. same base language, e.g. "en" for "en-GB" (manual before generated)
3. first manually authored track
4. first track

Anything but an exact match is reported as a substitution.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from caption.errors import CaptionsDisabled
from caption.models.schemas import CaptionTrackDescriptor

logger = logging.getLogger(__name__)


class SelectionReason(str, Enum):
    EXACT = "exact"
    BASE_LANGUAGE = "base_language"
    MANUAL_FALLBACK = "manual_fallback"
    FIRST_AVAILABLE = "first_available"


@dataclass(frozen=True)
class TrackSelection:
    """Chosen track and why it was chosen."""

    track: CaptionTrackDescriptor
    reason: SelectionReason

    @property
    def substituted(self) -> bool:
        return self.reason is not SelectionReason.EXACT


def _base(language_code: str) -> str:
    return language_code.lower().replace("_", "-").split("-", 1)[0]


def _manual_first(tracks: Sequence[CaptionTrackDescriptor]) -> CaptionTrackDescriptor | None:
    for track in tracks:
        if not track.is_generated:
            return track
    return tracks[0] if tracks else None


def select_track(tracks: Sequence[CaptionTrackDescriptor], language: str) -> TrackSelection:
    """
    Pick the track to fetch for a requested language.

    Args:
        tracks: Tracks in upstream order
        language: Requested language code

    Returns:
        TrackSelection

    Raises:
        CaptionsDisabled: If there are no tracks at all
    """
    if not tracks:
        raise CaptionsDisabled("No caption tracks available")

    wanted = language.lower().replace("_", "-")

    exact = _manual_first([t for t in tracks if t.language_code.lower() == wanted])
    if exact is not None:
        return TrackSelection(exact, SelectionReason.EXACT)

    same_base = _manual_first([t for t in tracks if _base(t.language_code) == _base(wanted)])
    if same_base is not None:
        selection = TrackSelection(same_base, SelectionReason.BASE_LANGUAGE)
    else:
        manual = next((t for t in tracks if not t.is_generated), None)
        if manual is not None:
            selection = TrackSelection(manual, SelectionReason.MANUAL_FALLBACK)
        else:
            selection = TrackSelection(tracks[0], SelectionReason.FIRST_AVAILABLE)

    logger.info(
        f"Language '{language}' not available, substituting "
        f"'{selection.track.language_code}' ({selection.reason.value})"
    )
    return selection
