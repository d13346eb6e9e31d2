"""
Pydantic models for transcript retrieval.
"""

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from caption.utils.format_utils import format_views, seconds_to_timestamp
from caption.utils.video_id import VIDEO_ID_PATTERN


class VideoReference(BaseModel):
    """Validated upstream video id plus optional preferred language."""

    model_config = ConfigDict(frozen=True)

    video_id: str
    language: str | None = None

    @field_validator("video_id")
    @classmethod
    def _check_video_id(cls, value: str) -> str:
        if not VIDEO_ID_PATTERN.fullmatch(value):
            raise ValueError("video_id must be 11 characters of [A-Za-z0-9_-]")
        return value

    @field_validator("language")
    @classmethod
    def _normalize_language(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class CaptionTrackDescriptor(BaseModel):
    """One caption track the upstream offers for a video."""

    model_config = ConfigDict(frozen=True)

    language_code: str
    name: str
    video_id: str = ""
    is_generated: bool = False
    is_translatable: bool = False
    base_url: str = Field(..., repr=False)  # Short-lived fetch handle


class VideoDetails(BaseModel):
    """Video metadata captured from the discovery response."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    author: str = ""
    view_count: int | None = None
    length_seconds: int | None = None

    @computed_field
    @property
    def views(self) -> str:
        """Compact view count (e.g. 1.2M)."""
        return format_views(self.view_count)


@dataclass(frozen=True)
class TrackListing:
    """
    Result of track discovery: ordered caption tracks plus video details.

    Behaves as a read-only sequence of CaptionTrackDescriptor.
    """

    tracks: tuple[CaptionTrackDescriptor, ...]
    details: VideoDetails | None = None

    def __iter__(self):
        return iter(self.tracks)

    def __len__(self) -> int:
        return len(self.tracks)

    def __getitem__(self, index: int) -> CaptionTrackDescriptor:
        return self.tracks[index]


@dataclass(frozen=True)
class RawCaptionPayload:
    """Unparsed caption bytes for one track, owned by the fetching call."""

    content: bytes = field(repr=False)
    track: CaptionTrackDescriptor
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)


class TranscriptCue(BaseModel):
    """Single timed text unit."""

    model_config = ConfigDict(frozen=True)

    start: float = Field(..., ge=0)
    duration: float = Field(default=0.0, ge=0)
    text: str = ""

    @property
    def end(self) -> float:
        """End offset in seconds."""
        return self.start + self.duration

    @property
    def start_time(self) -> str:
        """Start offset as MM:SS (HH:MM:SS from one hour on)."""
        return seconds_to_timestamp(self.start)


class Transcript(BaseModel):
    """
    Decoded transcript for a video.

    Cues are ordered by non-decreasing start offset. Duplicate cues are kept
    as delivered by the upstream.
    """

    model_config = ConfigDict(frozen=True)

    video: VideoReference
    language: str
    requested_language: str
    track_name: str = ""
    is_generated: bool = False
    cues: tuple[TranscriptCue, ...] = ()
    details: VideoDetails | None = None

    @model_validator(mode="after")
    def _check_cue_order(self) -> "Transcript":
        for previous, current in zip(self.cues, self.cues[1:]):
            if current.start < previous.start:
                raise ValueError(
                    f"cues out of order: {current.start} after {previous.start}"
                )
        return self

    @computed_field
    @property
    def substituted(self) -> bool:
        """True if the delivered language differs from the requested one."""
        return self.language != self.requested_language

    @computed_field
    @property
    def full_text(self) -> str:
        """Full text without timestamps."""
        return " ".join(cue.text for cue in self.cues if cue.text)


# ═══════════════════════════════════════════════════════════════════════════
# API models
# ═══════════════════════════════════════════════════════════════════════════


class TranscriptRequest(BaseModel):
    """Request body for POST /transcript (exactly one of video_id / video_url)."""

    video_id: str | None = None
    video_url: str | None = None
    language: str | None = None


class TranscriptSnippet(BaseModel):
    """Cue as returned by the API."""

    start: str
    start_seconds: float
    duration: float
    text: str

    @classmethod
    def from_cue(cls, cue: TranscriptCue) -> "TranscriptSnippet":
        return cls(
            start=cue.start_time,
            start_seconds=cue.start,
            duration=cue.duration,
            text=cue.text,
        )


class TranscriptResponse(BaseModel):
    """Successful transcript response."""

    id: str
    title: str = ""
    author: str = ""
    views: str = ""
    language: str
    requested_language: str
    substituted: bool
    is_generated: bool
    cached: bool = False
    transcript: list[TranscriptSnippet]

    @classmethod
    def from_transcript(cls, transcript: Transcript, cached: bool = False) -> "TranscriptResponse":
        details = transcript.details or VideoDetails()
        return cls(
            id=transcript.video.video_id,
            title=details.title,
            author=details.author,
            views=details.views,
            language=transcript.language,
            requested_language=transcript.requested_language,
            substituted=transcript.substituted,
            is_generated=transcript.is_generated,
            cached=cached,
            transcript=[TranscriptSnippet.from_cue(cue) for cue in transcript.cues],
        )


class ErrorBody(BaseModel):
    """Machine-readable error."""

    code: str
    message: str
    retryable: bool
    retry_after: float | None = None


class ErrorResponse(BaseModel):
    """Error envelope returned for every failed request."""

    error: ErrorBody


class ProxyStatus(BaseModel):
    """Health snapshot of one proxy endpoint (credentials masked)."""

    proxy: str
    state: str
    consecutive_failures: int
    cooldowns: int
    resume_in: float | None = None
    total_successes: int
    total_failures: int
    success_rate: float | None = None
