"""Pytest configuration and fixtures for caption tests."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from caption.config import Settings
from caption.errors import CaptionsDisabled, UpstreamBlocked, UpstreamUnavailable
from caption.models.schemas import (
    CaptionTrackDescriptor,
    RawCaptionPayload,
    TrackListing,
    VideoDetails,
    VideoReference,
)
from caption.services.caption_decoder import CaptionDecoder
from caption.services.proxy_pool import ProxyEndpoint, ProxyPool
from caption.services.rate_limiter import RateLimiter
from caption.services.retrieval import TranscriptRetriever
from caption.services.transcript_cache import TranscriptCache

# Legacy XML payloads keyed by language
ABC123_EN = (
    b'<?xml version="1.0" encoding="utf-8" ?><transcript>'
    b'<text start="0.0" dur="1.5">Hello &amp;amp; welcome</text>'
    b'<text start="1.5" dur="2.0">&gt;&gt; to the show</text>'
    b"</transcript>"
)
ABC123_ES = (
    b"<transcript>"
    b'<text start="0.0" dur="1.5">Hola</text>'
    b'<text start="1.5" dur="2.0">y bienvenidos</text>'
    b"</transcript>"
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """
    Scripted UpstreamClient.

    Attributes:
        videos: video_id -> TrackListing, or an exception to raise on discovery
        payloads: (video_id, language) -> list of bytes/exceptions served in order
            (the last item repeats)
        blocked: proxy keys whose every call raises UpstreamBlocked
        unavailable: proxy keys whose every call raises UpstreamUnavailable
        calls: (operation, video_id, proxy key) per call
    """

    def __init__(self):
        self.videos: dict[str, TrackListing | Exception] = {}
        self.payloads: dict[tuple[str, str], list[bytes | Exception]] = {}
        self.blocked: set[str] = set()
        self.unavailable: set[str] = set()
        self.calls: list[tuple[str, str, str]] = []
        self.closed = False
        # When set, discovery waits for this event before answering
        self.gate: asyncio.Event | None = None

    def add_video(
        self,
        video_id: str,
        tracks: list[tuple[str, bool, bytes]],
        title: str = "",
    ) -> None:
        """Register a video with (language, is_generated, payload) tracks."""
        descriptors = tuple(
            CaptionTrackDescriptor(
                language_code=language,
                name=language,
                video_id=video_id,
                is_generated=generated,
                base_url=f"https://www.youtube.com/api/timedtext?v={video_id}&lang={language}",
            )
            for language, generated, _ in tracks
        )
        self.videos[video_id] = TrackListing(
            tracks=descriptors,
            details=VideoDetails(title=title, author="Tester", view_count=1_234_567),
        )
        for language, _, payload in tracks:
            self.payloads[(video_id, language)] = [payload]

    def upstream_calls(self, operation: str | None = None) -> int:
        return sum(1 for call in self.calls if operation is None or call[0] == operation)

    def _check_proxy(self, proxy: ProxyEndpoint, video_id: str) -> None:
        if proxy.key in self.blocked:
            raise UpstreamBlocked("HTTP 429", video_id=video_id, proxy=proxy.label)
        if proxy.key in self.unavailable:
            raise UpstreamUnavailable("HTTP 503", video_id=video_id, proxy=proxy.label)

    async def list_tracks(self, video: VideoReference, proxy: ProxyEndpoint) -> TrackListing:
        self.calls.append(("list_tracks", video.video_id, proxy.key))
        if self.gate is not None:
            await self.gate.wait()
        self._check_proxy(proxy, video.video_id)
        entry = self.videos.get(video.video_id)
        if entry is None:
            raise CaptionsDisabled("Captions are disabled for this video", video_id=video.video_id)
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def fetch_payload(
        self,
        track: CaptionTrackDescriptor,
        proxy: ProxyEndpoint,
    ) -> RawCaptionPayload:
        self.calls.append(("fetch_payload", track.video_id, proxy.key))
        self._check_proxy(proxy, track.video_id)
        queue = self.payloads[(track.video_id, track.language_code)]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return RawCaptionPayload(content=item, track=track)

    async def close(self) -> None:
        self.closed = True


async def no_sleep(seconds: float) -> None:
    """Sleep replacement that returns at once."""


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        config_dir=tmp_path,
        proxy_urls=[],
        proxy_url=None,
        default_language="en",
        global_bucket_capacity=100,
        proxy_bucket_capacity=100,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    """Fake upstream with the abc123 (en manual, es generated) video."""
    fake = FakeUpstream()
    fake.add_video(
        "abc123abc12",
        [("en", False, ABC123_EN), ("es", True, ABC123_ES)],
        title="Test Video",
    )
    return fake


@pytest.fixture
def make_retriever(settings: Settings, clock: FakeClock) -> Callable[..., TranscriptRetriever]:
    """Build a retriever over a fake upstream with fake time."""

    def factory(
        client: FakeUpstream,
        proxies: list[str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = no_sleep,
        **overrides,
    ) -> TranscriptRetriever:
        run_settings = settings.model_copy(update=overrides)
        return TranscriptRetriever(
            settings=run_settings,
            pool=ProxyPool.from_settings(run_settings, proxies or [], clock=clock),
            limiter=RateLimiter.from_settings(run_settings, clock=clock),
            cache=TranscriptCache.from_settings(run_settings, clock=clock),
            client=client,
            decoder=CaptionDecoder(),
            sleep=sleep,
        )

    return factory
