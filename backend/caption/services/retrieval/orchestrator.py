"""
Retrieval orchestrator: the single entry point for transcript requests.

State machine per retrieval:

    CacheCheck -> QuotaCheck -> ProxySelect -> TrackDiscovery -> PayloadFetch
               -> Decode -> CacheStore -> Done

Any state can end in Failed(kind); the raised CaptionError carries the kind
and the state it failed in. Retry loops are bounded:
- RateLimited: re-enter QuotaCheck (QuotaBackoff)
- UpstreamBlocked / UpstreamUnavailable: rotate proxy (rotation_retrying)
- MalformedPayload: one fresh fetch (malformed_retries)
Video-attributable errors are never retried.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from caption.config import Settings, get_settings, load_proxies_config
from caption.errors import (
    CaptionError,
    CaptionsDisabled,
    MalformedPayload,
    RateLimited,
    UpstreamBlocked,
    UpstreamUnavailable,
    VideoNotFound,
)
from caption.models.cache import CacheKey
from caption.models.schemas import (
    CaptionTrackDescriptor,
    TrackListing,
    Transcript,
    TranscriptCue,
    VideoReference,
)
from caption.services.caption_decoder import CaptionDecoder
from caption.services.proxy_pool import ProxyEndpoint, ProxyOutcome, ProxyPool
from caption.services.rate_limiter import Permit, QuotaScope, RateLimiter
from caption.services.track_selector import TrackSelection, select_track
from caption.services.transcript_cache import TranscriptCache
from caption.services.youtube import InnertubeClient, UpstreamClient
from caption.services.youtube.innertube_client import TransportFactory
from caption.utils.video_id import extract_video_id, validate_video_id

from .retry_policy import QuotaBackoff, Sleep, rotation_retrying

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Speaker-change marker the upstream prefixes to cue text
SPEAKER_MARKER = ">> "


class RetrievalState(str, Enum):
    """States of one retrieval."""

    CACHE_CHECK = "cache_check"
    QUOTA_CHECK = "quota_check"
    PROXY_SELECT = "proxy_select"
    TRACK_DISCOVERY = "track_discovery"
    PAYLOAD_FETCH = "payload_fetch"
    DECODE = "decode"
    CACHE_STORE = "cache_store"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RetrievalResult:
    """
    Outcome of a successful retrieval.

    Attributes:
        transcript: Decoded transcript
        cached: True if served from cache without upstream calls
        upstream_calls: Upstream requests made (discovery + fetch attempts)
    """

    transcript: Transcript
    cached: bool = False
    upstream_calls: int = 0


@dataclass
class _Retrieval:
    """Transient state of one uncached retrieval."""

    video: VideoReference
    requested_language: str
    state: RetrievalState = RetrievalState.CACHE_CHECK
    listing: TrackListing | None = None
    selection: TrackSelection | None = None
    upstream_calls: int = 0
    history: list[RetrievalState] = field(default_factory=list)

    def enter(self, state: RetrievalState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"[{self.video.video_id}] -> {state.value}")


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class TranscriptRetriever:
    """
    Transcript retrieval through cache, quota, proxy pool and upstream.

    Concurrent retrievals of the same (video, language) share one upstream
    pipeline; the later callers are served from cache.

    Example:
        retriever = TranscriptRetriever.from_settings(settings)
        transcript = await retriever.get_transcript("dQw4w9WgXcQ", "en")
        if transcript.substituted:
            print(f"Delivered {transcript.language} instead")
    """

    def __init__(
        self,
        settings: Settings,
        pool: ProxyPool,
        limiter: RateLimiter,
        cache: TranscriptCache,
        client: UpstreamClient,
        decoder: CaptionDecoder | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize retriever.

        Args:
            settings: Application settings (retry bounds, default language)
            pool: Proxy pool
            limiter: Rate limiter
            cache: Transcript cache
            client: Upstream client
            decoder: Caption decoder (default: CaptionDecoder())
            sleep: Async sleep used between retries
        """
        self.settings = settings
        self.pool = pool
        self.limiter = limiter
        self.cache = cache
        self.client = client
        self.decoder = decoder or CaptionDecoder()
        self._sleep = sleep
        self._flights: dict[CacheKey, _Flight] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        proxy_urls: list[str] | None = None,
        client: UpstreamClient | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> "TranscriptRetriever":
        """
        Build the full component graph from settings.

        Args:
            settings: Application settings (default: get_settings())
            proxy_urls: Proxy URLs (default: load_proxies_config())
            client: Upstream client override
            transport_factory: Transport per endpoint for the default client (tests)

        Returns:
            Configured TranscriptRetriever

        Raises:
            ConfigurationError: If settings or proxy configuration are invalid
        """
        settings = settings or get_settings()
        settings.validate_runtime()
        if proxy_urls is None:
            proxy_urls = load_proxies_config(settings)

        return cls(
            settings=settings,
            pool=ProxyPool.from_settings(settings, proxy_urls),
            limiter=RateLimiter.from_settings(settings),
            cache=TranscriptCache.from_settings(settings),
            client=client or InnertubeClient.from_settings(settings, transport_factory),
        )

    async def close(self) -> None:
        """Close the upstream client."""
        await self.client.close()

    async def __aenter__(self) -> "TranscriptRetriever":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ═══════════════════════════════════════════════════════════════════════════
    # Entry points
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_transcript(
        self,
        video: str | VideoReference,
        language: str | None = None,
    ) -> Transcript:
        """
        Get the transcript of a video.

        Args:
            video: Video id, watch/short URL, or VideoReference
            language: Preferred language (default: settings.default_language)

        Returns:
            Transcript (language may be substituted)

        Raises:
            CaptionError: Terminal failure of the retrieval
        """
        result = await self.retrieve(video, language)
        return result.transcript

    async def retrieve(
        self,
        video: str | VideoReference,
        language: str | None = None,
        timeout: float | None = None,
    ) -> RetrievalResult:
        """
        Get a transcript together with retrieval metadata.

        Args:
            video: Video id, watch/short URL, or VideoReference
            language: Preferred language (default: settings.default_language)
            timeout: Abandon after this many seconds (None = no limit)

        Returns:
            RetrievalResult

        Raises:
            CaptionError: Terminal failure (UpstreamUnavailable on timeout)
        """
        reference = self.resolve_reference(video, language)

        if timeout is None:
            return await self._retrieve(reference)

        try:
            return await asyncio.wait_for(self._retrieve(reference), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Retrieval of {reference.video_id} timed out after {timeout:.1f}s")
            raise UpstreamUnavailable(
                f"Retrieval timed out after {timeout:.1f}s",
                video_id=reference.video_id,
                original_error=e,
            ) from e

    def resolve_reference(
        self,
        video: str | VideoReference,
        language: str | None = None,
    ) -> VideoReference:
        """
        Validate caller input into a VideoReference.

        Raises:
            InvalidVideoReference: If the id or URL is invalid
        """
        if isinstance(video, VideoReference):
            if language is not None:
                return video.model_copy(update={"language": language or None})
            return video

        video = video.strip()
        if "/" in video:
            video_id = extract_video_id(video)
        else:
            video_id = validate_video_id(video)
        return VideoReference(video_id=video_id, language=language)

    # ═══════════════════════════════════════════════════════════════════════════
    # State machine
    # ═══════════════════════════════════════════════════════════════════════════

    async def _retrieve(self, video: VideoReference) -> RetrievalResult:
        requested = video.language or self.settings.default_language

        cached = self.cache.get(video, requested)
        if cached is not None:
            logger.info(f"Cache hit: {video.video_id} ({requested})")
            return RetrievalResult(transcript=cached, cached=True)

        key = TranscriptCache.key_for(video, requested)
        async with self._single_flight(key):
            # Another caller may have filled the cache while we waited
            cached = self.cache.get(video, requested)
            if cached is not None:
                logger.info(f"Cache hit after wait: {video.video_id} ({requested})")
                return RetrievalResult(transcript=cached, cached=True)

            retrieval = _Retrieval(video=video, requested_language=requested)
            try:
                transcript = await self._run(retrieval)
            except CaptionError as e:
                e.state = retrieval.state.value
                e.video_id = e.video_id or video.video_id
                logger.warning(f"[{retrieval.state.value}] Retrieval failed: {e}")
                raise

            retrieval.enter(RetrievalState.CACHE_STORE)
            self.cache.put(transcript)
            retrieval.enter(RetrievalState.DONE)

            logger.info(
                f"Retrieved {video.video_id}: {len(transcript.cues)} cues, "
                f"language={transcript.language}"
                f"{' (substituted)' if transcript.substituted else ''}, "
                f"upstream_calls={retrieval.upstream_calls}"
            )
            return RetrievalResult(
                transcript=transcript,
                upstream_calls=retrieval.upstream_calls,
            )

    async def _run(self, retrieval: _Retrieval) -> Transcript:
        """Run QuotaCheck through Decode, re-entering QuotaCheck on RateLimited."""
        backoff = QuotaBackoff(
            max_attempts=self.settings.quota_attempts,
            max_total_wait=self.settings.quota_max_wait,
        )
        async for attempt in backoff.retrying(self._sleep):
            with attempt:
                retrieval.enter(RetrievalState.QUOTA_CHECK)
                with self.limiter.try_acquire(QuotaScope.GLOBAL):
                    cues = await self._discover_and_fetch(retrieval)

        selection = retrieval.selection
        details = retrieval.listing.details if retrieval.listing else None
        return Transcript(
            video=retrieval.video,
            language=selection.track.language_code,
            requested_language=retrieval.requested_language,
            track_name=selection.track.name,
            is_generated=selection.track.is_generated,
            cues=tuple(cues),
            details=details,
        )

    async def _discover_and_fetch(self, retrieval: _Retrieval) -> list[TranscriptCue]:
        video = retrieval.video

        # Discovery survives a RateLimited re-entry; only fetch is repeated
        if retrieval.listing is None:
            retrieval.listing = await self._with_proxy_rotation(
                retrieval,
                RetrievalState.TRACK_DISCOVERY,
                lambda proxy: self.client.list_tracks(video, proxy),
            )
            try:
                retrieval.selection = select_track(
                    retrieval.listing, retrieval.requested_language
                )
            except CaptionsDisabled as e:
                e.video_id = video.video_id
                raise

        return await self._fetch_and_decode(retrieval, retrieval.selection.track)

    async def _fetch_and_decode(
        self,
        retrieval: _Retrieval,
        track: CaptionTrackDescriptor,
    ) -> list[TranscriptCue]:
        attempts = 1 + self.settings.malformed_retries

        for attempt in range(1, attempts + 1):
            payload = await self._with_proxy_rotation(
                retrieval,
                RetrievalState.PAYLOAD_FETCH,
                lambda proxy: self.client.fetch_payload(track, proxy),
            )

            retrieval.enter(RetrievalState.DECODE)
            try:
                cues = self.decoder.decode(payload)
            except MalformedPayload:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Malformed {track.language_code} payload for {retrieval.video.video_id}, "
                    f"fetching again ({attempt}/{attempts})"
                )
                continue

            return _postprocess(cues)

        # range() above always returns or raises
        raise AssertionError("unreachable")

    async def _with_proxy_rotation(
        self,
        retrieval: _Retrieval,
        state: RetrievalState,
        call: Callable[[ProxyEndpoint], Awaitable[T]],
    ) -> T:
        """
        Run an upstream call, rotating proxies on proxy-attributable failures.

        Raises:
            PoolExhausted: No healthy endpoint
            RateLimited: Every healthy endpoint is over its quota
            UpstreamBlocked / UpstreamUnavailable: Attempts exhausted
            VideoNotFound / CaptionsDisabled: On first occurrence
        """
        tried: list[ProxyEndpoint] = []
        retrying = rotation_retrying(
            max_attempts=self.settings.proxy_attempts,
            backoff=self.settings.rotation_backoff,
            backoff_max=self.settings.rotation_backoff_max,
            sleep=self._sleep,
        )

        async for attempt in retrying:
            with attempt:
                retrieval.enter(RetrievalState.PROXY_SELECT)
                proxy, permit = self._select_proxy(tried)
                tried.append(proxy)

                retrieval.enter(state)
                retrieval.upstream_calls += 1
                with permit:
                    result = await self._call_upstream(proxy, call)

        return result

    def _select_proxy(self, tried: list[ProxyEndpoint]) -> tuple[ProxyEndpoint, Permit]:
        """
        Pick an endpoint and take its per-proxy quota.

        Endpoints over their quota are skipped without spending an attempt.

        Raises:
            PoolExhausted: No healthy endpoint
            RateLimited: Every healthy endpoint is over its quota
        """
        skipped: list[ProxyEndpoint] = []
        denials: list[RateLimited] = []

        for _ in range(max(1, len(self.pool))):
            proxy = self.pool.acquire(exclude=[*tried, *skipped])
            if proxy in skipped:
                break
            try:
                permit = self.limiter.try_acquire(QuotaScope.for_proxy(proxy))
            except RateLimited as e:
                skipped.append(proxy)
                denials.append(e)
                continue
            return proxy, permit

        raise RateLimited(
            "All healthy proxies are rate limited",
            retry_after=min(e.retry_after for e in denials),
            scope="proxy",
        )

    async def _call_upstream(
        self,
        proxy: ProxyEndpoint,
        call: Callable[[ProxyEndpoint], Awaitable[T]],
    ) -> T:
        """Run one upstream call and report its outcome to the pool."""
        try:
            result = await call(proxy)
        except UpstreamBlocked:
            self.pool.report(proxy, ProxyOutcome.BLOCKED)
            raise
        except UpstreamUnavailable:
            self.pool.report(proxy, ProxyOutcome.FAILURE)
            raise
        except (VideoNotFound, CaptionsDisabled):
            # The upstream answered; the proxy did its job
            self.pool.report(proxy, ProxyOutcome.SUCCESS)
            raise

        self.pool.report(proxy, ProxyOutcome.SUCCESS)
        return result

    @asynccontextmanager
    async def _single_flight(self, key: CacheKey):
        flight = self._flights.get(key)
        if flight is None:
            flight = self._flights[key] = _Flight()
        flight.waiters += 1
        try:
            async with flight.lock:
                yield
        finally:
            flight.waiters -= 1
            if flight.waiters == 0:
                self._flights.pop(key, None)


def _postprocess(cues: list[TranscriptCue]) -> list[TranscriptCue]:
    """
    Strip speaker markers and order cues by start offset.

    Sorting is stable: cues with equal start keep delivery order, and
    duplicates are kept.
    """
    cleaned = [
        cue.model_copy(update={"text": cue.text.replace(SPEAKER_MARKER, "")})
        if SPEAKER_MARKER in cue.text
        else cue
        for cue in cues
    ]

    if any(b.start < a.start for a, b in zip(cleaned, cleaned[1:])):
        logger.warning("Upstream delivered cues out of order, sorting by start")
        cleaned.sort(key=lambda cue: cue.start)

    return cleaned


# Process-wide retriever, built by the application lifespan
_retriever: TranscriptRetriever | None = None


def get_retriever() -> TranscriptRetriever:
    """
    Get the global retriever instance.

    Built lazily from settings if the application did not install one.
    """
    global _retriever
    if _retriever is None:
        _retriever = TranscriptRetriever.from_settings()
    return _retriever


def set_retriever(retriever: TranscriptRetriever | None) -> None:
    """Install (or clear with None) the global retriever instance."""
    global _retriever
    _retriever = retriever
