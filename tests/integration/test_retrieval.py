"""Integration tests for the retrieval state machine over a fake upstream."""

import asyncio

import httpx
import pytest

from caption.errors import (
    CaptionsDisabled,
    InvalidVideoReference,
    MalformedPayload,
    PoolExhausted,
    RateLimited,
    UpstreamBlocked,
    UpstreamUnavailable,
    VideoNotFound,
)
from caption.services.proxy_pool import ProxyOutcome, ProxyState
from caption.services.rate_limiter import QuotaScope
from caption.services.youtube import InnertubeClient

from conftest import FakeUpstream

PROXY_A = "http://10.0.0.1:8080"
PROXY_B = "http://10.0.0.2:8080"


class TestLanguageSelection:
    """Test the abc123 video (manual en, generated es)."""

    @pytest.mark.asyncio
    async def test_exact_language(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test an available language is delivered without substitution."""
        retriever = make_retriever(upstream)

        result = await retriever.retrieve("abc123abc12", "en")

        transcript = result.transcript
        assert transcript.language == "en"
        assert not transcript.substituted
        assert not transcript.is_generated
        assert not result.cached
        assert result.upstream_calls == 2
        assert [cue.text for cue in transcript.cues] == ["Hello & welcome", "to the show"]
        assert transcript.details.title == "Test Video"

    @pytest.mark.asyncio
    async def test_missing_language_is_substituted(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test fr falls back to the manual en track and reports substitution."""
        retriever = make_retriever(upstream)

        transcript = await retriever.get_transcript("abc123abc12", "fr")

        assert transcript.language == "en"
        assert transcript.requested_language == "fr"
        assert transcript.substituted

    @pytest.mark.asyncio
    async def test_generated_track(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a generated track is flagged."""
        retriever = make_retriever(upstream)

        transcript = await retriever.get_transcript("abc123abc12", "es")

        assert transcript.is_generated
        assert transcript.cues[0].text == "Hola"

    @pytest.mark.asyncio
    async def test_default_language(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test the default language applies when none is requested."""
        retriever = make_retriever(upstream, default_language="es")

        transcript = await retriever.get_transcript("abc123abc12")

        assert transcript.requested_language == "es"
        assert transcript.language == "es"

    @pytest.mark.asyncio
    async def test_accepts_urls(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test watch and short URLs resolve to the same video."""
        retriever = make_retriever(upstream)

        transcript = await retriever.get_transcript("https://youtu.be/abc123abc12?t=5", "en")

        assert transcript.video.video_id == "abc123abc12"

    @pytest.mark.asyncio
    async def test_invalid_reference_makes_no_calls(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test malformed input fails before any upstream call."""
        retriever = make_retriever(upstream)

        with pytest.raises(InvalidVideoReference):
            await retriever.get_transcript("abc123")

        assert upstream.calls == []


class TestVideoErrors:
    """Test video-attributable failures."""

    @pytest.mark.asyncio
    async def test_captions_disabled_is_not_rotated(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test xyz999 (no captions) fails once and the proxy stays healthy."""
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        with pytest.raises(CaptionsDisabled) as exc_info:
            await retriever.get_transcript("xyz999xyz99", "en")

        assert exc_info.value.state == "track_discovery"
        assert exc_info.value.video_id == "xyz999xyz99"
        assert upstream.upstream_calls() == 1
        endpoint = retriever.pool.endpoints[0]
        assert endpoint.total_successes == 1
        assert endpoint.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_video_not_found_is_not_retried(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test an unavailable video fails after one discovery."""
        upstream.videos["gone0000000"] = VideoNotFound("Video is unavailable", video_id="gone0000000")
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        with pytest.raises(VideoNotFound):
            await retriever.get_transcript("gone0000000", "en")

        assert upstream.upstream_calls() == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a failed retrieval leaves the cache empty."""
        retriever = make_retriever(upstream)

        with pytest.raises(CaptionsDisabled):
            await retriever.get_transcript("xyz999xyz99", "en")
        with pytest.raises(CaptionsDisabled):
            await retriever.get_transcript("xyz999xyz99", "en")

        assert len(retriever.cache) == 0
        assert upstream.upstream_calls() == 2


class TestProxyRotation:
    """Test rotation across proxies."""

    @pytest.mark.asyncio
    async def test_rotates_away_from_blocked_proxy(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a blocked proxy is cooled down and the next one succeeds."""
        upstream.blocked.add(PROXY_A)
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        result = await retriever.retrieve("abc123abc12", "en")

        assert result.upstream_calls == 3
        assert [call[2] for call in upstream.calls] == [PROXY_A, PROXY_B, PROXY_B]
        assert retriever.pool.endpoints[0].state is ProxyState.COOLING_DOWN
        assert retriever.pool.endpoints[1].state is ProxyState.HEALTHY

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test transient failures stop after proxy_attempts calls."""
        upstream.unavailable.update({PROXY_A, PROXY_B})
        retriever = make_retriever(
            upstream,
            proxies=[PROXY_A, PROXY_B],
            proxy_attempts=3,
            proxy_failure_threshold=10,
        )

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await retriever.get_transcript("abc123abc12", "en")

        assert exc_info.value.state == "track_discovery"
        assert upstream.upstream_calls() == 3
        assert [call[2] for call in upstream.calls] == [PROXY_A, PROXY_B, PROXY_A]

    @pytest.mark.asyncio
    async def test_all_cooling_is_exhausted_without_upstream_calls(
        self, make_retriever, upstream: FakeUpstream
    ) -> None:
        """Test PoolExhausted when every proxy cools down, with no upstream contact."""
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])
        for endpoint in retriever.pool.endpoints:
            retriever.pool.report(endpoint, ProxyOutcome.BLOCKED)

        with pytest.raises(PoolExhausted) as exc_info:
            await retriever.get_transcript("abc123abc12", "en")

        assert exc_info.value.state == "proxy_select"
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_redirect_loop_cools_proxy(self, make_retriever) -> None:
        """Test an endless redirect through the real client is reported as a block."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"Location": str(request.url)})

        client = InnertubeClient(transport_factory=lambda proxy: httpx.MockTransport(handler))
        retriever = make_retriever(client, proxies=[PROXY_A])

        with pytest.raises(PoolExhausted):
            await retriever.get_transcript("dQw4w9WgXcQ", "en")

        endpoint = retriever.pool.endpoints[0]
        assert endpoint.state is ProxyState.COOLING_DOWN
        assert endpoint.consecutive_failures > 0
        await retriever.close()

    @pytest.mark.asyncio
    async def test_every_proxy_blocked_ends_exhausted(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test blocks on every proxy cool the whole pool."""
        upstream.blocked.update({PROXY_A, PROXY_B})
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        with pytest.raises(PoolExhausted):
            await retriever.get_transcript("abc123abc12", "en")

        assert upstream.upstream_calls() == 2
        assert retriever.pool.healthy_count() == 0

    @pytest.mark.asyncio
    async def test_blocked_payload_fetch_rotates(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a block during payload fetch reuses the discovered tracks."""
        upstream.payloads[("abc123abc12", "en")] = [UpstreamBlocked("HTTP 429"), b'<transcript><text start="0">ok</text></transcript>']
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        transcript = await retriever.get_transcript("abc123abc12", "en")

        assert transcript.cues[0].text == "ok"
        assert upstream.upstream_calls("list_tracks") == 1
        assert upstream.upstream_calls("fetch_payload") == 2


class TestPayloads:
    """Test payload handling."""

    @pytest.mark.asyncio
    async def test_malformed_payload_is_fetched_again_once(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test one malformed payload triggers one fresh fetch."""
        upstream.payloads[("abc123abc12", "en")] = [b"garbage", b'<transcript><text start="1">fine</text></transcript>']
        retriever = make_retriever(upstream)

        transcript = await retriever.get_transcript("abc123abc12", "en")

        assert transcript.cues[0].text == "fine"
        assert upstream.upstream_calls("fetch_payload") == 2

    @pytest.mark.asyncio
    async def test_persistently_malformed_payload_fails(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test MalformedPayload surfaces after the retry."""
        upstream.payloads[("abc123abc12", "en")] = [b"garbage"]
        retriever = make_retriever(upstream)

        with pytest.raises(MalformedPayload) as exc_info:
            await retriever.get_transcript("abc123abc12", "en")

        assert exc_info.value.state == "decode"
        assert upstream.upstream_calls("fetch_payload") == 2
        assert len(retriever.cache) == 0

    @pytest.mark.asyncio
    async def test_out_of_order_cues_are_sorted(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test cues come back ordered by start, keeping ties in delivery order."""
        upstream.payloads[("abc123abc12", "en")] = [
            b"<transcript>"
            b'<text start="2">c</text>'
            b'<text start="1">a</text>'
            b'<text start="1">b</text>'
            b"</transcript>"
        ]
        retriever = make_retriever(upstream)

        transcript = await retriever.get_transcript("abc123abc12", "en")

        assert [(cue.start, cue.text) for cue in transcript.cues] == [(1.0, "a"), (1.0, "b"), (2.0, "c")]


class TestCaching:
    """Test cache behaviour through the retriever."""

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a repeated request makes no upstream calls and returns the same transcript."""
        retriever = make_retriever(upstream)

        first = await retriever.retrieve("abc123abc12", "en")
        second = await retriever.retrieve("abc123abc12", "en")

        assert second.cached
        assert second.upstream_calls == 0
        assert second.transcript == first.transcript
        assert upstream.upstream_calls() == 2

    @pytest.mark.asyncio
    async def test_cached_substitution_keeps_flag(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a substituted transcript is cached under the requested language."""
        retriever = make_retriever(upstream)

        await retriever.get_transcript("abc123abc12", "fr")
        result = await retriever.retrieve("abc123abc12", "fr")

        assert result.cached
        assert result.transcript.substituted

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, make_retriever, upstream: FakeUpstream, clock) -> None:
        """Test an expired entry goes back to the upstream."""
        retriever = make_retriever(upstream, cache_ttl=60.0)
        await retriever.get_transcript("abc123abc12", "en")

        clock.advance(61.0)
        result = await retriever.retrieve("abc123abc12", "en")

        assert not result.cached
        assert upstream.upstream_calls() == 4

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_retrieval(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test simultaneous requests for one key make a single discovery."""
        upstream.gate = asyncio.Event()
        retriever = make_retriever(upstream)

        tasks = [asyncio.create_task(retriever.retrieve("abc123abc12", "en")) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)
        upstream.gate.set()
        results = await asyncio.gather(*tasks)

        assert upstream.upstream_calls("list_tracks") == 1
        assert sorted(result.cached for result in results) == [False, True, True]


class TestQuotas:
    """Test rate limiting inside the retrieval."""

    @pytest.mark.asyncio
    async def test_global_quota_is_waited_out(self, make_retriever, upstream: FakeUpstream, clock) -> None:
        """Test RateLimited is retried after the hinted delay."""
        slept: list[float] = []

        async def sleep(seconds: float) -> None:
            slept.append(seconds)
            clock.advance(seconds)

        retriever = make_retriever(upstream, sleep=sleep, global_bucket_capacity=1, global_refill_rate=1.0)

        await retriever.get_transcript("abc123abc12", "en")
        transcript = await retriever.get_transcript("abc123abc12", "es")

        assert transcript.language == "es"
        assert slept == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_global_quota_exhausted(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test RateLimited surfaces when the hint exceeds the wait budget."""
        retriever = make_retriever(upstream, global_bucket_capacity=1, global_refill_rate=0.01)
        await retriever.get_transcript("abc123abc12", "en")
        calls_before = upstream.upstream_calls()

        with pytest.raises(RateLimited) as exc_info:
            await retriever.get_transcript("abc123abc12", "es")

        assert exc_info.value.state == "quota_check"
        assert exc_info.value.retry_after == pytest.approx(100.0)
        assert upstream.upstream_calls() == calls_before

    @pytest.mark.asyncio
    async def test_limited_proxy_is_skipped(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a proxy over its quota is skipped without counting as a failure."""
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B], proxy_max_in_flight=1)
        held = retriever.limiter.try_acquire(QuotaScope.for_proxy(retriever.pool.endpoints[0]))

        try:
            await retriever.get_transcript("abc123abc12", "en")
        finally:
            held.release()

        assert {call[2] for call in upstream.calls} == {PROXY_B}
        assert retriever.pool.endpoints[0].total_failures == 0

    @pytest.mark.asyncio
    async def test_permits_are_released(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test no permit is held after success or failure."""
        upstream.blocked.add(PROXY_A)
        retriever = make_retriever(upstream, proxies=[PROXY_A, PROXY_B])

        await retriever.get_transcript("abc123abc12", "en")
        with pytest.raises(CaptionsDisabled):
            await retriever.get_transcript("xyz999xyz99", "en")

        assert retriever.limiter.in_flight(QuotaScope.GLOBAL) == 0
        for endpoint in retriever.pool.endpoints:
            assert retriever.limiter.in_flight(QuotaScope.for_proxy(endpoint)) == 0


class TestTimeout:
    """Test whole-retrieval deadlines."""

    @pytest.mark.asyncio
    async def test_timeout_abandons_without_penalizing_proxy(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test a stuck retrieval times out and releases everything it held."""
        upstream.gate = asyncio.Event()
        retriever = make_retriever(upstream)

        with pytest.raises(UpstreamUnavailable):
            await retriever.retrieve("abc123abc12", "en", timeout=0.05)

        endpoint = retriever.pool.endpoints[0]
        assert endpoint.total_failures == 0
        assert retriever.limiter.in_flight(QuotaScope.GLOBAL) == 0
        assert retriever.limiter.in_flight(QuotaScope.for_proxy(endpoint)) == 0

    @pytest.mark.asyncio
    async def test_close(self, make_retriever, upstream: FakeUpstream) -> None:
        """Test closing the retriever closes the upstream client."""
        async with make_retriever(upstream):
            pass

        assert upstream.closed
