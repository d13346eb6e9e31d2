"""
YouTube caption client over the innertube player API.

Track discovery takes two requests:
1. GET the watch page and extract INNERTUBE_API_KEY (handling the EU
   consent interstitial once)
2. POST youtubei/v1/player, which carries playability status, caption
   tracks and video details

Payload fetch is one GET on the track's baseUrl.

One httpx.AsyncClient is kept per proxy endpoint so cookies (consent) and
connection pools never leak between egress points.
"""

import html
import logging
import re
from collections.abc import Callable

import httpx

from caption.config import Settings
from caption.errors import (
    CaptionsDisabled,
    UpstreamBlocked,
    UpstreamUnavailable,
    VideoNotFound,
    VideoUnplayable,
)
from caption.models.schemas import (
    CaptionTrackDescriptor,
    RawCaptionPayload,
    TrackListing,
    VideoDetails,
    VideoReference,
)
from caption.services.proxy_pool import ProxyEndpoint

logger = logging.getLogger(__name__)

API_KEY_PATTERN = re.compile(r'"INNERTUBE_API_KEY":\s*"([a-zA-Z0-9_-]+)"')
CONSENT_FORM_MARKER = 'action="https://consent.youtube.com/s"'
CONSENT_VALUE_PATTERN = re.compile(r'name="v" value="(.*?)"')
RECAPTCHA_MARKER = 'class="g-recaptcha"'

# Track URLs carrying this flag need a proof-of-origin token we cannot produce
PO_TOKEN_MARKER = "&exp=xpe"

BOT_CHECK_REASON = "Sign in to confirm you"
AGE_RESTRICTED_REASON = "This video may be inappropriate for some users."
VIDEO_UNAVAILABLE_REASON = "This video is unavailable"

BLOCKING_STATUS_CODES = {403, 429}

TransportFactory = Callable[[ProxyEndpoint], httpx.AsyncBaseTransport]


class InnertubeClient:
    """
    Async HTTP client for YouTube caption discovery and download.

    Example:
        async with InnertubeClient.from_settings(settings) as client:
            listing = await client.list_tracks(video, proxy)
            payload = await client.fetch_payload(listing[0], proxy)
    """

    def __init__(
        self,
        base_url: str = "https://www.youtube.com",
        client_name: str = "ANDROID",
        client_version: str = "20.10.38",
        user_agent: str | None = None,
        accept_language: str = "en-US",
        timeout: float = 15.0,
        transport_factory: TransportFactory | None = None,
    ):
        """
        Initialize innertube client.

        Args:
            base_url: YouTube origin
            client_name: innertube context clientName
            client_version: innertube context clientVersion
            user_agent: User-Agent header
            accept_language: Accept-Language header
            timeout: Per-request timeout in seconds
            transport_factory: Builds the transport for an endpoint instead of
                routing through its proxy URL (used in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client_name = client_name
        self.client_version = client_version
        self.timeout = timeout
        self.headers = {"Accept-Language": accept_language}
        if user_agent:
            self.headers["User-Agent"] = user_agent
        self._transport_factory = transport_factory
        self._clients: dict[str, httpx.AsyncClient] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport_factory: TransportFactory | None = None,
    ) -> "InnertubeClient":
        """
        Create InnertubeClient from application settings.

        Args:
            settings: Application settings
            transport_factory: Optional transport override

        Returns:
            Configured InnertubeClient instance
        """
        return cls(
            base_url=settings.youtube_base_url,
            client_name=settings.innertube_client_name,
            client_version=settings.innertube_client_version,
            user_agent=settings.user_agent,
            accept_language=settings.accept_language,
            timeout=settings.upstream_timeout,
            transport_factory=transport_factory,
        )

    async def __aenter__(self) -> "InnertubeClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close every per-endpoint HTTP client."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    # ═══════════════════════════════════════════════════════════════════════
    # Track discovery
    # ═══════════════════════════════════════════════════════════════════════

    async def list_tracks(
        self,
        video: VideoReference,
        proxy: ProxyEndpoint,
    ) -> TrackListing:
        """
        Discover caption tracks and video details.

        Args:
            video: Validated video reference
            proxy: Endpoint to send the requests through

        Returns:
            TrackListing with tracks in upstream order

        Raises:
            VideoNotFound, CaptionsDisabled, UpstreamBlocked, UpstreamUnavailable
        """
        video_id = video.video_id
        client = self._client_for(proxy)

        page = await self._fetch_video_html(client, video_id, proxy)
        api_key = self._extract_api_key(page, video_id, proxy)
        player = await self._fetch_player(client, video_id, api_key, proxy)

        self._assert_playability(_as_dict(player.get("playabilityStatus")), video_id, proxy)

        renderer = _as_dict(_as_dict(player.get("captions")).get("playerCaptionsTracklistRenderer"))
        raw_tracks = renderer.get("captionTracks")
        if not isinstance(raw_tracks, list):
            raise CaptionsDisabled(
                "Captions are disabled for this video", video_id=video_id
            )

        tracks = tuple(
            track
            for track in (self._parse_track(raw, video_id) for raw in raw_tracks)
            if track is not None
        )
        if not tracks:
            raise UpstreamUnavailable(
                "Caption track list could not be parsed",
                video_id=video_id,
                proxy=proxy.label,
            )

        details = self._parse_details(player.get("videoDetails"))
        logger.info(
            f"Discovered {len(tracks)} caption track(s) for {video_id} via {proxy.label}: "
            f"{', '.join(t.language_code + ('*' if t.is_generated else '') for t in tracks)}"
        )
        return TrackListing(tracks=tracks, details=details)

    async def _fetch_video_html(
        self,
        client: httpx.AsyncClient,
        video_id: str,
        proxy: ProxyEndpoint,
    ) -> str:
        page = await self._fetch_html(client, video_id, proxy)
        if CONSENT_FORM_MARKER not in page:
            return page

        match = CONSENT_VALUE_PATTERN.search(page)
        if match is None:
            raise UpstreamBlocked(
                "Consent page without consent token", video_id=video_id, proxy=proxy.label
            )
        client.cookies.set("CONSENT", "YES+" + match.group(1), domain=".youtube.com")
        logger.debug(f"Consent cookie set for {proxy.label}")

        page = await self._fetch_html(client, video_id, proxy)
        if CONSENT_FORM_MARKER in page:
            raise UpstreamBlocked(
                "Consent page served again after setting cookie",
                video_id=video_id,
                proxy=proxy.label,
            )
        return page

    async def _fetch_html(
        self,
        client: httpx.AsyncClient,
        video_id: str,
        proxy: ProxyEndpoint,
    ) -> str:
        response = await self._request(
            client,
            "GET",
            f"{self.base_url}/watch",
            proxy,
            video_id,
            params={"v": video_id},
        )
        return html.unescape(response.text)

    def _extract_api_key(self, page: str, video_id: str, proxy: ProxyEndpoint) -> str:
        match = API_KEY_PATTERN.search(page)
        if match:
            return match.group(1)
        if RECAPTCHA_MARKER in page:
            raise UpstreamBlocked("reCAPTCHA served", video_id=video_id, proxy=proxy.label)
        raise UpstreamUnavailable(
            "Watch page has no innertube API key", video_id=video_id, proxy=proxy.label
        )

    async def _fetch_player(
        self,
        client: httpx.AsyncClient,
        video_id: str,
        api_key: str,
        proxy: ProxyEndpoint,
    ) -> dict:
        response = await self._request(
            client,
            "POST",
            f"{self.base_url}/youtubei/v1/player",
            proxy,
            video_id,
            params={"key": api_key},
            json={
                "context": {
                    "client": {
                        "clientName": self.client_name,
                        "clientVersion": self.client_version,
                    }
                },
                "videoId": video_id,
            },
        )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(
                "Player response is not JSON",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e

        if not isinstance(data, dict):
            raise UpstreamUnavailable(
                "Player response is not an object", video_id=video_id, proxy=proxy.label
            )
        return data

    def _assert_playability(self, status_data: dict, video_id: str, proxy: ProxyEndpoint) -> None:
        status = status_data.get("status")
        if status is None or status == "OK":
            return

        reason = str(status_data.get("reason") or "")

        if status == "LOGIN_REQUIRED":
            if reason.startswith(BOT_CHECK_REASON):
                raise UpstreamBlocked(
                    "Bot check requested by upstream", video_id=video_id, proxy=proxy.label
                )
            if reason == AGE_RESTRICTED_REASON:
                raise VideoUnplayable(
                    "Video is age-restricted", reason=reason, video_id=video_id
                )

        if status == "ERROR" and reason == VIDEO_UNAVAILABLE_REASON:
            raise VideoNotFound("Video is unavailable", video_id=video_id)

        error_screen = _as_dict(status_data.get("errorScreen"))
        subreason = _as_dict(
            _as_dict(error_screen.get("playerErrorMessageRenderer")).get("subreason")
        )
        reason = reason or str(status)
        raise VideoUnplayable(
            f"Video is unplayable: {reason}",
            reason=reason,
            subreasons=_runs_text(subreason.get("runs")),
            video_id=video_id,
        )

    def _parse_track(self, raw: object, video_id: str) -> CaptionTrackDescriptor | None:
        if not isinstance(raw, dict):
            logger.warning(f"Skipping non-object caption track entry for {video_id}")
            return None

        base_url = raw.get("baseUrl")
        language_code = raw.get("languageCode")
        if not (base_url and isinstance(base_url, str)) or not (
            language_code and isinstance(language_code, str)
        ):
            logger.warning(f"Skipping caption track without baseUrl/languageCode for {video_id}")
            return None

        name_data = _as_dict(raw.get("name"))
        if isinstance(name_data.get("simpleText"), str):
            name = name_data["simpleText"]
        else:
            name = "".join(_runs_text(name_data.get("runs")))

        return CaptionTrackDescriptor(
            language_code=language_code,
            name=name or language_code,
            video_id=video_id,
            is_generated=raw.get("kind", "") == "asr",
            is_translatable=bool(raw.get("isTranslatable", False)),
            base_url=base_url.replace("&fmt=srv3", ""),
        )

    @staticmethod
    def _parse_details(raw: object) -> VideoDetails | None:
        if not raw or not isinstance(raw, dict):
            return None

        def to_int(value) -> int | None:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None

        return VideoDetails(
            title=str(raw.get("title") or ""),
            author=str(raw.get("author") or ""),
            view_count=to_int(raw.get("viewCount")),
            length_seconds=to_int(raw.get("lengthSeconds")),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Payload fetch
    # ═══════════════════════════════════════════════════════════════════════

    async def fetch_payload(
        self,
        track: CaptionTrackDescriptor,
        proxy: ProxyEndpoint,
    ) -> RawCaptionPayload:
        """
        Download the raw timed-text payload of a track.

        Args:
            track: Descriptor from list_tracks()
            proxy: Endpoint to send the request through

        Returns:
            RawCaptionPayload

        Raises:
            UpstreamBlocked, UpstreamUnavailable
        """
        if PO_TOKEN_MARKER in track.base_url:
            raise UpstreamBlocked(
                "Caption track requires a proof-of-origin token",
                video_id=track.video_id or None,
                proxy=proxy.label,
            )

        client = self._client_for(proxy)
        response = await self._request(client, "GET", track.base_url, proxy, track.video_id)

        logger.debug(
            f"Fetched {track.language_code} payload for {track.video_id}: "
            f"{len(response.content)} bytes via {proxy.label}"
        )
        return RawCaptionPayload(
            content=response.content,
            track=track,
            content_type=response.headers.get("content-type"),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # HTTP plumbing
    # ═══════════════════════════════════════════════════════════════════════

    def _client_for(self, proxy: ProxyEndpoint) -> httpx.AsyncClient:
        client = self._clients.get(proxy.key)
        if client is not None:
            return client

        if self._transport_factory is not None:
            client = httpx.AsyncClient(
                transport=self._transport_factory(proxy),
                headers=self.headers,
                timeout=self.timeout,
                follow_redirects=True,
            )
        else:
            client = httpx.AsyncClient(
                proxy=proxy.url,
                headers=self.headers,
                timeout=self.timeout,
                follow_redirects=True,
                trust_env=False,
            )
        self._clients[proxy.key] = client
        return client

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        proxy: ProxyEndpoint,
        video_id: str | None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send a request and translate failures into the error taxonomy.

        Raises:
            UpstreamBlocked: Proxy refused, redirect loop, or upstream answered 403/429
            UpstreamUnavailable: Timeout, transport or decoding error, other HTTP error
        """
        video_id = video_id or None
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.ProxyError as e:
            logger.warning(f"Proxy error via {proxy.label}: {e}")
            raise UpstreamBlocked(
                f"Proxy refused connection: {e}",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream timeout via {proxy.label}: {type(e).__name__}")
            raise UpstreamUnavailable(
                f"Upstream timeout ({type(e).__name__})",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Transport error via {proxy.label}: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(
                f"Transport error: {type(e).__name__}",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e
        except httpx.TooManyRedirects as e:
            # Consent and sign-in loops end here
            logger.warning(f"Redirect loop via {proxy.label}: {e}")
            raise UpstreamBlocked(
                f"Upstream redirect loop: {e}",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e
        except httpx.RequestError as e:
            logger.warning(f"Request error via {proxy.label}: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(
                f"Request error: {type(e).__name__}",
                video_id=video_id,
                proxy=proxy.label,
                original_error=e,
            ) from e

        if response.status_code in BLOCKING_STATUS_CODES:
            logger.warning(f"Upstream answered {response.status_code} via {proxy.label}")
            raise UpstreamBlocked(
                f"Upstream rejected request: HTTP {response.status_code}",
                video_id=video_id,
                proxy=proxy.label,
            )

        if response.status_code >= 400:
            logger.warning(f"Upstream HTTP {response.status_code} via {proxy.label}")
            raise UpstreamUnavailable(
                f"Upstream HTTP {response.status_code}",
                status_code_upstream=response.status_code,
                video_id=video_id,
                proxy=proxy.label,
            )

        return response


def _as_dict(value: object) -> dict:
    """Return value if it is a JSON object, else an empty one."""
    return value if isinstance(value, dict) else {}


def _runs_text(runs: object) -> list[str]:
    """Text of each well-formed run in a runs array."""
    if not isinstance(runs, list):
        return []
    return [str(run.get("text") or "") for run in runs if isinstance(run, dict)]
