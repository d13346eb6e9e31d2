"""
Upstream client protocol.

All interaction with the video platform goes through exactly two calls, so
upstream quirks (consent pages, schema drift, header requirements) stay
inside the implementation.
"""

from typing import Protocol, runtime_checkable

from caption.models.schemas import (
    CaptionTrackDescriptor,
    RawCaptionPayload,
    TrackListing,
    VideoReference,
)
from caption.services.proxy_pool import ProxyEndpoint


@runtime_checkable
class UpstreamClient(Protocol):
    """
    Protocol defining the upstream caption source.

    Example:
        async def first_payload(client: UpstreamClient, video, proxy):
            listing = await client.list_tracks(video, proxy)
            return await client.fetch_payload(listing[0], proxy)
    """

    async def list_tracks(
        self,
        video: VideoReference,
        proxy: ProxyEndpoint,
    ) -> TrackListing:
        """
        Discover the caption tracks of a video.

        Args:
            video: Validated video reference
            proxy: Endpoint to send the requests through

        Returns:
            TrackListing (ordered tracks plus video details)

        Raises:
            VideoNotFound: Video unavailable (or unplayable)
            CaptionsDisabled: Video has no caption tracks
            UpstreamBlocked: The upstream rejected this proxy
            UpstreamUnavailable: Transient network or upstream failure
        """
        ...

    async def fetch_payload(
        self,
        track: CaptionTrackDescriptor,
        proxy: ProxyEndpoint,
    ) -> RawCaptionPayload:
        """
        Download the raw caption payload of a track.

        Args:
            track: Descriptor from list_tracks()
            proxy: Endpoint to send the request through

        Returns:
            RawCaptionPayload

        Raises:
            UpstreamBlocked: The upstream rejected this proxy
            UpstreamUnavailable: Transient network or upstream failure
        """
        ...

    async def close(self) -> None:
        """Close the client and release resources."""
        ...
