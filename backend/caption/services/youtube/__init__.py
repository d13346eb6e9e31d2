"""
Upstream clients for the video platform.

- UpstreamClient: protocol with list_tracks() and fetch_payload()
- InnertubeClient: httpx implementation over the innertube player API

Usage:
    from caption.services.youtube import InnertubeClient, UpstreamClient

    async with InnertubeClient.from_settings(settings) as client:
        listing = await client.list_tracks(video, proxy)
"""

from caption.services.youtube.base import UpstreamClient
from caption.services.youtube.innertube_client import InnertubeClient

__all__ = [
    "UpstreamClient",
    "InnertubeClient",
]
