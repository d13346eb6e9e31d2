#!/usr/bin/env python3
"""
Probe every configured proxy against a live video to see which egress points work.

Each proxy gets its own discovery + payload fetch, outside the pool and the
rate limiter, so one bad proxy never hides another.

Usage:
    python3 scripts/probe_proxies.py
    python3 scripts/probe_proxies.py --video dQw4w9WgXcQ --language en --runs 3
    docker exec -it v1-caption python3 /app/scripts/probe_proxies.py
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from caption.config import get_settings, load_proxies_config
from caption.errors import CaptionError
from caption.models.schemas import VideoReference
from caption.services.caption_decoder import CaptionDecoder
from caption.services.proxy_pool import ProxyEndpoint
from caption.services.track_selector import select_track
from caption.services.youtube import InnertubeClient

DEFAULT_VIDEO = "dQw4w9WgXcQ"


async def probe(
    client: InnertubeClient,
    decoder: CaptionDecoder,
    endpoint: ProxyEndpoint,
    video: VideoReference,
    language: str,
) -> dict:
    """Run one discovery + fetch through an endpoint."""
    start_time = time.time()
    try:
        listing = await client.list_tracks(video, endpoint)
        selection = select_track(listing, language)
        payload = await client.fetch_payload(selection.track, endpoint)
        cues = decoder.decode(payload)
        return {
            "ok": True,
            "elapsed": time.time() - start_time,
            "tracks": len(listing),
            "language": selection.track.language_code,
            "cues": len(cues),
        }
    except CaptionError as e:
        return {
            "ok": False,
            "elapsed": time.time() - start_time,
            "error": f"{e.code}: {e.message}",
        }


async def main() -> int:
    parser = argparse.ArgumentParser(description="Probe configured proxies against a live video")
    parser.add_argument("--video", default=DEFAULT_VIDEO, help="Video id to fetch")
    parser.add_argument("--language", default=None, help="Preferred language (default from settings)")
    parser.add_argument("--runs", type=int, default=1, help="Probes per proxy")
    args = parser.parse_args()

    settings = get_settings()
    urls = load_proxies_config(settings)
    endpoints = [ProxyEndpoint(url=url) for url in urls] or [ProxyEndpoint(url=None)]
    video = VideoReference(video_id=args.video)
    language = args.language or settings.default_language
    decoder = CaptionDecoder()

    print("=" * 60)
    print(f"Video: {video.video_id}  language: {language}  runs: {args.runs}")
    print(f"Endpoints: {len(endpoints)}")
    print("=" * 60)

    failures = 0
    async with InnertubeClient.from_settings(settings) as client:
        for endpoint in endpoints:
            print(f"\n{endpoint.label}")
            for run in range(1, args.runs + 1):
                result = await probe(client, decoder, endpoint, video, language)
                if result["ok"]:
                    print(
                        f"  run {run}: OK   {result['elapsed']:.2f}s  "
                        f"tracks={result['tracks']} language={result['language']} cues={result['cues']}"
                    )
                else:
                    failures += 1
                    print(f"  run {run}: FAIL {result['elapsed']:.2f}s  {result['error']}")

    total = len(endpoints) * args.runs
    print("\n" + "=" * 60)
    print(f"SUMMARY: {total - failures}/{total} probes succeeded")
    return 0 if failures == 0 else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
