"""HLS playlist synthesis for a video quality.

Segment durations come from dividing the stored video duration evenly; the
final segment absorbs the rounding remainder so the playlist sums to the
stored duration exactly. Each segment URL carries its own signed token.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

from api.catalog_store import CatalogStore
from services.segment_resolver import resolve_segment_count
from services.segment_signer import SegmentSigner

logger = logging.getLogger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
TOKEN_SAFETY_MARGIN_SECONDS = 30


class PlaylistError(Exception):
    """Unknown video or quality."""


@dataclass
class Playlist:
    body: str
    video_duration: float
    total_seconds: float
    segment_count: int

    @property
    def headers(self) -> dict[str, str]:
        return {
            "x-video-duration": f"{self.video_duration:g}",
            "x-playlist-total-seconds": f"{self.total_seconds:.3f}",
        }


def compute_segment_durations(duration: float, segment_count: int) -> list[float]:
    """Split ``duration`` over ``segment_count`` segments at millisecond precision.

    Without a known duration every segment is reported as one second.
    """
    count = max(1, segment_count)
    if not duration or duration <= 0:
        return [1.0] * count

    per_segment = round(duration / count, 3)
    durations = [per_segment] * count
    drift = round(duration - per_segment * count, 3)
    if abs(drift) > 0.0005:
        durations[-1] = round(durations[-1] + drift, 3)
    return durations


class PlaylistCache:
    """Tiny in-memory TTL cache keyed by (video_id, quality)."""

    def __init__(self, ttl_seconds: float = 20, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, Playlist]] = {}

    def get(self, video_id: str, quality: str) -> Optional[Playlist]:
        key = (str(video_id), str(quality))
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, playlist = entry
        if self._clock() > expires:
            del self._entries[key]
            return None
        return playlist

    def set(self, video_id: str, quality: str, playlist: Playlist) -> None:
        self._entries[(str(video_id), str(quality))] = (self._clock() + self.ttl_seconds, playlist)

    def invalidate(self, video_id: str) -> None:
        for key in [k for k in self._entries if k[0] == str(video_id)]:
            del self._entries[key]


class PlaylistSynthesizer:
    """Builds signed VOD playlists from catalog metadata."""

    def __init__(
        self,
        catalog: CatalogStore,
        signer: SegmentSigner,
        cache: Optional[PlaylistCache] = None,
        default_segment_length: float = 6.0,
        api_prefix: str = "/api",
    ):
        self.catalog = catalog
        self.signer = signer
        self.cache = cache or PlaylistCache()
        self.default_segment_length = default_segment_length
        self.api_prefix = api_prefix.rstrip("/")

    async def build_playlist(self, video_id: str, quality: str) -> Playlist:
        """Return the playlist for one quality, from cache when fresh.

        Raises:
            PlaylistError: Video or quality does not exist
        """
        cached = self.cache.get(video_id, quality)
        if cached is not None:
            return cached

        video = await self.catalog.get_video(video_id)
        if video is None:
            raise PlaylistError("video not found")
        entry = video.find_quality(quality)
        if entry is None:
            raise PlaylistError("quality not found")

        segment_count = resolve_segment_count(entry, video.duration, self.default_segment_length)
        durations = compute_segment_durations(video.duration, segment_count)
        target_duration = math.ceil(max(max(durations), 1))

        # Tokens must outlive playback of the whole playlist started at t=0
        playback_seconds = max(1, math.ceil(video.duration) or target_duration * segment_count)
        token_ttl = max(self.signer.default_ttl, playback_seconds + TOKEN_SAFETY_MARGIN_SECONDS)

        lines = [
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            "#EXT-X-PLAYLIST-TYPE:VOD",
            f"#EXT-X-TARGETDURATION:{target_duration}",
            "#EXT-X-MEDIA-SEQUENCE:1",
        ]
        for number, seconds in enumerate(durations, start=1):
            token, _ = self.signer.sign(video.id, entry.quality, number, ttl=token_ttl)
            lines.append(f"#EXTINF:{seconds:.3f},")
            lines.append(
                f"{self.api_prefix}/videos/{quote(video.id, safe='')}/segments/"
                f"{quote(entry.quality, safe='')}/{number}?token={quote(token, safe='')}"
            )
        lines.append("#EXT-X-ENDLIST")

        playlist = Playlist(
            body="\n".join(lines) + "\n",
            video_duration=video.duration,
            total_seconds=round(sum(durations), 3),
            segment_count=segment_count,
        )
        self.cache.set(video_id, quality, playlist)
        logger.debug(f"Built playlist for video {video_id} quality {quality}: {segment_count} segments")
        return playlist
