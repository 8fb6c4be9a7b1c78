"""Video catalog data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class VideoStatus(str, Enum):
    """Availability status maintained by the validator and status checker."""

    UNKNOWN = "unknown"
    CHECKING = "checking"
    WORKING = "working"
    BROKEN = "broken"


@dataclass
class Quality:
    """One encoded variant of a video with its own segment series.

    ``last_segment_url`` is a template whose filename embeds the highest
    segment index. ``segment_count`` is only authoritative when > 1.
    """

    quality: str
    last_segment_url: str
    segment_count: int = 0

    def to_dict(self) -> dict:
        return {
            "quality": self.quality,
            "last_segment_url": self.last_segment_url,
            "segment_count": self.segment_count,
        }


def normalize_quality(raw: dict[str, Any]) -> Quality:
    """Build a Quality from any historical record shape.

    Accepts the legacy aliases ``lastSegmentUrl``/``last_segment_url``/``url``,
    ``q`` for the label and ``segmentCount``/``segment_count``. Call this at
    ingress only; business logic works with Quality.
    """
    label = raw.get("quality") or raw.get("q") or ""
    url = raw.get("last_segment_url") or raw.get("lastSegmentUrl") or raw.get("url") or ""
    count = raw.get("segment_count") or raw.get("segmentCount") or 0
    try:
        count = int(count)
    except (TypeError, ValueError):
        count = 0
    return Quality(quality=str(label), last_segment_url=str(url), segment_count=max(0, count))


@dataclass
class Video:
    """A lecture video made of one or more qualities."""

    id: str
    title: str
    lecture_id: Optional[str] = None
    duration: float = 0.0
    qualities: list[Quality] = field(default_factory=list)
    status: VideoStatus = VideoStatus.UNKNOWN
    status_updated_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def find_quality(self, label: str) -> Optional[Quality]:
        """Return the quality whose label matches, or None."""
        for q in self.qualities:
            if str(q.quality) == str(label):
                return q
        return None

    def first_segment_url(self) -> Optional[str]:
        """URL of the first quality that has one (used by the status checker)."""
        for q in self.qualities:
            if q.last_segment_url:
                return q.last_segment_url
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "lecture_id": self.lecture_id,
            "duration": self.duration,
            "qualities": [q.to_dict() for q in self.qualities],
            "status": self.status.value,
            "status_updated_at": self.status_updated_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Video":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            lecture_id=data.get("lecture_id"),
            duration=float(data.get("duration") or 0),
            qualities=[normalize_quality(q) for q in data.get("qualities") or []],
            status=VideoStatus(data.get("status") or VideoStatus.UNKNOWN.value),
            status_updated_at=data.get("status_updated_at"),
            created_at=data.get("created_at") or datetime.now().isoformat(),
        )


@dataclass
class Lecture:
    """Catalog context used to label notifications."""

    id: str
    title: str
    chapter_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "chapter_id": self.chapter_id}
