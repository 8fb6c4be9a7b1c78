"""Validation job and segment check data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class JobStatus(str, Enum):
    """Lifecycle of a validation job. ``paused`` is tracked separately."""

    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.FINISHED, JobStatus.FAILED, JobStatus.STOPPED})


class FailureKind(str, Enum):
    """How a failed check should be treated by retry loops."""

    TERMINAL = "terminal"  # content confirmed gone (404/410)
    TRANSIENT = "transient"  # timeouts, resets, unexpected statuses
    RATE_LIMITED = "rate_limited"  # 429 or 5xx from the origin


def classify_status_code(status_code: Optional[int]) -> FailureKind:
    """Map an upstream HTTP status (or None for network errors) to a FailureKind."""
    if status_code in (404, 410):
        return FailureKind.TERMINAL
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return FailureKind.RATE_LIMITED
    return FailureKind.TRANSIENT


class SegmentValidationError(Exception):
    """Raised by the validator when a quality cannot be confirmed."""

    def __init__(
        self,
        message: str,
        kind: FailureKind = FailureKind.TRANSIENT,
        quality: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.quality = quality
        self.status_code = status_code

    @property
    def is_terminal(self) -> bool:
        return self.kind == FailureKind.TERMINAL


@dataclass
class ProbeResult:
    """Outcome of a single probe. Never raised, always returned."""

    ok: bool
    status_code: Optional[int] = None
    method: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "method": self.method,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
            "attempts": self.attempts,
        }


@dataclass
class SegmentCheck:
    """Per-segment validation outcome. ``segment`` is an index or ``"last"``."""

    segment: Union[int, str]
    ok: bool
    url: str
    status: Optional[int] = None
    error: Optional[str] = None
    note: Optional[str] = None
    mirrored: Optional[str] = None
    mirror_error: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"segment": self.segment, "ok": self.ok, "url": self.url}
        for key in ("status", "error", "note", "mirrored", "mirror_error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class QualitySummary:
    """Counters for one quality's checks."""

    total_checked: int = 0
    ok_count: int = 0
    failed_count: int = 0
    failed_segments: list = field(default_factory=list)
    mirror_errors: list = field(default_factory=list)

    def record(self, check: SegmentCheck) -> None:
        self.total_checked += 1
        if check.ok:
            self.ok_count += 1
        else:
            self.failed_count += 1
            self.failed_segments.append(check.segment)
        if check.mirror_error:
            self.mirror_errors.append({"segment": check.segment, "message": check.mirror_error})

    def to_dict(self) -> dict:
        return {
            "total_checked": self.total_checked,
            "ok_count": self.ok_count,
            "failed_count": self.failed_count,
            "failed_segments": list(self.failed_segments),
            "mirror_errors": list(self.mirror_errors),
        }


@dataclass
class QualityResult:
    """Ordered segment checks plus summary for one quality."""

    segments: list[SegmentCheck] = field(default_factory=list)
    summary: QualitySummary = field(default_factory=QualitySummary)

    def add(self, check: SegmentCheck) -> None:
        self.segments.append(check)
        self.summary.record(check)

    @property
    def all_ok(self) -> bool:
        return bool(self.segments) and all(s.ok for s in self.segments)


@dataclass
class ValidationResults:
    """Validator output: quality label -> QualityResult, plus a cross-quality meta."""

    qualities: dict[str, QualityResult] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def meta(self) -> dict:
        return {
            "total_qualities": len(self.qualities),
            "total_checked": sum(r.summary.total_checked for r in self.qualities.values()),
            "total_failed": sum(r.summary.failed_count for r in self.qualities.values()),
            "qualities": {label: r.summary.to_dict() for label, r in self.qualities.items()},
            "timestamp": self.timestamp,
        }

    @property
    def ok(self) -> bool:
        return all(r.summary.failed_count == 0 for r in self.qualities.values())

    def summary(self) -> dict:
        """High-level summary attached to job results for the admin UI."""
        meta = self.meta
        return {"meta": meta, "qualities": meta["qualities"]}

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            label: {
                "segments": [s.to_dict() for s in r.segments],
                "summary": r.summary.to_dict(),
            }
            for label, r in self.qualities.items()
        }
        data["_meta"] = self.meta
        return data


@dataclass
class VideoResult:
    """One entry in a job's ordered result list.

    ``ok is None`` marks a placeholder for a video still in progress; a crash
    leaves it behind and resume must retry that video.
    """

    video_id: str
    title: str = ""
    lecture_id: Optional[str] = None
    ok: Optional[bool] = None
    summary: Optional[dict] = None
    results: Optional[dict] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    processed_at: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.ok is None

    def to_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "title": self.title,
            "lecture_id": self.lecture_id,
            "ok": self.ok,
            "summary": self.summary,
            "results": self.results,
            "error": self.error,
            "started_at": self.started_at,
            "processed_at": self.processed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VideoResult":
        return cls(
            video_id=str(data.get("video_id", "")),
            title=data.get("title", ""),
            lecture_id=data.get("lecture_id"),
            ok=data.get("ok"),
            summary=data.get("summary"),
            results=data.get("results"),
            error=data.get("error"),
            started_at=data.get("started_at"),
            processed_at=data.get("processed_at"),
        )


@dataclass
class ValidationJob:
    """A catalog-wide validation run."""

    id: str
    status: JobStatus = JobStatus.QUEUED
    paused: bool = False
    mirror: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    total_videos: int = 0
    processed_videos: int = 0
    current_video: Optional[dict] = None
    videos: list[VideoResult] = field(default_factory=list)
    error: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def latest_results(self) -> dict[str, VideoResult]:
        """Newest final result per video; revalidation appends repeats."""
        latest: dict[str, VideoResult] = {}
        for v in self.videos:
            if not v.is_placeholder:
                latest[v.video_id] = v
        return latest

    def count_processed(self) -> int:
        """Number of distinct videos with a final (non-placeholder) result."""
        return len(self.latest_results())

    def failed_count(self) -> int:
        return sum(1 for v in self.latest_results().values() if v.ok is False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "paused": self.paused,
            "mirror": self.mirror,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total_videos": self.total_videos,
            "processed_videos": self.processed_videos,
            "current_video": self.current_video,
            "videos": [v.to_dict() for v in self.videos],
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationJob":
        return cls(
            id=data["id"],
            status=JobStatus(data.get("status") or JobStatus.QUEUED.value),
            paused=bool(data.get("paused")),
            mirror=bool(data.get("mirror")),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            total_videos=int(data.get("total_videos") or 0),
            processed_videos=int(data.get("processed_videos") or 0),
            current_video=data.get("current_video"),
            videos=[
                v if isinstance(v, VideoResult) else VideoResult.from_dict(v)
                for v in data.get("videos") or []
            ],
            error=data.get("error"),
            created_at=data.get("created_at") or datetime.now().isoformat(),
            updated_at=data.get("updated_at") or datetime.now().isoformat(),
        )
