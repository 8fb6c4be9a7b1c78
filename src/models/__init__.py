# Data models for segmentry
from .video import VideoStatus, Quality, Video, Lecture, normalize_quality
from .validation import (
    JobStatus,
    TERMINAL_JOB_STATUSES,
    FailureKind,
    classify_status_code,
    SegmentValidationError,
    ProbeResult,
    SegmentCheck,
    QualitySummary,
    QualityResult,
    ValidationResults,
    VideoResult,
    ValidationJob,
)
from .notification import Notification

__all__ = [
    # Catalog
    "VideoStatus",
    "Quality",
    "Video",
    "Lecture",
    "normalize_quality",
    # Validation
    "JobStatus",
    "TERMINAL_JOB_STATUSES",
    "FailureKind",
    "classify_status_code",
    "SegmentValidationError",
    "ProbeResult",
    "SegmentCheck",
    "QualitySummary",
    "QualityResult",
    "ValidationResults",
    "VideoResult",
    "ValidationJob",
    # Notifications
    "Notification",
]
