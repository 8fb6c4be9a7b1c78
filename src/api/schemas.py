"""Pydantic request/response models for the Segmentry API."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from models.video import normalize_quality

# =============================================================================
# Response Models
# =============================================================================


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str

    model_config = {"json_schema_extra": {"examples": [{"message": "Operation completed successfully"}]}}


class RootResponse(BaseModel):
    """Root endpoint response."""

    message: str
    version: str

    model_config = {"json_schema_extra": {"examples": [{"message": "Segmentry API", "version": "1.0.0"}]}}


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    running_job: str | None = None

    model_config = {"json_schema_extra": {"examples": [{"status": "healthy", "running_job": None}]}}


class StartValidationResponse(BaseModel):
    """Accepted validation job."""

    job_id: str
    status: str

    model_config = {"json_schema_extra": {"examples": [{"job_id": "9b1deb4d3b7d4bad9bdd2b0d7b3dcb6d", "status": "queued"}]}}


class JobSummaryResponse(BaseModel):
    """Validation job without per-video results."""

    id: str
    status: str
    paused: bool = False
    mirror: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    total_videos: int = 0
    processed_videos: int = 0
    current_video: dict | None = None
    error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    failed_videos: int | None = None


class JobDetailResponse(JobSummaryResponse):
    """Validation job with per-video results."""

    videos: list[dict[str, Any]] = []


class SignedSegmentResponse(BaseModel):
    """Freshly issued segment token."""

    token: str
    expires_in: int


class QualityModel(BaseModel):
    """One rendition of a video."""

    quality: str
    last_segment_url: str = ""
    segment_count: int = 0


class VideoResponse(BaseModel):
    """Catalog video."""

    id: str
    title: str
    lecture_id: str | None = None
    duration: float = 0
    qualities: list[QualityModel] = []
    status: str
    status_updated_at: str | None = None
    created_at: str | None = None


class LectureResponse(BaseModel):
    id: str
    title: str
    chapter_id: str | None = None


class AvailabilityResponse(BaseModel):
    """Stored statuses of a lecture's videos."""

    lecture_id: str
    total: int
    working: int
    broken: int
    unknown: int
    available: bool
    per_video: dict[str, str]


class LectureCheckResponse(BaseModel):
    """Result of probing every video of a lecture."""

    total: int
    working: int
    broken: int
    unknown: int
    per_video: dict[str, str]
    notifications: list[str] = []


class NotificationResponse(BaseModel):
    id: str
    title: str
    body: str | None = None
    lecture_id: str | None = None
    video_id: str | None = None
    recipients: list[str] = []
    admin_only: bool = False
    user_only: bool = False
    data: dict = {}
    created_at: str


# =============================================================================
# Request Models
# =============================================================================


class _QualitiesMixin(BaseModel):
    @field_validator("qualities", mode="before", check_fields=False)
    @classmethod
    def _normalize_qualities(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, list):
            raise ValueError("qualities must be a list")
        return [normalize_quality(q).to_dict() if isinstance(q, dict) else q for q in value]


class StartValidationRequest(BaseModel):
    """Request to start a catalog-wide validation job."""

    mirror: bool = Field(default=False, description="Copy confirmed segments into the mirror store")


class SignSegmentRequest(BaseModel):
    quality: str
    segment_number: int = Field(ge=1)


class CreateLectureRequest(BaseModel):
    title: str = Field(min_length=1)
    chapter_id: str | None = None


class CreateVideoRequest(_QualitiesMixin):
    """New video under a lecture. Legacy quality keys are accepted."""

    title: str = Field(min_length=1)
    duration: float = Field(default=0, ge=0)
    qualities: list[QualityModel] = []


class UpdateVideoRequest(_QualitiesMixin):
    """Partial video edit; omitted fields are unchanged."""

    title: str | None = None
    duration: float | None = Field(default=None, ge=0)
    qualities: list[QualityModel] | None = None


class ValidateVideoRequest(BaseModel):
    mirror: bool = False
