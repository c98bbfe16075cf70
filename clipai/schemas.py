from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clipai.core.models import CaptionRecord, HighlightRecord, ThumbnailRecord, UserRecord
from clipai.core.status import JobHistory, JobStatus, JobSummary


class VideoUrlCreate(BaseModel):
    url: str = Field(min_length=1)

    @field_validator("url")
    @classmethod
    def require_http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return value


class VideoOut(BaseModel):
    video_id: int
    original_filename: str
    file_size: int
    mime_type: str
    status: str
    source_url: Optional[str] = None
    uploaded_at: Optional[str] = None


class VideoListOut(BaseModel):
    videos: List[VideoOut]
    total: int
    limit: int
    offset: int


class JobOut(BaseModel):
    job_id: int
    status: str


class HighlightOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str
    description: Optional[str] = None
    duration: float
    start_time: float = Field(serialization_alias="startTime")
    end_time: float = Field(serialization_alias="endTime")
    confidence: float
    download_url: Optional[str] = Field(default=None, serialization_alias="downloadUrl")

    @classmethod
    def from_record(cls, record: HighlightRecord) -> "HighlightOut":
        return cls(
            id=record.id,
            title=record.title,
            description=record.description,
            duration=record.duration,
            start_time=record.start_time,
            end_time=record.end_time,
            confidence=record.confidence,
            download_url=f"/download/clip/{record.id}" if record.file_path else None,
        )


class ThumbnailOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    timestamp: float
    confidence: float
    width: Optional[int] = None
    height: Optional[int] = None
    download_url: str = Field(serialization_alias="downloadUrl")

    @classmethod
    def from_record(cls, record: ThumbnailRecord) -> "ThumbnailOut":
        return cls(
            id=record.id,
            timestamp=record.timestamp,
            confidence=record.confidence,
            width=record.width,
            height=record.height,
            download_url=f"/download/thumbnail/{record.id}",
        )


class CaptionOut(BaseModel):
    id: int
    platform: str
    content: str
    hashtags: List[str]

    @classmethod
    def from_record(cls, record: CaptionRecord) -> "CaptionOut":
        return cls(
            id=record.id,
            platform=record.platform,
            content=record.content,
            hashtags=list(record.hashtags),
        )


class JobStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: int = Field(serialization_alias="jobId")
    video_id: int = Field(serialization_alias="videoId")
    status: str
    progress: int
    error_message: Optional[str] = Field(default=None, serialization_alias="errorMessage")
    highlights: List[HighlightOut] = Field(default_factory=list)
    thumbnails: List[ThumbnailOut] = Field(default_factory=list)
    captions: List[CaptionOut] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, serialization_alias="createdAt")
    updated_at: Optional[str] = Field(default=None, serialization_alias="updatedAt")

    @classmethod
    def from_status(cls, status: JobStatus) -> "JobStatusOut":
        job = status.job
        return cls(
            job_id=job.id,
            video_id=job.video_id,
            status=job.status,
            progress=job.progress,
            error_message=job.error_message,
            highlights=[HighlightOut.from_record(h) for h in status.highlights],
            thumbnails=[ThumbnailOut.from_record(t) for t in status.thumbnails],
            captions=[CaptionOut.from_record(c) for c in status.captions],
            created_at=job.created_at.isoformat() if job.created_at else None,
            updated_at=job.updated_at.isoformat() if job.updated_at else None,
        )


class CreditsOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(serialization_alias="userId")
    credits: int
    is_subscribed: bool = Field(serialization_alias="isSubscribed")
    subscription_expires_at: Optional[str] = Field(
        default=None, serialization_alias="subscriptionExpiresAt"
    )

    @classmethod
    def from_record(cls, record: UserRecord) -> "CreditsOut":
        expires = record.subscription_expires_at
        return cls(
            user_id=record.id,
            credits=record.credits,
            is_subscribed=record.is_subscribed,
            subscription_expires_at=expires.isoformat() if expires else None,
        )


class JobVideoOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_name: str = Field(serialization_alias="originalName")
    size: int
    type: str


class JobStatsOut(BaseModel):
    highlights: int
    thumbnails: int
    captions: int


class JobSummaryOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: int = Field(serialization_alias="jobId")
    video_id: int = Field(serialization_alias="videoId")
    status: str
    progress: int
    error_message: Optional[str] = Field(default=None, serialization_alias="errorMessage")
    video: JobVideoOut
    stats: JobStatsOut
    created_at: Optional[str] = Field(default=None, serialization_alias="createdAt")

    @classmethod
    def from_summary(cls, summary: JobSummary) -> "JobSummaryOut":
        job = summary.job
        return cls(
            job_id=job.id,
            video_id=job.video_id,
            status=job.status,
            progress=job.progress,
            error_message=job.error_message,
            video=JobVideoOut(
                original_name=summary.original_filename,
                size=summary.file_size,
                type=summary.mime_type,
            ),
            stats=JobStatsOut(
                highlights=summary.highlight_count,
                thumbnails=summary.thumbnail_count,
                captions=summary.caption_count,
            ),
            created_at=job.created_at.isoformat() if job.created_at else None,
        )


class JobHistoryOut(BaseModel):
    jobs: List[JobSummaryOut]
    total: int
    limit: int
    offset: int

    @classmethod
    def from_history(cls, history: JobHistory) -> "JobHistoryOut":
        return cls(
            jobs=[JobSummaryOut.from_summary(item) for item in history.items],
            total=history.total,
            limit=history.limit,
            offset=history.offset,
        )
