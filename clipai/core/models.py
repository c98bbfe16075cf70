import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clipai.core.db import Base
from clipai.core.normalizers import ensure_utc, split_hashtags

DEFAULT_USER_CREDITS = int(os.getenv("DEFAULT_USER_CREDITS", "5"))

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
TERMINAL_JOB_STATUSES = {JOB_COMPLETED, JOB_FAILED}


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)

    credits: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_USER_CREDITS, nullable=False
    )
    is_subscribed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=True
    )
    original_filename: Mapped[str] = mapped_column(String, nullable=False)
    # relative to STORAGE_ROOT
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, default="video/mp4", nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="uploaded", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    video_id: Mapped[int] = mapped_column(
        ForeignKey("videos.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String, default=JOB_PENDING, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    highlights: Mapped[List["HighlightClip"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    thumbnails: Mapped[List["Thumbnail"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    captions: Mapped[List["Caption"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )


class HighlightClip(Base):
    __tablename__ = "highlight_clips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("processing_jobs.id", ondelete="CASCADE"), index=True, nullable=False
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    duration: Mapped[float] = mapped_column(Float, nullable=False)
    start_time: Mapped[float] = mapped_column(Float, nullable=False)
    end_time: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    job: Mapped[ProcessingJob] = relationship(back_populates="highlights")


class Thumbnail(Base):
    __tablename__ = "thumbnails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("processing_jobs.id", ondelete="CASCADE"), index=True, nullable=False
    )
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    job: Mapped[ProcessingJob] = relationship(back_populates="thumbnails")


class Caption(Base):
    __tablename__ = "captions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("processing_jobs.id", ondelete="CASCADE"), index=True, nullable=False
    )
    platform: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # comma separated
    hashtags: Mapped[str | None] = mapped_column(Text, nullable=True)

    job: Mapped[ProcessingJob] = relationship(back_populates="captions")


# ----------------------------
# Records handed to orchestration code
# ----------------------------
@dataclass(frozen=True)
class UserRecord:
    id: int
    credits: int
    is_subscribed: bool
    subscription_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserRecord":
        return cls(
            id=int(row["id"]),
            credits=int(row["credits"] or 0),
            is_subscribed=bool(row["is_subscribed"]),
            subscription_expires_at=ensure_utc(row["subscription_expires_at"]),
        )


@dataclass(frozen=True)
class VideoRecord:
    id: int
    user_id: Optional[int]
    file_path: str
    original_filename: str

    @classmethod
    def from_model(cls, video: Video) -> "VideoRecord":
        return cls(
            id=video.id,
            user_id=video.user_id,
            file_path=video.file_path,
            original_filename=video.original_filename,
        )


@dataclass(frozen=True)
class JobRecord:
    id: int
    video_id: int
    user_id: Optional[int]
    status: str
    progress: int
    error_message: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @classmethod
    def from_model(cls, job: ProcessingJob) -> "JobRecord":
        return cls(
            id=job.id,
            video_id=job.video_id,
            user_id=job.user_id,
            status=job.status,
            progress=job.progress,
            error_message=job.error_message,
            created_at=ensure_utc(job.created_at),
            updated_at=ensure_utc(job.updated_at),
        )


@dataclass(frozen=True)
class HighlightRecord:
    id: int
    title: str
    description: Optional[str]
    file_path: str
    duration: float
    start_time: float
    end_time: float
    confidence: float

    @classmethod
    def from_model(cls, clip: HighlightClip) -> "HighlightRecord":
        return cls(
            id=clip.id,
            title=clip.title,
            description=clip.description,
            file_path=clip.file_path,
            duration=clip.duration,
            start_time=clip.start_time,
            end_time=clip.end_time,
            confidence=clip.confidence,
        )


@dataclass(frozen=True)
class ThumbnailRecord:
    id: int
    file_path: str
    timestamp: float
    confidence: float
    width: Optional[int]
    height: Optional[int]

    @classmethod
    def from_model(cls, thumb: Thumbnail) -> "ThumbnailRecord":
        return cls(
            id=thumb.id,
            file_path=thumb.file_path,
            timestamp=thumb.timestamp,
            confidence=thumb.confidence,
            width=thumb.width,
            height=thumb.height,
        )


@dataclass(frozen=True)
class CaptionRecord:
    id: int
    platform: str
    content: str
    hashtags: List[str]

    @classmethod
    def from_model(cls, caption: Caption) -> "CaptionRecord":
        return cls(
            id=caption.id,
            platform=caption.platform,
            content=caption.content,
            hashtags=split_hashtags(caption.hashtags),
        )
