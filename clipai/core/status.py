from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select

from clipai.core.models import (
    JOB_COMPLETED,
    Caption,
    CaptionRecord,
    HighlightClip,
    HighlightRecord,
    JobRecord,
    ProcessingJob,
    Thumbnail,
    ThumbnailRecord,
    Video,
)
from clipai.core.transaction import SessionFactory


@dataclass(frozen=True)
class JobStatus:
    job: JobRecord
    highlights: List[HighlightRecord] = field(default_factory=list)
    thumbnails: List[ThumbnailRecord] = field(default_factory=list)
    captions: List[CaptionRecord] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.job.status

    @property
    def progress(self) -> int:
        return self.job.progress

    @property
    def error_message(self) -> Optional[str]:
        return self.job.error_message


@dataclass(frozen=True)
class JobSummary:
    job: JobRecord
    original_filename: str
    file_size: int
    mime_type: str
    highlight_count: int = 0
    thumbnail_count: int = 0
    caption_count: int = 0


@dataclass(frozen=True)
class JobHistory:
    items: List[JobSummary]
    total: int
    limit: int
    offset: int


class StatusReader:
    """Read side for polling clients. Ownership checks belong to the caller."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get_status(self, job_id: int) -> Optional[JobStatus]:
        with self._session_factory() as db:
            job = db.get(ProcessingJob, job_id)
            if job is None:
                return None
            record = JobRecord.from_model(job)
            # artifacts are only exposed once the job has committed them
            if record.status != JOB_COMPLETED:
                return JobStatus(job=record)

            highlights = db.execute(
                select(HighlightClip)
                .where(HighlightClip.job_id == job_id)
                .order_by(HighlightClip.start_time, HighlightClip.id)
            ).scalars()
            thumbnails = db.execute(
                select(Thumbnail)
                .where(Thumbnail.job_id == job_id)
                .order_by(Thumbnail.timestamp, Thumbnail.id)
            ).scalars()
            captions = db.execute(
                select(Caption).where(Caption.job_id == job_id).order_by(Caption.id)
            ).scalars()
            return JobStatus(
                job=record,
                highlights=[HighlightRecord.from_model(h) for h in highlights],
                thumbnails=[ThumbnailRecord.from_model(t) for t in thumbnails],
                captions=[CaptionRecord.from_model(c) for c in captions],
            )

    def list_jobs(self, user_id: int, limit: int = 10, offset: int = 0) -> JobHistory:
        """One page of the caller's jobs, newest first, with artifact counts."""
        with self._session_factory() as db:
            stmt = (
                select(
                    ProcessingJob,
                    Video.original_filename,
                    Video.file_size,
                    Video.mime_type,
                    _artifact_count(HighlightClip).label("highlight_count"),
                    _artifact_count(Thumbnail).label("thumbnail_count"),
                    _artifact_count(Caption).label("caption_count"),
                )
                .join(Video, Video.id == ProcessingJob.video_id)
                .where(ProcessingJob.user_id == user_id)
                .order_by(ProcessingJob.created_at.desc(), ProcessingJob.id.desc())
                .limit(limit)
                .offset(offset)
            )
            items = [
                JobSummary(
                    job=JobRecord.from_model(row[0]),
                    original_filename=row.original_filename,
                    file_size=row.file_size,
                    mime_type=row.mime_type,
                    highlight_count=row.highlight_count,
                    thumbnail_count=row.thumbnail_count,
                    caption_count=row.caption_count,
                )
                for row in db.execute(stmt)
            ]
            total = db.scalar(
                select(func.count(ProcessingJob.id)).where(ProcessingJob.user_id == user_id)
            )
            return JobHistory(items=items, total=total or 0, limit=limit, offset=offset)


def _artifact_count(model):
    return (
        select(func.count(model.id))
        .where(model.job_id == ProcessingJob.id)
        .correlate(ProcessingJob)
        .scalar_subquery()
    )
